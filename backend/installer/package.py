"""
Application package containers.

Two container formats are supported:
- ``.wgt``: a plain zip archive
- ``.xpk``: a zip archive prefixed by a ``CrWk`` header carrying a public key
  and a signature (header layout: magic, uint32 key size, uint32 signature
  size, key bytes, signature bytes)

Only the container is handled here; manifest parsing happens elsewhere.
"""

from __future__ import annotations

import logging
import shutil
import struct
import tempfile
import zipfile
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

XPK_MAGIC = b"CrWk"
_XPK_HEADER = struct.Struct("<4sII")
_MAX_XPK_FIELD_SIZE = 64 * 1024


class PackageError(Exception):
    """The package is missing, has an unknown type, or cannot be extracted."""


class Package:
    package_type = "unknown"
    suffix = ""

    def __init__(self, source_path: Union[Path, str]) -> None:
        self.source_path = Path(source_path)
        self._extracted_path: Optional[Path] = None

    @staticmethod
    def create(source_path: Union[Path, str]) -> "Package":
        """Pick the package class from the file extension."""
        path = Path(source_path)
        for package_cls in (XPKPackage, WGTPackage):
            if path.suffix.lower() == package_cls.suffix:
                package = package_cls(path)
                if not package.is_valid():
                    raise PackageError(f"Package {path} is not valid")
                return package
        raise PackageError(
            f"Invalid package type for {path}. Only .xpk/.wgt supported now"
        )

    @property
    def extracted_path(self) -> Optional[Path]:
        return self._extracted_path

    def is_valid(self) -> bool:
        return self.source_path.is_file() and zipfile.is_zipfile(self.source_path)

    def extract(self) -> Path:
        """
        Unzip the package into a temporary directory and return it.

        Calling this again on the same package returns the same directory
        without extracting a second time.
        """
        if self._extracted_path is not None:
            return self._extracted_path
        if not self.is_valid():
            raise PackageError(f"Package {self.source_path} is not valid")

        target = Path(tempfile.mkdtemp(prefix=f"{self.package_type}-"))
        try:
            self._unzip(target)
        except (OSError, zipfile.BadZipFile, PackageError) as exc:
            shutil.rmtree(target, ignore_errors=True)
            logger.error("An error occurred during package extraction: %s", exc)
            if isinstance(exc, PackageError):
                raise
            raise PackageError(f"Unable to extract {self.source_path}: {exc}") from exc

        self._extracted_path = target
        return target

    def _unzip(self, target: Path) -> None:
        root = target.resolve()
        with zipfile.ZipFile(self.source_path, "r") as archive:
            for member in archive.infolist():
                destination = (root / member.filename).resolve()
                if destination != root and root not in destination.parents:
                    raise PackageError(
                        f"Archive member {member.filename!r} escapes the extraction directory"
                    )
            archive.extractall(root)

    def cleanup(self) -> None:
        if self._extracted_path is not None:
            shutil.rmtree(self._extracted_path, ignore_errors=True)
            self._extracted_path = None

    def __enter__(self) -> "Package":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()


class WGTPackage(Package):
    package_type = "wgt"
    suffix = ".wgt"


class XPKPackage(Package):
    package_type = "xpk"
    suffix = ".xpk"

    def __init__(self, source_path: Union[Path, str]) -> None:
        super().__init__(source_path)
        self.public_key: bytes = b""
        self.signature: bytes = b""

    def is_valid(self) -> bool:
        if not self.source_path.is_file():
            return False
        try:
            with self.source_path.open("rb") as handle:
                header = handle.read(_XPK_HEADER.size)
                if len(header) != _XPK_HEADER.size:
                    return False
                magic, key_size, signature_size = _XPK_HEADER.unpack(header)
                if magic != XPK_MAGIC:
                    return False
                if key_size > _MAX_XPK_FIELD_SIZE or signature_size > _MAX_XPK_FIELD_SIZE:
                    return False
                self.public_key = handle.read(key_size)
                self.signature = handle.read(signature_size)
                if len(self.public_key) != key_size or len(self.signature) != signature_size:
                    return False
        except OSError:
            return False
        # zipfile tolerates the header in front of the archive.
        return zipfile.is_zipfile(self.source_path)
