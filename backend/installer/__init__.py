from .package import Package, PackageError, WGTPackage, XPKPackage

__all__ = ["Package", "PackageError", "WGTPackage", "XPKPackage"]
