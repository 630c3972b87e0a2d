"""Text encodings for the manifest and registered events columns."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Dict, List, Sequence

from .errors import SerializationError

EVENT_SEPARATOR = ";"


def encode_manifest(manifest: Any) -> str:
    """
    Serialize a manifest document to JSON text.

    Keys keep their insertion order, so decoding yields a structurally equal
    document. Non-JSON values (sets, bytes, NaN, ...) are rejected.
    """
    if not isinstance(manifest, Mapping):
        raise SerializationError(
            f"manifest must be a JSON object, got {type(manifest).__name__}"
        )
    try:
        return json.dumps(
            manifest, ensure_ascii=False, separators=(",", ":"), allow_nan=False
        )
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"manifest is not JSON serializable: {exc}") from exc


def decode_manifest(text: str) -> Dict[str, Any]:
    try:
        value = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"stored manifest is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise SerializationError("stored manifest is not a JSON object")
    return value


def encode_events(events: Sequence[str]) -> str:
    """Join event names with ``;``. Names may not be empty or contain ``;``."""
    if isinstance(events, (str, bytes)) or not isinstance(events, Sequence):
        raise SerializationError("events must be a list of event names")
    for name in events:
        if not isinstance(name, str) or not name:
            raise SerializationError(f"invalid event name: {name!r}")
        if EVENT_SEPARATOR in name:
            raise SerializationError(
                f"event name {name!r} contains the reserved separator '{EVENT_SEPARATOR}'"
            )
    return EVENT_SEPARATOR.join(events)


def decode_events(text: str) -> List[str]:
    if not text:
        return []
    return text.split(EVENT_SEPARATOR)
