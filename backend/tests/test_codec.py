import pytest

from appdb import SerializationError
from appdb.codec import decode_events, decode_manifest, encode_events, encode_manifest


def test_manifest_round_trip_preserves_structure_and_key_order() -> None:
    manifest = {
        "name": "Calculator",
        "version": "1.0.2",
        "icons": {"128": "icon128.png", "16": "icon16.png"},
        "permissions": ["storage", "notifications"],
        "description": "Rechner üé 计算器",
        "ratio": 0.1,
        "count": 3,
        "enabled": True,
        "extra": None,
    }

    decoded = decode_manifest(encode_manifest(manifest))

    assert decoded == manifest
    assert list(decoded) == list(manifest)
    assert list(decoded["icons"]) == ["128", "16"]


@pytest.mark.parametrize(
    "manifest",
    [
        ["not", "a", "mapping"],
        "text",
        {"bad": {1, 2}},
        {"bad": b"bytes"},
        {"bad": float("nan")},
    ],
)
def test_encode_manifest_rejects_non_json_documents(manifest) -> None:
    with pytest.raises(SerializationError):
        encode_manifest(manifest)


def test_decode_manifest_rejects_corrupt_text() -> None:
    with pytest.raises(SerializationError):
        decode_manifest("{not json")
    with pytest.raises(SerializationError):
        decode_manifest("[1, 2]")


def test_events_are_joined_with_semicolons_in_order() -> None:
    assert encode_events(["x", "y", "z"]) == "x;y;z"
    assert decode_events("x;y;z") == ["x", "y", "z"]
    assert encode_events([]) == ""
    assert decode_events("") == []


@pytest.mark.parametrize("events", [["a;b"], [""], ["ok", 3], "abc"])
def test_encode_events_rejects_names_that_cannot_round_trip(events) -> None:
    with pytest.raises(SerializationError):
        encode_events(events)
