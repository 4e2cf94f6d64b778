"""Opaque volume bookmark tokens.

A bookmark is what gets persisted when the user picks a volume. The rest of
the engine treats it as an opaque byte blob; only this module and the
resolver know how to turn one back into a path.
"""
import json
import os
from dataclasses import dataclass
from typing import Optional

from .errors import StaleReference

MAGIC = b"PPBK"
VERSION = 1


@dataclass(frozen=True)
class Bookmark:
    path: str
    device: Optional[int] = None


def make_bookmark(path: str) -> bytes:
    """Create a token for an existing directory."""
    path = os.path.abspath(path)
    try:
        device = os.stat(path).st_dev
    except OSError:
        device = None
    body = json.dumps({"v": VERSION, "path": path, "dev": device}, sort_keys=True)
    return MAGIC + body.encode("utf-8")


def decode_bookmark(token: bytes, reference: str = "") -> Bookmark:
    label = reference or "bookmark"
    if not isinstance(token, (bytes, bytearray)) or not token.startswith(MAGIC):
        raise StaleReference(label, "bookmark data is not recognised")
    try:
        data = json.loads(bytes(token[len(MAGIC):]).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise StaleReference(label, f"bookmark data is corrupt ({e})")
    if not isinstance(data, dict) or data.get("v") != VERSION:
        raise StaleReference(label, "unsupported bookmark version")
    path = data.get("path")
    if not isinstance(path, str) or not path:
        raise StaleReference(label, "bookmark has no path")
    dev = data.get("dev")
    return Bookmark(path=path, device=dev if isinstance(dev, int) else None)
