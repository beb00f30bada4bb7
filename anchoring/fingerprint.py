"""Content fingerprints: lower-case hex SHA-256 digests, computed locally."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import BinaryIO, Union

FINGERPRINT_LENGTH = 64
CHUNK_SIZE = 1024 * 1024

_FINGERPRINT_RE = re.compile(r"[0-9a-fA-F]{64}")


class ContentUnreadable(Exception):
    """The content to fingerprint could not be read."""


class InvalidFingerprint(ValueError):
    pass


def fingerprint_bytes(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def fingerprint_stream(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> str:
    digest = hashlib.sha256()
    try:
        for chunk in iter(lambda: stream.read(chunk_size), b""):
            digest.update(chunk)
    except OSError as e:
        raise ContentUnreadable(str(e)) from e
    return digest.hexdigest()


def fingerprint_file(path: Union[str, Path]) -> str:
    try:
        with open(path, "rb") as f:
            return fingerprint_stream(f)
    except OSError as e:
        raise ContentUnreadable(f"cannot read {path}: {e}") from e


def is_valid_fingerprint(value: object) -> bool:
    return isinstance(value, str) and _FINGERPRINT_RE.fullmatch(value) is not None


def normalize_fingerprint(value: object) -> str:
    """Trim and lower-case ``value``, rejecting anything but 64 hex characters."""
    candidate = value.strip() if isinstance(value, str) else value
    if not is_valid_fingerprint(candidate):
        raise InvalidFingerprint(
            f"fingerprint must be exactly {FINGERPRINT_LENGTH} hexadecimal characters"
        )
    return candidate.lower()
