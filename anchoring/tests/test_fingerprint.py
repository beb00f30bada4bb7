"""
Unit Tests for Content Fingerprints

Tests cover:
1. Known SHA-256 vectors and determinism
2. Streams and files
3. Unreadable content
4. Format validation and normalization
"""

import io

import pytest

from anchoring.fingerprint import (
    ContentUnreadable,
    InvalidFingerprint,
    fingerprint_bytes,
    fingerprint_file,
    fingerprint_stream,
    is_valid_fingerprint,
    normalize_fingerprint,
)


ABC_SHA256 = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


class _BrokenStream(io.RawIOBase):
    def read(self, size=-1):
        raise OSError("device not ready")


class TestFingerprintBytes:
    """Tests for digest computation."""

    def test_known_vectors(self):
        assert fingerprint_bytes(b"abc") == ABC_SHA256
        assert fingerprint_bytes(b"") == EMPTY_SHA256

    def test_deterministic_and_fixed_width(self):
        content = b"logo-final-v3.png" * 1000

        first = fingerprint_bytes(content)

        assert fingerprint_bytes(content) == first
        assert len(first) == 64
        assert first == first.lower()

    def test_single_bit_change_changes_digest(self):
        content = bytearray(b"registered artwork")
        flipped = bytearray(content)
        flipped[0] ^= 0x01

        assert fingerprint_bytes(bytes(content)) != fingerprint_bytes(bytes(flipped))


class TestFingerprintSources:
    """Tests for streams and files."""

    def test_stream_matches_bytes(self):
        content = bytes(range(256)) * 50

        assert fingerprint_stream(io.BytesIO(content), chunk_size=7) == fingerprint_bytes(content)

    def test_file(self, tmp_path):
        path = tmp_path / "work.txt"
        path.write_bytes(b"abc")

        assert fingerprint_file(path) == ABC_SHA256

    def test_missing_file_is_unreadable(self, tmp_path):
        with pytest.raises(ContentUnreadable):
            fingerprint_file(tmp_path / "missing.bin")

    def test_failing_stream_is_unreadable(self):
        with pytest.raises(ContentUnreadable):
            fingerprint_stream(_BrokenStream())


class TestFingerprintFormat:
    """Tests for the 64-hex format gate."""

    def test_valid(self):
        assert is_valid_fingerprint(ABC_SHA256)
        assert is_valid_fingerprint(ABC_SHA256.upper())

    @pytest.mark.parametrize("value", [
        ABC_SHA256[:63],
        ABC_SHA256 + "0",
        "g" * 64,
        ABC_SHA256 + "\n",
        "",
        None,
        123,
    ])
    def test_invalid(self, value):
        assert not is_valid_fingerprint(value)

    def test_normalize_trims_and_lowercases(self):
        assert normalize_fingerprint(f"  {ABC_SHA256.upper()}\n") == ABC_SHA256

    def test_normalize_rejects_wrong_length(self):
        with pytest.raises(InvalidFingerprint):
            normalize_fingerprint(ABC_SHA256[:63])
