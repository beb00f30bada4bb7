"""
Proof artifacts.

An anchoring proof is an OpenTimestamps detached timestamp (``.ots``):

    HEADER_MAGIC | varuint major version (1) | 0x08 (sha256) | 32-byte digest | timestamp

The timestamp is a tree of operations applied to the digest. Each leaf is
an attestation naming where the resulting commitment was anchored: a
calendar that will later anchor it (pending) or a Bitcoin block header.
Parsing replays every operation, so anyone holding the original content
and the artifact can check it without trusting the issuer.

The internal fallback receipt is a small JSON document and is not
independently verifiable.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Optional

from .fingerprint import InvalidFingerprint, normalize_fingerprint

HEADER_MAGIC = b"\x00OpenTimestamps\x00\x00Proof\x00\xbf\x89\xe2\xe8\x84\xe8\x92\x94"
MAJOR_VERSION = 1

OP_SHA1 = 0x02
OP_RIPEMD160 = 0x03
OP_SHA256 = 0x08
OP_APPEND = 0xF0
OP_PREPEND = 0xF1
OP_REVERSE = 0xF2
OP_HEXLIFY = 0xF3

TAG_ATTESTATION = 0x00
TAG_FORK = 0xFF

PENDING_ATTESTATION_TAG = bytes.fromhex("83dfe30d2ef90c8e")
BITCOIN_ATTESTATION_TAG = bytes.fromhex("0588960d73d71901")

MAX_MSG_LENGTH = 4096
MAX_PAYLOAD_LENGTH = 8192
MAX_URI_LENGTH = 1000
MAX_DEPTH = 256

INTERNAL_METHOD = "internal_database"


class InvalidProofFormat(Exception):
    pass


@dataclass(frozen=True)
class Attestation:
    kind: str
    commitment: bytes
    uri: Optional[str] = None
    height: Optional[int] = None
    tag: bytes = b""
    # byte range of the attestation item inside the parsed data
    span: tuple[int, int] = (0, 0)

    def describe(self) -> dict:
        info: dict = {"kind": self.kind, "commitment": self.commitment.hex()}
        if self.uri is not None:
            info["calendar"] = self.uri
        if self.height is not None:
            info["blockHeight"] = self.height
        if self.kind == "unknown":
            info["tag"] = self.tag.hex()
        return info


@dataclass(frozen=True)
class DetachedTimestamp:
    digest: bytes
    attestations: list[Attestation] = field(default_factory=list)

    @property
    def fingerprint(self) -> str:
        return self.digest.hex()

    @property
    def bitcoin_anchored(self) -> bool:
        return any(a.kind == "bitcoin" for a in self.attestations)

    @property
    def block_heights(self) -> list[int]:
        return sorted(a.height for a in self.attestations if a.kind == "bitcoin")

    @property
    def pending(self) -> list[Attestation]:
        return [a for a in self.attestations if a.kind == "pending"]


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def read_bytes(self, n: int) -> bytes:
        end = self.offset + n
        if end > len(self.data):
            raise InvalidProofFormat("proof is truncated")
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def read_byte(self) -> int:
        return self.read_bytes(1)[0]

    def read_varuint(self) -> int:
        value = 0
        shift = 0
        while True:
            byte = self.read_byte()
            value |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return value
            shift += 7
            if shift > 63:
                raise InvalidProofFormat("varuint too large")

    def read_varbytes(self, max_length: int, min_length: int = 0) -> bytes:
        length = self.read_varuint()
        if length > max_length or length < min_length:
            raise InvalidProofFormat(f"field length {length} out of range")
        return self.read_bytes(length)

    @property
    def at_end(self) -> bool:
        return self.offset == len(self.data)


def write_varuint(value: int) -> bytes:
    if value < 0:
        raise ValueError("varuint cannot be negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def write_varbytes(value: bytes) -> bytes:
    return write_varuint(len(value)) + value


def pending_attestation(uri: str) -> bytes:
    """Serialized attestation item pointing at a calendar."""
    payload = write_varbytes(uri.encode("ascii"))
    return bytes([TAG_ATTESTATION]) + PENDING_ATTESTATION_TAG + write_varbytes(payload)


def bitcoin_attestation(height: int) -> bytes:
    payload = write_varuint(height)
    return bytes([TAG_ATTESTATION]) + BITCOIN_ATTESTATION_TAG + write_varbytes(payload)


def build_detached_timestamp(fingerprint: str, timestamp: bytes) -> bytes:
    """Wrap a calendar's timestamp for ``fingerprint`` into a ``.ots`` artifact."""
    digest = bytes.fromhex(normalize_fingerprint(fingerprint))
    return HEADER_MAGIC + write_varuint(MAJOR_VERSION) + bytes([OP_SHA256]) + digest + timestamp


def parse_detached_timestamp(data: bytes) -> DetachedTimestamp:
    if not data.startswith(HEADER_MAGIC):
        raise InvalidProofFormat("not an OpenTimestamps proof (bad magic)")

    reader = _Reader(data)
    reader.read_bytes(len(HEADER_MAGIC))
    version = reader.read_varuint()
    if version != MAJOR_VERSION:
        raise InvalidProofFormat(f"unsupported proof version {version}")

    hash_op = reader.read_byte()
    if hash_op != OP_SHA256:
        raise InvalidProofFormat("only SHA-256 file digests are supported")

    digest = reader.read_bytes(32)
    attestations = _parse_tree(reader, digest)
    if not reader.at_end:
        raise InvalidProofFormat("trailing data after timestamp")
    return DetachedTimestamp(digest=digest, attestations=attestations)


def parse_timestamp(data: bytes, message: bytes) -> list[Attestation]:
    """Parse a bare timestamp (as returned by a calendar) for ``message``."""
    reader = _Reader(data)
    attestations = _parse_tree(reader, message)
    if not reader.at_end:
        raise InvalidProofFormat("trailing data after timestamp")
    return attestations


def splice(data: bytes, attestation: Attestation, replacement: bytes) -> tuple[DetachedTimestamp, bytes]:
    """Replace ``attestation`` inside ``data`` with a timestamp continuing from its commitment.

    Returns the re-parsed artifact and its bytes.
    """
    start, end = attestation.span
    merged = data[:start] + replacement + data[end:]
    return parse_detached_timestamp(merged), merged


def _parse_tree(reader: _Reader, message: bytes) -> list[Attestation]:
    attestations: list[Attestation] = []
    _parse_timestamp(reader, message, 0, attestations)
    if not attestations:
        raise InvalidProofFormat("timestamp carries no attestation")
    return attestations


def _parse_timestamp(reader: _Reader, message: bytes, depth: int, out: list[Attestation]) -> None:
    if depth > MAX_DEPTH:
        raise InvalidProofFormat("timestamp nesting too deep")

    tag = reader.read_byte()
    while tag == TAG_FORK:
        _parse_item(reader, reader.read_byte(), message, depth, out)
        tag = reader.read_byte()
    _parse_item(reader, tag, message, depth, out)


def _parse_item(reader: _Reader, tag: int, message: bytes, depth: int, out: list[Attestation]) -> None:
    start = reader.offset - 1
    if tag == TAG_ATTESTATION:
        attestation_tag = reader.read_bytes(8)
        payload = reader.read_varbytes(MAX_PAYLOAD_LENGTH)
        out.append(_decode_attestation(attestation_tag, payload, message, (start, reader.offset)))
        return

    result = _apply_op(reader, tag, message)
    _parse_timestamp(reader, result, depth + 1, out)


def _apply_op(reader: _Reader, tag: int, message: bytes) -> bytes:
    if tag == OP_APPEND:
        result = message + reader.read_varbytes(MAX_MSG_LENGTH, 1)
    elif tag == OP_PREPEND:
        result = reader.read_varbytes(MAX_MSG_LENGTH, 1) + message
    elif tag == OP_SHA256:
        result = hashlib.sha256(message).digest()
    elif tag == OP_SHA1:
        result = hashlib.sha1(message).digest()
    elif tag == OP_RIPEMD160:
        try:
            result = hashlib.new("ripemd160", message).digest()
        except ValueError as e:
            raise InvalidProofFormat("ripemd160 is not available on this platform") from e
    elif tag == OP_REVERSE:
        result = message[::-1]
    elif tag == OP_HEXLIFY:
        result = message.hex().encode("ascii")
    else:
        raise InvalidProofFormat(f"unknown operation 0x{tag:02x}")

    if len(result) > MAX_MSG_LENGTH:
        raise InvalidProofFormat("intermediate message too long")
    return result


def _decode_attestation(tag: bytes, payload: bytes, message: bytes, span: tuple[int, int]) -> Attestation:
    reader = _Reader(payload)
    if tag == PENDING_ATTESTATION_TAG:
        raw = reader.read_varbytes(MAX_URI_LENGTH)
        try:
            uri = raw.decode("ascii")
        except UnicodeDecodeError as e:
            raise InvalidProofFormat("calendar uri is not ascii") from e
        if not uri.startswith(("https://", "http://")):
            raise InvalidProofFormat(f"invalid calendar uri {uri!r}")
        return Attestation(kind="pending", commitment=message, uri=uri, tag=tag, span=span)

    if tag == BITCOIN_ATTESTATION_TAG:
        height = reader.read_varuint()
        return Attestation(kind="bitcoin", commitment=message, height=height, tag=tag, span=span)

    return Attestation(kind="unknown", commitment=message, tag=tag, span=span)


def build_internal_receipt(fingerprint: str, timestamp: str) -> bytes:
    return json.dumps(
        {"hash": normalize_fingerprint(fingerprint), "timestamp": timestamp, "method": INTERNAL_METHOD},
        sort_keys=True,
    ).encode()


def parse_internal_receipt(data: bytes) -> dict:
    try:
        receipt = json.loads(data)
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidProofFormat("internal receipt is not JSON") from e
    if not isinstance(receipt, dict) or receipt.get("method") != INTERNAL_METHOD:
        raise InvalidProofFormat("not an internal receipt")
    try:
        receipt["hash"] = normalize_fingerprint(receipt.get("hash"))
    except InvalidFingerprint as e:
        raise InvalidProofFormat("internal receipt carries an invalid hash") from e
    return receipt
