"""
Binary signature format and the sync envelope around it.

Signature payload:

    "OCTOSIG" | version:u8 | hash name | rolling name | ">>>" | records...

Names are UTF-8 prefixed with a 7-bit encoded length. Each record is
``length:u32 LE | rolling:u32 LE | strong hash bytes`` and records run until
the end of the payload.

Envelope: the payload followed by a JSON metadata block and a fixed trailer

    json bytes | json length:u32 LE | envelope version:u8 | "AZSIGENV"

so the metadata can be found by reading backwards from the end of the file.
"""

import getpass
import io
import json
import logging
import platform
import struct
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Optional

from .errors import AzIOError, CorruptError, SerializationError, UnsupportedVersionError
from .signature import (
    HASH_ALGORITHMS,
    ROLLING_ALGORITHMS,
    ChunkRecord,
    Signature,
    expected_chunk_count,
)

logger = logging.getLogger("azsync.codec")

SIGNATURE_HEADER = b"OCTOSIG"
SIGNATURE_VERSION = 0x01
END_OF_METADATA = b">>>"

ENVELOPE_MAGIC = b"AZSIGENV"
ENVELOPE_VERSION = 0x01
_TRAILER = struct.Struct("<IB")
_RECORD_HEAD = struct.Struct("<II")


# ---------------------------------------------------------------------------
# Length-prefixed strings
# ---------------------------------------------------------------------------

def _write_string(out: BinaryIO, text: str) -> None:
    raw = text.encode("utf-8")
    n = len(raw)
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.write(bytes([byte | 0x80]))
        else:
            out.write(bytes([byte]))
            break
    out.write(raw)


def _read_exact(src: BinaryIO, n: int, what: str) -> bytes:
    data = src.read(n)
    if len(data) != n:
        raise CorruptError(f"Signature truncated while reading {what}.")
    return data


def _read_string(src: BinaryIO, what: str) -> str:
    n = 0
    shift = 0
    while True:
        byte = _read_exact(src, 1, what)[0]
        n |= (byte & 0x7F) << shift
        if not byte & 0x80:
            break
        shift += 7
        if shift > 28:
            raise CorruptError(f"Bad length prefix for {what}.")
    try:
        return _read_exact(src, n, what).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CorruptError(f"{what} is not valid UTF-8.") from exc


# ---------------------------------------------------------------------------
# Signature payload
# ---------------------------------------------------------------------------

def write_signature(out: BinaryIO, signature: Signature) -> None:
    out.write(SIGNATURE_HEADER)
    out.write(bytes([SIGNATURE_VERSION]))
    _write_string(out, signature.hash_algorithm)
    _write_string(out, signature.rolling_algorithm)
    out.write(END_OF_METADATA)
    for chunk in signature.chunks:
        out.write(_RECORD_HEAD.pack(chunk.length, chunk.rolling))
        out.write(chunk.strong)


def encode_signature(signature: Signature) -> bytes:
    buf = io.BytesIO()
    write_signature(buf, signature)
    return buf.getvalue()


def decode_signature(data: bytes) -> Signature:
    src = io.BytesIO(data)
    header = src.read(len(SIGNATURE_HEADER))
    if header != SIGNATURE_HEADER:
        raise CorruptError("Not a signature: bad header magic.")
    version = _read_exact(src, 1, "format version")[0]
    if version != SIGNATURE_VERSION:
        raise UnsupportedVersionError(f"Unsupported signature format version {version}.")
    hash_name = _read_string(src, "hash algorithm name")
    rolling_name = _read_string(src, "rolling algorithm name")
    if _read_exact(src, len(END_OF_METADATA), "end of metadata") != END_OF_METADATA:
        raise CorruptError("Signature metadata is not terminated by the end-of-metadata marker.")

    hash_algo = HASH_ALGORITHMS.get(hash_name)
    if hash_algo is None:
        raise UnsupportedVersionError(f"Unknown hash algorithm {hash_name!r}.")
    if rolling_name not in ROLLING_ALGORITHMS:
        raise UnsupportedVersionError(f"Unknown rolling checksum algorithm {rolling_name!r}.")

    record_size = _RECORD_HEAD.size + hash_algo.digest_size
    body = src.read()
    if len(body) % record_size:
        raise CorruptError(
            f"Signature chunk stream is {len(body)} bytes, not a multiple of {record_size}."
        )
    chunks = []
    for offset in range(0, len(body), record_size):
        length, rolling = _RECORD_HEAD.unpack_from(body, offset)
        strong = body[offset + _RECORD_HEAD.size:offset + record_size]
        chunks.append(ChunkRecord(length=length, rolling=rolling, strong=strong))
    return Signature(hash_algorithm=hash_name, rolling_algorithm=rolling_name, chunks=chunks)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


@dataclass
class SignatureEnvelope:
    signature: Signature
    file_name: str
    file_path: str
    size: int
    block_size: int
    etag: Optional[str] = None
    user_name: str = field(default_factory=_current_user)
    machine_name: str = field(default_factory=platform.node)
    built_at: str = field(default_factory=_utcnow)

    def metadata(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != "signature"}

    def validate(self) -> None:
        expected = expected_chunk_count(self.size, self.block_size)
        if len(self.signature) != expected:
            raise CorruptError(
                f"Signature for {self.file_name} has {len(self.signature)} chunk(s); "
                f"a {self.size}-byte file with {self.block_size}-byte blocks needs {expected}."
            )
        if self.signature.total_length != self.size:
            raise CorruptError(
                f"Signature for {self.file_name} covers {self.signature.total_length} bytes, "
                f"expected {self.size}."
            )


_ENVELOPE_FIELDS = ("file_name", "file_path", "size", "block_size")


def encode_envelope(envelope: SignatureEnvelope) -> bytes:
    buf = io.BytesIO()
    write_signature(buf, envelope.signature)
    meta = json.dumps(envelope.metadata(), sort_keys=True).encode("utf-8")
    buf.write(meta)
    buf.write(_TRAILER.pack(len(meta), ENVELOPE_VERSION))
    buf.write(ENVELOPE_MAGIC)
    return buf.getvalue()


def decode_envelope(data: bytes) -> SignatureEnvelope:
    tail = len(ENVELOPE_MAGIC) + _TRAILER.size
    if len(data) < tail or data[-len(ENVELOPE_MAGIC):] != ENVELOPE_MAGIC:
        raise CorruptError("Signature envelope trailer is missing.")
    meta_len, version = _TRAILER.unpack_from(data, len(data) - tail)
    if version != ENVELOPE_VERSION:
        raise UnsupportedVersionError(f"Unsupported signature envelope version {version}.")
    meta_end = len(data) - tail
    meta_start = meta_end - meta_len
    if meta_start < 0:
        raise CorruptError("Signature envelope metadata is truncated.")

    try:
        meta = json.loads(data[meta_start:meta_end].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SerializationError(f"Cannot decode signature envelope metadata: {exc}") from exc
    if not isinstance(meta, dict) or any(k not in meta for k in _ENVELOPE_FIELDS):
        raise SerializationError("Signature envelope metadata is missing required fields.")

    signature = decode_signature(data[:meta_start])
    try:
        envelope = SignatureEnvelope(
            signature=signature,
            file_name=str(meta["file_name"]),
            file_path=str(meta["file_path"]),
            size=int(meta["size"]),
            block_size=int(meta["block_size"]),
            etag=meta.get("etag"),
            user_name=str(meta.get("user_name", "")),
            machine_name=str(meta.get("machine_name", "")),
            built_at=str(meta.get("built_at", "")),
        )
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"Bad value in signature envelope metadata: {exc}") from exc
    if envelope.block_size <= 0:
        raise SerializationError("Signature envelope has a non-positive block size.")
    envelope.validate()
    return envelope


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def write_signature_file(path: Path, envelope: SignatureEnvelope) -> None:
    path = Path(path)
    if path.exists():
        logger.warning(f"Overwriting existing signature file {path}.")
    tmp = path.with_name(path.name + ".tmp")
    try:
        with tmp.open("wb") as fh:
            fh.write(encode_envelope(envelope))
        tmp.replace(path)
    except OSError as exc:
        raise AzIOError(f"Cannot write signature file {path}: {exc}") from exc


def read_signature_file(path: Path) -> SignatureEnvelope:
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise AzIOError(f"Cannot read signature file {path}: {exc}") from exc
    return decode_envelope(data)
