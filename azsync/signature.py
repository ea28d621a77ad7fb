"""
Block signatures: one chunk record per fixed-size window of a file.

Each record holds the window length, a 32-bit rolling checksum and a strong
hash. The rolling checksum can be slid one byte at a time with ``rotate`` so
that a diff step can look for matching blocks at any offset.
"""

import hashlib
import logging
import math
from dataclasses import dataclass, field
from itertools import accumulate
from pathlib import Path
from typing import Callable, List, Optional

from .cancellation import CancellationToken
from .errors import AzIOError

logger = logging.getLogger("azsync.signature")

_MOD = 1 << 16


# ---------------------------------------------------------------------------
# Checksums
# ---------------------------------------------------------------------------

class Adler32RollingChecksum:
    """Adler-style rolling checksum with 16-bit wrap-around sums.

        a = 1 + sum(z)           (mod 2^16)
        b = sum(a_k for each k)  (mod 2^16)
        checksum = (b << 16) | a

    This is the variant written as ``Adler32`` in signature headers.
    """

    name = "Adler32"

    @staticmethod
    def calculate(data: bytes) -> int:
        n = len(data)
        # b is n (the +1 of every a_k) plus the sum of the prefix sums of data
        a = (1 + sum(data)) % _MOD
        b = (n + sum(accumulate(data))) % _MOD
        return (b << 16) | a

    @staticmethod
    def rotate(checksum: int, remove: int, add: int, window: int) -> int:
        """Slide the window one byte: drop ``remove`` from the front, append ``add``."""
        b = (checksum >> 16) & 0xFFFF
        a = checksum & 0xFFFF
        a = (a - remove + add) % _MOD
        b = (b - window * remove + a - 1) % _MOD
        return (b << 16) | a


class StrongHash:
    name = "SHA1"
    digest_size = 20

    @staticmethod
    def compute(data: bytes) -> bytes:
        return hashlib.sha1(data).digest()


ROLLING_ALGORITHMS = {Adler32RollingChecksum.name: Adler32RollingChecksum}
HASH_ALGORITHMS = {StrongHash.name: StrongHash}


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkRecord:
    length: int
    rolling: int
    strong: bytes

    def matches(self, data: bytes) -> bool:
        if len(data) != self.length:
            return False
        if Adler32RollingChecksum.calculate(data) != self.rolling:
            return False
        return StrongHash.compute(data) == self.strong


@dataclass
class Signature:
    hash_algorithm: str = StrongHash.name
    rolling_algorithm: str = Adler32RollingChecksum.name
    chunks: List[ChunkRecord] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.chunks)

    @property
    def total_length(self) -> int:
        return sum(c.length for c in self.chunks)


def expected_chunk_count(file_size: int, block_size: int) -> int:
    return math.ceil(file_size / block_size) if file_size > 0 else 0


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class SignatureBuilder:
    """Streams a file and emits one chunk record per ``block_size`` window."""

    def __init__(
        self,
        block_size: int,
        cancel: Optional[CancellationToken] = None,
        progress: Optional[Callable[[str, int, int], None]] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        if block_size <= 0:
            raise ValueError("block_size must be positive.")
        self.block_size = block_size
        self.cancel = cancel or CancellationToken()
        self.progress = progress
        self.logger = log or logger

    def _report(self, operation: str, position: int, total: int) -> None:
        if self.progress is not None:
            self.progress(operation, position, total)

    def build(self, path: Path) -> Signature:
        path = Path(path)
        signature = Signature()
        try:
            total = path.stat().st_size
            self._report("Hashing file", 0, total)
            position = 0
            with path.open("rb") as fh:
                while True:
                    self.cancel.raise_if_cancelled()
                    window = fh.read(self.block_size)
                    if not window:
                        break
                    signature.chunks.append(
                        ChunkRecord(
                            length=len(window),
                            rolling=Adler32RollingChecksum.calculate(window),
                            strong=StrongHash.compute(window),
                        )
                    )
                    position += len(window)
                    self._report("Building signatures", position, total)
        except OSError as exc:
            raise AzIOError(f"Cannot read {path} while building its signature: {exc}") from exc

        self.logger.debug(
            f"Built signature for {path}: {len(signature)} chunk(s) of {self.block_size} bytes."
        )
        return signature
