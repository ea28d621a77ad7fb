"""
Durable transfer journal.

The journal records which blocks of a file are already staged remotely so a
re-run can skip them, even after a crash, a Ctrl-Q or a machine shutdown.

On-disk layout:

    "AZSYNC" | version:u8 | ">>>" | frame | frame | ...

    frame = payload length:u32 LE | payload | crc32(payload) & 0xFF
    payload = kind:u8 | body

The first frame of a transfer is a JSON checkpoint describing the file and
the destination. Block frames carry a u64 LE block index. A completion frame
(JSON) is written once the block list is committed. A torn frame at the end
of the file is cut off when the journal is reopened.
"""

import io
import json
import logging
import os
import struct
import threading
import zlib
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, List, Optional, Set, Tuple

from .errors import CorruptError, UnsupportedVersionError

logger = logging.getLogger("azsync.journal")

JOURNAL_HEADER = b"AZSYNC"
JOURNAL_VERSION = 0x01
END_OF_METADATA = b">>>"
HEADER = JOURNAL_HEADER + bytes([JOURNAL_VERSION]) + END_OF_METADATA

KIND_CHECKPOINT = 0x43
KIND_BLOCK = 0x42
KIND_COMPLETED = 0x44

_LEN = struct.Struct("<I")
_INDEX = struct.Struct("<Q")


def _frame(kind: int, body: bytes) -> bytes:
    payload = bytes([kind]) + body
    return _LEN.pack(len(payload)) + payload + bytes([zlib.crc32(payload) & 0xFF])


def _normalise(checkpoint: dict) -> dict:
    return json.loads(json.dumps(checkpoint, sort_keys=True))


def read_records(data: bytes) -> Tuple[List[Tuple[int, bytes]], int]:
    """Parse the frames after the header.

    Returns the intact records and the offset just past the last intact frame.
    """
    _check_header(data)
    records = []
    pos = len(HEADER)
    while pos + _LEN.size <= len(data):
        (length,) = _LEN.unpack_from(data, pos)
        end = pos + _LEN.size + length + 1
        if length == 0 or end > len(data):
            break
        payload = data[pos + _LEN.size:end - 1]
        if data[end - 1] != zlib.crc32(payload) & 0xFF:
            break
        records.append((payload[0], payload[1:]))
        pos = end
    return records, pos


def _check_header(data: bytes) -> None:
    if len(data) < len(HEADER):
        raise CorruptError("Journal header is truncated.")
    if data[:len(JOURNAL_HEADER)] != JOURNAL_HEADER:
        raise CorruptError("Not a transfer journal: bad header magic.")
    version = data[len(JOURNAL_HEADER)]
    if version != JOURNAL_VERSION:
        raise UnsupportedVersionError(f"Unsupported journal version {version}.")
    if data[len(JOURNAL_HEADER) + 1:len(HEADER)] != END_OF_METADATA:
        raise CorruptError("Journal header is not terminated by the end-of-metadata marker.")


class TransferJournal:
    """Append-only resume state for one file transfer.

    Block indices are only ever added while the journal is open. I/O errors
    after opening switch the journal to an in-memory sink: the transfer goes
    on but a later run cannot resume from it.
    """

    def __init__(
        self,
        path: Optional[Path],
        no_journal: bool = False,
        delete_journal: bool = False,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.path = Path(path) if path is not None else None
        self.no_journal = no_journal
        self.delete_journal = delete_journal
        self.logger = log or logger

        self._fh: Optional[BinaryIO] = None
        self._persistent = False
        self._lock = threading.Lock()
        self._checkpoint: dict = {}
        self._committed: Set[int] = set()
        self._order: List[int] = []
        self._completed: Optional[dict] = None
        self.resumed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def persistent(self) -> bool:
        return self._persistent

    @property
    def checkpoint(self) -> dict:
        return dict(self._checkpoint)

    @property
    def committed(self) -> Set[int]:
        with self._lock:
            return set(self._committed)

    @property
    def blocks(self) -> List[int]:
        """Committed block indices in the order they were appended."""
        with self._lock:
            return list(self._order)

    @property
    def is_completed(self) -> bool:
        return self._completed is not None

    def _apply(self, kind: int, body: bytes) -> None:
        if kind == KIND_CHECKPOINT:
            self._checkpoint = json.loads(body.decode("utf-8"))
        elif kind == KIND_BLOCK:
            (index,) = _INDEX.unpack(body)
            if index not in self._committed:
                self._committed.add(index)
                self._order.append(index)
        elif kind == KIND_COMPLETED:
            self._completed = json.loads(body.decode("utf-8"))
        else:
            raise CorruptError(f"Unknown journal record kind 0x{kind:02x}.")

    def _reset_state(self) -> None:
        self._checkpoint = {}
        self._committed = set()
        self._order = []
        self._completed = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self, checkpoint: dict) -> "TransferJournal":
        """Create, recover or replace the journal for the transfer ``checkpoint`` describes."""
        checkpoint = _normalise(checkpoint)

        if self.path is None or self.no_journal:
            if self.path is not None and self.path.exists():
                self._unlink("--no-journal is set")
            self._start_memory(checkpoint)
            return self

        if self.path.exists() and self.delete_journal:
            self._unlink("--delete-journal is set")

        try:
            if self.path.exists():
                self._recover(checkpoint)
            else:
                self.logger.info(f"Creating journal file {self.path} for transfer.")
                self._fh = self.path.open("w+b")
                self._persistent = True
                self._write_fresh(checkpoint)
        except CorruptError:
            self.close()
            raise
        except OSError as exc:
            self._degrade(exc)
            if not self._checkpoint:
                self._checkpoint = checkpoint
        return self

    def _unlink(self, reason: str) -> None:
        try:
            self.path.unlink()
            self.logger.info(f"Deleted existing journal file {self.path} ({reason}).")
        except FileNotFoundError:
            pass
        except OSError as exc:
            self.logger.warning(f"Could not delete journal file {self.path}: {exc}")

    def _start_memory(self, checkpoint: dict) -> None:
        self._fh = io.BytesIO()
        self._persistent = False
        self._write_fresh(checkpoint)

    def _write_fresh(self, checkpoint: dict) -> None:
        self._reset_state()
        self._fh.seek(0)
        self._fh.truncate()
        self._fh.write(HEADER)
        self._write_record(KIND_CHECKPOINT, json.dumps(checkpoint, sort_keys=True).encode("utf-8"))
        self._checkpoint = checkpoint

    def _recover(self, checkpoint: dict) -> None:
        self._fh = self.path.open("r+b")
        self._persistent = True
        data = self._fh.read()
        if not data:
            self.logger.info(f"Journal file {self.path} is empty; starting a new journal.")
            self._write_fresh(checkpoint)
            return

        records, good_end = read_records(data)
        if good_end < len(data):
            self.logger.warning(
                f"Journal {self.path}: dropping {len(data) - good_end} byte(s) of a partially written record."
            )
            self._fh.seek(good_end)
            self._fh.truncate()
            self._sync()

        self._reset_state()
        try:
            for kind, body in records:
                self._apply(kind, body)
        except (ValueError, struct.error) as exc:
            raise CorruptError(f"Journal {self.path} has an unreadable record: {exc}") from exc

        if self._completed is not None:
            self.logger.info(
                f"Journal {self.path}: previous transfer completed at "
                f"{self._completed.get('completed_at', 'an earlier run')}; starting a new transfer."
            )
            self._write_fresh(checkpoint)
        elif self._checkpoint != checkpoint:
            self.logger.warning(
                f"Journal {self.path} does not match this transfer (file or settings changed); starting fresh."
            )
            self._write_fresh(checkpoint)
        else:
            self.resumed = True
            self._fh.seek(0, os.SEEK_END)
            self.logger.info(
                f"Resuming transfer from journal file {self.path}: "
                f"{len(self._committed)} block(s) already committed."
            )

    def _degrade(self, exc: Exception) -> None:
        where = self.path if self.path is not None else "journal"
        self.logger.warning(
            f"An I/O error occurred using the journal file {where}: {exc}. "
            "No journal will be kept for this transfer; it cannot be resumed later."
        )
        if self._fh is not None and self._persistent:
            try:
                self._fh.close()
            except OSError:
                pass
        self._fh = io.BytesIO()
        self._persistent = False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _sync(self) -> None:
        self._fh.flush()
        if self._persistent:
            os.fsync(self._fh.fileno())

    def _write_record(self, kind: int, body: bytes) -> None:
        self._fh.write(_frame(kind, body))
        self._sync()

    def _append(self, kind: int, body: bytes) -> None:
        if self._fh is None:
            raise RuntimeError("Journal is not open.")
        try:
            self._write_record(kind, body)
        except OSError as exc:
            self._degrade(exc)

    def append(self, index: int) -> None:
        """Record that block ``index`` is durably stored remotely."""
        with self._lock:
            if index in self._committed:
                return
            self._committed.add(index)
            self._order.append(index)
            self._append(KIND_BLOCK, _INDEX.pack(index))

    def mark_completed(self, etag: Optional[str] = None) -> None:
        """Stamp the journal once the block list is committed. Kept on disk."""
        info = {
            "etag": etag,
            "completed_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self._completed = info
            self._append(KIND_COMPLETED, json.dumps(info, sort_keys=True).encode("utf-8"))

    def flush(self) -> None:
        with self._lock:
            if self._fh is None:
                return
            try:
                self._sync()
            except OSError as exc:
                self._degrade(exc)

    def close(self) -> None:
        with self._lock:
            if self._fh is None:
                return
            try:
                self._sync()
                self._fh.close()
            except OSError as exc:
                self.logger.warning(f"Error closing journal file {self.path}: {exc}")
            finally:
                self._fh = None

    def __enter__(self) -> "TransferJournal":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
