"""
Transfer engine: runs one copy or sync of a single file.

A sync uploads the file block by block while a worker thread builds the
file's signature. When both finish the signature is written next to the
file as ``<file>.sig`` and uploaded as the sibling blob ``<blob>.sig``.

Per-file state machine::

    INIT -> PLANNED -> READY -> RUNNING -> POST -> DONE
                                RUNNING -> STOPPING -> DONE   (cancelled)
                                RUNNING -> FAILED
                                POST    -> FAILED
"""

import enum
import logging
import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Set

from .cancellation import CancellationToken
from .codec import SignatureEnvelope, decode_envelope, encode_envelope, read_signature_file, write_signature_file
from .config import (
    DEFAULT_CONTENT_TYPE,
    SIGNATURE_SUFFIX,
    Direction,
    FileKind,
    Operation,
    TransferPlan,
)
from .errors import (
    AzSyncError,
    Cancelled,
    ConfigError,
    EngineInitError,
    Skipped,
    SourceNotFoundError,
    StorageError,
    first_cause,
)
from .journal import TransferJournal
from .progress import ProgressReporter, SignatureProgressReporter
from .signature import Signature, SignatureBuilder
from .storage import BlobRef, BlobStorage, TransferObserver

logger = logging.getLogger("azsync.engine")


class TransferState(enum.Enum):
    INIT = "init"
    PLANNED = "planned"
    READY = "ready"
    RUNNING = "running"
    STOPPING = "stopping"
    POST = "post"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PriorSignature:
    """A signature from an earlier sync that still describes the remote blob."""

    envelope: SignatureEnvelope
    committed_ids: Set[str] = field(default_factory=set)


class UploadCallbacks(TransferObserver):
    """Routes uploader events to the journal, the progress reporter and the overwrite policy."""

    def __init__(
        self,
        journal: TransferJournal,
        reporter: ProgressReporter,
        overwrite: bool,
        log: logging.Logger,
        prior: Optional[PriorSignature] = None,
    ) -> None:
        self.journal = journal
        self.reporter = reporter
        self.overwrite = overwrite
        self.logger = log
        self.prior = prior
        self.staged = 0
        self.reused = 0

    def should_overwrite(self, ref: BlobRef) -> bool:
        if self.overwrite:
            self.logger.info(f"Blob {ref} exists and will be overwritten.")
        else:
            self.logger.warning(f"Blob {ref} exists; not overwriting it (use --overwrite).")
        return self.overwrite

    def reuse_block(self, index: int, data: bytes) -> bool:
        if self.prior is None:
            return False
        chunks = self.prior.envelope.signature.chunks
        if index >= len(chunks):
            return False
        if BlobStorage.block_id(index) not in self.prior.committed_ids:
            return False
        return chunks[index].matches(data)

    def on_block_committed(self, index: int, length: int, staged: bool) -> None:
        self.journal.append(index)
        if staged:
            self.staged += 1
        else:
            self.reused += 1

    def on_progress(self, done: int) -> None:
        self.reporter.report(done)


class TransferEngine:
    def __init__(
        self,
        plan: TransferPlan,
        cancel: Optional[CancellationToken] = None,
        log: Optional[logging.Logger] = None,
        storage: Optional[BlobStorage] = None,
    ) -> None:
        self.plan = plan
        self.cancel = cancel or CancellationToken()
        self.logger = log or logger
        self.state = TransferState.INIT
        self.error: Optional[BaseException] = None
        self.signature: Optional[Signature] = None
        self.prior: Optional[PriorSignature] = None
        self.prior_built_at: Optional[str] = None
        self.blocks_staged = 0
        self.blocks_reused = 0
        # stops our own tasks after a fatal error without looking like a user cancel
        self._run_cancel = self.cancel.child()

        plan.validate()
        if plan.file_kind is not FileKind.SINGLE_FILE:
            raise EngineInitError(
                f"Transfers of {plan.file_kind.value} sources are not supported; name a single file."
            )
        if storage is None:
            try:
                storage = BlobStorage(
                    plan.connection_string(),
                    retry=plan.retry,
                    concurrency=plan.concurrency,
                    cancel=self._run_cancel,
                    log=self.logger,
                )
                storage.service
            except (StorageError, ConfigError) as exc:
                raise EngineInitError(f"Could not initialise Azure storage: {exc}") from exc
        self.storage = storage
        self._set_state(TransferState.PLANNED)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, state: TransferState) -> None:
        self.logger.debug(f"Transfer state {self.state.name} -> {state.name}.")
        self.state = state

    def _cancelled(self, what: str) -> bool:
        if self.state is TransferState.RUNNING:
            self._set_state(TransferState.STOPPING)
        self.logger.info(f"The {what} operation was cancelled by the user.")
        self._set_state(TransferState.DONE)
        return True

    def _fail(self, description: str, exc: BaseException) -> bool:
        cause = first_cause(exc)
        if isinstance(cause, Cancelled) or self.cancel.is_cancelled:
            return self._cancelled(description)
        if isinstance(cause, Skipped):
            self.logger.info(f"{description}: {cause}")
            self._set_state(TransferState.DONE)
            return True
        self.error = cause
        self.logger.error(f"Could not {description}: {cause}")
        self._set_state(TransferState.FAILED)
        return False

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def transfer(self) -> bool:
        """Run the plan. Returns True on success, on skip and on cancellation."""
        if self.plan.direction is Direction.DOWN:
            return self._download()
        return self._upload(sync=self.plan.operation is Operation.SYNC)

    # ------------------------------------------------------------------
    # Upload and sync
    # ------------------------------------------------------------------

    def _checkpoint(self, path: Path, ref: BlobRef) -> dict:
        st = path.stat()
        return {
            "container": ref.container,
            "blob_name": ref.name,
            "file_path": str(path),
            "file_size": st.st_size,
            "file_mtime_ns": st.st_mtime_ns,
            "block_size": self.plan.block_size,
        }

    def _upload(self, sync: bool) -> bool:
        plan = self.plan
        path = plan.local_path.expanduser().resolve()
        if not path.is_file():
            return self._fail("upload file", SourceNotFoundError(f"File not found: {path}"))

        url = plan.remote_url
        blob_name = url.blob or path.name
        operation = "sync file" if sync else "upload file"
        self.logger.info(f"Source : {path}")
        self.logger.info(f"Target : {url.container}/{blob_name}")

        description = "open destination blob"
        journal: Optional[TransferJournal] = None
        try:
            ref = self.storage.get_or_create_blob(url.container, blob_name)
            if sync:
                description = "resolve signature"
                self.prior = self._resolve_prior_signature(path, ref)
            description = "open journal"
            journal = TransferJournal(
                plan.journal_file(),
                no_journal=plan.no_journal,
                delete_journal=plan.delete_journal,
                log=self.logger,
            ).open(self._checkpoint(path, ref))
        except (AzSyncError, OSError) as exc:
            if journal is not None:
                journal.close()
            return self._fail(description, exc)
        self._set_state(TransferState.READY)

        try:
            return self._run(path, ref, journal, sync, operation)
        finally:
            journal.close()

    def _run(self, path: Path, ref: BlobRef, journal: TransferJournal, sync: bool, operation: str) -> bool:
        plan = self.plan
        size = path.stat().st_size
        callbacks = UploadCallbacks(
            journal=journal,
            reporter=ProgressReporter(size, f"upload {path.name}", self.logger),
            overwrite=plan.overwrite,
            log=self.logger,
            prior=self.prior,
        )

        self._set_state(TransferState.RUNNING)
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="azsync") as pool:
            tasks: Dict[Future, str] = {}
            if sync:
                builder = SignatureBuilder(
                    plan.block_size,
                    cancel=self._run_cancel,
                    progress=SignatureProgressReporter(path.name, self.logger),
                    log=self.logger,
                )
                tasks[pool.submit(builder.build, path)] = "build signature"
            upload = pool.submit(
                self.storage.upload_stream,
                ref,
                path,
                plan.block_size,
                callbacks,
                journal.committed,
                plan.resolve_content_type(path),
                self._run_cancel,
            )
            tasks[upload] = "upload file"
            self._join(tasks)

        self.blocks_staged = callbacks.staged
        self.blocks_reused = callbacks.reused
        journal.flush()

        failures = [(name, f.exception()) for f, name in tasks.items() if f.exception() is not None]
        if self.cancel.is_cancelled:
            return self._cancelled(operation)
        if failures:
            # report the error that stopped the run, not the Cancelled it caused
            name, exc = next(
                ((n, e) for n, e in failures if not isinstance(first_cause(e), Cancelled)),
                failures[0],
            )
            return self._fail(name, exc)

        etag = upload.result()
        journal.mark_completed(etag)
        self.logger.info(
            f"Transferred {path.name}: {callbacks.staged} block(s) uploaded, "
            f"{callbacks.reused} unchanged block(s) reused."
        )
        if sync:
            self.signature = next(f.result() for f, n in tasks.items() if n == "build signature")
            self._set_state(TransferState.POST)
            if not self._publish_signature(path, ref, size, etag):
                return False
        self._set_state(TransferState.DONE)
        return True

    def _join(self, tasks: Dict[Future, str]) -> None:
        """Wait for every task; a failing task stops the others."""
        pending = set(tasks)
        while pending:
            done, pending = wait(pending, timeout=0.25, return_when=FIRST_COMPLETED)
            if self.cancel.is_cancelled and self.state is TransferState.RUNNING:
                self.logger.warning("Cancellation requested; stopping transfer tasks...")
                self._set_state(TransferState.STOPPING)
            for f in done:
                if f.exception() is not None and not self._run_cancel.is_cancelled:
                    self.logger.debug(f"Task '{tasks[f]}' failed; stopping the remaining tasks.")
                    self._run_cancel.cancel()

    # ------------------------------------------------------------------
    # Signatures
    # ------------------------------------------------------------------

    @staticmethod
    def local_signature_path(path: Path) -> Path:
        return path.with_name(path.name + SIGNATURE_SUFFIX)

    def _resolve_prior_signature(self, path: Path, ref: BlobRef) -> Optional[PriorSignature]:
        plan = self.plan
        if plan.signature_file:
            sig_path = Path(plan.signature_file).expanduser().resolve()
            if sig_path == self.local_signature_path(path):
                self.logger.warning(
                    f"Signature file {sig_path} will be overwritten with the new signature after this run."
                )
            envelope = read_signature_file(sig_path)
            origin = str(sig_path)
        elif plan.remote_signature or plan.signature_blob:
            name = plan.signature_blob or ref.name + SIGNATURE_SUFFIX
            sig_ref = BlobRef(container=ref.container, name=name)
            self.logger.info(f"Downloading signature {sig_ref}.")
            envelope = decode_envelope(self.storage.download_bytes(sig_ref))
            origin = str(sig_ref)
        else:
            return None

        self.prior_built_at = envelope.built_at
        self.logger.info(
            f"Loaded signature from {origin}: {len(envelope.signature)} chunk(s) for "
            f"{envelope.file_name} ({envelope.size:,} bytes), built {envelope.built_at} "
            f"by {envelope.user_name}@{envelope.machine_name}."
        )
        if envelope.block_size != plan.block_size:
            self.logger.warning(
                f"Signature block size {envelope.block_size} differs from {plan.block_size}; "
                "every block will be uploaded."
            )
            return None
        if not ref.exists or envelope.etag != ref.etag:
            self.logger.warning(
                f"Signature was built against blob version {envelope.etag}, the blob is now "
                f"{ref.etag if ref.exists else 'missing'}; every block will be uploaded."
            )
            return None
        return PriorSignature(envelope=envelope, committed_ids=self.storage.committed_block_ids(ref))

    def _publish_signature(self, path: Path, ref: BlobRef, size: int, etag: Optional[str]) -> bool:
        envelope = SignatureEnvelope(
            signature=self.signature,
            file_name=path.name,
            file_path=str(path),
            size=size,
            block_size=self.plan.block_size,
            etag=etag,
        )
        description = "write signature file"
        try:
            envelope.validate()
            write_signature_file(self.local_signature_path(path), envelope)
            description = "upload signature"
            sig_ref = BlobRef(container=ref.container, name=ref.name + SIGNATURE_SUFFIX)
            self.storage.upload_bytes(
                sig_ref, encode_envelope(envelope), content_type=DEFAULT_CONTENT_TYPE, overwrite=True
            )
        except AzSyncError as exc:
            self.error = first_cause(exc)
            self.logger.error(f"Could not {description}: {self.error}")
            self._set_state(TransferState.FAILED)
            return False
        self.logger.info(f"Uploaded signature {sig_ref} ({len(self.signature)} chunk(s)).")
        return True

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def _download(self) -> bool:
        plan = self.plan
        url = plan.remote_url
        dest = plan.local_path.expanduser()
        if dest.is_dir():
            dest = dest / Path(url.blob).name
        dest = dest.resolve()
        self._set_state(TransferState.READY)

        try:
            ref = self.storage.get_blob(url.container, url.blob)
            if not ref.exists:
                return self._fail("download file", StorageError(f"Blob {ref} does not exist."))
            if dest.exists() and not plan.overwrite:
                self.logger.warning(f"File {dest} exists; not overwriting it (use --overwrite).")
                self._set_state(TransferState.DONE)
                return True

            self._set_state(TransferState.RUNNING)
            reporter = ProgressReporter(ref.size or 0, f"download {ref.name}", self.logger)
            part = dest.with_name(dest.name + ".part")
            try:
                with part.open("wb") as sink:
                    self.storage.download_stream(ref, sink, progress=reporter.report)
                if self.cancel.is_cancelled:
                    raise Cancelled("Download cancelled.")
                os.replace(part, dest)
            finally:
                if part.exists():
                    part.unlink()
        except (AzSyncError, OSError) as exc:
            return self._fail("download file", exc)

        self.logger.info(f"Downloaded {ref} to {dest}.")
        self._set_state(TransferState.DONE)
        return True
