"""
Azure Blob Storage client used by the transfer engine.

Block blobs are uploaded with the stage/commit pattern: every block of the
file is staged under a block id derived from its index, then the block list
is committed in one call. Staged blocks survive on the service until they
are committed, so a journal of staged indices is enough to resume.
"""

import base64
import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Optional, Set, Tuple

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.core.pipeline.transport import RequestsTransport
from azure.storage.blob import BlobBlock, BlobServiceClient, ContentSettings, LinearRetry
from requests import Session
from requests.adapters import HTTPAdapter

from .cancellation import CancellationToken
from .config import DEFAULT_CONTENT_TYPE, RetryPolicy
from .errors import AzIOError, BlobNotFoundError, Cancelled, Skipped, StorageError, TransferError

logger = logging.getLogger("azsync.storage")


class BlobKind(Enum):
    BLOCK = "BlockBlob"
    APPEND = "AppendBlob"
    PAGE = "PageBlob"


@dataclass
class BlobRef:
    container: str
    name: str
    kind: BlobKind = BlobKind.BLOCK
    etag: Optional[str] = None
    size: Optional[int] = None
    exists: bool = False

    def __str__(self) -> str:
        return f"{self.container}/{self.name}"


class TransferObserver:
    """Per-call callbacks the uploader reports through.

    The ``on_*`` callbacks run one at a time on the thread that drives the
    upload. ``reuse_block`` is called from the block worker threads.
    """

    def should_overwrite(self, ref: BlobRef) -> bool:
        return True

    def reuse_block(self, index: int, data: bytes) -> bool:
        """Return True when block ``index`` is already committed with this content."""
        return False

    def on_block_committed(self, index: int, length: int, staged: bool) -> None:
        pass

    def on_progress(self, done: int) -> None:
        pass


def _is_transient(exc: AzureError) -> bool:
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return True
    if isinstance(exc, HttpResponseError):
        status = exc.status_code or 0
        return status in (408, 429) or status >= 500
    return False


class BlobStorage:
    """Blob service operations with retries, progress and cancellation."""

    def __init__(
        self,
        conn_str: str,
        retry: RetryPolicy = RetryPolicy(),
        concurrency: int = 8,
        cancel: Optional[CancellationToken] = None,
        log: Optional[logging.Logger] = None,
        service_client: Optional[BlobServiceClient] = None,
    ) -> None:
        self.conn_str = conn_str
        self.retry = retry
        self.concurrency = concurrency
        self.cancel = cancel or CancellationToken()
        self.logger = log or logger
        self._svc = service_client

    # ------------------------------------------------------------------
    # Azure clients
    # ------------------------------------------------------------------

    @staticmethod
    def connection_limit() -> int:
        return (os.cpu_count() or 1) * 8

    def _build_service(self) -> BlobServiceClient:
        limit = self.connection_limit()
        session = Session()
        adapter = HTTPAdapter(pool_connections=limit, pool_maxsize=limit)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        transport = RequestsTransport(
            session=session,
            session_owner=False,
            connection_timeout=30,
            read_timeout=120,
        )
        try:
            return BlobServiceClient.from_connection_string(
                self.conn_str,
                retry_policy=LinearRetry(
                    backoff=self.retry.wait,
                    random_jitter_range=0,
                    retry_total=self.retry.count,
                ),
                transport=transport,
            )
        except (ValueError, AzureError) as exc:
            raise StorageError(f"Cannot connect to Azure: {exc}") from exc

    @property
    def service(self) -> BlobServiceClient:
        if self._svc is None:
            self._svc = self._build_service()
        return self._svc

    def _blob_client(self, ref: BlobRef):
        return self.service.get_blob_client(container=ref.container, blob=ref.name)

    # ------------------------------------------------------------------
    # Blob references
    # ------------------------------------------------------------------

    def refresh(self, ref: BlobRef) -> BlobRef:
        """Load ETag, length and kind from the service."""
        try:
            props = self._blob_client(ref).get_blob_properties()
        except ResourceNotFoundError:
            ref.exists = False
            ref.etag = None
            ref.size = None
            return ref
        except AzureError as exc:
            raise StorageError(f"Cannot read properties of blob {ref}: {exc}") from exc
        ref.exists = True
        ref.etag = props.etag
        ref.size = props.size
        blob_type = getattr(props.blob_type, "value", props.blob_type)
        try:
            ref.kind = BlobKind(blob_type)
        except ValueError:
            pass
        return ref

    def get_blob(self, container: str, name: str) -> BlobRef:
        return self.refresh(BlobRef(container=container, name=name))

    def get_or_create_blob(self, container: str, name: str, kind: BlobKind = BlobKind.BLOCK) -> BlobRef:
        container_client = self.service.get_container_client(container)
        try:
            container_client.create_container()
            self.logger.info(f"Created container '{container}'.")
        except ResourceExistsError:
            self.logger.debug(f"Container '{container}' already exists.")
        except AzureError as exc:
            raise StorageError(f"Cannot create or open container '{container}': {exc}") from exc
        return self.refresh(BlobRef(container=container, name=name, kind=kind))

    def exists(self, ref: BlobRef) -> bool:
        try:
            return bool(self._blob_client(ref).exists())
        except AzureError as exc:
            raise StorageError(f"Cannot check whether blob {ref} exists: {exc}") from exc

    def committed_block_ids(self, ref: BlobRef) -> Set[str]:
        try:
            committed, _ = self._blob_client(ref).get_block_list("committed")
        except ResourceNotFoundError:
            return set()
        except AzureError as exc:
            raise StorageError(f"Cannot read the block list of blob {ref}: {exc}") from exc
        return {block.id for block in committed}

    # ------------------------------------------------------------------
    # Chunk helpers
    # ------------------------------------------------------------------

    @staticmethod
    def block_id(index: int) -> str:
        return base64.b64encode(index.to_bytes(8, byteorder="big")).decode("ascii")

    @staticmethod
    def _read_block(path: Path, index: int, block_size: int, file_size: int) -> bytes:
        start = index * block_size
        end = min(start + block_size, file_size)
        try:
            with path.open("rb") as fh:
                fh.seek(start)
                return fh.read(end - start)
        except OSError as exc:
            raise AzIOError(f"Cannot read block {index} of {path}: {exc}") from exc

    def _upload_block_with_retry(
        self,
        blob_client,
        path: Path,
        index: int,
        block_size: int,
        file_size: int,
        observer: TransferObserver,
        cancel: CancellationToken,
    ) -> Tuple[int, int, bool]:
        """Stage one block with linear-backoff retry. Returns (index, length, staged)."""
        cancel.raise_if_cancelled()
        data = self._read_block(path, index, block_size, file_size)
        if observer.reuse_block(index, data):
            return index, len(data), False

        block_id = self.block_id(index)
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.retry.count + 2):  # attempt 1 is the first try
            cancel.raise_if_cancelled()
            try:
                # block retries happen in this loop only, not in the SDK pipeline
                blob_client.stage_block(
                    block_id=block_id, data=data, length=len(data), retry_total=0
                )
                return index, len(data), True
            except AzureError as exc:
                if not _is_transient(exc):
                    raise TransferError(f"Block {index}: non-retryable error: {exc}", index) from exc
                last_exc = exc
                if attempt > self.retry.count:
                    break
                delay = self.retry.delay(attempt)
                self.logger.warning(
                    f"Block {index}: transient error (attempt {attempt}/{self.retry.count}), "
                    f"retrying in {delay:g}s: {exc}"
                )
                if cancel.wait(delay):
                    raise Cancelled("Upload cancelled while waiting to retry.")

        raise TransferError(
            f"Block {index}: failed after {self.retry.count} retries: {last_exc}", index
        ) from last_exc

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def upload_stream(
        self,
        ref: BlobRef,
        path: Path,
        block_size: int,
        observer: Optional[TransferObserver] = None,
        committed: Optional[Set[int]] = None,
        content_type: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> str:
        """Upload ``path`` into block blob ``ref``. Returns the ETag of the committed blob.

        Indices in ``committed`` are treated as already staged. Raises
        ``Skipped`` when the blob exists and the observer refuses to overwrite
        it, and ``Cancelled`` when the cancellation token fires; in both cases
        nothing is committed.
        """
        observer = observer or TransferObserver()
        cancel = cancel or self.cancel
        path = Path(path)
        if ref.exists and not observer.should_overwrite(ref):
            raise Skipped(f"Blob {ref} exists and will not be overwritten.")
        if ref.exists and ref.kind is not BlobKind.BLOCK:
            raise TransferError(f"Blob {ref} is a {ref.kind.value}, not a block blob.")

        try:
            file_size = path.stat().st_size
        except OSError as exc:
            raise AzIOError(f"Cannot read {path}: {exc}") from exc
        total_blocks = math.ceil(file_size / block_size) if file_size > 0 else 0

        uploaded: Set[int] = {i for i in (committed or set()) if i < total_blocks}
        to_upload = [i for i in range(total_blocks) if i not in uploaded]
        done_bytes = sum(min(block_size, file_size - i * block_size) for i in uploaded)

        self.logger.info(
            f"File : {path}  ({file_size:,} bytes)  |  Block: {block_size // 1024} KB  |  "
            f"Blocks: {total_blocks}  |  Threads: {self.concurrency}"
        )
        if uploaded:
            self.logger.info(f"Resuming: {len(uploaded)}/{total_blocks} blocks already done.")
        observer.on_progress(done_bytes)

        blob_client = self._blob_client(ref)
        staged_count = 0
        failure: Optional[BaseException] = None

        def record(index: int, length: int, staged: bool) -> None:
            nonlocal done_bytes, staged_count
            uploaded.add(index)
            done_bytes += length
            staged_count += int(staged)
            observer.on_block_committed(index, length, staged)
            observer.on_progress(done_bytes)

        if not to_upload:
            self.logger.info("All blocks already uploaded; skipping to commit.")
        else:
            self.logger.info(
                f"Uploading {len(to_upload)} block(s) with {self.concurrency} thread(s)..."
            )
            futures: Dict = {}
            with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
                futures = {
                    pool.submit(
                        self._upload_block_with_retry,
                        blob_client, path, idx, block_size, file_size, observer, cancel,
                    ): idx
                    for idx in to_upload
                }
                for future in as_completed(futures):
                    if cancel.is_cancelled:
                        self.logger.warning("Cancellation requested; waiting for blocks in flight.")
                        break
                    try:
                        record(*future.result())
                    except Exception as exc:
                        failure = exc
                        break
                for f in futures:
                    f.cancel()

            # the pool has drained; journal any block that finished after the loop stopped
            for f, idx in futures.items():
                if idx in uploaded or not f.done() or f.cancelled():
                    continue
                if f.exception() is None:
                    record(*f.result())

        if failure is not None:
            if cancel.is_cancelled or isinstance(failure, Cancelled):
                raise Cancelled(f"Upload of {path.name} cancelled.") from failure
            if isinstance(failure, (TransferError, AzIOError)):
                raise failure
            raise TransferError(f"Block upload failed: {failure}") from failure
        if cancel.is_cancelled:
            raise Cancelled(
                f"Upload of {path.name} cancelled after {len(uploaded)}/{total_blocks} blocks."
            )

        if len(uploaded) < total_blocks:
            missing = total_blocks - len(uploaded)
            raise TransferError(f"Incomplete: {missing} block(s) missing. Re-run to resume.")

        self.logger.info(
            f"All blocks staged ({staged_count} uploaded this run); committing block list..."
        )
        block_list = [BlobBlock(block_id=self.block_id(i)) for i in range(total_blocks)]
        metadata = {
            "uploaded_by": "azsync",
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
            "original_filename": path.name,
            "file_size_bytes": str(file_size),
        }
        try:
            response = blob_client.commit_block_list(
                block_list,
                metadata=metadata,
                content_settings=ContentSettings(
                    content_type=content_type or DEFAULT_CONTENT_TYPE
                ),
            )
        except AzureError as exc:
            raise TransferError(
                f"Commit failed: {exc}. Re-run to retry without re-uploading blocks."
            ) from exc

        ref.exists = True
        ref.size = file_size
        ref.kind = BlobKind.BLOCK
        ref.etag = (response or {}).get("etag")
        self.logger.info(f"Committed '{ref.name}' to container '{ref.container}'.")
        return ref.etag

    def upload_bytes(
        self,
        ref: BlobRef,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
        overwrite: bool = True,
    ) -> Optional[str]:
        try:
            response = self._blob_client(ref).upload_blob(
                data,
                overwrite=overwrite,
                content_settings=ContentSettings(content_type=content_type),
            )
        except ResourceExistsError as exc:
            raise Skipped(f"Blob {ref} exists and will not be overwritten.") from exc
        except AzureError as exc:
            raise StorageError(f"Cannot upload blob {ref}: {exc}") from exc
        ref.exists = True
        ref.size = len(data)
        ref.etag = (response or {}).get("etag")
        return ref.etag

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def download_stream(
        self,
        ref: BlobRef,
        sink: BinaryIO,
        progress: Optional[Callable[[int], None]] = None,
    ) -> int:
        """Write the blob's content into ``sink``; returns the number of bytes written."""
        self.cancel.raise_if_cancelled()
        options = {"max_concurrency": self.concurrency}
        if progress is not None:
            options["progress_hook"] = lambda current, total: progress(current)
        try:
            downloader = self._blob_client(ref).download_blob(**options)
            written = downloader.readinto(sink)
        except ResourceNotFoundError as exc:
            raise BlobNotFoundError(f"Blob {ref} does not exist.") from exc
        except AzureError as exc:
            raise StorageError(f"Cannot download blob {ref}: {exc}") from exc
        self.cancel.raise_if_cancelled()
        return written

    def download_bytes(self, ref: BlobRef) -> bytes:
        try:
            return self._blob_client(ref).download_blob().readall()
        except ResourceNotFoundError as exc:
            raise BlobNotFoundError(f"Blob {ref} does not exist.") from exc
        except AzureError as exc:
            raise StorageError(f"Cannot download blob {ref}: {exc}") from exc
