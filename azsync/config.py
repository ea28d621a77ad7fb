"""
Settings and the typed transfer plan.

Settings come from ``appsettings.json`` in the working directory, then a
``.env`` file, then environment variables; explicit command-line flags win
over all of them. The CLI builds one :class:`TransferPlan` and validates it
once before any storage call is made.
"""

import base64
import binascii
import enum
import ipaddress
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

from dotenv import load_dotenv

from .errors import ConfigError

SETTINGS_FILE = "appsettings.json"

DEFAULT_BLOCK_SIZE_KB = 4096
MAX_BLOCK_SIZE = 4000 * 1024 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"
JOURNAL_SUFFIX = ".azsj"
SIGNATURE_SUFFIX = ".sig"

# by extension; anything else is sent as DEFAULT_CONTENT_TYPE
CONTENT_TYPES = {
    ".zip": "application/zip",
    ".pkg": "application/zip",
    ".gz": "application/gzip",
    ".tar": "application/x-tar",
    ".json": "application/json",
    ".csv": "text/csv",
    ".txt": "text/plain",
}

EMULATOR_ACCOUNT_NAME = "devstoreaccount1"
EMULATOR_BLOB_ENDPOINT = "http://127.0.0.1:10000/devstoreaccount1"
EMULATOR_ACCOUNT_KEY = (
    "Eby8vdM02xNOcqFlqUwJPLlmEtlCDXJ1OUzFT50uSRZ6IFsuFq2UVErCz4I6tq/K1SZFPTOtr/KBHBeksoGMGw=="
)

_DEFAULTS = {
    "CONCURRENCY": 8,
    "RETRY_COUNT": 3,
    "RETRY_WAIT": 3,
}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_SETTING_KEYS = {
    "source": ("Source", "SOURCE"),
    "source_key": ("SourceKey", "SOURCE_KEY"),
    "destination": ("Destination", "DESTINATION"),
    "dest_key": ("DestKey", "DEST_KEY"),
    "pattern": ("Pattern", "PATTERN"),
    "log_path": ("LogPath", "LOG_PATH"),
    "concurrency": ("Concurrency", "CONCURRENCY"),
}


@dataclass
class AppSettings:
    source: Optional[str] = None
    source_key: Optional[str] = None
    destination: Optional[str] = None
    dest_key: Optional[str] = None
    pattern: Optional[str] = None
    log_path: Optional[str] = None
    concurrency: int = _DEFAULTS["CONCURRENCY"]

    @classmethod
    def load(cls, cwd: Optional[Path] = None, environ: Optional[dict] = None) -> "AppSettings":
        cwd = Path(cwd) if cwd is not None else Path.cwd()
        if environ is None:
            load_dotenv(cwd / ".env")
            environ = dict(os.environ)

        values = {}
        settings_file = cwd / SETTINGS_FILE
        if settings_file.is_file():
            try:
                with settings_file.open("r", encoding="utf-8") as fh:
                    loaded = json.load(fh)
            except (OSError, json.JSONDecodeError) as exc:
                raise ConfigError(f"Cannot read {settings_file}: {exc}") from exc
            if not isinstance(loaded, dict):
                raise ConfigError(f"{settings_file} must contain a JSON object.")
            for attr, names in _SETTING_KEYS.items():
                for name in names:
                    if loaded.get(name) not in (None, ""):
                        values[attr] = loaded[name]
                        break

        for attr, names in _SETTING_KEYS.items():
            for name in names:
                if environ.get(name):
                    values[attr] = environ[name]
                    break

        if "concurrency" in values:
            try:
                values["concurrency"] = int(values["concurrency"])
            except (TypeError, ValueError):
                raise ConfigError(f"CONCURRENCY must be an integer, got {values['concurrency']!r}.")
            if values["concurrency"] < 1:
                raise ConfigError("CONCURRENCY must be at least 1.")
        for attr in ("source", "source_key", "destination", "dest_key", "pattern", "log_path"):
            if attr in values:
                values[attr] = str(values[attr])
        return cls(**values)


# ---------------------------------------------------------------------------
# Storage URLs and credentials
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StorageUrl:
    scheme: str
    netloc: str
    account: str
    container: str
    blob: Optional[str] = None
    path_style: bool = False

    @property
    def endpoint(self) -> str:
        base = f"{self.scheme}://{self.netloc}"
        return f"{base}/{self.account}" if self.path_style else base

    def __str__(self) -> str:
        tail = f"/{self.blob}" if self.blob else ""
        return f"{self.endpoint}/{self.container}{tail}"


def is_storage_url(text: Optional[str]) -> bool:
    return bool(text) and text.lower().startswith(("http://", "https://"))


def _is_address(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        return False


def parse_storage_url(text: str) -> StorageUrl:
    """Parse ``http(s)://<account>.<service-host>/<container>[/<blob>]``.

    Emulator style URLs (``http://127.0.0.1:10000/<account>/<container>``)
    carry the account in the first path segment instead.
    """
    parsed = urlparse(text)
    if parsed.scheme.lower() not in ("http", "https") or not parsed.hostname:
        raise ConfigError(f"{text} is not an http(s) storage endpoint Url.")
    segments = [unquote(s) for s in parsed.path.split("/") if s]

    host = parsed.hostname
    path_style = _is_address(host)
    if path_style:
        if not segments:
            raise ConfigError(f"The storage Url {text} does not name an account.")
        account = segments.pop(0)
    else:
        account = host.split(".", 1)[0]
        if "." not in host or not account:
            raise ConfigError(f"The storage Url {text} does not start with an account host name.")

    if not segments:
        raise ConfigError(
            f"The storage Url {text} must be in the format "
            "http(s)://<account>.<service-host>/<container>[/<blob>]."
        )
    container = segments[0]
    blob = "/".join(segments[1:]) or None
    return StorageUrl(
        scheme=parsed.scheme.lower(),
        netloc=parsed.netloc,
        account=account,
        container=container,
        blob=blob,
        path_style=path_style,
    )


def validate_account_key(key: str) -> str:
    """Check that an account key is usable base64 before touching the service."""
    raw_key = (key or "").strip()
    if not raw_key:
        raise ConfigError("The storage account key is empty.")

    padding_needed = len(raw_key) % 4
    padded = raw_key + "=" * (4 - padding_needed) if padding_needed else raw_key
    try:
        decoded = base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        raise ConfigError(
            "The storage account key is not valid base64; it is corrupted or truncated.\n"
            "Copy a fresh key from Azure Portal -> Storage account -> Access keys."
        )
    if not decoded:
        raise ConfigError("The storage account key decodes to zero bytes.")
    return raw_key


def build_connection_string(url: StorageUrl, key: str) -> str:
    return (
        f"DefaultEndpointsProtocol={url.scheme};AccountName={url.account};"
        f"AccountKey={key};BlobEndpoint={url.endpoint};"
    )


# ---------------------------------------------------------------------------
# Transfer plan
# ---------------------------------------------------------------------------

class Operation(enum.Enum):
    COPY = "copy"
    SYNC = "sync"


class Direction(enum.Enum):
    UP = "up"
    DOWN = "down"


class FileKind(enum.Enum):
    SINGLE_FILE = "single-file"
    MULTIPLE_FILES = "multiple-files"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class RetryPolicy:
    count: int = _DEFAULTS["RETRY_COUNT"]
    wait: float = _DEFAULTS["RETRY_WAIT"]

    def delay(self, attempt: int) -> float:
        """Linear backoff: ``wait`` seconds more for every failed attempt."""
        return self.wait * attempt


@dataclass(frozen=True)
class TransferPlan:
    operation: Operation
    direction: Direction
    source: str
    destination: str
    file_kind: FileKind = FileKind.SINGLE_FILE
    source_url: Optional[StorageUrl] = None
    dest_url: Optional[StorageUrl] = None
    source_key: Optional[str] = None
    dest_key: Optional[str] = None
    block_size: int = DEFAULT_BLOCK_SIZE_KB * 1024
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    overwrite: bool = False
    content_type: Optional[str] = None
    journal_path: Optional[str] = None
    no_journal: bool = False
    delete_journal: bool = False
    use_emulator: bool = False
    pattern: str = "*"
    recurse: bool = False
    signature_file: Optional[str] = None
    remote_signature: bool = False
    signature_blob: Optional[str] = None
    concurrency: int = _DEFAULTS["CONCURRENCY"]

    @property
    def remote_url(self) -> StorageUrl:
        url = self.dest_url if self.direction is Direction.UP else self.source_url
        if url is None:
            raise ConfigError("The transfer has no storage endpoint.")
        return url

    @property
    def remote_key(self) -> Optional[str]:
        return self.dest_key if self.direction is Direction.UP else self.source_key

    @property
    def local_path(self) -> Path:
        return Path(self.source if self.direction is Direction.UP else self.destination)

    def resolve_content_type(self, path: Path) -> str:
        """The --content-type value, or a type guessed from the extension of ``path``."""
        if self.content_type:
            return self.content_type
        return CONTENT_TYPES.get(Path(path).suffix.lower(), DEFAULT_CONTENT_TYPE)

    def connection_string(self) -> str:
        url = self.remote_url
        if self.use_emulator:
            key = self.remote_key or EMULATOR_ACCOUNT_KEY
            if url.path_style:
                return build_connection_string(url, key)
            # account-host Urls still go to the local emulator
            return (
                f"DefaultEndpointsProtocol=http;AccountName={EMULATOR_ACCOUNT_NAME};"
                f"AccountKey={key};BlobEndpoint={EMULATOR_BLOB_ENDPOINT};"
            )
        return build_connection_string(url, self.remote_key or "")

    def journal_file(self) -> Path:
        if self.journal_path:
            return Path(self.journal_path)
        local = self.local_path.expanduser().resolve()
        return local.with_name(local.name + JOURNAL_SUFFIX)

    def validate(self) -> "TransferPlan":
        if not self.source or not self.destination:
            raise ConfigError(
                f"You must specify both the source and destination for a {self.operation.value} operation."
            )
        if self.source_url is not None and self.dest_url is not None:
            raise ConfigError("Transfers between two storage endpoints are not supported.")
        if self.source_url is None and self.dest_url is None:
            raise ConfigError("Either the source or the destination must be a storage endpoint Url.")
        expected = Direction.UP if self.dest_url is not None else Direction.DOWN
        if self.direction is not expected:
            raise ConfigError("The transfer direction does not match the source and destination.")
        if self.operation is Operation.SYNC and self.direction is Direction.DOWN:
            raise ConfigError("Synchronizing from a storage endpoint to the local filesystem is not supported.")
        if self.direction is Direction.UP and self.dest_url.container is None:
            raise ConfigError("The destination Url does not name a container.")
        if self.direction is Direction.DOWN and not self.source_url.blob:
            raise ConfigError("The source Url must name a blob to copy: .../<container>/<blob>.")

        if not self.use_emulator:
            side = "destination" if self.direction is Direction.UP else "source"
            if not self.remote_key:
                raise ConfigError(f"You must specify the account key for accessing the {side} storage container.")
            validate_account_key(self.remote_key)

        if self.block_size <= 0:
            raise ConfigError("The block size must be positive.")
        if self.block_size > MAX_BLOCK_SIZE:
            raise ConfigError(
                f"The block size exceeds the storage maximum (4000 MB). Got {self.block_size // 1024} KB."
            )
        if self.retry.count < 0 or self.retry.wait < 0:
            raise ConfigError("Retry count and retry wait must not be negative.")
        if self.concurrency < 1:
            raise ConfigError("Concurrency must be at least 1.")

        if self.operation is Operation.COPY and (
            self.signature_file or self.remote_signature or self.signature_blob
        ):
            raise ConfigError("Signature options only apply to the sync operation.")
        if self.signature_file and (self.remote_signature or self.signature_blob):
            raise ConfigError("Use either a local signature file or a remote signature, not both.")
        return self
