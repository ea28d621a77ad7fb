"""Exception hierarchy shared by the engine, the blob client and the CLI.

Every error carries the process exit code the CLI reports for it.
"""

from typing import Optional


# Exit codes
EXIT_SUCCESS = 0
EXIT_UNHANDLED = 1
EXIT_INVALID_OPTIONS = 2
EXIT_NOT_FOUND = 3
EXIT_ENGINE_INIT = 4
EXIT_TRANSFER = 5
EXIT_GENERATOR = 6


class AzSyncError(Exception):
    """Base class for all azsync errors."""

    exit_code = EXIT_UNHANDLED

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ConfigError(AzSyncError):
    """Bad URL, missing key or conflicting flags."""

    exit_code = EXIT_INVALID_OPTIONS


class SourceNotFoundError(AzSyncError):
    """The local file or directory named on the command line is missing."""

    exit_code = EXIT_NOT_FOUND


class EngineInitError(AzSyncError):
    exit_code = EXIT_ENGINE_INIT


class AzIOError(AzSyncError):
    """Local filesystem failure (journal, signature file, source file)."""

    exit_code = EXIT_TRANSFER


class StorageError(AzSyncError):
    """A blob service call failed after the retry policy gave up."""

    exit_code = EXIT_TRANSFER


class BlobNotFoundError(StorageError):
    """The named blob or container does not exist."""


class TransferError(AzSyncError):
    """A chunked transfer failed part way through."""

    exit_code = EXIT_TRANSFER

    def __init__(self, message: str, index: Optional[int] = None) -> None:
        super().__init__(message)
        self.index = index


class Cancelled(AzSyncError):
    """Cooperative stop. Not a failure."""

    exit_code = EXIT_SUCCESS


class Skipped(AzSyncError):
    """The destination exists and the overwrite policy said no. Not a failure."""

    exit_code = EXIT_SUCCESS


class CorruptError(AzSyncError):
    """Bad magic, truncated metadata or a broken record frame."""

    exit_code = EXIT_TRANSFER


class UnsupportedVersionError(CorruptError):
    pass


class SerializationError(AzSyncError):
    """Envelope metadata could not be decoded."""

    exit_code = EXIT_TRANSFER


class GeneratorError(AzSyncError):
    exit_code = EXIT_GENERATOR


def first_cause(exc: BaseException) -> BaseException:
    """Unwrap executor/aggregate wrappers down to the first real cause.

    ``concurrent.futures`` and ``ExceptionGroup`` both hide the error that
    actually decides how a failure is classified.
    """
    seen = set()
    while id(exc) not in seen:
        seen.add(id(exc))
        inner = getattr(exc, "exceptions", None)
        if inner:
            exc = inner[0]
            continue
        if isinstance(exc, AzSyncError):
            return exc
        if exc.__cause__ is not None and isinstance(exc.__cause__, AzSyncError):
            exc = exc.__cause__
            continue
        break
    return exc
