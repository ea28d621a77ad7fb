"""
azsync command line.

Usage:
    azsync copy -s <src> -d <dst> [options]
    azsync sync -s <file> -d https://<account>.blob.core.windows.net/<container> [options]
    azsync gen --name <file> --size <MB> [--part-size <KB>]

Ctrl-Q or Ctrl-C stops a transfer; re-running the same command resumes it
from the journal.
"""

import argparse
import enum
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .cancellation import CancellationToken, KeyWatcher, install_signal_handlers, restore_signal_handlers
from .config import (
    DEFAULT_BLOCK_SIZE_KB,
    EMULATOR_ACCOUNT_KEY,
    AppSettings,
    Direction,
    FileKind,
    Operation,
    RetryPolicy,
    TransferPlan,
    is_storage_url,
    parse_storage_url,
)
from .engine import TransferEngine
from .errors import (
    EXIT_ENGINE_INIT,
    EXIT_GENERATOR,
    EXIT_INVALID_OPTIONS,
    EXIT_NOT_FOUND,
    EXIT_SUCCESS,
    EXIT_TRANSFER,
    EXIT_UNHANDLED,
    AzSyncError,
    ConfigError,
    EngineInitError,
    GeneratorError,
    SourceNotFoundError,
)
from .generator import generate_or_modify

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_GLOB_CHARS = "*?["


class ExitCode(enum.IntEnum):
    SUCCESS = EXIT_SUCCESS
    UNHANDLED_EXCEPTION = EXIT_UNHANDLED
    INVALID_OPTIONS = EXIT_INVALID_OPTIONS
    FILE_OR_DIRECTORY_NOT_FOUND = EXIT_NOT_FOUND
    ENGINE_INIT_ERROR = EXIT_ENGINE_INIT
    TRANSFER_ERROR = EXIT_TRANSFER
    GENERATOR_ERROR = EXIT_GENERATOR


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def _build_logger(log_dir: Path, verbose: bool = False) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "azsync.log"

    logger = logging.getLogger("azsync")
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    logger.addHandler(console)
    logger.addHandler(fh)
    return logger


# ---------------------------------------------------------------------------
# Arguments
# ---------------------------------------------------------------------------

def _add_transfer_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-s", "--source", help="Local file path or storage endpoint Url to read from.")
    parser.add_argument("-d", "--destination", help="Local file path or storage endpoint Url to write to.")
    parser.add_argument("-p", "--pattern", help="Glob pattern selecting files under the source directory.")
    parser.add_argument("-S", "--recurse", action="store_true", help="Descend into subdirectories.")
    parser.add_argument(
        "-r", "--retry-count", type=int, default=RetryPolicy.count,
        help="Retries per block after a transient error (default %(default)s).",
    )
    parser.add_argument(
        "--retry-wait", type=float, default=RetryPolicy.wait,
        help="Seconds added to the wait after each failed attempt (default %(default)s).",
    )
    parser.add_argument("--source-key", help="Account key for a storage source.")
    parser.add_argument("--dest-key", help="Account key for a storage destination.")
    parser.add_argument("--overwrite", action="store_true", help="Replace an existing destination.")
    parser.add_argument(
        "--use-emulator", action="store_true",
        help="Use the local storage emulator and its development account key.",
    )
    parser.add_argument(
        "--block-size", type=int, default=DEFAULT_BLOCK_SIZE_KB, metavar="KB",
        help="Block size in KB (default %(default)s).",
    )
    parser.add_argument("--content-type", help="Content type of the uploaded blob (guessed from the file name).")
    parser.add_argument("-j", "--journal-file", help="Journal path (default <file>.azsj).")
    parser.add_argument("--no-journal", action="store_true", help="Keep no journal; the transfer cannot be resumed.")
    parser.add_argument("--delete-journal", action="store_true", help="Discard an existing journal before starting.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to the console.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="azsync",
        description=(
            "Copy files to and from Azure Blob Storage with resumable, chunked, parallel "
            "transfers, or sync a file so only changed blocks are uploaded."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Copy a file into a container\n"
            "  azsync copy -s report.csv -d https://acct.blob.core.windows.net/data --dest-key KEY\n\n"
            "  # Sync, reusing the signature uploaded by the previous sync\n"
            "  azsync sync -s big.pkg -d https://acct.blob.core.windows.net/data --remote-signature --overwrite\n\n"
            "  # Make an 8 MB test package\n"
            "  azsync gen --name t.pkg --size 8 --part-size 256\n"
        ),
    )
    parser.add_argument("--version", action="version", version=f"azsync {__version__}")
    verbs = parser.add_subparsers(dest="verb", metavar="{copy,sync,gen}")

    copy = verbs.add_parser("copy", help="Copy a local file to a blob or a blob to a local file.")
    _add_transfer_options(copy)

    sync = verbs.add_parser("sync", help="Upload a local file and its block signature.")
    _add_transfer_options(sync)
    sync.add_argument(
        "--remote-signature", action="store_true",
        help="Use the signature blob <blob>.sig from the last sync to skip unchanged blocks.",
    )
    sync.add_argument("-f", "--signature-file", help="Use a local signature file from the last sync.")
    sync.add_argument("-B", "--signature-blob", help="Name of the remote signature blob to use.")

    gen = verbs.add_parser("gen", help="Create or resize a test package.")
    gen.add_argument("--name", required=True, help="Package file to create or modify.")
    gen.add_argument("--size", type=int, required=True, metavar="MB", help="Target size in MB.")
    gen.add_argument(
        "--part-size", type=int, default=100, metavar="KB",
        help="Average part size in KB (default %(default)s).",
    )
    gen.add_argument("-v", "--verbose", action="store_true", help="Log debug output to the console.")
    return parser


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

def _file_kind(local: str, pattern: str, recurse: bool) -> FileKind:
    if Path(local).expanduser().is_dir():
        return FileKind.DIRECTORY
    if recurse or pattern != "*" or any(c in local for c in _GLOB_CHARS):
        return FileKind.MULTIPLE_FILES
    return FileKind.SINGLE_FILE


def build_plan(args: argparse.Namespace, settings: AppSettings) -> TransferPlan:
    """Merge flags over settings into a validated plan.

    Raises ``ConfigError`` for bad options and ``SourceNotFoundError`` when
    the local source of an upload does not exist.
    """
    source = args.source or settings.source
    destination = args.destination or settings.destination
    source_key = args.source_key or settings.source_key
    dest_key = args.dest_key or settings.dest_key
    pattern = args.pattern or settings.pattern or "*"
    if args.use_emulator:
        source_key = source_key or EMULATOR_ACCOUNT_KEY
        dest_key = dest_key or EMULATOR_ACCOUNT_KEY

    source_url = parse_storage_url(source) if is_storage_url(source) else None
    dest_url = parse_storage_url(destination) if is_storage_url(destination) else None
    direction = Direction.DOWN if source_url is not None and dest_url is None else Direction.UP
    local = source if direction is Direction.UP else destination

    plan = TransferPlan(
        operation=Operation(args.verb),
        direction=direction,
        source=source,
        destination=destination,
        file_kind=_file_kind(local, pattern, args.recurse) if local else FileKind.SINGLE_FILE,
        source_url=source_url,
        dest_url=dest_url,
        source_key=source_key,
        dest_key=dest_key,
        block_size=args.block_size * 1024,
        retry=RetryPolicy(count=args.retry_count, wait=args.retry_wait),
        overwrite=args.overwrite,
        content_type=args.content_type,
        journal_path=args.journal_file,
        no_journal=args.no_journal,
        delete_journal=args.delete_journal,
        use_emulator=args.use_emulator,
        pattern=pattern,
        recurse=args.recurse,
        signature_file=getattr(args, "signature_file", None),
        remote_signature=getattr(args, "remote_signature", False),
        signature_blob=getattr(args, "signature_blob", None),
        concurrency=settings.concurrency,
    ).validate()

    if (
        plan.direction is Direction.UP
        and plan.file_kind is FileKind.SINGLE_FILE
        and not Path(plan.source).expanduser().exists()
    ):
        raise SourceNotFoundError(f"File not found: {Path(plan.source).expanduser().resolve()}")
    return plan


# ---------------------------------------------------------------------------
# Verbs
# ---------------------------------------------------------------------------

def _run_transfer(plan: TransferPlan, logger: logging.Logger) -> int:
    cancel = CancellationToken()
    logger.info(f"Initialising {plan.operation.value} engine...")
    try:
        engine = TransferEngine(plan, cancel, log=logger)
    except EngineInitError as exc:
        logger.error(str(exc))
        return ExitCode.ENGINE_INIT_ERROR

    previous = install_signal_handlers(cancel, logger)
    watcher = KeyWatcher(cancel, logger)
    watcher.start()
    logger.info("Press Ctrl-Q or Ctrl-C to stop; re-run the same command to resume.")
    try:
        ok = engine.transfer()
    finally:
        watcher.stop()
        # the watcher restores the terminal mode on its way out
        watcher.join(timeout=1)
        restore_signal_handlers(previous)

    if ok:
        logger.info(f"Azure Storage {plan.operation.value} completed.")
        return ExitCode.SUCCESS
    if isinstance(engine.error, SourceNotFoundError):
        return ExitCode.FILE_OR_DIRECTORY_NOT_FOUND
    return ExitCode.TRANSFER_ERROR


def _run_gen(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        generate_or_modify(args.name, args.size, args.part_size, log=logger)
    except GeneratorError as exc:
        logger.error(f"Could not generate test file: {exc}")
        return ExitCode.GENERATOR_ERROR
    return ExitCode.SUCCESS


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        # argparse exits 2 on bad options and 0 for --help/--version
        return int(exc.code or 0)
    if not args.verb:
        parser.print_help(sys.stderr)
        return ExitCode.INVALID_OPTIONS

    try:
        settings = AppSettings.load()
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return ExitCode.INVALID_OPTIONS

    log_dir = Path(settings.log_path) if settings.log_path else Path.cwd() / "logs"
    try:
        logger = _build_logger(log_dir, args.verbose)
    except OSError as exc:
        print(f"ERROR: Cannot open log directory {log_dir}: {exc}", file=sys.stderr)
        return ExitCode.INVALID_OPTIONS

    logger.info("=" * 60)
    logger.info(f"  AzSync {__version__}: {args.verb}")
    logger.info("=" * 60)

    try:
        if args.verb == "gen":
            return _run_gen(args, logger)
        try:
            plan = build_plan(args, settings)
        except SourceNotFoundError as exc:
            logger.error(str(exc))
            return ExitCode.FILE_OR_DIRECTORY_NOT_FOUND
        except ConfigError as exc:
            logger.error(str(exc))
            return ExitCode.INVALID_OPTIONS
        return _run_transfer(plan, logger)
    except AzSyncError as exc:
        logger.error(str(exc))
        return ExitCode(exc.exit_code)
    except Exception:
        logger.exception("An unhandled runtime exception occurred. azsync will terminate.")
        return ExitCode.UNHANDLED_EXCEPTION
