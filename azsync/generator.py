"""
Test archive generator.

Writes zip packages made of uncompressed parts filled with random bytes, or
grows/shrinks an existing package towards a target size by adding parts or
removing randomly chosen ones. Used to exercise the delta path end to end.
"""

import logging
import os
import random
import uuid
import zipfile
from pathlib import Path
from typing import Optional

from .cancellation import CancellationToken
from .errors import GeneratorError

logger = logging.getLogger("azsync.generator")


def _write_parts(
    archive: zipfile.ZipFile,
    count: int,
    part_size: int,
    cancel: Optional[CancellationToken] = None,
) -> None:
    for _ in range(count):
        if cancel is not None:
            cancel.raise_if_cancelled()
        archive.writestr(str(uuid.uuid4()), os.urandom(part_size))


def _part_count(size_bytes: float, part_size: int) -> int:
    return int(round(size_bytes / part_size))


def generate_file(
    name: str,
    size_mb: int,
    part_size_kb: int = 100,
    cancel: Optional[CancellationToken] = None,
    log: Optional[logging.Logger] = None,
) -> Path:
    log = log or logger
    part_size = part_size_kb * 1024
    path = Path(name).expanduser().resolve()
    count = _part_count(size_mb * 1024 * 1024, part_size)
    log.info(f"Writing {count} part(s) with average size {part_size_kb} KB to file {path}.")
    try:
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as archive:
            _write_parts(archive, count, part_size, cancel)
    except OSError as exc:
        raise GeneratorError(f"Cannot write test file {path}: {exc}") from exc
    log.info(f"Successfully generated test file {path}.")
    return path


def modify_file(
    name: str,
    size_mb: int,
    part_size_kb: int = 100,
    cancel: Optional[CancellationToken] = None,
    log: Optional[logging.Logger] = None,
) -> Path:
    log = log or logger
    part_size = part_size_kb * 1024
    path = Path(name).expanduser().resolve()
    if not zipfile.is_zipfile(path):
        raise GeneratorError(f"{path} is not a test package.")
    try:
        difference = size_mb * 1024 * 1024 - path.stat().st_size
        if difference > 0:
            count = _part_count(difference, part_size)
            log.info(f"Adding {count} part(s) with average size {part_size_kb} KB to file {path}.")
            with zipfile.ZipFile(path, "a", compression=zipfile.ZIP_STORED) as archive:
                _write_parts(archive, count, part_size, cancel)
        else:
            count = _part_count(abs(difference), part_size)
            log.info(f"Removing {count} part(s) from file {path}.")
            _remove_parts(path, count)
    except zipfile.BadZipFile as exc:
        raise GeneratorError(f"{path} is not a test package: {exc}") from exc
    except OSError as exc:
        raise GeneratorError(f"Cannot modify test file {path}: {exc}") from exc

    log.info(f"Successfully modified test file {path} to size {path.stat().st_size} bytes.")
    return path


def _remove_parts(path: Path, count: int) -> None:
    # zip members cannot be deleted in place; copy the survivors to a new archive
    tmp = path.with_name(path.name + ".tmp")
    with zipfile.ZipFile(path, "r") as src:
        infos = src.infolist()
        doomed = {i.filename for i in random.sample(infos, min(count, len(infos)))}
        with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_STORED) as dst:
            for info in infos:
                if info.filename not in doomed:
                    dst.writestr(info, src.read(info.filename))
    os.replace(tmp, path)


def generate_or_modify(
    name: str,
    size_mb: int,
    part_size_kb: int = 100,
    cancel: Optional[CancellationToken] = None,
    log: Optional[logging.Logger] = None,
) -> Path:
    """Create ``name`` if it is missing, otherwise resize it to ``size_mb``."""
    if not name:
        raise GeneratorError("A file name is required.")
    if size_mb <= 0:
        raise GeneratorError(f"The size must be a positive number of megabytes, got {size_mb}.")
    if part_size_kb <= 0:
        raise GeneratorError(f"The part size must be a positive number of kilobytes, got {part_size_kb}.")
    if Path(name).expanduser().exists():
        return modify_file(name, size_mb, part_size_kb, cancel, log)
    return generate_file(name, size_mb, part_size_kb, cancel, log)
