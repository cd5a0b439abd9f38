from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Iterator
import os
import tarfile
import tempfile

from structlog.typing import FilteringBoundLogger

from .deadline import Deadline
from .errors import ArchiveError, DeadlineExceeded, error_message
from .models import ArchiveArtifact

ARCHIVE_CONTENT_TYPE = "application/gzip"


def create_archive(
    source_directory: Path,
    *,
    deadline: Deadline,
    log: FilteringBoundLogger,
    temp_dir: Path | None = None,
) -> ArchiveArtifact:
    """Write ``source_directory`` into a new ``backup-<timestamp>.tar.gz`` temp file.

    Entries are streamed into the gzip writer one at a time. On failure the
    partially written file is reported through ``ArchiveError.partial_path`` and
    left for the caller to delete.
    """
    name = archive_name()
    local_path = Path(temp_dir or tempfile.gettempdir()) / name
    log = log.bind(name=name)
    log.info("creating_archive", file=str(local_path))

    source = Path(source_directory)
    if not source.is_dir():
        raise ArchiveError(f"source directory does not exist or is not a directory: {source}")

    entries = 0
    try:
        with local_path.open("wb") as handle:
            with tarfile.open(fileobj=handle, mode="w:gz") as tar:
                for entry, arcname in _walk_entries(source, skip=local_path.absolute()):
                    deadline.check(f"archive {arcname}")
                    tar.add(entry, arcname=arcname, recursive=False)
                    entries += 1
        # The gzip trailer is only written on close, so size is read afterwards.
        size = local_path.stat().st_size
    except (OSError, tarfile.TarError, DeadlineExceeded) as error:
        raise ArchiveError(error_message(error), partial_path=local_path) from error

    log.info("created_archive", entries=entries, size=byte_count_iec(size))
    return ArchiveArtifact(name=name, local_path=local_path, size_bytes=size)


def archive_name(now: datetime | None = None) -> str:
    timestamp = (now or datetime.now(tz=UTC)).astimezone(UTC).replace(microsecond=0)
    return f"backup-{timestamp.strftime('%Y-%m-%dT%H:%M:%SZ')}.tar.gz"


def byte_count_iec(size: int) -> str:
    unit = 1024
    if size < unit:
        return f"{size} B"
    divisor, exponent = unit, 0
    value = size // unit
    while value >= unit:
        divisor *= unit
        exponent += 1
        value //= unit
    return f"{size / divisor:.1f} {'KMGTPE'[exponent]}iB"


def _walk_entries(source: Path, *, skip: Path) -> Iterator[tuple[Path, str]]:
    def _raise(error: OSError) -> None:
        raise error

    for root, dirnames, filenames in os.walk(source, onerror=_raise):
        dirnames.sort()
        root_path = Path(root)
        for name in [*dirnames, *sorted(filenames)]:
            entry = root_path / name
            if entry.absolute() == skip:
                continue
            yield entry, entry.relative_to(source).as_posix()
