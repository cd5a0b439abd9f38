from __future__ import annotations

from typing import BinaryIO
import io

from structlog.typing import FilteringBoundLogger

from .archive import byte_count_iec
from .deadline import Deadline
from .models import TransferProgress


class TransferReporter(io.RawIOBase):
    """Readable wrapper that logs one progress observation per read.

    The S3 client may rewind the body to sign, checksum or retry a request; the
    counter tracks the furthest byte handed out so it never goes backwards and
    ends at ``total_bytes``. Reads only track bytes actually sent when the client
    does not hash the payload up front (see ``ObjectStorage.from_config``).
    """

    def __init__(
        self,
        stream: BinaryIO,
        total_bytes: int,
        log: FilteringBoundLogger,
        *,
        deadline: Deadline | None = None,
    ) -> None:
        super().__init__()
        self._stream = stream
        self._position = stream.tell() if stream.seekable() else 0
        self.total_bytes = total_bytes
        self.bytes_moved = 0
        self.log = log
        self.deadline = deadline
        self.observations: list[TransferProgress] = []

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return self._stream.seekable()

    def tell(self) -> int:
        return self._stream.tell()

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        self._position = self._stream.seek(offset, whence)
        return self._position

    def read(self, size: int = -1) -> bytes:
        if self.deadline is not None:
            self.deadline.check("upload archive")
        chunk = self._stream.read(size)
        if chunk:
            self._position += len(chunk)
            self._record()
        return chunk

    def readinto(self, buffer: bytearray | memoryview) -> int:  # type: ignore[override]
        chunk = self.read(len(buffer))
        buffer[: len(chunk)] = chunk
        return len(chunk)

    def _record(self) -> None:
        self.bytes_moved = max(self.bytes_moved, self._position)
        progress = TransferProgress(
            bytes_moved=self.bytes_moved,
            total_bytes=self.total_bytes,
            percent=progress_percent(self.bytes_moved, self.total_bytes),
        )
        self.observations.append(progress)
        self.log.info(
            "upload_progress",
            uploaded=byte_count_iec(progress.bytes_moved),
            total=byte_count_iec(progress.total_bytes),
            percent=progress.percent,
        )


def progress_percent(bytes_moved: int, total_bytes: int) -> float:
    if total_bytes <= 0:
        return 100.0
    return round(bytes_moved / total_bytes * 100.0, 2)
