from __future__ import annotations

from pathlib import Path
from typing import Iterable


class BackupError(RuntimeError):
    """Failure of one workflow stage, rendered as '<stage> stage failed: <reason>'."""

    stage = "unexpected"

    def __init__(self, reason: str, *, stage: str | None = None) -> None:
        if stage is not None:
            self.stage = stage
        self.reason = reason.strip() or "unknown error"
        super().__init__(f"{self.stage} stage failed: {self.reason}")


class ConfigurationError(BackupError):
    stage = "config"

    def __init__(self, problems: Iterable[str]) -> None:
        self.problems = tuple(problems)
        super().__init__("; ".join(self.problems))


class ScaleReadError(BackupError):
    stage = "scale-read"


class ScaleWriteError(BackupError):
    stage = "scale-write"


class WaitTimeoutError(BackupError):
    """Pods did not terminate in time. Never fails the run."""

    stage = "wait"


class PodSelectorError(WaitTimeoutError):
    """No pod selector could be resolved, so the wait was abandoned."""


class ArchiveError(BackupError):
    stage = "archive"

    def __init__(self, reason: str, *, partial_path: Path | None = None) -> None:
        super().__init__(reason)
        self.partial_path = partial_path


class UploadError(BackupError):
    stage = "upload"


class RestoreError(BackupError):
    stage = "restore"


class NotifyError(BackupError):
    """Notification delivery failed. Never fails the run."""

    stage = "notify"


class CombinedBackupError(BackupError):
    """Several stage failures reported as one; keeps every cause in ``errors``."""

    def __init__(self, errors: Iterable[BackupError]) -> None:
        self.errors = tuple(errors)
        self.stage = self.errors[0].stage if self.errors else "unexpected"
        self.reason = "; ".join(str(error) for error in self.errors)
        RuntimeError.__init__(self, self.reason)


class DeadlineExceeded(TimeoutError):
    pass


def combine_errors(*errors: BackupError | None) -> BackupError | None:
    present = [error for error in errors if error is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return CombinedBackupError(present)


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
