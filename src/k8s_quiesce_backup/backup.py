from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable
import time

from structlog.typing import FilteringBoundLogger

from .archive import ARCHIVE_CONTENT_TYPE, create_archive
from .config import AppConfig
from .deadline import Deadline
from .errors import (
    ArchiveError,
    BackupError,
    DeadlineExceeded,
    UploadError,
    combine_errors,
    error_message,
)
from .logs import RunLog
from .models import ArchiveArtifact, RunOutcome, WorkloadRef
from .notify import Notifier
from .quiesce import QuiesceController
from .storage import ObjectStorage
from .transfer import TransferReporter


class RunState(str, Enum):
    INIT = "init"
    QUIESCED = "quiesced"
    ARCHIVED = "archived"
    UPLOADED = "uploaded"
    RESTORED = "restored"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class WorkflowSettings:
    workload: WorkloadRef
    source_directory: Path
    wait_for_termination: bool = False
    timeout_seconds: float = 180.0
    temp_directory: Path | None = None
    storage_class: str | None = None
    archive_lifetime_seconds: float = 0.0

    @classmethod
    def from_config(cls, config: AppConfig) -> WorkflowSettings:
        return cls(
            workload=config.resource.workload,
            source_directory=config.backup.directory,
            wait_for_termination=config.resource.wait,
            timeout_seconds=config.backup.timeout_seconds,
            temp_directory=config.backup.temp_directory,
            storage_class=config.s3.storage_class,
            archive_lifetime_seconds=config.s3.archive_lifetime_seconds,
        )


class BackupWorkflow:
    """Quiesce a workload, archive its directory, upload it and scale it back.

    ``run`` never raises for stage failures: whatever happens after the scale-down,
    the restore runs exactly once, errors from the main path and the restore are
    combined, and exactly one notification goes out.
    """

    def __init__(
        self,
        *,
        quiesce_controller: QuiesceController,
        storage: ObjectStorage,
        notifier: Notifier,
        settings: WorkflowSettings,
        run_log: RunLog,
        archiver: Callable[..., ArchiveArtifact] = create_archive,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.quiesce_controller = quiesce_controller
        self.storage = storage
        self.notifier = notifier
        self.settings = settings
        self.run_log = run_log
        self.archiver = archiver
        self.clock = clock
        self.state = RunState.INIT

    def run(self) -> RunOutcome:
        workload = self.settings.workload
        log = self.run_log.bind(resource=workload.resource_id, namespace=workload.namespace)
        log.info("backup_started", directory=str(self.settings.source_directory))
        deadline = Deadline(self.settings.timeout_seconds, clock=self.clock)

        try:
            restore_action = self.quiesce_controller.quiesce(
                workload,
                wait_for_termination=self.settings.wait_for_termination,
                deadline=deadline,
                log=log,
            )
        except BackupError as error:
            log.error("quiesce_failed", stage=error.stage, error=str(error))
            return self._finish(error=error, artifact=None, log=log)
        self.state = RunState.QUIESCED

        artifact: ArchiveArtifact | None = None
        leftover_path: Path | None = None
        main_error: BackupError | None = None
        try:
            with restore_action:
                try:
                    artifact = self._archive(deadline=deadline, log=log)
                    leftover_path = artifact.local_path
                    self._upload(artifact, deadline=deadline, log=log)
                except ArchiveError as error:
                    leftover_path = error.partial_path
                    main_error = error
                    log.error("archive_failed", stage=error.stage, error=str(error))
                except BackupError as error:
                    main_error = error
                    log.error("upload_failed", stage=error.stage, error=str(error))
                except Exception as error:  # pylint: disable=broad-except
                    main_error = BackupError(f"unexpected backup failure: {error_message(error)}")
                    log.exception("unexpected_failure", stage=main_error.stage)
        finally:
            self._remove_archive(leftover_path, log=log)
        if restore_action.error is None:
            self.state = RunState.RESTORED

        return self._finish(
            error=combine_errors(main_error, restore_action.error),
            artifact=artifact,
            log=log,
        )

    def _archive(self, *, deadline: Deadline, log: FilteringBoundLogger) -> ArchiveArtifact:
        artifact = self.archiver(
            self.settings.source_directory,
            deadline=deadline,
            log=log.bind(directory=str(self.settings.source_directory)),
            temp_dir=self.settings.temp_directory,
        )
        self.state = RunState.ARCHIVED
        return artifact

    def _upload(self, artifact: ArchiveArtifact, *, deadline: Deadline, log: FilteringBoundLogger) -> None:
        log = log.bind(bucket=self.storage.bucket, name=artifact.name)
        log.info("uploading_archive", endpoint=self.storage.endpoint, file=str(artifact.local_path))
        expires = self._archive_expiry()
        try:
            deadline.check("upload archive")
            with artifact.local_path.open("rb") as handle:
                reporter = TransferReporter(handle, artifact.size_bytes, log, deadline=deadline)
                self.storage.put_object(
                    artifact.name,
                    reporter,
                    artifact.size_bytes,
                    content_type=ARCHIVE_CONTENT_TYPE,
                    storage_class=self.settings.storage_class,
                    expires=expires,
                )
        except (OSError, DeadlineExceeded) as error:
            raise UploadError(error_message(error)) from error
        self.state = RunState.UPLOADED
        log.info("uploaded_archive")

    def _archive_expiry(self) -> datetime | None:
        if self.settings.archive_lifetime_seconds <= 0:
            return None
        return datetime.now(tz=UTC) + timedelta(seconds=self.settings.archive_lifetime_seconds)

    def _remove_archive(self, path: Path | None, *, log: FilteringBoundLogger) -> None:
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as error:
            log.warning("archive_cleanup_failed", file=str(path), error=error_message(error))
            return
        log.info("removed_archive", file=str(path))

    def _finish(
        self,
        *,
        error: BackupError | None,
        artifact: ArchiveArtifact | None,
        log: FilteringBoundLogger,
    ) -> RunOutcome:
        if error is None:
            self.state = RunState.DONE
            log.info("backup_succeeded")
        else:
            self.state = RunState.FAILED
            log.error("backup_failed", stage=error.stage, error=str(error))

        outcome = RunOutcome(
            succeeded=error is None,
            captured_log=self.run_log.text(),
            archive_size_bytes=artifact.size_bytes if artifact else None,
            error=error,
            workload=self.settings.workload,
        )
        try:
            self.notifier.notify(outcome, log)
        except Exception as notify_error:  # pylint: disable=broad-except
            log.error("notification_failed", stage="notify", error=error_message(notify_error))
        return outcome
