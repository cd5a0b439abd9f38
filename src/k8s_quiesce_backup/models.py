from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .errors import BackupError

KIND_DEPLOYMENT = "Deployment"
KIND_STATEFULSET = "StatefulSet"
KIND_REPLICASET = "ReplicaSet"


@dataclass(frozen=True)
class WorkloadRef:
    kind: str
    name: str
    namespace: str

    @property
    def resource_id(self) -> str:
        return f"{self.kind.lower()}/{self.name}"


@dataclass(frozen=True)
class ScaleState:
    replicas: int
    selector: str = ""


@dataclass(frozen=True)
class ArchiveArtifact:
    name: str
    local_path: Path
    size_bytes: int


@dataclass(frozen=True)
class TransferProgress:
    bytes_moved: int
    total_bytes: int
    percent: float


@dataclass(frozen=True)
class RunOutcome:
    succeeded: bool
    captured_log: str
    archive_size_bytes: int | None = None
    error: BackupError | None = None
    workload: WorkloadRef | None = None
