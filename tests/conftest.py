from __future__ import annotations

from datetime import datetime
from types import SimpleNamespace
from typing import Any, BinaryIO
import io

import pytest

from k8s_quiesce_backup.errors import UploadError
from k8s_quiesce_backup.k8s import KubernetesLookupError
from k8s_quiesce_backup.logs import RunLog
from k8s_quiesce_backup.models import RunOutcome, ScaleState, WorkloadRef


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeWorkloadApi:
    """In-memory cluster holding one workload's replica count."""

    def __init__(
        self,
        *,
        replicas: int = 3,
        selector: str = "app=web",
        replica_sets: list[SimpleNamespace] | None = None,
        pod_batches: list[Any] | None = None,
    ) -> None:
        self.replicas = replicas
        self.selector = selector
        self.replica_sets = replica_sets or []
        self.pod_batches = list(pod_batches or [])
        self.get_scale_error: Exception | None = None
        self.set_scale_errors: list[Exception | None] = []
        self.set_scale_calls: list[int] = []
        self.list_pod_calls: list[str] = []

    def get_scale(self, ref: WorkloadRef, *, request_timeout: float) -> ScaleState:
        if self.get_scale_error is not None:
            raise self.get_scale_error
        return ScaleState(replicas=self.replicas, selector=self.selector)

    def set_scale(self, ref: WorkloadRef, replicas: int, *, request_timeout: float) -> None:
        self.set_scale_calls.append(replicas)
        if self.set_scale_errors:
            error = self.set_scale_errors.pop(0)
            if error is not None:
                raise error
        self.replicas = replicas

    def list_pod_names(self, namespace: str, label_selector: str, *, request_timeout: float) -> list[str]:
        self.list_pod_calls.append(label_selector)
        if not self.pod_batches:
            return []
        batch = self.pod_batches[0] if len(self.pod_batches) == 1 else self.pod_batches.pop(0)
        if isinstance(batch, BaseException):
            raise batch
        return list(batch)

    def list_replica_sets(self, namespace: str, *, request_timeout: float) -> list[SimpleNamespace]:
        return self.replica_sets

    def read_replica_set(self, namespace: str, name: str, *, request_timeout: float) -> SimpleNamespace:
        for replica_set in self.replica_sets:
            if replica_set.metadata.name == name:
                return replica_set
        raise KubernetesLookupError(f"ReplicaSet '{namespace}/{name}' not found")


class FakeStorage:
    """Bucket stand-in that drains the upload stream the way an S3 client would."""

    def __init__(self, *, bucket: str = "backups", error: Exception | None = None, chunk_size: int = 256) -> None:
        self.bucket = bucket
        self.endpoint = "https://s3.test"
        self.error = error
        self.chunk_size = chunk_size
        self.objects: dict[str, bytes] = {}
        self.calls: list[dict[str, Any]] = []
        self.before_read: Any = None

    def put_object(
        self,
        key: str,
        stream: BinaryIO,
        size: int,
        *,
        content_type: str,
        storage_class: str | None = None,
        expires: datetime | None = None,
    ) -> None:
        self.calls.append(
            {
                "key": key,
                "size": size,
                "content_type": content_type,
                "storage_class": storage_class,
                "expires": expires,
                "stream": stream,
            }
        )
        if self.error is not None:
            raise self.error
        if self.before_read is not None:
            self.before_read()
        buffer = io.BytesIO()
        for chunk in iter(lambda: stream.read(self.chunk_size), b""):
            buffer.write(chunk)
        self.objects[key] = buffer.getvalue()


class RecordingNotifier:
    def __init__(self, error: Exception | None = None) -> None:
        self.outcomes: list[RunOutcome] = []
        self.error = error

    def notify(self, outcome: RunOutcome, log: Any) -> None:
        self.outcomes.append(outcome)
        if self.error is not None:
            raise self.error


def replica_set(
    *,
    name: str,
    owner_kind: str = "Deployment",
    owner_name: str = "web",
    template_hash: str | None = "5d8f7c9b4",
    revision: str | None = "1",
    namespace: str = "apps",
    creation_timestamp: datetime | None = None,
) -> SimpleNamespace:
    labels = {"pod-template-hash": template_hash} if template_hash else {}
    annotations = {"deployment.kubernetes.io/revision": revision} if revision else {}
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
            owner_references=[SimpleNamespace(kind=owner_kind, name=owner_name, controller=True)],
            creation_timestamp=creation_timestamp,
        )
    )


def upload_failure() -> UploadError:
    return UploadError("S3 rejected upload of 'backup.tar.gz' to bucket 'backups' (AccessDenied): denied")


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def run_log() -> RunLog:
    return RunLog(io.StringIO())


@pytest.fixture
def workload() -> WorkloadRef:
    return WorkloadRef(kind="Deployment", name="web", namespace="apps")
