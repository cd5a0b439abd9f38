from __future__ import annotations

from types import TracebackType
from typing import Callable
import time

from structlog.typing import FilteringBoundLogger

from .deadline import Deadline
from .errors import (
    BackupError,
    DeadlineExceeded,
    PodSelectorError,
    RestoreError,
    ScaleReadError,
    ScaleWriteError,
    WaitTimeoutError,
    error_message,
)
from .k8s import (
    POD_TEMPLATE_HASH_LABEL,
    KubernetesLookupError,
    KubernetesWorkloadApi,
    find_pod_template_hash,
    pod_template_hash,
)
from .models import KIND_REPLICASET, ScaleState, WorkloadRef

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
# Share of the remaining run budget the wait may use; the rest is kept for archive and upload.
WAIT_BUDGET_SHARE = 0.5


class RestoreAction:
    """Scales a quiesced workload back to the replica count it had before the run.

    Use it as a context manager: leaving the block restores exactly once, whatever
    happened inside. A failed restore is kept in ``error`` rather than raised so the
    caller can report it together with its own failure.
    """

    def __init__(
        self,
        *,
        api: KubernetesWorkloadApi,
        ref: WorkloadRef,
        state: ScaleState,
        log: FilteringBoundLogger,
        timeout_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.ref = ref
        self.state = state
        self.log = log
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.error: RestoreError | None = None
        self.completed = False

    def restore(self, deadline: Deadline) -> None:
        replicas = self.state.replicas
        self.log.info("restoring_replicas", replicas=replicas)
        try:
            deadline.check(f"scale {self.ref.resource_id} back to {replicas}")
        except DeadlineExceeded as error:
            raise ScaleWriteError(error_message(error)) from error
        self.api.set_scale(self.ref, replicas, request_timeout=deadline.request_timeout())
        self.log.info("restored_replicas", replicas=replicas)

    def __enter__(self) -> RestoreAction:
        return self

    def close(self) -> None:
        """Restore once; later calls do nothing. A failure is stored in ``error``."""
        if self.completed:
            return
        self.completed = True
        # Fresh deadline: an exhausted run budget must not prevent the restore.
        deadline = Deadline(self.timeout_seconds, clock=self.clock)
        try:
            self.restore(deadline)
        except ScaleWriteError as error:
            self.error = RestoreError(error.reason)
            self.log.error("restore_failed", stage="restore", error=str(self.error))

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> bool:
        self.close()
        return False


class QuiesceController:
    def __init__(
        self,
        api: KubernetesWorkloadApi,
        *,
        restore_timeout_seconds: float,
        wait_timeout_seconds: float,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.restore_timeout_seconds = restore_timeout_seconds
        self.wait_timeout_seconds = wait_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.clock = clock

    def quiesce(
        self,
        ref: WorkloadRef,
        *,
        wait_for_termination: bool,
        deadline: Deadline,
        log: FilteringBoundLogger,
    ) -> RestoreAction:
        """Scale ``ref`` to zero and return the action that undoes it.

        Raises ScaleReadError or ScaleWriteError when nothing was changed, in which
        case there is nothing to restore. Waiting for pods is best effort.
        """
        log.info("reading_replicas")
        _check_deadline(deadline, f"read replicas of {ref.resource_id}", ScaleReadError)
        state = self.api.get_scale(ref, request_timeout=deadline.request_timeout())
        log.info("read_replicas", replicas=state.replicas)
        if state.replicas == 0:
            log.warning("workload_already_scaled_down")

        log.info("scaling_down", replicas=0)
        _check_deadline(deadline, f"scale {ref.resource_id} to 0", ScaleWriteError)
        self.api.set_scale(ref, 0, request_timeout=deadline.request_timeout())
        log.info("scaled_down", replicas=0)

        action = RestoreAction(
            api=self.api,
            ref=ref,
            state=state,
            log=log,
            timeout_seconds=self.restore_timeout_seconds,
            clock=self.clock,
        )

        if wait_for_termination:
            wait_seconds = min(self.wait_timeout_seconds, deadline.remaining() * WAIT_BUDGET_SHARE)
            try:
                self.wait_for_termination(
                    ref,
                    state,
                    deadline=deadline.child(wait_seconds),
                    log=log,
                )
            except WaitTimeoutError as error:
                log.warning("wait_for_termination_failed", stage="wait", error=str(error))
            except Exception as error:  # pylint: disable=broad-except
                log.warning("wait_for_termination_failed", stage="wait", error=error_message(error))
            except BaseException:
                # Interrupted (SIGTERM, Ctrl-C) before the caller holds the action.
                action.close()
                raise

        return action

    def wait_for_termination(
        self,
        ref: WorkloadRef,
        state: ScaleState,
        *,
        deadline: Deadline,
        log: FilteringBoundLogger,
    ) -> None:
        log.info("waiting_for_pods_to_terminate")
        selector = self.resolve_pod_selector(ref, state, deadline=deadline, log=log)
        remaining_pods: list[str] | None = None
        while True:
            if deadline.expired:
                detail = f"{len(remaining_pods)} pod(s) left" if remaining_pods else "pod list unavailable"
                raise WaitTimeoutError(
                    f"pods matching '{selector}' did not terminate before the wait deadline ({detail})"
                )
            try:
                remaining_pods = self.api.list_pod_names(
                    ref.namespace,
                    selector,
                    request_timeout=deadline.request_timeout(),
                )
            except KubernetesLookupError as error:
                log.warning("pod_list_failed", error=error_message(error))
            else:
                if not remaining_pods:
                    log.info("pods_terminated")
                    return
                log.info("pods_still_running", count=len(remaining_pods))
            time.sleep(min(self.poll_interval_seconds, deadline.remaining()))

    def resolve_pod_selector(
        self,
        ref: WorkloadRef,
        state: ScaleState,
        *,
        deadline: Deadline,
        log: FilteringBoundLogger,
    ) -> str:
        log.info("resolving_pod_template_hash")
        template_hash: str | None = None
        try:
            _check_deadline(deadline, "resolve the pod selector", PodSelectorError)
            if ref.kind == KIND_REPLICASET:
                replica_set = self.api.read_replica_set(
                    ref.namespace,
                    ref.name,
                    request_timeout=deadline.request_timeout(),
                )
                template_hash = pod_template_hash(replica_set)
            else:
                replica_sets = self.api.list_replica_sets(ref.namespace, request_timeout=deadline.request_timeout())
                template_hash = find_pod_template_hash(replica_sets, ref)
        except KubernetesLookupError as error:
            log.warning("replica_set_lookup_failed", error=error_message(error))

        if template_hash:
            log.info("resolved_pod_template_hash", hash=template_hash)
            return f"{POD_TEMPLATE_HASH_LABEL}={template_hash}"
        if state.selector:
            log.info("using_scale_selector", selector=state.selector)
            return state.selector
        raise PodSelectorError(f"no pod-template-hash label or scale selector found for {ref.resource_id}")


def _check_deadline(deadline: Deadline, operation: str, error_type: type[BackupError]) -> None:
    try:
        deadline.check(operation)
    except DeadlineExceeded as error:
        raise error_type(error_message(error)) from error
