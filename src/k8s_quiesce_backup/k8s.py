from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .errors import ScaleReadError, ScaleWriteError
from .models import KIND_DEPLOYMENT, KIND_REPLICASET, KIND_STATEFULSET, ScaleState, WorkloadRef

POD_TEMPLATE_HASH_LABEL = "pod-template-hash"
REVISION_ANNOTATION = "deployment.kubernetes.io/revision"
T = TypeVar("T")

_SCALE_METHODS: dict[str, tuple[str, str]] = {
    KIND_DEPLOYMENT: ("read_namespaced_deployment_scale", "patch_namespaced_deployment_scale"),
    KIND_STATEFULSET: ("read_namespaced_stateful_set_scale", "patch_namespaced_stateful_set_scale"),
    KIND_REPLICASET: ("read_namespaced_replica_set_scale", "patch_namespaced_replica_set_scale"),
}


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api


class KubernetesLookupError(RuntimeError):
    """Raised when pods or ReplicaSets cannot be listed or read."""


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
    )


class KubernetesWorkloadApi:
    """Scale subresource, pod listing and ReplicaSet lookups for one cluster."""

    def __init__(self, clients: KubernetesClients) -> None:
        self.clients = clients

    def get_scale(self, ref: WorkloadRef, *, request_timeout: float) -> ScaleState:
        reader = getattr(self.clients.apps_api, _SCALE_METHODS[ref.kind][0])
        scale = _safe_kubernetes_call(
            operation=f"read scale of {ref.kind} '{ref.namespace}/{ref.name}'",
            hint="Check the resource exists and RBAC allows get on its scale subresource.",
            error_type=ScaleReadError,
            func=lambda: reader(name=ref.name, namespace=ref.namespace, _request_timeout=request_timeout),
        )
        replicas = scale.spec.replicas if scale.spec and scale.spec.replicas is not None else 0
        selector = scale.status.selector if scale.status and scale.status.selector else ""
        return ScaleState(replicas=int(replicas), selector=selector)

    def set_scale(self, ref: WorkloadRef, replicas: int, *, request_timeout: float) -> None:
        patcher = getattr(self.clients.apps_api, _SCALE_METHODS[ref.kind][1])
        _safe_kubernetes_call(
            operation=f"scale {ref.kind} '{ref.namespace}/{ref.name}' to {replicas}",
            hint="Check RBAC allows patch on the scale subresource.",
            error_type=ScaleWriteError,
            func=lambda: patcher(
                name=ref.name,
                namespace=ref.namespace,
                body={"spec": {"replicas": replicas}},
                _request_timeout=request_timeout,
            ),
        )

    def list_pod_names(self, namespace: str, label_selector: str, *, request_timeout: float) -> list[str]:
        pods = _safe_kubernetes_call(
            operation=f"list Pods in namespace '{namespace}' with selector '{label_selector}'",
            hint="Check RBAC allows list on pods.",
            error_type=KubernetesLookupError,
            func=lambda: self.clients.core_api.list_namespaced_pod(
                namespace=namespace,
                label_selector=label_selector,
                _request_timeout=request_timeout,
            ).items,
        )
        return sorted(pod.metadata.name for pod in pods if pod.metadata and pod.metadata.name)

    def list_replica_sets(self, namespace: str, *, request_timeout: float) -> list[client.V1ReplicaSet]:
        return _safe_kubernetes_call(
            operation=f"list ReplicaSets in namespace '{namespace}'",
            hint="Check RBAC allows list on replicasets.",
            error_type=KubernetesLookupError,
            func=lambda: self.clients.apps_api.list_namespaced_replica_set(
                namespace=namespace,
                _request_timeout=request_timeout,
            ).items,
        )

    def read_replica_set(self, namespace: str, name: str, *, request_timeout: float) -> client.V1ReplicaSet:
        return _safe_kubernetes_call(
            operation=f"read ReplicaSet '{namespace}/{name}'",
            hint="Check RBAC allows get on replicasets.",
            error_type=KubernetesLookupError,
            func=lambda: self.clients.apps_api.read_namespaced_replica_set(
                name=name,
                namespace=namespace,
                _request_timeout=request_timeout,
            ),
        )


def find_pod_template_hash(replica_sets: Iterable[client.V1ReplicaSet], ref: WorkloadRef) -> str | None:
    """Return the pod-template-hash of the newest ReplicaSet controlled by ``ref``.

    Old rollout revisions stay owned by a Deployment, so the highest revision
    annotation wins and creation time breaks ties. ``None`` when nothing matches.
    """
    owned = [replica_set for replica_set in replica_sets if _is_owned_by(replica_set, ref)]
    if not owned:
        return None
    newest = max(owned, key=_replica_set_generation_key)
    return pod_template_hash(newest)


def pod_template_hash(replica_set: client.V1ReplicaSet) -> str | None:
    labels = replica_set.metadata.labels if replica_set.metadata and replica_set.metadata.labels else {}
    return labels.get(POD_TEMPLATE_HASH_LABEL) or None


def _is_owned_by(replica_set: client.V1ReplicaSet, ref: WorkloadRef) -> bool:
    metadata = replica_set.metadata
    if metadata is None:
        return False
    if metadata.namespace and metadata.namespace != ref.namespace:
        return False
    return any(
        owner_ref.kind == ref.kind and owner_ref.name == ref.name
        for owner_ref in metadata.owner_references or []
    )


def _replica_set_generation_key(replica_set: client.V1ReplicaSet) -> tuple[int, float]:
    annotations = replica_set.metadata.annotations or {}
    try:
        revision = int(annotations.get(REVISION_ANNOTATION, 0))
    except (TypeError, ValueError):
        revision = 0
    created = replica_set.metadata.creation_timestamp
    return revision, created.timestamp() if isinstance(created, datetime) else 0.0


def _safe_kubernetes_call(
    *,
    operation: str,
    hint: str,
    error_type: type[Exception],
    func: Callable[[], T],
) -> T:
    try:
        return func()
    except ApiException as error:
        raise error_type(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            )
        ) from error
    except Exception as error:
        raise error_type(f"Kubernetes API call failed while trying to {operation}: {error}. {hint}") from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes API call failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
