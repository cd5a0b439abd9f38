from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from conftest import replica_set
from k8s_quiesce_backup.errors import ScaleReadError, ScaleWriteError
from k8s_quiesce_backup.k8s import (
    KubernetesAuthenticationError,
    KubernetesClients,
    KubernetesLookupError,
    KubernetesWorkloadApi,
    find_pod_template_hash,
    load_kubernetes_clients,
    pod_template_hash,
)
from k8s_quiesce_backup.models import WorkloadRef


def _clients(*, core_api: Mock | None = None, apps_api: Mock | None = None) -> KubernetesClients:
    return KubernetesClients(
        api_client=Mock(),
        core_api=core_api or Mock(),
        apps_api=apps_api or Mock(),
    )


def _scale(*, replicas: int | None, selector: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(spec=SimpleNamespace(replicas=replicas), status=SimpleNamespace(selector=selector))


def _pod(name: str) -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name=name))


@pytest.mark.parametrize(
    ("kind", "reader"),
    [
        ("Deployment", "read_namespaced_deployment_scale"),
        ("StatefulSet", "read_namespaced_stateful_set_scale"),
        ("ReplicaSet", "read_namespaced_replica_set_scale"),
    ],
)
def test_get_scale_with_each_kind_reads_matching_scale_subresource(kind: str, reader: str) -> None:
    apps_api = Mock()
    getattr(apps_api, reader).return_value = _scale(replicas=3, selector="app=web")
    api = KubernetesWorkloadApi(_clients(apps_api=apps_api))

    state = api.get_scale(WorkloadRef(kind=kind, name="web", namespace="apps"), request_timeout=7.0)

    assert state.replicas == 3
    assert state.selector == "app=web"
    getattr(apps_api, reader).assert_called_once_with(name="web", namespace="apps", _request_timeout=7.0)


def test_get_scale_with_missing_replicas_and_selector_returns_zero_and_empty_selector() -> None:
    apps_api = Mock()
    apps_api.read_namespaced_deployment_scale.return_value = _scale(replicas=None, selector=None)
    api = KubernetesWorkloadApi(_clients(apps_api=apps_api))

    state = api.get_scale(WorkloadRef(kind="Deployment", name="web", namespace="apps"), request_timeout=1.0)

    assert state.replicas == 0
    assert state.selector == ""


def test_get_scale_with_api_exception_raises_scale_read_error_with_status() -> None:
    apps_api = Mock()
    apps_api.read_namespaced_deployment_scale.side_effect = ApiException(status=404, reason="Not Found")
    api = KubernetesWorkloadApi(_clients(apps_api=apps_api))

    with pytest.raises(ScaleReadError, match="API status 404") as error_info:
        api.get_scale(WorkloadRef(kind="Deployment", name="web", namespace="apps"), request_timeout=1.0)

    assert error_info.value.stage == "scale-read"
    assert "apps/web" in str(error_info.value)


@pytest.mark.parametrize(
    ("kind", "patcher"),
    [
        ("Deployment", "patch_namespaced_deployment_scale"),
        ("StatefulSet", "patch_namespaced_stateful_set_scale"),
        ("ReplicaSet", "patch_namespaced_replica_set_scale"),
    ],
)
def test_set_scale_with_each_kind_patches_replicas_on_scale_subresource(kind: str, patcher: str) -> None:
    apps_api = Mock()
    api = KubernetesWorkloadApi(_clients(apps_api=apps_api))

    api.set_scale(WorkloadRef(kind=kind, name="db", namespace="data"), 0, request_timeout=5.0)

    getattr(apps_api, patcher).assert_called_once_with(
        name="db",
        namespace="data",
        body={"spec": {"replicas": 0}},
        _request_timeout=5.0,
    )


def test_set_scale_with_forbidden_response_raises_scale_write_error() -> None:
    apps_api = Mock()
    apps_api.patch_namespaced_stateful_set_scale.side_effect = ApiException(status=403, reason="Forbidden")
    api = KubernetesWorkloadApi(_clients(apps_api=apps_api))

    with pytest.raises(ScaleWriteError, match=r"API status 403 \(Forbidden\)"):
        api.set_scale(WorkloadRef(kind="StatefulSet", name="db", namespace="data"), 2, request_timeout=5.0)


def test_set_scale_with_connection_failure_raises_scale_write_error() -> None:
    apps_api = Mock()
    apps_api.patch_namespaced_deployment_scale.side_effect = OSError("connection refused")
    api = KubernetesWorkloadApi(_clients(apps_api=apps_api))

    with pytest.raises(ScaleWriteError, match="connection refused"):
        api.set_scale(WorkloadRef(kind="Deployment", name="web", namespace="apps"), 1, request_timeout=5.0)


def test_list_pod_names_with_selector_returns_sorted_names() -> None:
    core_api = Mock()
    core_api.list_namespaced_pod.return_value = SimpleNamespace(items=[_pod("web-b"), _pod("web-a")])
    api = KubernetesWorkloadApi(_clients(core_api=core_api))

    names = api.list_pod_names("apps", "pod-template-hash=abc", request_timeout=3.0)

    assert names == ["web-a", "web-b"]
    core_api.list_namespaced_pod.assert_called_once_with(
        namespace="apps",
        label_selector="pod-template-hash=abc",
        _request_timeout=3.0,
    )


def test_list_replica_sets_with_api_exception_raises_lookup_error() -> None:
    apps_api = Mock()
    apps_api.list_namespaced_replica_set.side_effect = ApiException(status=500, reason="Internal Server Error")
    api = KubernetesWorkloadApi(_clients(apps_api=apps_api))

    with pytest.raises(KubernetesLookupError, match="list ReplicaSets in namespace 'apps'"):
        api.list_replica_sets("apps", request_timeout=1.0)


def test_read_replica_set_returns_object_from_apps_api() -> None:
    apps_api = Mock()
    expected = replica_set(name="web-abc")
    apps_api.read_namespaced_replica_set.return_value = expected
    api = KubernetesWorkloadApi(_clients(apps_api=apps_api))

    assert api.read_replica_set("apps", "web-abc", request_timeout=1.0) is expected


def test_find_pod_template_hash_with_several_revisions_returns_newest() -> None:
    replica_sets = [
        replica_set(name="web-old", template_hash="old111", revision="1"),
        replica_set(name="web-new", template_hash="new333", revision="3"),
        replica_set(name="web-mid", template_hash="mid222", revision="2"),
    ]

    template_hash = find_pod_template_hash(
        replica_sets,
        WorkloadRef(kind="Deployment", name="web", namespace="apps"),
    )

    assert template_hash == "new333"


def test_find_pod_template_hash_with_equal_revisions_prefers_latest_creation() -> None:
    replica_sets = [
        replica_set(name="web-a", template_hash="aaa", creation_timestamp=datetime(2026, 1, 2, tzinfo=UTC)),
        replica_set(name="web-b", template_hash="bbb", creation_timestamp=datetime(2026, 1, 1, tzinfo=UTC)),
    ]

    assert find_pod_template_hash(replica_sets, WorkloadRef("Deployment", "web", "apps")) == "aaa"


def test_find_pod_template_hash_ignores_replica_sets_of_other_owners_and_namespaces() -> None:
    replica_sets = [
        replica_set(name="api-1", owner_name="api", template_hash="api111", revision="9"),
        replica_set(name="web-1", owner_kind="StatefulSet", template_hash="sts111", revision="8"),
        replica_set(name="web-2", namespace="other", template_hash="other111", revision="7"),
        replica_set(name="web-3", template_hash="web111", revision="1"),
    ]

    assert find_pod_template_hash(replica_sets, WorkloadRef("Deployment", "web", "apps")) == "web111"


def test_find_pod_template_hash_without_owned_replica_set_returns_none() -> None:
    replica_sets = [replica_set(name="api-1", owner_name="api")]

    assert find_pod_template_hash(replica_sets, WorkloadRef("Deployment", "web", "apps")) is None
    assert find_pod_template_hash([], WorkloadRef("Deployment", "web", "apps")) is None


def test_pod_template_hash_without_label_returns_none() -> None:
    assert pod_template_hash(replica_set(name="web-1", template_hash=None)) is None


def test_load_kubernetes_clients_with_in_cluster_mode_uses_incluster_auth(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    load_incluster_config = Mock()
    load_kube_config = Mock()
    api_client = Mock()
    core_api = Mock()
    apps_api = Mock()

    monkeypatch.setattr("k8s_quiesce_backup.k8s.config.load_incluster_config", load_incluster_config)
    monkeypatch.setattr("k8s_quiesce_backup.k8s.config.load_kube_config", load_kube_config)
    monkeypatch.setattr("k8s_quiesce_backup.k8s.client.ApiClient", Mock(return_value=api_client))
    monkeypatch.setattr("k8s_quiesce_backup.k8s.client.CoreV1Api", Mock(return_value=core_api))
    monkeypatch.setattr("k8s_quiesce_backup.k8s.client.AppsV1Api", Mock(return_value=apps_api))

    clients = load_kubernetes_clients(kubeconfig_path=None, context=None, in_cluster=True)

    load_incluster_config.assert_called_once_with()
    load_kube_config.assert_not_called()
    assert clients.api_client is api_client
    assert clients.core_api is core_api
    assert clients.apps_api is apps_api


def test_load_kubernetes_clients_with_kubeconfig_mode_expands_path_and_context(monkeypatch: pytest.MonkeyPatch) -> None:
    load_incluster_config = Mock()
    load_kube_config = Mock()

    monkeypatch.setenv("HOME", "/tmp/backup-home")
    monkeypatch.setattr("k8s_quiesce_backup.k8s.config.load_incluster_config", load_incluster_config)
    monkeypatch.setattr("k8s_quiesce_backup.k8s.config.load_kube_config", load_kube_config)
    monkeypatch.setattr("k8s_quiesce_backup.k8s.client.ApiClient", Mock(return_value=Mock()))
    monkeypatch.setattr("k8s_quiesce_backup.k8s.client.CoreV1Api", Mock(return_value=Mock()))
    monkeypatch.setattr("k8s_quiesce_backup.k8s.client.AppsV1Api", Mock(return_value=Mock()))

    load_kubernetes_clients(kubeconfig_path="~/.kube/config", context="dev-cluster", in_cluster=False)

    load_incluster_config.assert_not_called()
    load_kube_config.assert_called_once_with(config_file="/tmp/backup-home/.kube/config", context="dev-cluster")


def test_load_kubernetes_clients_with_invalid_context_raises_authentication_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "k8s_quiesce_backup.k8s.config.load_kube_config",
        Mock(side_effect=RuntimeError("context does not exist")),
    )

    with pytest.raises(KubernetesAuthenticationError, match="context does not exist") as error_info:
        load_kubernetes_clients(kubeconfig_path="/etc/backup/config", context="missing", in_cluster=False)

    assert "with context 'missing'" in str(error_info.value)


def test_load_kubernetes_clients_without_service_account_raises_actionable_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "k8s_quiesce_backup.k8s.config.load_incluster_config",
        Mock(side_effect=RuntimeError("Service host/port is not set.")),
    )

    with pytest.raises(KubernetesAuthenticationError, match="mounted service account token"):
        load_kubernetes_clients(kubeconfig_path=None, context=None, in_cluster=True)
