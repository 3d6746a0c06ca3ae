from __future__ import annotations

from pathlib import Path
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from stork_k8sutils.app import (
    _AUTH_MODE_IN_CLUSTER,
    _AUTH_MODE_PASTE_KUBECONFIG,
    _AUTH_MODE_USE_KUBECONFIG_PATH,
    _actionable_error_message,
    _available_contexts_caption,
    _build_descriptor,
    _build_volume_rows,
    _connect,
    _default_auth_mode,
    _lookup_stork_metadata,
    _parse_match_labels,
    _validate_connection_inputs,
    _validate_descriptor_inputs,
)
from stork_k8sutils.config import AppConfig
from stork_k8sutils.crd import CRDNameConflictError, CRDWaitCancelledError, CRDWaitTimeoutError
from stork_k8sutils.k8s import KubernetesAuthenticationError
from stork_k8sutils.lookup import StorkNamespaceNotFoundError
from stork_k8sutils.models import ImageRegistryInfo, ResourceDescriptor
from stork_k8sutils.snapshot import PendingClaimError


def _valid_kubeconfig_content() -> str:
    return """
apiVersion: v1
clusters:
  - name: dev
    cluster:
      server: https://example.invalid
contexts:
  - name: dev
    context:
      cluster: dev
      user: dev
users:
  - name: dev
    user:
      token: abc
current-context: dev
"""


def test_parse_match_labels_with_spacing_and_trailing_comma_returns_exact_pairs() -> None:
    assert _parse_match_labels(" app = data , tier=db ,") == {"app": "data", "tier": "db"}


def test_parse_match_labels_with_blank_input_returns_empty_mapping() -> None:
    assert _parse_match_labels("  ") == {}


def test_parse_match_labels_with_missing_separator_raises_value_error() -> None:
    with pytest.raises(ValueError, match="Label 'app' must use key=value form."):
        _parse_match_labels("app")


def test_validate_descriptor_inputs_with_missing_values_returns_all_errors() -> None:
    errors = _validate_descriptor_inputs(
        name_input="",
        plural_input=" ",
        kind_input="",
        group_input="stork",
        version_input="",
    )

    assert errors == [
        "Singular name is required.",
        "Plural name is required.",
        "Kind is required.",
        "API group must be a domain such as stork.libopenstorage.org.",
        "Version is required.",
    ]


def test_build_descriptor_with_cluster_scope_and_short_names_strips_inputs() -> None:
    descriptor = _build_descriptor(
        name_input=" backuplocation ",
        plural_input="backuplocations",
        kind_input="BackupLocation",
        group_input="stork.libopenstorage.org",
        version_input="v1alpha1",
        scope_label="Cluster",
        short_names_input="bl, bkl ,",
    )

    assert descriptor == ResourceDescriptor(
        name="backuplocation",
        plural="backuplocations",
        kind="BackupLocation",
        group="stork.libopenstorage.org",
        version="v1alpha1",
        scope="Cluster",
        short_names=("bl", "bkl"),
    )
    assert descriptor.crd_name == "backuplocations.stork.libopenstorage.org"


def test_build_volume_rows_with_volumes_numbers_rows_in_order() -> None:
    rows = _build_volume_rows("ns1", ["vol-a", "vol-b"])

    assert rows == [
        {"order": "1", "namespace": "ns1", "volume": "vol-a"},
        {"order": "2", "namespace": "ns1", "volume": "vol-b"},
    ]


def test_actionable_error_message_with_conflict_api_exception_mentions_existing_object() -> None:
    message = _actionable_error_message(ApiException(status=409, reason="AlreadyExists"))

    assert message.startswith("API status 409 (AlreadyExists)")
    assert "already exists" in message


def test_actionable_error_message_with_forbidden_api_exception_mentions_rbac() -> None:
    message = _actionable_error_message(ApiException(status=403, reason="Forbidden"))

    assert "Check RBAC" in message


def test_actionable_error_message_with_known_errors_appends_specific_hints() -> None:
    conflict = _actionable_error_message(CRDNameConflictError(crd_name="rules.stork.libopenstorage.org", reason="PluralConflict"))
    timeout = _actionable_error_message(CRDWaitTimeoutError(crd_name="rules.stork.libopenstorage.org", timeout_seconds=60))
    pending = _actionable_error_message(PendingClaimError(namespace="ns1", name="pvc-b", phase="Pending"))

    assert conflict.startswith("name conflict: PluralConflict | Next step: Another CRD")
    assert "apiextensions controller" in timeout
    assert "Wait for every selected PVC to bind" in pending


def test_actionable_error_message_with_unknown_error_uses_generic_hint() -> None:
    message = _actionable_error_message(RuntimeError(""))

    assert message == "RuntimeError | Next step: Inspect application logs for more detail."


def test_actionable_error_message_with_cancelled_wait_uses_generic_hint() -> None:
    message = _actionable_error_message(CRDWaitCancelledError(crd_name="rules.stork.libopenstorage.org"))

    assert message == (
        "wait for CRD rules.stork.libopenstorage.org was cancelled | Next step: Inspect application logs for more detail."
    )


def test_available_contexts_caption_with_contexts_lists_names(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("stork_k8sutils.app.list_context_names", Mock(return_value=["alpha", "beta"]))

    assert _available_contexts_caption("~/.kube/config") == "Available contexts: alpha, beta"


def test_available_contexts_caption_with_unreadable_kubeconfig_returns_error_text(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "stork_k8sutils.app.list_context_names",
        Mock(side_effect=KubernetesAuthenticationError("Unable to list kubeconfig contexts")),
    )

    assert _available_contexts_caption("/missing") == "Unable to list kubeconfig contexts"


def test_validate_connection_inputs_with_pasted_mode_and_missing_content_returns_error() -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_PASTE_KUBECONFIG,
        kubeconfig_path_input="",
        kubeconfig_text_input="",
    )

    assert error == "Paste kubeconfig content before connecting."


def test_validate_connection_inputs_with_existing_kubeconfig_path_returns_none(tmp_path: Path) -> None:
    kubeconfig_path = tmp_path / "config"
    kubeconfig_path.write_text(_valid_kubeconfig_content())

    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_USE_KUBECONFIG_PATH,
        kubeconfig_path_input=str(kubeconfig_path),
        kubeconfig_text_input="",
    )

    assert error is None


def test_validate_connection_inputs_with_kubeconfig_path_directory_returns_error(tmp_path: Path) -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_USE_KUBECONFIG_PATH,
        kubeconfig_path_input=str(tmp_path),
        kubeconfig_text_input="",
    )

    assert error == f"Kubeconfig path must point to a file: {tmp_path}"


def test_validate_connection_inputs_with_pasted_invalid_yaml_returns_error() -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_PASTE_KUBECONFIG,
        kubeconfig_path_input="",
        kubeconfig_text_input="apiVersion: v1\nclusters: [",
    )

    assert error == "Pasted kubeconfig must be valid YAML: ParserError."


def test_validate_connection_inputs_with_pasted_missing_contexts_returns_error() -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_PASTE_KUBECONFIG,
        kubeconfig_path_input="",
        kubeconfig_text_input="""
apiVersion: v1
clusters: []
users: []
""",
    )

    assert error == "Pasted kubeconfig is missing required field(s): contexts."


def test_validate_connection_inputs_with_incluster_mode_without_pod_environment_returns_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.setattr("stork_k8sutils.app.Path.exists", lambda self: False)

    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_IN_CLUSTER,
        kubeconfig_path_input="",
        kubeconfig_text_input="",
    )

    assert "In-cluster service account mode requires Kubernetes pod environment variables" in str(error)


def test_default_auth_mode_prefers_env_override_then_incluster_detection(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("STORK_DEFAULT_AUTH_MODE", raising=False)
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.setattr("stork_k8sutils.app.Path.exists", lambda self: False)
    assert _default_auth_mode() == _AUTH_MODE_USE_KUBECONFIG_PATH

    monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.96.0.1")
    monkeypatch.setattr(
        "stork_k8sutils.app.Path.exists",
        lambda self: str(self) == "/var/run/secrets/kubernetes.io/serviceaccount/token",
    )
    assert _default_auth_mode() == _AUTH_MODE_IN_CLUSTER

    monkeypatch.setenv("STORK_DEFAULT_AUTH_MODE", "paste")
    assert _default_auth_mode() == _AUTH_MODE_PASTE_KUBECONFIG


def _stork_config() -> AppConfig:
    return AppConfig(
        stork_deployment_name="stork",
        admin_namespace="portworx",
        stork_pod_label_key="name",
        stork_pod_label_value="stork",
        request_timeout_seconds=7,
    )


def test_lookup_stork_metadata_with_labelled_pod_uses_discovered_namespace(monkeypatch: pytest.MonkeyPatch) -> None:
    clients = Mock()
    get_namespace = Mock(return_value="stork-system")
    get_registry = Mock(return_value=ImageRegistryInfo(registry="docker.io", pull_secret="regcred"))
    monkeypatch.setattr("stork_k8sutils.app.get_stork_pod_namespace", get_namespace)
    monkeypatch.setattr("stork_k8sutils.app.get_image_registry_from_deployment", get_registry)

    namespace, registry_info = _lookup_stork_metadata(clients, _stork_config())

    assert namespace == "stork-system"
    assert registry_info == ImageRegistryInfo(registry="docker.io", pull_secret="regcred")
    get_namespace.assert_called_once_with(clients, "name", "stork", request_timeout_seconds=7)
    get_registry.assert_called_once_with(clients, "stork", "stork-system", request_timeout_seconds=7)


def test_lookup_stork_metadata_without_labelled_pod_falls_back_to_admin_namespace(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    clients = Mock()
    get_registry = Mock(return_value=ImageRegistryInfo(registry="", pull_secret=""))
    monkeypatch.setattr(
        "stork_k8sutils.app.get_stork_pod_namespace",
        Mock(side_effect=StorkNamespaceNotFoundError("stork namespace is empty: no pod matched name=stork")),
    )
    monkeypatch.setattr("stork_k8sutils.app.get_image_registry_from_deployment", get_registry)

    namespace, _ = _lookup_stork_metadata(clients, _stork_config())

    assert namespace == "portworx"
    get_registry.assert_called_once_with(clients, "stork", "portworx", request_timeout_seconds=7)


def test_lookup_stork_metadata_with_pod_list_error_propagates(monkeypatch: pytest.MonkeyPatch) -> None:
    get_registry = Mock()
    monkeypatch.setattr(
        "stork_k8sutils.app.get_stork_pod_namespace",
        Mock(side_effect=ApiException(status=403, reason="Forbidden")),
    )
    monkeypatch.setattr("stork_k8sutils.app.get_image_registry_from_deployment", get_registry)

    with pytest.raises(ApiException):
        _lookup_stork_metadata(Mock(), _stork_config())

    get_registry.assert_not_called()


def test_connect_with_pasted_kubeconfig_persists_content_before_loading(monkeypatch: pytest.MonkeyPatch) -> None:
    persist = Mock(return_value="/tmp/pasted.yaml")
    load_clients = Mock()
    monkeypatch.setattr("stork_k8sutils.app.persist_kubeconfig_content", persist)
    monkeypatch.setattr("stork_k8sutils.app.load_kubernetes_clients", load_clients)

    clients = _connect(
        auth_mode=_AUTH_MODE_PASTE_KUBECONFIG,
        context="",
        kubeconfig_path_input="~/.kube/config",
        kubeconfig_text_input=_valid_kubeconfig_content(),
    )

    assert clients is load_clients.return_value
    persist.assert_called_once_with(_valid_kubeconfig_content())
    load_clients.assert_called_once_with(kubeconfig_path="/tmp/pasted.yaml", context=None, in_cluster=False)


def test_connect_with_incluster_mode_skips_kubeconfig_path(monkeypatch: pytest.MonkeyPatch) -> None:
    load_clients = Mock()
    monkeypatch.setattr("stork_k8sutils.app.load_kubernetes_clients", load_clients)

    _connect(
        auth_mode=_AUTH_MODE_IN_CLUSTER,
        context="dev",
        kubeconfig_path_input="~/.kube/config",
        kubeconfig_text_input="",
    )

    load_clients.assert_called_once_with(kubeconfig_path=None, context="dev", in_cluster=True)
