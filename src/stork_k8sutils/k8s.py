from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import tempfile
from typing import Any, Mapping

from kubernetes import client, config
from kubernetes.client import ApiException

from .models import CRD_SCHEMA_V1, CRD_SCHEMA_V1BETA1, CRD_SCHEMA_VERSIONS

APIEXTENSIONS_GROUP = "apiextensions.k8s.io"
CRD_PLURAL = "customresourcedefinitions"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20

_DEFAULT_KUBECONFIG_SOURCE = "default kubeconfig search path"
_AUTH_REMEDIATION = {
    True: "Ensure the pod has a mounted service account token and Kubernetes service host environment variables.",
    False: "Verify the kubeconfig path and context are valid.",
}


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api
    apiextensions_api: client.ApiextensionsV1Api
    custom_objects_api: client.CustomObjectsApi

    @classmethod
    def from_api_client(cls, api_client: client.ApiClient) -> KubernetesClients:
        return cls(
            api_client=api_client,
            core_api=client.CoreV1Api(api_client),
            apps_api=client.AppsV1Api(api_client),
            apiextensions_api=client.ApiextensionsV1Api(api_client),
            custom_objects_api=client.CustomObjectsApi(api_client),
        )


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class UnboundClaimError(RuntimeError):
    """Raised when a PVC does not reference an underlying volume."""

    def __init__(self, *, namespace: str, name: str) -> None:
        super().__init__(f"PVC: [{namespace}] {name} is not bound to a volume")
        self.namespace = namespace
        self.name = name


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, ApiException) and error.status == 404


def persist_kubeconfig_content(kubeconfig_content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        handle.write(kubeconfig_content)
        path = Path(handle.name)
    os.chmod(path, 0o600)
    return str(path)


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    """Load cluster credentials into the default client configuration.

    ``kubeconfig_path`` and ``context`` are ignored in in-cluster mode.
    """
    config_file = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=config_file, context=context)
    except Exception as error:  # pylint: disable=broad-except
        source = "in-cluster service account credentials" if in_cluster else _kubeconfig_source(config_file, context)
        raise KubernetesAuthenticationError(
            f"Kubernetes authentication setup failed while loading {source}: {_error_reason(error)}. "
            f"{_AUTH_REMEDIATION[in_cluster]}"
        ) from error

    return KubernetesClients.from_api_client(client.ApiClient())


def list_context_names(kubeconfig_path: str | None = None) -> list[str]:
    config_file = _expand_kubeconfig_path(kubeconfig_path)
    try:
        contexts, _ = config.list_kube_config_contexts(config_file=config_file)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            f"Unable to list kubeconfig contexts from '{config_file or _DEFAULT_KUBECONFIG_SOURCE}': "
            f"{_error_reason(error)}. Verify the kubeconfig path is readable and valid."
        ) from error
    return sorted(entry["name"] for entry in contexts or [])


def get_cluster_summary(clients: KubernetesClients) -> dict[str, int]:
    namespaces_count = len(clients.core_api.list_namespace().items)
    pvc_count = len(clients.core_api.list_persistent_volume_claim_for_all_namespaces().items)
    crd_count = len(clients.apiextensions_api.list_custom_resource_definition().items)
    return {
        "namespaces": namespaces_count,
        "persistent_volume_claims": pvc_count,
        "custom_resource_definitions": crd_count,
    }


def format_label_selector(match_labels: Mapping[str, str] | None) -> str:
    """Render exact key=value matches as a label selector string.

    An empty mapping renders as an empty selector, which matches every object.
    """
    if not match_labels:
        return ""
    return ",".join(f"{key}={value}" for key, value in match_labels.items())


def list_persistent_volume_claims(
    clients: KubernetesClients,
    namespace: str,
    match_labels: Mapping[str, str] | None,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[client.V1PersistentVolumeClaim]:
    return list(
        clients.core_api.list_namespaced_persistent_volume_claim(
            namespace=namespace,
            label_selector=format_label_selector(match_labels),
            _request_timeout=request_timeout_seconds,
        ).items
        or []
    )


def get_volume_for_persistent_volume_claim(
    clients: KubernetesClients,
    pvc: client.V1PersistentVolumeClaim,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> str:
    namespace = pvc.metadata.namespace or ""
    name = pvc.metadata.name or ""
    current = clients.core_api.read_namespaced_persistent_volume_claim(
        name=name,
        namespace=namespace,
        _request_timeout=request_timeout_seconds,
    )
    volume_name = current.spec.volume_name if current.spec else None
    if not volume_name:
        raise UnboundClaimError(namespace=namespace, name=name)
    return volume_name


def list_pods(
    clients: KubernetesClients,
    match_labels: Mapping[str, str] | None,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[client.V1Pod]:
    return list(
        clients.core_api.list_pod_for_all_namespaces(
            label_selector=format_label_selector(match_labels),
            _request_timeout=request_timeout_seconds,
        ).items
        or []
    )


def read_deployment(
    clients: KubernetesClients,
    name: str,
    namespace: str,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> client.V1Deployment:
    return clients.apps_api.read_namespaced_deployment(
        name=name,
        namespace=namespace,
        _request_timeout=request_timeout_seconds,
    )


def read_custom_resource_definition(
    clients: KubernetesClients,
    name: str,
    *,
    schema_version: str = CRD_SCHEMA_V1,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> Any:
    """Fetch a CRD through the apiextensions API version the cluster serves.

    v1 returns a ``V1CustomResourceDefinition``; v1beta1 has no typed API in
    the Python client and comes back as the decoded JSON dict.
    """
    if schema_version == CRD_SCHEMA_V1:
        return clients.apiextensions_api.read_custom_resource_definition(
            name=name,
            _request_timeout=request_timeout_seconds,
        )
    if schema_version == CRD_SCHEMA_V1BETA1:
        return clients.custom_objects_api.get_cluster_custom_object(
            group=APIEXTENSIONS_GROUP,
            version=CRD_SCHEMA_V1BETA1,
            plural=CRD_PLURAL,
            name=name,
            _request_timeout=request_timeout_seconds,
        )
    raise ValueError(
        f"Unsupported CRD schema version {schema_version!r}; expected one of {', '.join(CRD_SCHEMA_VERSIONS)}"
    )


def register_custom_resource_definition(
    clients: KubernetesClients,
    body: client.V1CustomResourceDefinition,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> client.V1CustomResourceDefinition:
    return clients.apiextensions_api.create_custom_resource_definition(
        body=body,
        _request_timeout=request_timeout_seconds,
    )


def format_api_exception(error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"API status {status} ({reason})"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    stripped = (kubeconfig_path or "").strip()
    return str(Path(stripped).expanduser()) if stripped else None


def _error_reason(error: Exception) -> str:
    return str(error).strip() or error.__class__.__name__


def _kubeconfig_source(config_file: str | None, context: str | None) -> str:
    source = f"kubeconfig from '{config_file or _DEFAULT_KUBECONFIG_SOURCE}'"
    if context:
        source += f" with context '{context}'"
    return source
