from __future__ import annotations

from .config import (
    DEFAULT_ADMIN_NAMESPACE,
    DEFAULT_STORK_DEPLOYMENT_NAME,
    DEFAULT_STORK_POD_LABEL_KEY,
    DEFAULT_STORK_POD_LABEL_VALUE,
)
from .k8s import DEFAULT_REQUEST_TIMEOUT_SECONDS, KubernetesClients, list_pods, read_deployment
from .log import get_logger
from .models import ImageRegistryInfo

_logger = get_logger("lookup")


class DeploymentImageError(LookupError):
    """Raised when a deployment has no container image to inspect."""


class StorkNamespaceNotFoundError(LookupError):
    """Raised when no pod carrying the stork label reports a namespace."""


def split_image_registry(image: str) -> str:
    """Return the registry part of ``image``.

    Only ``<registry>/<repo>/<image>:<tag>`` is recognised. Repositories with
    nested paths yield an empty registry, as does ``<repo>/<image>:<tag>``.
    """
    fields = image.split("/")
    if len(fields) == 3:
        return fields[0]
    return ""


def get_image_registry_from_deployment(
    clients: KubernetesClients,
    name: str = DEFAULT_STORK_DEPLOYMENT_NAME,
    namespace: str = DEFAULT_ADMIN_NAMESPACE,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> ImageRegistryInfo:
    deployment = read_deployment(clients, name, namespace, request_timeout_seconds=request_timeout_seconds)
    pod_spec = deployment.spec.template.spec
    containers = pod_spec.containers or []
    if not containers:
        raise DeploymentImageError(f"Deployment {namespace}/{name} has no containers")

    registry = split_image_registry(containers[0].image or "")
    pull_secrets = pod_spec.image_pull_secrets or []
    pull_secret = (pull_secrets[0].name or "") if pull_secrets else ""
    return ImageRegistryInfo(registry=registry, pull_secret=pull_secret)


def get_stork_pod_namespace(
    clients: KubernetesClients,
    label_key: str = DEFAULT_STORK_POD_LABEL_KEY,
    label_value: str = DEFAULT_STORK_POD_LABEL_VALUE,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> str:
    pods = list_pods(clients, {label_key: label_value}, request_timeout_seconds=request_timeout_seconds)
    namespace = ""
    if pods and pods[0].metadata:
        namespace = pods[0].metadata.namespace or ""
    if not namespace:
        raise StorkNamespaceNotFoundError(f"stork namespace is empty: no pod matched {label_key}={label_value}")

    _logger.debug("stork_namespace_resolved", namespace=namespace, matches=len(pods))
    return namespace
