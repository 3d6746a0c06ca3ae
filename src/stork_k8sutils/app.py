from __future__ import annotations

from pathlib import Path
import os

import streamlit as st
import yaml
from kubernetes.client import ApiException

from stork_k8sutils.config import AppConfig
from stork_k8sutils.crd import (
    CRDNameConflictError,
    CRDWaitTimeoutError,
    create_custom_resource_definition,
    wait_for_crd_established,
)
from stork_k8sutils.k8s import (
    KubernetesAuthenticationError,
    KubernetesClients,
    UnboundClaimError,
    format_api_exception,
    get_cluster_summary,
    list_context_names,
    load_kubernetes_clients,
    persist_kubeconfig_content,
)
from stork_k8sutils.log import get_logger, setup_logging
from stork_k8sutils.lookup import (
    DeploymentImageError,
    StorkNamespaceNotFoundError,
    get_image_registry_from_deployment,
    get_stork_pod_namespace,
)
from stork_k8sutils.models import (
    CRD_SCHEMA_V1,
    CRD_SCHEMA_V1BETA1,
    CRD_SCOPE_CLUSTER,
    CRD_SCOPE_NAMESPACED,
    ImageRegistryInfo,
    ResourceDescriptor,
)
from stork_k8sutils.snapshot import (
    NoGroupSnapshotCandidatesError,
    PendingClaimError,
    resolve_group_snapshot_volumes,
)

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_SERVICE_ACCOUNT_TOKEN_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"
_KUBECONFIG_LIST_KEYS = ("clusters", "contexts", "users")

_ERROR_HINTS: tuple[tuple[type[BaseException], str], ...] = (
    (
        CRDNameConflictError,
        "Another CRD already claims these names. Pick a different plural, kind, or short name.",
    ),
    (
        CRDWaitTimeoutError,
        "Confirm the CRD was created and check the apiextensions controller for delays.",
    ),
    (
        NoGroupSnapshotCandidatesError,
        "Check the namespace and that the label selector matches existing PVC labels exactly.",
    ),
    (
        PendingClaimError,
        "Wait for every selected PVC to bind before requesting the group snapshot.",
    ),
    (
        UnboundClaimError,
        "The PVC lost its volume reference. Inspect the claim and its PersistentVolume.",
    ),
    (
        DeploymentImageError,
        "Verify the deployment pod template defines at least one container.",
    ),
)

_logger = get_logger("app")


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "connection": {},
        "clients": None,
        "group_snapshot_volumes": [],
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _parse_match_labels(labels_input: str) -> dict[str, str]:
    labels: dict[str, str] = {}
    for raw_pair in labels_input.split(","):
        pair = raw_pair.strip()
        if not pair:
            continue
        key, separator, value = pair.partition("=")
        key = key.strip()
        if not separator or not key:
            raise ValueError(f"Label '{pair}' must use key=value form.")
        labels[key] = value.strip()
    return labels


def _parse_short_names(short_names_input: str) -> tuple[str, ...]:
    return tuple(name.strip() for name in short_names_input.split(",") if name.strip())


def _validate_descriptor_inputs(
    *,
    name_input: str,
    plural_input: str,
    kind_input: str,
    group_input: str,
    version_input: str,
) -> list[str]:
    errors: list[str] = []
    if not name_input.strip():
        errors.append("Singular name is required.")
    if not plural_input.strip():
        errors.append("Plural name is required.")
    if not kind_input.strip():
        errors.append("Kind is required.")
    if not group_input.strip():
        errors.append("API group is required.")
    elif "." not in group_input.strip():
        errors.append("API group must be a domain such as stork.libopenstorage.org.")
    if not version_input.strip():
        errors.append("Version is required.")
    return errors


def _build_descriptor(
    *,
    name_input: str,
    plural_input: str,
    kind_input: str,
    group_input: str,
    version_input: str,
    scope_label: str,
    short_names_input: str,
) -> ResourceDescriptor:
    return ResourceDescriptor(
        name=name_input.strip(),
        plural=plural_input.strip(),
        kind=kind_input.strip(),
        group=group_input.strip(),
        version=version_input.strip(),
        scope=CRD_SCOPE_CLUSTER if scope_label == CRD_SCOPE_CLUSTER else CRD_SCOPE_NAMESPACED,
        short_names=_parse_short_names(short_names_input),
    )


def _build_volume_rows(namespace: str, volumes: list[str]) -> list[dict[str, str]]:
    return [
        {"order": str(index), "namespace": namespace, "volume": volume}
        for index, volume in enumerate(volumes, start=1)
    ]


def _actionable_error_message(error: BaseException) -> str:
    if isinstance(error, ApiException):
        message = format_api_exception(error)
        if error.status == 409:
            return f"{message} | Next step: The object already exists; treat it as registered or delete it first."
        if error.status in {401, 403}:
            return f"{message} | Next step: Check RBAC for the connected identity."
        return f"{message} | Next step: Inspect API server reachability and logs."

    message = str(error).strip() or error.__class__.__name__
    for error_type, hint in _ERROR_HINTS:
        if isinstance(error, error_type):
            return f"{message} | Next step: {hint}"
    return f"{message} | Next step: Inspect application logs for more detail."


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return _validate_kubeconfig_path_input(kubeconfig_path_input)

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text = kubeconfig_text_input.strip()
        if not kubeconfig_text:
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(
            kubeconfig_content=kubeconfig_text,
            source_label="Pasted kubeconfig",
        )

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not _is_incluster_service_account_environment():
        return (
            "In-cluster service account mode requires Kubernetes pod environment variables and the "
            "service-account token mount."
        )

    return None


def _available_contexts_caption(kubeconfig_path_input: str) -> str:
    try:
        names = list_context_names(kubeconfig_path_input)
    except KubernetesAuthenticationError as error:
        return str(error)
    if not names:
        return "No contexts found in this kubeconfig."
    return f"Available contexts: {', '.join(names)}"


def _default_auth_mode() -> str:
    configured_default = os.getenv("STORK_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured_default in {"kubeconfig", "kubeconfig_path", "path"}:
        return _AUTH_MODE_USE_KUBECONFIG_PATH
    if configured_default in {"paste", "pasted", "kubeconfig_text"}:
        return _AUTH_MODE_PASTE_KUBECONFIG
    if configured_default in {"in-cluster", "in_cluster", "serviceaccount", "service-account"}:
        return _AUTH_MODE_IN_CLUSTER

    if _is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER

    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _is_incluster_service_account_environment() -> bool:
    if not os.getenv("KUBERNETES_SERVICE_HOST"):
        return False
    return Path(_SERVICE_ACCOUNT_TOKEN_PATH).exists()


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    if not kubeconfig_path_input.strip():
        return "Kubeconfig path is required when using kubeconfig path authentication."

    kubeconfig_file = Path(kubeconfig_path_input.strip()).expanduser()
    if not kubeconfig_file.is_file():
        if kubeconfig_file.exists():
            return f"Kubeconfig path must point to a file: {kubeconfig_file}"
        return f"Kubeconfig path does not exist: {kubeconfig_file}"

    try:
        kubeconfig_content = kubeconfig_file.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return f"Kubeconfig path must reference a UTF-8 text file: {kubeconfig_file}"
    except OSError as error:
        return f"Unable to read kubeconfig path {kubeconfig_file}: {error}"
    return _validate_kubeconfig_content(
        kubeconfig_content=kubeconfig_content,
        source_label=f"Kubeconfig file '{kubeconfig_file}'",
    )


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        document = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."
    if not isinstance(document, dict):
        return f"{source_label} must be a YAML mapping."

    missing = [key for key in ("apiVersion", *_KUBECONFIG_LIST_KEYS) if key not in document]
    if missing:
        return f"{source_label} is missing required field(s): {', '.join(missing)}."
    for key in _KUBECONFIG_LIST_KEYS:
        entries = document[key]
        if not isinstance(entries, list) or not entries:
            return f"{source_label} must include at least one '{key}' entry."
    return None


def _connect(
    *,
    auth_mode: str,
    context: str,
    kubeconfig_path_input: str,
    kubeconfig_text_input: str,
) -> KubernetesClients:
    """Build API clients for the selected authentication mode.

    Pasted kubeconfig content is written to a private temp file first because
    the client only loads kubeconfig from disk.
    """
    kubeconfig_path: str | None = None
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)
    return load_kubernetes_clients(
        kubeconfig_path=kubeconfig_path,
        context=context or None,
        in_cluster=auth_mode == _AUTH_MODE_IN_CLUSTER,
    )


def _reset_connection_state() -> None:
    st.session_state.connected = False
    st.session_state.clients = None
    st.session_state.connection = {}
    st.session_state.group_snapshot_volumes = []


def _render_connection_sidebar() -> None:
    sidebar = st.sidebar
    sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    auth_mode = sidebar.radio("Authentication", options=auth_options, index=auth_options.index(_default_auth_mode()))
    in_cluster = auth_mode == _AUTH_MODE_IN_CLUSTER
    context = sidebar.text_input(
        "Kubernetes context (optional)",
        value="",
        help="Ignored for in-cluster service account mode." if in_cluster else "Optional kubeconfig context override.",
    )

    kubeconfig_path_input = "~/.kube/config"
    kubeconfig_text_input = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = sidebar.text_input("Kubeconfig path", value=kubeconfig_path_input)
        sidebar.caption(_available_contexts_caption(kubeconfig_path_input))
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = sidebar.text_area("Kubeconfig content", height=220)

    connect_clicked = sidebar.button("Connect", type="primary")
    if sidebar.button("Disconnect"):
        _reset_connection_state()
        return
    if connect_clicked:
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
        )
        if connection_error:
            sidebar.error(connection_error)
            return
        _reset_connection_state()
        try:
            st.session_state.clients = _connect(
                auth_mode=auth_mode,
                context=context,
                kubeconfig_path_input=kubeconfig_path_input,
                kubeconfig_text_input=kubeconfig_text_input,
            )
        except Exception as error:  # pylint: disable=broad-except
            _logger.warning("connect_failed", auth_mode=auth_mode, error=str(error))
            st.error(f"Connection failed: {error}")
            return
        st.session_state.connected = True
        st.session_state.connection = {"auth_mode": auth_mode, "context": context or None, "in_cluster": in_cluster}
        st.success("Connected to Kubernetes cluster.")


def _render_crd_section(base_config: AppConfig) -> None:
    clients = st.session_state.clients
    st.subheader("Register Custom Resource Definition")
    columns = st.columns(3)
    name_input = columns[0].text_input("Singular name", value="")
    plural_input = columns[1].text_input("Plural name", value="")
    kind_input = columns[2].text_input("Kind", value="")
    columns = st.columns(3)
    group_input = columns[0].text_input("API group", value="stork.libopenstorage.org")
    version_input = columns[1].text_input("Version", value="v1alpha1")
    scope_label = columns[2].selectbox("Scope", options=[CRD_SCOPE_NAMESPACED, CRD_SCOPE_CLUSTER], index=0)
    short_names_input = st.text_input("Short names (comma-separated, optional)", value="")
    wait_after_create = st.checkbox("Wait for the CRD to become established", value=True)

    if st.button("Register CRD"):
        errors = _validate_descriptor_inputs(
            name_input=name_input,
            plural_input=plural_input,
            kind_input=kind_input,
            group_input=group_input,
            version_input=version_input,
        )
        if errors:
            for error in errors:
                st.error(error)
        else:
            descriptor = _build_descriptor(
                name_input=name_input,
                plural_input=plural_input,
                kind_input=kind_input,
                group_input=group_input,
                version_input=version_input,
                scope_label=scope_label,
                short_names_input=short_names_input,
            )
            try:
                create_custom_resource_definition(
                    clients,
                    descriptor,
                    request_timeout_seconds=base_config.request_timeout_seconds,
                )
                st.success(f"Submitted CRD {descriptor.crd_name}.")
                if wait_after_create:
                    with st.spinner(f"Waiting for {descriptor.crd_name} to become established..."):
                        wait_for_crd_established(
                            clients,
                            descriptor.crd_name,
                            settings=base_config.crd_wait_settings(),
                            request_timeout_seconds=base_config.request_timeout_seconds,
                        )
                    st.success(f"CRD {descriptor.crd_name} is established.")
            except Exception as error:  # pylint: disable=broad-except
                st.error(_actionable_error_message(error))

    st.subheader("CRD Readiness")
    crd_name_input = st.text_input("CRD name (<plural>.<group>)", value="")
    schema_version = st.selectbox("apiextensions version", options=[CRD_SCHEMA_V1, CRD_SCHEMA_V1BETA1], index=0)
    if st.button("Wait for Established"):
        if not crd_name_input.strip():
            st.warning("Enter a CRD name first.")
        else:
            settings = base_config.crd_wait_settings()
            with st.spinner(f"Polling every {settings.interval_seconds:g}s for up to {settings.timeout_seconds:g}s..."):
                try:
                    wait_for_crd_established(
                        clients,
                        crd_name_input.strip(),
                        schema_version=schema_version,
                        settings=settings,
                        request_timeout_seconds=base_config.request_timeout_seconds,
                    )
                    st.success(f"CRD {crd_name_input.strip()} is established.")
                except Exception as error:  # pylint: disable=broad-except
                    st.error(_actionable_error_message(error))


def _render_group_snapshot_section(base_config: AppConfig) -> None:
    st.subheader("Group Snapshot Preview")
    namespace_input = st.text_input("Namespace", value="default")
    labels_input = st.text_input("PVC labels (key=value, comma-separated)", value="")

    if st.button("Resolve volumes"):
        try:
            match_labels = _parse_match_labels(labels_input)
        except ValueError as error:
            st.error(str(error))
        else:
            try:
                st.session_state.group_snapshot_volumes = resolve_group_snapshot_volumes(
                    st.session_state.clients,
                    namespace_input.strip(),
                    match_labels,
                    request_timeout_seconds=base_config.request_timeout_seconds,
                )
            except Exception as error:  # pylint: disable=broad-except
                st.session_state.group_snapshot_volumes = []
                st.error(_actionable_error_message(error))

    volumes: list[str] = st.session_state.group_snapshot_volumes
    if volumes:
        st.dataframe(_build_volume_rows(namespace_input.strip(), volumes), use_container_width=True, hide_index=True)
    else:
        st.info("Resolve a label selector to preview the volumes a group snapshot would include.")


def _lookup_stork_metadata(clients: KubernetesClients, base_config: AppConfig) -> tuple[str, ImageRegistryInfo]:
    """Find where stork runs and which registry its deployment pulls from.

    Pod discovery wins; the configured admin namespace is used when no pod
    carries the stork label.
    """
    try:
        namespace = get_stork_pod_namespace(
            clients,
            base_config.stork_pod_label_key,
            base_config.stork_pod_label_value,
            request_timeout_seconds=base_config.request_timeout_seconds,
        )
    except StorkNamespaceNotFoundError as error:
        namespace = base_config.admin_namespace
        _logger.warning("stork_namespace_defaulted", namespace=namespace, error=str(error))

    registry_info = get_image_registry_from_deployment(
        clients,
        base_config.stork_deployment_name,
        namespace,
        request_timeout_seconds=base_config.request_timeout_seconds,
    )
    return namespace, registry_info


def _render_stork_section(base_config: AppConfig) -> None:
    st.subheader("Stork Deployment")
    if st.button("Look up stork metadata"):
        try:
            namespace, registry_info = _lookup_stork_metadata(st.session_state.clients, base_config)
        except Exception as error:  # pylint: disable=broad-except
            st.error(_actionable_error_message(error))
            return

        columns = st.columns(3)
        columns[0].metric("Namespace", namespace)
        columns[1].metric("Image registry", registry_info.registry or "default")
        columns[2].metric("Pull secret", registry_info.pull_secret or "none")


def main() -> None:
    st.set_page_config(page_title="Stork K8s Utils", layout="wide")
    _initialize_state()

    base_config = AppConfig()
    setup_logging(base_config.log_level)

    st.title("Stork K8s Utils")
    st.caption("Register CRDs, wait for them to become established, and preview group-snapshot volumes.")

    _render_connection_sidebar()
    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to start.")
        return

    summary = get_cluster_summary(st.session_state.clients)
    summary_columns = st.columns(3)
    summary_columns[0].metric("Namespaces", summary["namespaces"])
    summary_columns[1].metric("PVCs", summary["persistent_volume_claims"])
    summary_columns[2].metric("CRDs", summary["custom_resource_definitions"])

    _render_crd_section(base_config)
    _render_group_snapshot_section(base_config)
    _render_stork_section(base_config)


if __name__ == "__main__":
    main()
