"""CRD registration and readiness waiting.

A CRD is created once with :func:`create_custom_resource_definition` and the
caller then blocks on :func:`wait_for_crd_established` until the API server
reports the ``Established`` condition. The wait is a single poller that works
over both apiextensions schema versions; only the condition extraction
differs between them.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Iterable, Protocol

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    KubernetesClients,
    is_not_found,
    read_custom_resource_definition,
    register_custom_resource_definition,
)
from .log import get_logger
from .models import (
    CONDITION_ESTABLISHED,
    CONDITION_FALSE,
    CONDITION_NAMES_ACCEPTED,
    CONDITION_TRUE,
    CRD_SCHEMA_V1,
    CRD_SCHEMA_V1BETA1,
    CRD_SCOPE_CLUSTER,
    CRD_SCOPE_NAMESPACED,
    CRDCondition,
    CRDWaitSettings,
    CRDWaitState,
    ResourceDescriptor,
)

_logger = get_logger("crd")

ConditionExtractor = Callable[[Any], list[CRDCondition]]


class CRDNameConflictError(RuntimeError):
    state = CRDWaitState.NAME_CONFLICT

    def __init__(self, *, crd_name: str, reason: str | None) -> None:
        super().__init__(f"name conflict: {reason or 'no reason provided'}")
        self.crd_name = crd_name
        self.reason = reason


class CRDWaitTimeoutError(TimeoutError):
    state = CRDWaitState.TIMED_OUT

    def __init__(self, *, crd_name: str, timeout_seconds: float) -> None:
        super().__init__(f"CRD {crd_name} was not established within {timeout_seconds:g}s")
        self.crd_name = crd_name
        self.timeout_seconds = timeout_seconds


class CRDWaitCancelledError(RuntimeError):
    def __init__(self, *, crd_name: str) -> None:
        super().__init__(f"wait for CRD {crd_name} was cancelled")
        self.crd_name = crd_name


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def wait(self, seconds: float, cancel_event: threading.Event | None) -> bool:
        """Sleep for ``seconds``; return True if ``cancel_event`` fired first."""
        ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    def wait(self, seconds: float, cancel_event: threading.Event | None) -> bool:
        if cancel_event is not None:
            return cancel_event.wait(seconds)
        time.sleep(seconds)
        return False


def build_custom_resource_definition(descriptor: ResourceDescriptor) -> client.V1CustomResourceDefinition:
    return client.V1CustomResourceDefinition(
        api_version="apiextensions.k8s.io/v1",
        kind="CustomResourceDefinition",
        metadata=client.V1ObjectMeta(name=descriptor.crd_name),
        spec=client.V1CustomResourceDefinitionSpec(
            group=descriptor.group,
            versions=[
                client.V1CustomResourceDefinitionVersion(
                    name=descriptor.version,
                    served=True,
                    storage=True,
                    schema=client.V1CustomResourceValidation(
                        # Unknown fields are kept instead of pruned.
                        open_apiv3_schema=client.V1JSONSchemaProps(x_kubernetes_preserve_unknown_fields=True),
                    ),
                )
            ],
            scope=_resolve_scope(descriptor.scope),
            names=client.V1CustomResourceDefinitionNames(
                singular=descriptor.name,
                plural=descriptor.plural,
                kind=descriptor.kind,
                short_names=list(descriptor.short_names) or None,
            ),
        ),
    )


def create_custom_resource_definition(
    clients: KubernetesClients,
    descriptor: ResourceDescriptor,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> None:
    """Submit a CRD built from ``descriptor``.

    An existing CRD surfaces as the API's 409 ``ApiException``; treating that as
    success is up to the caller.
    """
    body = build_custom_resource_definition(descriptor)
    register_custom_resource_definition(clients, body, request_timeout_seconds=request_timeout_seconds)
    _logger.info(
        "crd_registered",
        crd=descriptor.crd_name,
        version=descriptor.version,
        scope=body.spec.scope,
    )


def evaluate_crd_conditions(conditions: Iterable[CRDCondition]) -> tuple[CRDWaitState, CRDCondition | None]:
    for condition in conditions:
        if condition.type == CONDITION_ESTABLISHED and condition.status == CONDITION_TRUE:
            return CRDWaitState.ESTABLISHED, condition
        if condition.type == CONDITION_NAMES_ACCEPTED and condition.status == CONDITION_FALSE:
            return CRDWaitState.NAME_CONFLICT, condition
    return CRDWaitState.PENDING, None


def poll_crd_established(
    *,
    crd_name: str,
    fetch: Callable[[], Any | None],
    extract_conditions: ConditionExtractor,
    settings: CRDWaitSettings,
    clock: Clock,
    cancel_event: threading.Event | None = None,
) -> CRDWaitState:
    """Poll ``fetch`` until the CRD is established, conflicting, or out of time.

    ``fetch`` returns None while the CRD is not visible yet. The first fetch
    happens immediately and every sleep is clamped to the remaining window.
    """
    deadline = clock.monotonic() + settings.timeout_seconds
    attempt = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise CRDWaitCancelledError(crd_name=crd_name)

        attempt += 1
        crd = fetch()
        condition: CRDCondition | None = None
        state = CRDWaitState.PENDING
        if crd is not None:
            state, condition = evaluate_crd_conditions(extract_conditions(crd))
        _logger.debug("crd_poll", crd=crd_name, attempt=attempt, visible=crd is not None, state=state.value)

        if state is CRDWaitState.ESTABLISHED:
            _logger.info("crd_established", crd=crd_name, attempts=attempt)
            return state
        if state is CRDWaitState.NAME_CONFLICT:
            reason = condition.reason if condition else None
            _logger.error("crd_name_conflict", crd=crd_name, reason=reason)
            raise CRDNameConflictError(crd_name=crd_name, reason=reason)

        remaining = deadline - clock.monotonic()
        if remaining <= 0:
            _logger.warning("crd_wait_timeout", crd=crd_name, attempts=attempt, timeout=settings.timeout_seconds)
            raise CRDWaitTimeoutError(crd_name=crd_name, timeout_seconds=settings.timeout_seconds)
        if clock.wait(min(settings.interval_seconds, remaining), cancel_event):
            raise CRDWaitCancelledError(crd_name=crd_name)


def wait_for_crd_established(
    clients: KubernetesClients,
    crd_name: str,
    *,
    schema_version: str = CRD_SCHEMA_V1,
    settings: CRDWaitSettings | None = None,
    clock: Clock | None = None,
    cancel_event: threading.Event | None = None,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> CRDWaitState:
    extract_conditions = _CONDITION_EXTRACTORS.get(schema_version)
    if extract_conditions is None:
        raise ValueError(
            f"Unsupported CRD schema version {schema_version!r}; expected one of {', '.join(_CONDITION_EXTRACTORS)}"
        )

    def fetch() -> Any | None:
        try:
            return read_custom_resource_definition(
                clients,
                crd_name,
                schema_version=schema_version,
                request_timeout_seconds=request_timeout_seconds,
            )
        except ApiException as error:
            if is_not_found(error):
                return None
            raise

    return poll_crd_established(
        crd_name=crd_name,
        fetch=fetch,
        extract_conditions=extract_conditions,
        settings=settings or CRDWaitSettings(),
        clock=clock or SystemClock(),
        cancel_event=cancel_event,
    )


def _v1_conditions(crd: client.V1CustomResourceDefinition) -> list[CRDCondition]:
    status = crd.status
    if status is None or not status.conditions:
        return []
    return [
        CRDCondition(type=condition.type, status=condition.status, reason=condition.reason)
        for condition in status.conditions
    ]


def _v1beta1_conditions(crd: dict[str, Any]) -> list[CRDCondition]:
    status = crd.get("status") or {}
    return [
        CRDCondition(
            type=str(condition.get("type", "")),
            status=str(condition.get("status", "")),
            reason=condition.get("reason"),
        )
        for condition in status.get("conditions") or []
    ]


_CONDITION_EXTRACTORS: dict[str, ConditionExtractor] = {
    CRD_SCHEMA_V1: _v1_conditions,
    CRD_SCHEMA_V1BETA1: _v1beta1_conditions,
}


def _resolve_scope(scope: str) -> str:
    if scope == CRD_SCOPE_CLUSTER:
        return CRD_SCOPE_CLUSTER
    if scope != CRD_SCOPE_NAMESPACED:
        # TODO: reject unknown scopes once callers are audited for typos.
        _logger.warning("crd_scope_defaulted", requested_scope=scope, scope=CRD_SCOPE_NAMESPACED)
    return CRD_SCOPE_NAMESPACED
