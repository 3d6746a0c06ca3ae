from __future__ import annotations

from typing import Mapping

from kubernetes import client

from .k8s import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    KubernetesClients,
    get_volume_for_persistent_volume_claim,
    list_persistent_volume_claims,
)
from .log import get_logger
from .models import PVC_PHASE_PENDING

_logger = get_logger("snapshot")


class GroupSnapshotValidationError(ValueError):
    """Raised when a PVC candidate set cannot be used for a group snapshot."""


class NoGroupSnapshotCandidatesError(GroupSnapshotValidationError):
    def __init__(self, *, namespace: str, match_labels: Mapping[str, str]) -> None:
        super().__init__(
            f"found no PVCs for group snapshot with given label selectors: {dict(match_labels)} "
            f"in namespace {namespace}"
        )
        self.namespace = namespace
        self.match_labels = dict(match_labels)


class PendingClaimError(GroupSnapshotValidationError):
    def __init__(self, *, namespace: str, name: str, phase: str) -> None:
        super().__init__(
            f"PVC: [{namespace}] {name} is still in {phase} phase. "
            "Group snapshot will trigger after all PVCs are bound"
        )
        self.namespace = namespace
        self.name = name
        self.phase = phase


def get_pvcs_for_group_snapshot(
    clients: KubernetesClients,
    namespace: str,
    match_labels: Mapping[str, str],
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[client.V1PersistentVolumeClaim]:
    """Return the PVCs in ``namespace`` matching ``match_labels``.

    The set must be non-empty and no member may still be Pending.
    """
    pvcs = list_persistent_volume_claims(
        clients,
        namespace,
        match_labels,
        request_timeout_seconds=request_timeout_seconds,
    )
    if not pvcs:
        raise NoGroupSnapshotCandidatesError(namespace=namespace, match_labels=match_labels)

    for pvc in pvcs:
        phase = pvc.status.phase if pvc.status and pvc.status.phase else ""
        if phase == PVC_PHASE_PENDING:
            pvc_namespace = pvc.metadata.namespace or namespace
            _logger.info(
                "group_snapshot_pending_claim",
                namespace=pvc_namespace,
                pvc=pvc.metadata.name,
                candidates=len(pvcs),
            )
            raise PendingClaimError(namespace=pvc_namespace, name=pvc.metadata.name or "", phase=phase)

    _logger.debug("group_snapshot_candidates", namespace=namespace, candidates=len(pvcs))
    return pvcs


def resolve_group_snapshot_volumes(
    clients: KubernetesClients,
    namespace: str,
    match_labels: Mapping[str, str],
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[str]:
    """Map the group-snapshot PVCs to their volume names, in listing order."""
    pvcs = get_pvcs_for_group_snapshot(
        clients,
        namespace,
        match_labels,
        request_timeout_seconds=request_timeout_seconds,
    )

    volume_names: list[str] = []
    for pvc in pvcs:
        volume_names.append(
            get_volume_for_persistent_volume_claim(clients, pvc, request_timeout_seconds=request_timeout_seconds)
        )

    _logger.info("group_snapshot_resolved", namespace=namespace, volumes=len(volume_names))
    return volume_names
