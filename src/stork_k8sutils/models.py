from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

CRD_SCOPE_NAMESPACED = "Namespaced"
CRD_SCOPE_CLUSTER = "Cluster"

CRD_SCHEMA_V1 = "v1"
CRD_SCHEMA_V1BETA1 = "v1beta1"
CRD_SCHEMA_VERSIONS = (CRD_SCHEMA_V1, CRD_SCHEMA_V1BETA1)

CONDITION_ESTABLISHED = "Established"
CONDITION_NAMES_ACCEPTED = "NamesAccepted"
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

PVC_PHASE_PENDING = "Pending"


@dataclass(frozen=True)
class ResourceDescriptor:
    """Declarative description of a custom resource to register."""

    name: str
    plural: str
    kind: str
    group: str
    version: str
    scope: str = CRD_SCOPE_NAMESPACED
    short_names: tuple[str, ...] = ()

    @property
    def crd_name(self) -> str:
        return f"{self.plural}.{self.group}"


@dataclass(frozen=True)
class CRDCondition:
    type: str
    status: str
    reason: str | None = None


class CRDWaitState(str, Enum):
    PENDING = "Pending"
    ESTABLISHED = "Established"
    NAME_CONFLICT = "NameConflict"
    TIMED_OUT = "TimedOut"


@dataclass(frozen=True)
class CRDWaitSettings:
    timeout_seconds: float = 60.0
    interval_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")


@dataclass(frozen=True)
class ImageRegistryInfo:
    registry: str
    pull_secret: str
