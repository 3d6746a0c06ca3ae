from __future__ import annotations

from dataclasses import dataclass, field
import os

from .models import CRDWaitSettings

DEFAULT_STORK_DEPLOYMENT_NAME = "stork"
DEFAULT_ADMIN_NAMESPACE = "kube-system"
DEFAULT_STORK_POD_LABEL_KEY = "name"
DEFAULT_STORK_POD_LABEL_VALUE = "stork"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"{name} must be a number, got {raw!r}") from error


def _env_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as error:
        raise ValueError(f"{name} must be a whole number of seconds, got {raw!r}") from error
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class AppConfig:
    crd_timeout_seconds: float = field(default_factory=lambda: _env_float("STORK_CRD_TIMEOUT_SECONDS", 60.0))
    crd_retry_interval_seconds: float = field(
        default_factory=lambda: _env_float("STORK_CRD_RETRY_INTERVAL_SECONDS", 5.0)
    )
    stork_deployment_name: str = field(
        default_factory=lambda: _env_str("STORK_DEPLOYMENT_NAME", DEFAULT_STORK_DEPLOYMENT_NAME)
    )
    admin_namespace: str = field(default_factory=lambda: _env_str("STORK_ADMIN_NAMESPACE", DEFAULT_ADMIN_NAMESPACE))
    stork_pod_label_key: str = field(
        default_factory=lambda: _env_str("STORK_POD_LABEL_KEY", DEFAULT_STORK_POD_LABEL_KEY)
    )
    stork_pod_label_value: str = field(
        default_factory=lambda: _env_str("STORK_POD_LABEL_VALUE", DEFAULT_STORK_POD_LABEL_VALUE)
    )
    request_timeout_seconds: int = field(
        default_factory=lambda: _env_positive_int("STORK_REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT_SECONDS)
    )
    log_level: str = field(default_factory=lambda: _env_str("STORK_LOG_LEVEL", "info"))

    def __post_init__(self) -> None:
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")

    def crd_wait_settings(self) -> CRDWaitSettings:
        return CRDWaitSettings(
            timeout_seconds=self.crd_timeout_seconds,
            interval_seconds=self.crd_retry_interval_seconds,
        )
