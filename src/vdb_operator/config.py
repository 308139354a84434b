"""Configuration management with validation.

Everything the operator needs at runtime comes from environment variables
and is validated once at startup, so a misconfigured pod fails fast instead
of half-reconciling resources.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 5
MIN_RECONCILE_INTERVAL_SECONDS = 1
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_WORKERS = 4
MIN_WORKERS = 1
MAX_WORKERS = 64

# Time a rollout may spend in the Deploying phase before it is declared stalled
DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS = 600

# How long create-service waits for the route controller to assign a host
DEFAULT_ROUTE_WAIT_TIMEOUT_SECONDS = 6

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 0.5
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 300

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
MAX_INLINE_DDL_BYTES = 512 * 1024

DEFAULT_OPERATOR_NAME = "teiid-operator"
DEFAULT_BUILDER_IMAGE = "registry.access.redhat.com/ubi8/openjdk-11:latest"

# Custom resource coordinates
CRD_GROUP = "teiid.io"
CRD_VERSION = "v1alpha1"
CRD_PLURAL = "virtualdatabases"
CRD_KIND = "VirtualDatabase"

VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Scope
    watch_namespace: str = ""
    operator_name: str = DEFAULT_OPERATOR_NAME
    operator_version: str = "dev"

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    deployment_timeout_seconds: int = DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS
    route_wait_timeout_seconds: float = DEFAULT_ROUTE_WAIT_TIMEOUT_SECONDS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS

    # Concurrency
    workers: int = DEFAULT_WORKERS

    # Build
    builder_image: str = DEFAULT_BUILDER_IMAGE

    # Features
    disable_cache_store: bool = False
    in_cluster: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.watch_namespace and not re.match(VALID_NAMESPACE_PATTERN, self.watch_namespace):
            errors.append(
                f"WATCH_NAMESPACE must be a valid namespace name: {self.watch_namespace}"
            )

        if not self.operator_name:
            errors.append("OPERATOR_NAME cannot be empty")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not (MIN_WORKERS <= self.workers <= MAX_WORKERS):
            errors.append(f"WORKERS must be between {MIN_WORKERS} and {MAX_WORKERS}")

        if self.deployment_timeout_seconds < self.reconcile_interval_seconds:
            errors.append("DEPLOYMENT_TIMEOUT must not be shorter than RECONCILE_INTERVAL")

        if self.route_wait_timeout_seconds <= 0:
            errors.append("ROUTE_WAIT_TIMEOUT must be positive")

        if self.retry_backoff_base_seconds <= 0:
            errors.append("RETRY_BACKOFF_BASE must be positive")
        elif self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX must be at least RETRY_BACKOFF_BASE")

        if not self.builder_image:
            errors.append("BUILDER_IMAGE cannot be empty")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def all_namespaces(self) -> bool:
        """True when the operator watches the whole cluster."""
        return not self.watch_namespace

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            WATCH_NAMESPACE: Namespace to watch (default: all namespaces)
            OPERATOR_NAME: Name used for ownership labels (default: teiid-operator)
            OPERATOR_VERSION: Version marker folded into spec digests (default: dev)
            RECONCILE_INTERVAL: Seconds between periodic passes (default: 5)
            DEPLOYMENT_TIMEOUT: Seconds a rollout may stay in Deploying (default: 600)
            ROUTE_WAIT_TIMEOUT: Seconds to wait for a route host (default: 6)
            RETRY_BACKOFF_BASE: Initial retry delay after a failed pass (default: 0.5)
            RETRY_BACKOFF_MAX: Upper bound for the retry delay (default: 300)
            WORKERS: Number of concurrent reconcile workers (default: 4)
            BUILDER_IMAGE: Base image for the builder build (default: ubi8 openjdk-11)
            DISABLE_ISPN_CACHING: If "true", skip cache store provisioning
            KUBECONFIG_IN_CLUSTER: If "false", load ~/.kube/config (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            watch_namespace=os.environ.get("WATCH_NAMESPACE", ""),
            operator_name=os.environ.get("OPERATOR_NAME", DEFAULT_OPERATOR_NAME),
            operator_version=os.environ.get("OPERATOR_VERSION", "dev"),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            deployment_timeout_seconds=get_int(
                "DEPLOYMENT_TIMEOUT", DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS
            ),
            route_wait_timeout_seconds=get_float(
                "ROUTE_WAIT_TIMEOUT", DEFAULT_ROUTE_WAIT_TIMEOUT_SECONDS
            ),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            workers=get_int("WORKERS", DEFAULT_WORKERS),
            builder_image=os.environ.get("BUILDER_IMAGE", DEFAULT_BUILDER_IMAGE),
            disable_cache_store=get_bool("DISABLE_ISPN_CACHING", False),
            in_cluster=get_bool("KUBECONFIG_IN_CLUSTER", True),
        )
