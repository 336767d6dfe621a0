"""Configuration management with validation.

Operator-wide settings are read once from the environment at startup and
validated at construction time, so a misconfigured controller fails fast
instead of misbehaving halfway through a reconciliation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Custom resource coordinates
STACK_GROUP = "pulumi.com"
STACK_VERSION = "v1"
STACK_PLURAL = "stacks"
STACK_KIND = "Stack"

# Marker preventing Stack deletion until the backing infrastructure is cleaned up
STACK_FINALIZER = "finalizer.stack.pulumi.com"

# Reported to the automation engine and on emitted events
CONTROLLER_NAME = "stack-controller"
CONTROLLER_VERSION = "0.1.0"
USER_AGENT = f"pulumi-kubernetes-operator/{CONTROLLER_VERSION}"

# Worker pool bounds
DEFAULT_MAX_CONCURRENT_RECONCILES = 10
MAX_CONCURRENT_RECONCILES_LIMIT = 100

# Timing
DEFAULT_DELETION_WAIT_SECONDS = 5.0
DELETION_POLL_INTERVAL_SECONDS = 0.01
DEFAULT_UPDATE_RETRY_SECONDS = 5.0
VISIBILITY_WAIT_SECONDS = 2.0
VISIBILITY_POLL_INTERVAL_SECONDS = 0.1
DEFAULT_ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS = 300.0

# Resync scheduling
MIN_RESYNC_FREQUENCY_SECONDS = 60
DEFAULT_RESYNC_FREQUENCY_SECONDS = 60

# Optimistic concurrency retry (mirrors client-go's retry.DefaultBackoff)
CONFLICT_RETRY_STEPS = 5
CONFLICT_RETRY_BASE_SECONDS = 0.01
CONFLICT_RETRY_FACTOR = 5.0
CONFLICT_RETRY_JITTER = 0.1

# Size limits
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max Stack manifest
MAX_ARTIFACT_SIZE_BYTES = 512 * 1024 * 1024  # 512MB max source tarball

# Placeholder persisted in status for secret stack outputs
SECRET_OUTPUT_SENTINEL = "[secret]"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Worker pool
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    # Restrict the watch to one namespace; None watches the whole cluster
    watch_namespace: str | None = None

    # Timing
    deletion_wait_seconds: float = DEFAULT_DELETION_WAIT_SECONDS
    update_retry_seconds: float = DEFAULT_UPDATE_RETRY_SECONDS
    artifact_download_timeout_seconds: float = DEFAULT_ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS

    # Behavior
    add_known_hosts: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES_LIMIT):
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and "
                f"{MAX_CONCURRENT_RECONCILES_LIMIT}: {self.max_concurrent_reconciles}"
            )

        if self.watch_namespace is not None and not self.watch_namespace.strip():
            errors.append("WATCH_NAMESPACE must not be blank when set")

        if self.deletion_wait_seconds <= 0:
            errors.append("DELETION_WAIT_SECONDS must be positive")

        if self.update_retry_seconds <= 0:
            errors.append("UPDATE_RETRY_SECONDS must be positive")

        if self.artifact_download_timeout_seconds <= 0:
            errors.append("ARTIFACT_DOWNLOAD_TIMEOUT must be positive")

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            MAX_CONCURRENT_RECONCILES: Parallel reconciliation workers (default: 10)
            WATCH_NAMESPACE: Only watch Stacks in this namespace (default: all)
            DELETION_WAIT_SECONDS: Bound on waiting for a finalized Stack to vanish (default: 5)
            UPDATE_RETRY_SECONDS: Requeue delay after an update conflict or
                missing backend stack (default: 5)
            ARTIFACT_DOWNLOAD_TIMEOUT: Source artifact download timeout in seconds (default: 300)
            ADD_KNOWN_HOSTS: Scan SSH host keys before cloning over SSH (default: true)
            LOG_LEVEL: Root log level (default: INFO)
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
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            watch_namespace=os.environ.get("WATCH_NAMESPACE") or None,
            deletion_wait_seconds=get_float("DELETION_WAIT_SECONDS", DEFAULT_DELETION_WAIT_SECONDS),
            update_retry_seconds=get_float("UPDATE_RETRY_SECONDS", DEFAULT_UPDATE_RETRY_SECONDS),
            artifact_download_timeout_seconds=get_float(
                "ARTIFACT_DOWNLOAD_TIMEOUT", DEFAULT_ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS
            ),
            add_known_hosts=get_bool("ADD_KNOWN_HOSTS", True),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
