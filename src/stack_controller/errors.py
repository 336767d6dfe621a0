"""Error hierarchy for the Stack controller.

Every failure a reconciliation pass can hit maps to one of these classes so
the reconciler can decide, per class, whether to emit an event, write a
failure status, requeue with backoff, or stop.
"""

from __future__ import annotations


class StackControllerError(Exception):
    """Base class for all controller errors."""

    pass


# =============================================================================
# Validation
# =============================================================================


class StackValidationError(StackControllerError):
    """Raised when a Stack spec is structurally invalid.

    Examples: both or neither source descriptor set, a git source without a
    branch or commit, a gitAuth block naming no authentication method.
    """

    pass


class DuplicateConfigKeyError(StackValidationError):
    """Raised when the same config key is supplied by more than one source."""

    def __init__(self, keys: list[str]) -> None:
        self.keys = sorted(keys)
        super().__init__(
            f"config keys supplied by more than one of config/configRefs/secrets/secretsRef: "
            f"{self.keys}"
        )


# =============================================================================
# Reference resolution
# =============================================================================


class ResolutionError(StackControllerError):
    """Raised when a ResourceRef cannot be resolved.

    Attributes:
        name: Logical name of the reference (config key, env var, auth field).
        reason: Why resolution failed.
    """

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"resolving {name!r}: {reason}")


# =============================================================================
# Child processes
# =============================================================================


class CommandError(StackControllerError):
    """Raised when a child process cannot be started or exits non-zero.

    Attributes:
        title: Human-readable name of the command.
        returncode: Exit status, or None if the process never started or its
            output could not be read.
        stderr: Captured standard error, already redacted.
    """

    def __init__(self, title: str, returncode: int | None, stderr: str = "") -> None:
        self.title = title
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        if returncode is None:
            super().__init__(f"{title}: failed to run: {detail}")
        else:
            super().__init__(f"{title}: exited with status {returncode}: {detail}")


# =============================================================================
# Source acquisition
# =============================================================================


class SourceAcquisitionError(StackControllerError):
    """Raised when the program source cannot be fetched or unpacked."""

    pass


class GitAuthError(SourceAcquisitionError):
    """Raised when git credentials cannot be assembled."""

    pass


class ChecksumMismatchError(SourceAcquisitionError):
    """Raised when a downloaded artifact does not match its declared checksum."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"computed checksum of artifact {actual!r} does not match checksum recorded {expected!r}"
        )


class UnsafeArchiveError(SourceAcquisitionError):
    """Raised when an artifact tarball contains an entry that could escape its root."""

    pass


# =============================================================================
# Automation engine
# =============================================================================


class AutomationError(StackControllerError):
    """Raised when an automation engine operation fails."""

    pass


# =============================================================================
# Resource store
# =============================================================================


class StoreError(StackControllerError):
    """Base class for resource store failures."""

    pass


class NotFoundError(StoreError):
    """Raised when the requested object does not exist in the store."""

    pass


class ConflictError(StoreError):
    """Raised when a write is rejected because the object changed since it was read."""

    pass


class PersistenceConflictError(StoreError):
    """Raised when optimistic-concurrency retries are exhausted."""

    pass


class StatusUpdateError(StackControllerError):
    """Raised when recording a failed update in status itself fails.

    Carries both the original failure and the persistence failure.
    """

    def __init__(self, original: Exception, persist_error: Exception) -> None:
        self.original = original
        self.persist_error = persist_error
        super().__init__(
            f"failed to update status for a failed Stack update: {persist_error}: {original}"
        )


class DeletionTimeoutError(StackControllerError):
    """Raised when a finalized Stack does not disappear from the store in time."""

    pass
