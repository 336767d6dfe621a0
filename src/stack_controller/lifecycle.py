"""Finalizers, status writes and deletion ordering.

Every write to a Stack goes through with_optimistic_retry: the object is
re-read, mutated and written, and a version conflict restarts the cycle with
exponential backoff. Nothing here holds a lock; the API server's
resourceVersion check is the only concurrency control.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from .config import (
    CONFLICT_RETRY_BASE_SECONDS,
    CONFLICT_RETRY_FACTOR,
    CONFLICT_RETRY_JITTER,
    CONFLICT_RETRY_STEPS,
    DEFAULT_DELETION_WAIT_SECONDS,
    DELETION_POLL_INTERVAL_SECONDS,
    STACK_FINALIZER,
    VISIBILITY_POLL_INTERVAL_SECONDS,
    VISIBILITY_WAIT_SECONDS,
)
from .errors import (
    ConflictError,
    DeletionTimeoutError,
    NotFoundError,
    PersistenceConflictError,
    StatusUpdateError,
    StoreError,
)
from .events import EventRecorder, StackEvent
from .models import FAILED_STATE, Stack, StackStatus
from .store import StackStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def now() -> datetime:
    """Current time at the second precision Kubernetes timestamps carry."""
    return datetime.now(UTC).replace(microsecond=0)


async def with_optimistic_retry(
    read: Callable[[], Awaitable[T]],
    mutate: Callable[[T], bool | None],
    write: Callable[[T], Awaitable[T]],
    steps: int = CONFLICT_RETRY_STEPS,
    base_delay: float = CONFLICT_RETRY_BASE_SECONDS,
) -> T:
    """Read, mutate and write an object, retrying on version conflicts.

    Args:
        read: Fetches the latest version of the object.
        mutate: Applies the change in place. Returning False means the
            object already has the desired state and no write is needed.
        write: Persists the object; raises ConflictError on a stale version.
        steps: Total number of attempts.
        base_delay: Delay before the first retry. Multiplied by 5 each retry,
            with up to 10% jitter.

    Returns:
        The written (or already up-to-date) object.

    Raises:
        PersistenceConflictError: If every attempt conflicted.
    """
    delay = base_delay
    last_conflict: ConflictError | None = None
    for attempt in range(steps):
        obj = await read()
        if mutate(obj) is False:
            return obj
        try:
            return await write(obj)
        except ConflictError as e:
            last_conflict = e
            if attempt == steps - 1:
                break
            logger.debug("Write conflict, retrying", extra={"attempt": attempt + 1, "delay": delay})
            await asyncio.sleep(delay * (1 + random.random() * CONFLICT_RETRY_JITTER))
            delay *= CONFLICT_RETRY_FACTOR
    raise PersistenceConflictError(
        f"giving up after {steps} conflicting writes: {last_conflict}"
    ) from last_conflict


class LifecycleManager:
    """Stack lifecycle operations against a store.

    Args:
        store: Resource store.
        recorder: Event sink.
        deletion_wait_seconds: Bound on waiting for a finalized Stack to vanish.
        visibility_wait_seconds: Bound on waiting for a write to become readable.
    """

    def __init__(
        self,
        store: StackStore,
        recorder: EventRecorder,
        deletion_wait_seconds: float = DEFAULT_DELETION_WAIT_SECONDS,
        visibility_wait_seconds: float = VISIBILITY_WAIT_SECONDS,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._deletion_wait_seconds = deletion_wait_seconds
        self._visibility_wait_seconds = visibility_wait_seconds

    def _reader(self, stack: Stack) -> Callable[[], Awaitable[Stack]]:
        return lambda: self._store.get_stack(stack.namespace, stack.name)

    async def add_finalizer(self, stack: Stack) -> Stack:
        logger.debug("Adding finalizer", extra={"stack": stack.key})

        def mutate(latest: Stack) -> bool:
            if STACK_FINALIZER in latest.metadata.finalizers:
                return False
            latest.metadata.finalizers.append(STACK_FINALIZER)
            return True

        return await with_optimistic_retry(self._reader(stack), mutate, self._store.update_stack)

    async def remove_finalizer(self, stack: Stack) -> Stack:
        logger.debug("Removing finalizer", extra={"stack": stack.key})

        def mutate(latest: Stack) -> bool:
            if STACK_FINALIZER not in latest.metadata.finalizers:
                return False
            latest.metadata.finalizers = [
                f for f in latest.metadata.finalizers if f != STACK_FINALIZER
            ]
            return True

        return await with_optimistic_retry(self._reader(stack), mutate, self._store.update_stack)

    async def remove_finalizer_from_object(self, namespace: str, name: str) -> dict[str, Any]:
        """Remove the finalizer working on the raw object.

        Used for Stacks whose spec no longer parses, so their deletion is not
        blocked by a finalizer nobody can release.
        """
        logger.debug("Removing finalizer from raw object", extra={"stack": f"{namespace}/{name}"})

        def mutate(obj: dict[str, Any]) -> bool:
            metadata = obj.setdefault("metadata", {})
            finalizers = metadata.get("finalizers") or []
            if STACK_FINALIZER not in finalizers:
                return False
            metadata["finalizers"] = [f for f in finalizers if f != STACK_FINALIZER]
            return True

        return await with_optimistic_retry(
            lambda: self._store.get_stack_object(namespace, name),
            mutate,
            self._store.update_stack_object,
        )

    async def update_status(self, stack: Stack, mutate: Callable[[StackStatus], None]) -> Stack:
        """Apply a mutation to the latest status and persist it."""

        def apply(latest: Stack) -> None:
            mutate(latest.status)

        return await with_optimistic_retry(
            self._reader(stack), apply, self._store.update_stack_status
        )

    async def set_permalink(self, stack: Stack, permalink: str | None) -> Stack:
        def mutate(status: StackStatus) -> None:
            status.ensure_last_update().permalink = permalink

        return await self.update_status(stack, mutate)

    async def mark_failed(
        self,
        stack: Stack,
        error: Exception,
        commit: str,
        permalink: str | None = None,
    ) -> None:
        """Record a failed update in events and status.

        Raises:
            StatusUpdateError: If the failure status cannot be persisted.
        """
        await self._recorder.record(stack, StackEvent.UPDATE_FAILURE, f"Failed to update Stack: {error}.")
        logger.error(
            "Failed to update Stack",
            extra={"stack": stack.key, "stack_name": stack.spec.stack, "error": str(error)},
        )

        def mutate(status: StackStatus) -> None:
            last_update = status.ensure_last_update()
            last_update.state = FAILED_STATE
            last_update.last_attempted_commit = commit
            last_update.permalink = permalink
            last_update.last_resync_time = now()

        try:
            await self.update_status(stack, mutate)
        except StoreError as e:
            logger.error(
                "Failed to update status for a failed Stack update",
                extra={"stack": stack.key, "error": str(e)},
            )
            raise StatusUpdateError(error, e) from e

    async def wait_for_deletion(self, namespace: str, name: str, timeout: float | None = None) -> None:
        """Poll until the Stack is gone from the store.

        Raises:
            DeletionTimeoutError: If the Stack is still present after timeout.
        """
        timeout = self._deletion_wait_seconds if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                await self._store.get_stack_object(namespace, name)
            except NotFoundError:
                return
            if loop.time() >= deadline:
                raise DeletionTimeoutError(
                    f"Stack {namespace}/{name} still present {timeout}s after its finalizer was removed"
                )
            await asyncio.sleep(DELETION_POLL_INTERVAL_SECONDS)

    async def wait_until_visible(
        self,
        stack: Stack,
        predicate: Callable[[Stack], bool],
        timeout: float | None = None,
    ) -> Stack:
        """Poll until a read of the Stack satisfies predicate.

        Returns the latest read either way; a timeout is logged, not raised,
        since later writes re-read and retry on conflict anyway.
        """
        timeout = self._visibility_wait_seconds if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            latest = await self._store.get_stack(stack.namespace, stack.name)
            if predicate(latest):
                return latest
            if loop.time() >= deadline:
                logger.warning(
                    "Write not yet visible, continuing with latest read",
                    extra={"stack": stack.key, "timeout": timeout},
                )
                return latest
            await asyncio.sleep(VISIBILITY_POLL_INTERVAL_SECONDS)
