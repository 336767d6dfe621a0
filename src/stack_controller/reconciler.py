"""Core reconciliation loop for Stack resources.

One call to StackReconciler.reconcile runs a single pass for one Stack:
1. Fetch the Stack and validate its source descriptor
2. Acquire the program source into a temporary workspace
3. Select or create the engine stack and apply its configuration
4. Finalize (destroy, release finalizer) if the Stack is being deleted
5. Skip when a tracked branch has not moved since the last success
6. Refresh (optional), update, and record outputs and status

The returned ReconcileResult tells the work queue what to do next: forget
the key, requeue it after a delay, or retry with backoff when error is set.

Every abort path either emits an event, writes a failure status, or both.
The only silent no-ops are "Stack already gone" and "revision unchanged".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .artifact import ArtifactSource
from .automation import (
    AutomationDriver,
    DriverFactory,
    UpdateOutcome,
    convert_outputs,
    install_project_dependencies,
    pulumi_driver_factory,
)
from .config import Config
from .errors import (
    AutomationError,
    DeletionTimeoutError,
    GitAuthError,
    NotFoundError,
    PersistenceConflictError,
    ResolutionError,
    SourceAcquisitionError,
    StackValidationError,
    StatusUpdateError,
    StoreError,
)
from .events import EventRecorder, StackEvent
from .lifecycle import LifecycleManager, now
from .models import (
    SUCCEEDED_STATE,
    InlineGitRepo,
    SourceReference,
    Stack,
    StackStatus,
    StackUpdateState,
    select_source,
)
from .resolver import assemble_config, masked
from .scheduler import next_resync_delay, should_skip_for_unchanged_revision
from .session import ReconcileSession
from .source import GitSource, SourceProvider
from .store import StackStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    namespace: str
    name: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    requeue_after: float | None = None
    error: Exception | None = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None


class StackReconciler:
    """Reconciles Stack resources against the automation engine.

    The store, event recorder and driver factory are injected so the same
    control loop runs against a cluster in production and against in-memory
    fakes in tests.
    """

    def __init__(
        self,
        config: Config,
        store: StackStore,
        recorder: EventRecorder,
        driver_factory: DriverFactory = pulumi_driver_factory,
    ) -> None:
        self._config = config
        self._store = store
        self._recorder = recorder
        self._driver_factory = driver_factory
        self._lifecycle = LifecycleManager(
            store,
            recorder,
            deletion_wait_seconds=config.deletion_wait_seconds,
        )

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Run one reconciliation pass for the Stack namespace/name."""
        result = ReconcileResult(namespace=namespace, name=name)
        logger.info("Reconciling Stack", extra={"stack": result.key})

        try:
            result.requeue_after = await self._reconcile(namespace, name)
        except StackValidationError as e:
            logger.warning("Invalid Stack configuration", extra={"stack": result.key, "error": str(e)})
            result.error = e
        except GitAuthError as e:
            logger.error("Failed to setup git authentication", extra={"stack": result.key, "error": str(e)})
            result.error = e
        except ResolutionError as e:
            logger.error(
                "Failed to resolve reference",
                extra={"stack": result.key, "ref": e.name, "error": e.reason},
            )
            result.error = e
        except SourceAcquisitionError as e:
            logger.error("Failed to acquire program source", extra={"stack": result.key, "error": str(e)})
            result.error = e
        except AutomationError as e:
            logger.error("Automation engine error", extra={"stack": result.key, "error": str(e)})
            result.error = e
        except StatusUpdateError as e:
            logger.error("Failed to record failure status", extra={"stack": result.key, "error": str(e)})
            result.error = e
        except DeletionTimeoutError as e:
            logger.warning("Timed out waiting for Stack deletion", extra={"stack": result.key})
            result.error = e
        except PersistenceConflictError as e:
            logger.warning("Gave up writing Stack after conflicts", extra={"stack": result.key, "error": str(e)})
            result.error = e
        except StoreError as e:
            logger.error("Resource store error", extra={"stack": result.key, "error": str(e)})
            result.error = e
        except Exception as e:
            logger.exception("Unexpected error during reconciliation", extra={"stack": result.key})
            result.error = e

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _reconcile(self, namespace: str, name: str) -> float | None:
        try:
            obj = await self._store.get_stack_object(namespace, name)
        except NotFoundError:
            logger.info(
                "Stack resource not found. Ignoring since object must be deleted.",
                extra={"stack": f"{namespace}/{name}"},
            )
            return None

        try:
            stack = Stack.from_object(obj)
            deleting = stack.is_being_deleted
            source = select_source(stack.spec, deleting=deleting)
        except StackValidationError as e:
            return await self._handle_invalid(obj, e)

        async with ReconcileSession.for_stack(stack, self._store) as session:
            revision = await self._acquire(session, source)
            driver = await self._ensure_stack(session)
            await self._inject_extra_env(session, driver, revision)

            if deleting:
                if stack.has_finalizer:
                    await self._finalize(session, driver)
                return None

            if not stack.has_finalizer:
                await self._add_finalizer(stack, driver)

            success_requeue: float | None = None
            if isinstance(source, InlineGitRepo):
                delay = next_resync_delay(
                    source.track_branch,
                    source.continue_resync_on_commit_match,
                    stack.spec.resync_frequency_seconds,
                )
                last_update = stack.status.last_update
                if source.track_branch and last_update is not None:
                    logger.info("Checking current HEAD commit hash", extra={"stack": stack.key, "commit": revision})
                    if should_skip_for_unchanged_revision(
                        source.track_branch,
                        revision,
                        last_update.last_successful_commit,
                        source.continue_resync_on_commit_match,
                    ):
                        logger.info(
                            "Commit hash unchanged. Will poll again.",
                            extra={"stack": stack.key, "poll_seconds": delay},
                        )
                        return delay
                    if last_update.last_successful_commit != revision:
                        await self._recorder.record(
                            stack, StackEvent.UPDATE_DETECTED, f"New commit detected: {revision!r}."
                        )
                        logger.info(
                            "New commit hash found",
                            extra={
                                "stack": stack.key,
                                "commit": revision,
                                "last_commit": last_update.last_successful_commit,
                            },
                        )
                success_requeue = delay

            return await self._update(stack, driver, revision, success_requeue)

    async def _handle_invalid(self, obj: dict[str, Any], error: StackValidationError) -> None:
        """Report a Stack that fails validation, releasing its finalizer if it is being deleted."""
        stack = Stack.identity_of(obj)
        await self._recorder.record(stack, StackEvent.CONFIG_INVALID, str(error))
        if not stack.is_being_deleted:
            logger.info("Stack configuration invalid, not requeueing", extra={"stack": stack.key, "error": str(error)})
            return None
        if not stack.has_finalizer:
            return None
        if (obj.get("spec") or {}).get("destroyOnFinalize") is True:
            # Destroying needs the program source, so the finalizer must stay
            raise error
        logger.info("Releasing finalizer of Stack with invalid configuration", extra={"stack": stack.key})
        await self._lifecycle.remove_finalizer_from_object(stack.namespace, stack.name)
        await self._lifecycle.wait_for_deletion(stack.namespace, stack.name)
        return None

    async def _acquire(self, session: ReconcileSession, source: InlineGitRepo | SourceReference) -> str:
        """Fetch the program source and create the session's driver."""
        provider: SourceProvider
        match source:
            case InlineGitRepo():
                provider = GitSource(source, add_known_hosts=self._config.add_known_hosts)
            case SourceReference():
                provider = ArtifactSource(
                    source, timeout_seconds=self._config.artifact_download_timeout_seconds
                )

        stack = session.stack
        try:
            work_dir, revision = await provider.acquire(session)
        except (GitAuthError, StackValidationError) as e:
            await self._recorder.record(
                stack, StackEvent.GIT_AUTH_FAILURE, f"Failed to setup git authentication: {e}"
            )
            raise
        except (SourceAcquisitionError, ResolutionError, StoreError) as e:
            await self._recorder.record(
                stack, StackEvent.INITIALIZATION_FAILURE, f"Failed to initialize stack: {e}"
            )
            raise

        session.driver = self._driver_factory(
            stack.spec.stack, work_dir, session.env, stack.spec.secrets_provider
        )
        return revision

    async def _ensure_stack(self, session: ReconcileSession) -> AutomationDriver:
        """Select the engine stack, write its settings and config, install dependencies."""
        driver = session.driver
        assert driver is not None and session.work_dir is not None
        spec = session.spec
        try:
            await driver.ensure_stack(select_only=spec.use_local_stack_only)
            initial = await driver.get_all_config()
            logger.debug("Initial stack config", extra={"stack": session.stack.key, "config": masked(initial)})

            await driver.ensure_stack_settings(spec.secrets_provider)

            config = await assemble_config(spec, session.resolver)
            await driver.set_all_config(config)
            logger.debug("Updated stack config", extra={"stack": session.stack.key, "config": masked(config)})

            runtime, options = await driver.project_runtime()
            await install_project_dependencies(runtime, options, session.work_dir, driver.env)
        except (AutomationError, ResolutionError, StackValidationError, StoreError) as e:
            await self._recorder.record(
                session.stack, StackEvent.INITIALIZATION_FAILURE, f"Failed to initialize stack: {e}"
            )
            raise
        return driver

    async def _inject_extra_env(
        self, session: ReconcileSession, driver: AutomationDriver, revision: str
    ) -> None:
        """Load the legacy envs ConfigMaps and envSecrets Secrets into the workspace."""
        stack = session.stack
        spec = session.spec
        lookups = [("ConfigMap", name, self._store.get_config_map) for name in spec.envs]
        lookups += [("Secret", name, self._store.get_secret) for name in spec.env_secrets]

        for kind, name, fetch in lookups:
            try:
                data = dict(await fetch(session.namespace, name))
            except StoreError as e:
                if isinstance(e, NotFoundError):
                    error = ResolutionError(name, f"could not find {kind} {session.namespace}/{name}")
                else:
                    error = ResolutionError(name, str(e))
                await self._lifecycle.mark_failed(stack, error, revision)
                raise error from e

            env: dict[str, str] = {}
            for key, value in data.items():
                if key in spec.env_refs:
                    logger.warning(
                        "Ignoring legacy env var already set by envRefs",
                        extra={"stack": stack.key, "env_var": key, "source": f"{kind}/{name}"},
                    )
                    continue
                env[key] = value
            driver.set_env_vars(env)
            session.env.update(env)

    async def _finalize(self, session: ReconcileSession, driver: AutomationDriver) -> None:
        stack = session.stack
        logger.info("Finalizing the stack", extra={"stack": stack.key})
        if session.spec.destroy_on_finalize:
            await driver.destroy()
            await driver.remove_stack()
        logger.info("Successfully finalized stack", extra={"stack": stack.key})

        await self._lifecycle.remove_finalizer(stack)
        await self._lifecycle.wait_for_deletion(stack.namespace, stack.name)

    async def _add_finalizer(self, stack: Stack, driver: AutomationDriver) -> None:
        await self._lifecycle.add_finalizer(stack)
        await self._lifecycle.wait_until_visible(stack, lambda latest: latest.has_finalizer)
        try:
            url = await driver.info_url()
        except AutomationError as e:
            await self._recorder.record(
                stack, StackEvent.INITIALIZATION_FAILURE, f"Failed to initialize stack: {e}"
            )
            raise
        await self._lifecycle.set_permalink(stack, url)
        logger.debug("Updated Stack with default permalink", extra={"stack": stack.key, "permalink": url})

    async def _update(
        self,
        stack: Stack,
        driver: AutomationDriver,
        revision: str,
        success_requeue: float | None,
    ) -> float | None:
        spec = stack.spec
        retry_seconds = self._config.update_retry_seconds

        if spec.refresh:
            try:
                permalink = await driver.refresh(spec.expect_no_refresh_changes)
            except AutomationError as e:
                await self._lifecycle.mark_failed(stack, e, revision)
                raise
            await self._lifecycle.set_permalink(stack, permalink)
            logger.info("Successfully refreshed Stack", extra={"stack": stack.key})

        result = await driver.up()
        match result.outcome:
            case UpdateOutcome.CONFLICT:
                await self._recorder.record(
                    stack,
                    StackEvent.UPDATE_CONFLICT_DETECTED,
                    "Conflict with another concurrent update. If Stack CR specifies "
                    "'retryOnUpdateConflict' a retry will trigger automatically.",
                )
                if spec.retry_on_update_conflict:
                    logger.warning(
                        "Conflict with another concurrent update -- will retry shortly",
                        extra={"stack": stack.key, "retry_seconds": retry_seconds},
                    )
                    return retry_seconds
                logger.warning("Conflict with another concurrent update -- NOT retrying", extra={"stack": stack.key})
                return None
            case UpdateOutcome.NOT_FOUND:
                await self._recorder.record(stack, StackEvent.NOT_FOUND, "Stack not found. Will retry.")
                logger.warning(
                    "Stack not found -- will retry shortly",
                    extra={"stack": stack.key, "retry_seconds": retry_seconds},
                )
                return retry_seconds
            case UpdateOutcome.FAILED:
                error = AutomationError(f"updating stack {spec.stack!r}: {result.error}")
                await self._lifecycle.mark_failed(stack, error, revision, result.permalink)
                raise error from result.error

        try:
            outputs = convert_outputs(result.outputs)
        except AutomationError as e:
            await self._recorder.record(
                stack, StackEvent.OUTPUT_RETRIEVAL_FAILURE, f"Failed to get Stack outputs: {e}."
            )
            raise
        if outputs is None:
            logger.info("Stack outputs are empty. Skipping status update", extra={"stack": stack.key})
            return None

        def record_success(status: StackStatus) -> None:
            status.outputs = outputs
            status.last_update = StackUpdateState(
                state=SUCCEEDED_STATE,
                last_attempted_commit=revision,
                last_successful_commit=revision,
                permalink=result.permalink,
                last_resync_time=now(),
            )

        await self._lifecycle.update_status(stack, record_success)
        logger.info("Successfully updated status for Stack", extra={"stack": stack.key})
        await self._recorder.record(stack, StackEvent.UPDATE_SUCCESSFUL, "Successfully updated stack.")
        return success_requeue

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "stack": result.key,
            "duration_seconds": result.duration_seconds,
            "requeue_after": result.requeue_after,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error("Reconciliation failed", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
