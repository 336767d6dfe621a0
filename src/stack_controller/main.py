"""Main entry point for the Stack controller.

kopf provides the watch and the per-object serialization: one Stack is never
handled by two workers at once, and spec changes arrive as update causes
while status and finalizer writes do not. Every cause runs a StackReconciler
pass; errors and resync requests are handed back to kopf as delayed retries.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

import kopf

from .config import STACK_GROUP, STACK_PLURAL, STACK_VERSION, Config, ConfigurationError
from .events import EventRecorder, LoggingEventRecorder
from .kube import KubernetesEventRecorder, KubernetesStackStore, configure_kube_client
from .reconciler import ReconcileResult, StackReconciler
from .scheduler import failure_backoff

logger = logging.getLogger(__name__)

# Attributes every LogRecord carries, plus those added by Formatter.format
_RESERVED_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.NOTSET, "", 0, "", None, None).__dict__
) | {"message", "asctime"}

# Per-object memo key for consecutive failed passes
_FAILURES = "failures"


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Fields passed via extra=
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from client libraries
    for noisy in ("kubernetes", "urllib3", "httpx", "httpcore", "kopf"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


_reconciler: StackReconciler | None = None


def raise_for_result(result: ReconcileResult, failures: int) -> None:
    """Translate a pass result into kopf's retry protocol.

    Args:
        result: Outcome of the pass.
        failures: Consecutive failed passes before this one.

    Raises:
        kopf.TemporaryError: If the pass failed or asked to be requeued.
    """
    if result.error is not None:
        raise kopf.TemporaryError(str(result.error), delay=failure_backoff(failures))
    if result.requeue_after is not None:
        raise kopf.TemporaryError("Requeued for resync", delay=result.requeue_after)


@kopf.on.startup()
async def on_startup(settings: kopf.OperatorSettings, **kwargs: Any) -> None:
    """Configure the Kubernetes client and build the reconciler."""
    global _reconciler
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise kopf.PermanentError(str(e)) from e

    configure_kube_client()

    settings.batching.worker_limit = config.max_concurrent_reconciles
    # Events are posted by the reconciler itself
    settings.posting.enabled = False
    # The Stack status is owned by the reconciler
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage()

    _reconciler = StackReconciler(config, KubernetesStackStore(), KubernetesEventRecorder())
    logger.info(
        "Stack controller started",
        extra={
            "max_concurrent_reconciles": config.max_concurrent_reconciles,
            "watch_namespace": config.watch_namespace,
        },
    )


@kopf.on.resume(STACK_GROUP, STACK_VERSION, STACK_PLURAL)
@kopf.on.create(STACK_GROUP, STACK_VERSION, STACK_PLURAL)
@kopf.on.update(STACK_GROUP, STACK_VERSION, STACK_PLURAL)
@kopf.on.delete(STACK_GROUP, STACK_VERSION, STACK_PLURAL, optional=True)
async def reconcile_stack(namespace: str, name: str, memo: kopf.Memo, **kwargs: Any) -> None:
    """Run one reconciliation pass for the Stack behind a kopf cause."""
    if _reconciler is None:
        raise kopf.TemporaryError("Controller is not started", delay=1)

    result = await _reconciler.reconcile(namespace, name)

    failures = memo.get(_FAILURES, 0)
    memo[_FAILURES] = failures + 1 if result.error is not None else 0
    raise_for_result(result, failures)


@kopf.on.cleanup()
async def on_cleanup(**kwargs: Any) -> None:
    global _reconciler
    _reconciler = None
    logger.info("Stack controller stopped")


async def reconcile_once(
    config: Config, namespace: str, name: str, post_events: bool = True
) -> ReconcileResult:
    """Run a single pass for one Stack against the current cluster.

    With post_events False, events are only logged.
    """
    configure_kube_client()
    recorder: EventRecorder = KubernetesEventRecorder() if post_events else LoggingEventRecorder()
    reconciler = StackReconciler(config, KubernetesStackStore(), recorder)
    return await reconciler.reconcile(namespace, name)


def main() -> int:
    """Run the controller until interrupted.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level)
    logger.info(
        "Starting Stack controller",
        extra={"watch_namespace": config.watch_namespace or "<all>"},
    )

    if config.watch_namespace:
        kopf.run(standalone=True, namespaces=[config.watch_namespace])
    else:
        kopf.run(standalone=True, clusterwide=True)
    return 0


def run() -> None:
    """Entry point for the controller."""
    sys.exit(main())


if __name__ == "__main__":
    run()
