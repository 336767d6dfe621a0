"""Kubernetes implementations of the store and event contracts.

The official ``kubernetes`` client is synchronous, so every API call runs in
the default executor to keep the event loop free for other reconciliations.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .config import CONTROLLER_NAME, STACK_GROUP, STACK_PLURAL, STACK_VERSION
from .errors import ConflictError, NotFoundError, SourceAcquisitionError, StoreError
from .events import StackEvent
from .models import Stack
from .store import SecretData

logger = logging.getLogger(__name__)

T = TypeVar("T")


def configure_kube_client() -> None:
    """Load in-cluster credentials, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded Kubernetes configuration from kubeconfig")


def _translate(e: ApiException, what: str) -> StoreError:
    match e.status:
        case 404:
            return NotFoundError(f"{what} not found")
        case 409:
            return ConflictError(f"{what} was modified concurrently: {e.reason}")
        case _:
            return StoreError(f"{what}: API error {e.status}: {e.reason}")


def _plural_for_kind(kind: str) -> str:
    lowered = kind.lower()
    if lowered.endswith("y"):
        return lowered[:-1] + "ies"
    if lowered.endswith("s"):
        return lowered + "es"
    return lowered + "s"


class KubernetesStackStore:
    """StackStore backed by the Kubernetes API server."""

    def __init__(
        self,
        custom_api: client.CustomObjectsApi | None = None,
        core_api: client.CoreV1Api | None = None,
    ) -> None:
        self._custom = custom_api or client.CustomObjectsApi()
        self._core = core_api or client.CoreV1Api()

    async def _call(self, what: str, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except ApiException as e:
            raise _translate(e, what) from e

    async def get_stack_object(self, namespace: str, name: str) -> dict[str, Any]:
        return await self._call(
            f"Stack {namespace}/{name}",
            lambda: self._custom.get_namespaced_custom_object(
                STACK_GROUP, STACK_VERSION, namespace, STACK_PLURAL, name
            ),
        )

    async def get_stack(self, namespace: str, name: str) -> Stack:
        return Stack.from_object(await self.get_stack_object(namespace, name))

    async def update_stack_object(self, obj: dict[str, Any]) -> dict[str, Any]:
        metadata = obj["metadata"]
        namespace, name = metadata["namespace"], metadata["name"]
        return await self._call(
            f"Stack {namespace}/{name}",
            lambda: self._custom.replace_namespaced_custom_object(
                STACK_GROUP, STACK_VERSION, namespace, STACK_PLURAL, name, obj
            ),
        )

    async def update_stack(self, stack: Stack) -> Stack:
        return Stack.from_object(await self.update_stack_object(stack.to_object()))

    async def update_stack_status(self, stack: Stack) -> Stack:
        body = stack.to_object()
        obj = await self._call(
            f"Stack {stack.key} status",
            lambda: self._custom.replace_namespaced_custom_object_status(
                STACK_GROUP, STACK_VERSION, stack.namespace, STACK_PLURAL, stack.name, body
            ),
        )
        return Stack.from_object(obj)

    async def get_secret(self, namespace: str, name: str) -> SecretData:
        what = f"Secret {namespace}/{name}"
        secret = await self._call(what, lambda: self._core.read_namespaced_secret(name, namespace))
        return SecretData(
            what, {key: base64.b64decode(value) for key, value in (secret.data or {}).items()}
        )

    async def get_config_map(self, namespace: str, name: str) -> dict[str, str]:
        config_map = await self._call(
            f"ConfigMap {namespace}/{name}",
            lambda: self._core.read_namespaced_config_map(name, namespace),
        )
        return dict(config_map.data or {})

    async def get_source(
        self, namespace: str, api_version: str, kind: str, name: str
    ) -> dict[str, Any]:
        if "/" not in api_version:
            raise SourceAcquisitionError(
                f"sourceRef apiVersion {api_version!r} must name an API group"
            )
        group, version = api_version.split("/", 1)
        return await self._call(
            f"{kind} {namespace}/{name}",
            lambda: self._custom.get_namespaced_custom_object(
                group, version, namespace, _plural_for_kind(kind), name
            ),
        )


class KubernetesEventRecorder:
    """EventRecorder that posts core/v1 Events referencing the Stack."""

    def __init__(self, core_api: client.CoreV1Api | None = None) -> None:
        self._core = core_api or client.CoreV1Api()

    async def record(self, stack: Stack, event: StackEvent, message: str) -> None:
        now = datetime.now(UTC)
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{stack.name}.",
                namespace=stack.namespace,
            ),
            involved_object=client.V1ObjectReference(
                api_version=stack.api_version,
                kind=stack.kind,
                name=stack.name,
                namespace=stack.namespace,
                uid=stack.metadata.uid,
                resource_version=stack.metadata.resource_version,
            ),
            reason=event.reason,
            message=message,
            type=event.event_type.value,
            source=client.V1EventSource(component=CONTROLLER_NAME),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, lambda: self._core.create_namespaced_event(stack.namespace, body)
            )
        except ApiException as e:
            # Events are informational; a failed post never fails the pass
            logger.warning(
                "Failed to record event",
                extra={"stack": stack.key, "reason": event.reason, "status": e.status},
            )
        logger.info(
            message,
            extra={"stack": stack.key, "reason": event.reason, "event_type": event.event_type.value},
        )
