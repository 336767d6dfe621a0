"""Resource store contract.

The reconciler never talks to the Kubernetes API directly. It reads and
writes through a StackStore so the control loop can run against an
in-memory store in tests and against the cluster in production (see
kube.py).
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any, Protocol

from .errors import StoreError

if TYPE_CHECKING:
    from .models import Stack


class StackStore(Protocol):
    """Read/write access to Stacks and the objects they reference.

    All methods raise NotFoundError when the object does not exist.
    Writes raise ConflictError when the object's resourceVersion is stale.
    """

    async def get_stack(self, namespace: str, name: str) -> Stack:
        """Fetch the latest version of a Stack."""
        ...

    async def get_stack_object(self, namespace: str, name: str) -> dict[str, Any]:
        """Fetch the latest version of a Stack as a raw object, without parsing it."""
        ...

    async def update_stack_object(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace a raw Stack object's metadata and spec. Returns the stored object."""
        ...

    async def update_stack(self, stack: Stack) -> Stack:
        """Replace a Stack's metadata and spec. Returns the stored object."""
        ...

    async def update_stack_status(self, stack: Stack) -> Stack:
        """Replace a Stack's status subresource. Returns the stored object."""
        ...

    async def get_secret(self, namespace: str, name: str) -> Mapping[str, str]:
        """Fetch a Secret's data, base64-decoded."""
        ...

    async def get_config_map(self, namespace: str, name: str) -> dict[str, str]:
        """Fetch a ConfigMap's data."""
        ...

    async def get_source(
        self, namespace: str, api_version: str, kind: str, name: str
    ) -> dict[str, Any]:
        """Fetch an arbitrary source object (e.g. a Flux GitRepository) as a dict."""
        ...


def nested_string(obj: dict[str, Any], *path: str) -> str | None:
    """Read a string field from a nested dict, or None if absent or not a string."""
    current: Any = obj
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current if isinstance(current, str) else None


class SecretData(Mapping[str, str]):
    """Secret values decoded as UTF-8 when read.

    Secrets often carry binary entries (keystores, DER certificates) next to
    the text values a Stack refers to. Only the keys actually read need to
    be text.

    Raises:
        StoreError: On reading a key whose value is not valid UTF-8.
    """

    def __init__(self, what: str, data: Mapping[str, bytes]) -> None:
        self._what = what
        self._data = dict(data)

    def __getitem__(self, key: str) -> str:
        value = self._data[key]
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise StoreError(f"{self._what} key {key!r} is not valid UTF-8 text") from e

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)
