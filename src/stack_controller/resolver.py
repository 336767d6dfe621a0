"""Resolution of ResourceRefs and assembly of stack configuration.

A ResourceRef names a value held in one of four backends. Resolution is
read-only: refs are never mutated, and every failure carries the logical
name of the ref (config key, env var, auth field) so the resulting error
can be traced back to the Stack field that caused it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import DuplicateConfigKeyError, NotFoundError, ResolutionError, StoreError
from .models import EnvRef, FileSystemRef, LiteralRef, ResourceRef, SecretRef, StackSpec
from .store import StackStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigEntry:
    """A single stack config value and whether the engine must encrypt it."""

    value: str
    secret: bool = False

    def __repr__(self) -> str:
        shown = "***" if self.secret else repr(self.value)
        return f"ConfigEntry(value={shown}, secret={self.secret})"


class ResourceRefResolver:
    """Resolves ResourceRefs for one Stack.

    Args:
        store: Store used to read Secrets.
        namespace: The Stack's namespace, used when a Secret ref omits one.
    """

    def __init__(self, store: StackStore, namespace: str) -> None:
        self._store = store
        self._namespace = namespace

    async def resolve(self, name: str, ref: ResourceRef) -> str:
        """Resolve a ref to its string value.

        Args:
            name: Logical name of the ref, used in error messages.
            ref: The reference to resolve.

        Returns:
            The resolved value.

        Raises:
            ResolutionError: If the target is missing or unreadable.
        """
        match ref:
            case LiteralRef(literal=literal):
                return literal.value
            case EnvRef(env=env):
                value = os.environ.get(env.name, "")
                if not value:
                    raise ResolutionError(
                        name, f"missing value for environment variable: {env.name}"
                    )
                return value
            case FileSystemRef(filesystem=fs):
                try:
                    return Path(fs.path).read_text()
                except OSError as e:
                    raise ResolutionError(name, f"reading path {fs.path!r}: {e}") from e
            case SecretRef(secret=selector):
                namespace = selector.namespace or self._namespace
                try:
                    data = await self._store.get_secret(namespace, selector.name)
                except NotFoundError as e:
                    raise ResolutionError(
                        name, f"secret {namespace}/{selector.name} not found"
                    ) from e
                if selector.key not in data:
                    raise ResolutionError(
                        name,
                        f"no key {selector.key!r} found in secret {namespace}/{selector.name}",
                    )
                try:
                    return data[selector.key]
                except StoreError as e:
                    raise ResolutionError(name, str(e)) from e
            case _:
                raise ResolutionError(name, f"unsupported reference type: {type(ref).__name__}")


async def assemble_config(spec: StackSpec, resolver: ResourceRefResolver) -> dict[str, ConfigEntry]:
    """Merge every config source of a Stack into one map.

    Sources, in order: ``config`` (plain), ``configRefs`` (secret only when
    the ref points at a Secret), ``secrets`` (always secret) and
    ``secretsRef`` (always secret).

    Raises:
        DuplicateConfigKeyError: If a key appears in more than one source.
        ResolutionError: If a ref cannot be resolved.
    """
    sources = (spec.config, spec.config_refs, spec.secrets, spec.secret_refs)
    seen: set[str] = set()
    duplicates: set[str] = set()
    for source in sources:
        for key in source:
            if key in seen:
                duplicates.add(key)
            seen.add(key)
    if duplicates:
        raise DuplicateConfigKeyError(list(duplicates))

    entries: dict[str, ConfigEntry] = {}
    for key, value in spec.config.items():
        entries[key] = ConfigEntry(value=value)
    for key, ref in spec.config_refs.items():
        entries[key] = ConfigEntry(
            value=await resolver.resolve(key, ref),
            secret=isinstance(ref, SecretRef),
        )
    for key, value in spec.secrets.items():
        entries[key] = ConfigEntry(value=value, secret=True)
    for key, ref in spec.secret_refs.items():
        entries[key] = ConfigEntry(value=await resolver.resolve(key, ref), secret=True)
    return entries


def masked(entries: dict[str, ConfigEntry]) -> dict[str, str]:
    """Render config for logging with secret values hidden."""
    return {key: "[secret]" if entry.secret else entry.value for key, entry in entries.items()}
