"""Tests for ResourceRef resolution and config assembly."""

from pathlib import Path

import pytest

from kube_mock import InMemoryStackStore
from stack_controller.errors import DuplicateConfigKeyError, ResolutionError
from stack_controller.models import (
    EnvRef,
    EnvSelector,
    FileSystemRef,
    FileSystemSelector,
    LiteralRef,
    LiteralSelector,
    SecretRef,
    SecretSelector,
    StackSpec,
)
from stack_controller.resolver import ConfigEntry, ResourceRefResolver, assemble_config, masked


@pytest.fixture
def resolver(store: InMemoryStackStore) -> ResourceRefResolver:
    store.add_secret("team-a", "db", {"password": "s3cret"})
    store.add_secret("shared", "tokens", {"github": "ghp_x"})
    return ResourceRefResolver(store, "team-a")


def secret_ref(name: str, key: str, namespace: str | None = None) -> SecretRef:
    return SecretRef(secret=SecretSelector(namespace=namespace, name=name, key=key))


class TestResolve:
    """Tests for ResourceRefResolver.resolve."""

    @pytest.mark.asyncio
    async def test_literal(self, resolver: ResourceRefResolver) -> None:
        ref = LiteralRef(literal=LiteralSelector(value="plain"))
        assert await resolver.resolve("k", ref) == "plain"

    @pytest.mark.asyncio
    async def test_env(self, resolver: ResourceRefResolver, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STACK_TEST_VALUE", "from-env")
        ref = EnvRef(env=EnvSelector(name="STACK_TEST_VALUE"))

        assert await resolver.resolve("k", ref) == "from-env"

    @pytest.mark.asyncio
    async def test_env_unset_or_empty(
        self, resolver: ResourceRefResolver, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("STACK_TEST_UNSET", raising=False)
        monkeypatch.setenv("STACK_TEST_EMPTY", "")

        for var in ("STACK_TEST_UNSET", "STACK_TEST_EMPTY"):
            with pytest.raises(ResolutionError) as exc_info:
                await resolver.resolve("AWS_REGION", EnvRef(env=EnvSelector(name=var)))
            assert exc_info.value.name == "AWS_REGION"
            assert var in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_filesystem(self, resolver: ResourceRefResolver, tmp_path: Path) -> None:
        path = tmp_path / "token"
        path.write_text("file-token\n")
        ref = FileSystemRef(filesystem=FileSystemSelector(path=str(path)))

        assert await resolver.resolve("k", ref) == "file-token\n"

    @pytest.mark.asyncio
    async def test_filesystem_missing(self, resolver: ResourceRefResolver, tmp_path: Path) -> None:
        ref = FileSystemRef(filesystem=FileSystemSelector(path=str(tmp_path / "absent")))

        with pytest.raises(ResolutionError) as exc_info:
            await resolver.resolve("token", ref)
        assert "absent" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_secret_defaults_to_stack_namespace(self, resolver: ResourceRefResolver) -> None:
        assert await resolver.resolve("k", secret_ref("db", "password")) == "s3cret"

    @pytest.mark.asyncio
    async def test_secret_in_other_namespace(self, resolver: ResourceRefResolver) -> None:
        assert await resolver.resolve("k", secret_ref("tokens", "github", "shared")) == "ghp_x"

    @pytest.mark.asyncio
    async def test_secret_missing(self, resolver: ResourceRefResolver) -> None:
        with pytest.raises(ResolutionError) as exc_info:
            await resolver.resolve("db", secret_ref("nope", "password"))
        assert "team-a/nope not found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_secret_key_missing(self, resolver: ResourceRefResolver) -> None:
        with pytest.raises(ResolutionError) as exc_info:
            await resolver.resolve("db", secret_ref("db", "username"))
        assert "no key 'username'" in str(exc_info.value)


class TestAssembleConfig:
    """Tests for merging config sources."""

    @pytest.mark.asyncio
    async def test_secrecy_flags(self, resolver: ResourceRefResolver) -> None:
        spec = StackSpec.model_validate(
            {
                "stack": "dev",
                "config": {"app:plain": "1"},
                "configRefs": {
                    "app:literal": {"type": "Literal", "literal": {"value": "2"}},
                    "app:fromSecret": {"type": "Secret", "secret": {"name": "db", "key": "password"}},
                },
                "secrets": {"app:legacy": "3"},
                "secretsRef": {"app:ref": {"type": "Literal", "literal": {"value": "4"}}},
            }
        )

        config = await assemble_config(spec, resolver)

        assert config == {
            "app:plain": ConfigEntry("1"),
            "app:literal": ConfigEntry("2"),
            "app:fromSecret": ConfigEntry("s3cret", secret=True),
            "app:legacy": ConfigEntry("3", secret=True),
            "app:ref": ConfigEntry("4", secret=True),
        }

    @pytest.mark.asyncio
    async def test_duplicate_keys_rejected(self, resolver: ResourceRefResolver) -> None:
        spec = StackSpec.model_validate(
            {
                "stack": "dev",
                "config": {"b": "1", "a": "1"},
                "secrets": {"a": "2"},
                "secretsRef": {"b": {"type": "Literal", "literal": {"value": "3"}}},
            }
        )

        with pytest.raises(DuplicateConfigKeyError) as exc_info:
            await assemble_config(spec, resolver)
        assert exc_info.value.keys == ["a", "b"]

    @pytest.mark.asyncio
    async def test_resolution_error_names_key(self, resolver: ResourceRefResolver) -> None:
        spec = StackSpec.model_validate(
            {
                "stack": "dev",
                "secretsRef": {"app:db": {"type": "Secret", "secret": {"name": "db", "key": "nope"}}},
            }
        )

        with pytest.raises(ResolutionError) as exc_info:
            await assemble_config(spec, resolver)
        assert exc_info.value.name == "app:db"


def test_masked_hides_secret_values() -> None:
    entries = {"a": ConfigEntry("visible"), "b": ConfigEntry("hidden", secret=True)}

    assert masked(entries) == {"a": "visible", "b": "[secret]"}
    assert "hidden" not in repr(entries["b"])
