"""Tests for the Stack resource models."""

import pytest

from kube_mock import make_stack_object
from stack_controller.config import STACK_FINALIZER
from stack_controller.errors import StackValidationError
from stack_controller.models import (
    EnvRef,
    InlineGitRepo,
    LiteralRef,
    SecretRef,
    SourceReference,
    Stack,
    StackSpec,
    select_source,
)

SOURCE_REF = {"apiVersion": "source.toolkit.fluxcd.io/v1", "kind": "GitRepository", "name": "repo"}


class TestResourceRef:
    """Tests for the discriminated ResourceRef union."""

    def test_variants_are_selected_by_type(self) -> None:
        spec = StackSpec.model_validate(
            {
                "stack": "dev",
                "envRefs": {
                    "A": {"type": "Literal", "literal": {"value": "x"}},
                    "B": {"type": "Env", "env": {"name": "HOME"}},
                    "C": {"type": "Secret", "secret": {"name": "s", "key": "k"}},
                },
            }
        )

        assert isinstance(spec.env_refs["A"], LiteralRef)
        assert isinstance(spec.env_refs["B"], EnvRef)
        assert isinstance(spec.env_refs["C"], SecretRef)
        assert spec.env_refs["C"].secret.namespace is None

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(StackValidationError):
            Stack.from_object(
                make_stack_object("s", envRefs={"A": {"type": "Vault", "vault": {}}})
            )


class TestStackSpec:
    """Tests for StackSpec validation."""

    def test_aliases(self) -> None:
        spec = StackSpec.model_validate(
            {
                "stack": "acme/dev",
                "projectRepo": "https://example.com/r.git",
                "destroyOnFinalize": True,
                "retryOnUpdateConflict": True,
                "resyncFrequencySeconds": 120,
                "secretsRef": {"k": {"type": "Literal", "literal": {"value": "v"}}},
            }
        )

        assert spec.project_repo == "https://example.com/r.git"
        assert spec.destroy_on_finalize is True
        assert spec.retry_on_update_conflict is True
        assert spec.resync_frequency_seconds == 120
        assert "k" in spec.secret_refs

    def test_negative_resync_rejected(self) -> None:
        with pytest.raises(ValueError):
            StackSpec.model_validate({"stack": "dev", "resyncFrequencySeconds": -1})

    @pytest.mark.parametrize("repo_dir", ["/abs", "../up", "a/../../b"])
    def test_repo_dir_must_stay_inside(self, repo_dir: str) -> None:
        with pytest.raises(ValueError):
            StackSpec.model_validate({"stack": "dev", "repoDir": repo_dir})

    def test_git_repo_absent_without_git_fields(self) -> None:
        spec = StackSpec.model_validate({"stack": "dev", "sourceRef": SOURCE_REF})
        assert spec.git_repo is None


class TestSelectSource:
    """Tests for choosing exactly one source descriptor."""

    def test_git_source(self) -> None:
        spec = StackSpec.model_validate(
            {"stack": "dev", "projectRepo": "https://example.com/r.git", "branch": "main"}
        )

        source = select_source(spec)

        assert isinstance(source, InlineGitRepo)
        assert source.track_branch is True

    def test_source_reference(self) -> None:
        spec = StackSpec.model_validate({"stack": "dev", "sourceRef": SOURCE_REF})

        source = select_source(spec)

        assert isinstance(source, SourceReference)
        assert source.api_version == "source.toolkit.fluxcd.io/v1"

    def test_both_rejected(self) -> None:
        spec = StackSpec.model_validate(
            {"stack": "dev", "projectRepo": "https://example.com/r.git", "sourceRef": SOURCE_REF}
        )
        with pytest.raises(StackValidationError) as exc_info:
            select_source(spec)
        assert "got both" in str(exc_info.value)

    def test_neither_rejected(self) -> None:
        spec = StackSpec.model_validate({"stack": "dev"})
        with pytest.raises(StackValidationError) as exc_info:
            select_source(spec)
        assert "got neither" in str(exc_info.value)

    def test_branch_only_without_repo_rejected(self) -> None:
        spec = StackSpec.model_validate({"stack": "dev", "branch": "main"})
        with pytest.raises(StackValidationError) as exc_info:
            select_source(spec)
        assert "projectRepo" in str(exc_info.value)

    def test_branch_or_commit_required_unless_deleting(self) -> None:
        spec = StackSpec.model_validate({"stack": "dev", "projectRepo": "https://example.com/r.git"})

        with pytest.raises(StackValidationError):
            select_source(spec)
        assert isinstance(select_source(spec, deleting=True), InlineGitRepo)


class TestStack:
    """Tests for parsing and rendering Stack objects."""

    def test_round_trip_keeps_unmodelled_fields(self) -> None:
        obj = make_stack_object("s", projectRepo="https://example.com/r.git", branch="main")
        obj["metadata"]["labels"] = {"team": "platform"}
        obj["spec"]["futureField"] = {"x": 1}

        stack = Stack.from_object(obj)
        stack.metadata.finalizers.append(STACK_FINALIZER)
        rendered = stack.to_object()

        assert rendered["metadata"]["labels"] == {"team": "platform"}
        assert rendered["spec"]["futureField"] == {"x": 1}
        assert rendered["metadata"]["finalizers"] == [STACK_FINALIZER]
        assert obj["metadata"]["finalizers"] == []

    def test_status_is_rendered_with_aliases(self) -> None:
        stack = Stack.from_object(make_stack_object("s"))
        update = stack.status.ensure_last_update()
        update.state = "succeeded"
        update.last_successful_commit = "abc"

        status = stack.to_object()["status"]

        assert status == {"lastUpdate": {"state": "succeeded", "lastSuccessfulCommit": "abc"}}

    def test_null_status_accepted(self) -> None:
        obj = make_stack_object("s")
        obj["status"] = None

        stack = Stack.from_object(obj)

        assert stack.status.last_update is None

    def test_properties(self) -> None:
        obj = make_stack_object("s", namespace="team-a", finalizers=[STACK_FINALIZER])
        obj["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"

        stack = Stack.from_object(obj)

        assert stack.key == "team-a/s"
        assert stack.is_being_deleted is True
        assert stack.has_finalizer is True

    def test_invalid_object(self) -> None:
        obj = make_stack_object("broken")
        del obj["spec"]["stack"]

        with pytest.raises(StackValidationError) as exc_info:
            Stack.from_object(obj)
        assert "broken" in str(exc_info.value)
