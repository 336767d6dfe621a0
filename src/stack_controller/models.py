"""Pydantic models for the Stack custom resource.

These models provide:
1. Type-safe parsing of the raw Kubernetes object
2. Closed sum types for ResourceRef and the source descriptor
3. Clean round-tripping back to the object shape the API server expects
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, PrivateAttr, ValidationError, field_validator

from .config import STACK_FINALIZER
from .errors import StackValidationError

# =============================================================================
# ResourceRef
# =============================================================================
# A reference to a value stored in one of four backends. The "type" field is
# the discriminator, so exactly one selector is populated per ref.


class LiteralSelector(BaseModel):
    """Literal value embedded in the Stack."""

    model_config = {"extra": "ignore"}

    value: str


class EnvSelector(BaseModel):
    """Environment variable of the controller process."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]


class FileSystemSelector(BaseModel):
    """File on the controller's filesystem."""

    model_config = {"extra": "ignore"}

    path: Annotated[str, Field(min_length=1)]


class SecretSelector(BaseModel):
    """Key inside a Kubernetes Secret. Namespace defaults to the Stack's."""

    model_config = {"extra": "ignore"}

    namespace: str | None = None
    name: Annotated[str, Field(min_length=1)]
    key: Annotated[str, Field(min_length=1)]


class LiteralRef(BaseModel):
    model_config = {"extra": "ignore"}

    type: Literal["Literal"] = "Literal"
    literal: LiteralSelector


class EnvRef(BaseModel):
    model_config = {"extra": "ignore"}

    type: Literal["Env"] = "Env"
    env: EnvSelector


class FileSystemRef(BaseModel):
    model_config = {"extra": "ignore"}

    type: Literal["FS"] = "FS"
    filesystem: FileSystemSelector


class SecretRef(BaseModel):
    model_config = {"extra": "ignore"}

    type: Literal["Secret"] = "Secret"
    secret: SecretSelector


ResourceRef = Annotated[
    LiteralRef | EnvRef | FileSystemRef | SecretRef,
    Field(discriminator="type"),
]


# =============================================================================
# Git source
# =============================================================================


class SSHAuthConfig(BaseModel):
    """SSH private key and its optional passphrase."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    ssh_private_key: ResourceRef = Field(alias="sshPrivateKey")
    password: ResourceRef | None = None


class BasicAuthConfig(BaseModel):
    """Username and password for HTTPS git access."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    user_name: ResourceRef = Field(alias="userName")
    password: ResourceRef


class GitAuthConfig(BaseModel):
    """Git authentication options.

    When more than one option is given, SSH wins over the personal access
    token, which wins over basic auth.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    access_token: ResourceRef | None = Field(None, alias="accessToken")
    ssh_auth: SSHAuthConfig | None = Field(None, alias="sshAuth")
    basic_auth: BasicAuthConfig | None = Field(None, alias="basicAuth")


class InlineGitRepo(BaseModel):
    """Git source descriptor, carried inline on the Stack spec."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    project_repo: str = Field("", alias="projectRepo")
    git_auth_secret: str = Field("", alias="gitAuthSecret")
    git_auth: GitAuthConfig | None = Field(None, alias="gitAuth")
    commit: str = ""
    branch: str = ""
    continue_resync_on_commit_match: bool = Field(False, alias="continueResyncOnCommitMatch")

    @property
    def track_branch(self) -> bool:
        """True when a branch is tracked and should be polled for new commits."""
        return bool(self.branch)


class SourceReference(BaseModel):
    """Reference to an externally-managed source object (e.g. a Flux GitRepository)."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: Annotated[str, Field(min_length=1, alias="apiVersion")]
    kind: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1)]


# =============================================================================
# Stack spec
# =============================================================================


class StackSpec(BaseModel):
    """Desired state of a Stack managed by this controller."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    # Stack identity: fully qualified <org>/<project>/<stack> or <org>/<stack>
    stack: Annotated[str, Field(min_length=1)]

    # Auth and backend
    access_token_secret: str = Field("", alias="accessTokenSecret")  # Deprecated: use envRefs
    backend: str = ""
    secrets_provider: str = Field("", alias="secretsProvider")

    # Environment
    envs: list[str] = Field(default_factory=list)  # Deprecated: use envRefs
    env_secrets: list[str] = Field(default_factory=list, alias="envSecrets")  # Deprecated
    env_refs: dict[str, ResourceRef] = Field(default_factory=dict, alias="envRefs")

    # Configuration
    config: dict[str, str] = Field(default_factory=dict)
    config_refs: dict[str, ResourceRef] = Field(default_factory=dict, alias="configRefs")
    secrets: dict[str, str] = Field(default_factory=dict)  # Deprecated: use secretsRef
    secret_refs: dict[str, ResourceRef] = Field(default_factory=dict, alias="secretsRef")

    # Inline git source
    project_repo: str = Field("", alias="projectRepo")
    git_auth_secret: str = Field("", alias="gitAuthSecret")  # Deprecated: use gitAuth
    git_auth: GitAuthConfig | None = Field(None, alias="gitAuth")
    commit: str = ""
    branch: str = ""
    continue_resync_on_commit_match: bool = Field(False, alias="continueResyncOnCommitMatch")

    # External source
    source_ref: SourceReference | None = Field(None, alias="sourceRef")
    repo_dir: str = Field("", alias="repoDir")

    # Lifecycle
    refresh: bool = False
    expect_no_refresh_changes: bool = Field(False, alias="expectNoRefreshChanges")
    destroy_on_finalize: bool = Field(False, alias="destroyOnFinalize")
    retry_on_update_conflict: bool = Field(False, alias="retryOnUpdateConflict")
    use_local_stack_only: bool = Field(False, alias="useLocalStackOnly")
    resync_frequency_seconds: int = Field(0, alias="resyncFrequencySeconds")

    @field_validator("resync_frequency_seconds")
    @classmethod
    def validate_resync_frequency(cls, v: int) -> int:
        if v < 0:
            raise ValueError("resyncFrequencySeconds must not be negative")
        return v

    @field_validator("repo_dir")
    @classmethod
    def validate_repo_dir(cls, v: str) -> str:
        # repoDir is joined onto the temporary workspace root
        if v.startswith("/") or ".." in v.replace("\\", "/").split("/"):
            raise ValueError("repoDir must be a relative path inside the repository")
        return v

    @property
    def git_repo(self) -> InlineGitRepo | None:
        """Inline git source, or None when no git field is populated."""
        if not (
            self.project_repo
            or self.branch
            or self.commit
            or self.git_auth is not None
            or self.git_auth_secret
        ):
            return None
        return InlineGitRepo(
            project_repo=self.project_repo,
            git_auth_secret=self.git_auth_secret,
            git_auth=self.git_auth,
            commit=self.commit,
            branch=self.branch,
            continue_resync_on_commit_match=self.continue_resync_on_commit_match,
        )


def select_source(spec: StackSpec, deleting: bool = False) -> InlineGitRepo | SourceReference:
    """Return the single source descriptor of a Stack spec.

    Args:
        spec: The Stack spec.
        deleting: Whether the Stack is being deleted. Branch/commit are not
            required then, since only the destroy path needs the source.

    Returns:
        The inline git repo or the external source reference.

    Raises:
        StackValidationError: If neither or both descriptors are set, or a
            git source names neither a branch nor a commit.
    """
    repo = spec.git_repo
    source = spec.source_ref

    if repo is not None and source is not None:
        raise StackValidationError(
            "exactly one of .spec.projectRepo and .spec.sourceRef should be supplied, got both"
        )
    if repo is None and source is None:
        raise StackValidationError(
            "exactly one of .spec.projectRepo and .spec.sourceRef should be supplied, got neither"
        )

    if source is not None:
        return source

    assert repo is not None
    if not repo.project_repo:
        raise StackValidationError("Stack CustomResource needs to specify 'projectRepo'")
    if not deleting and not repo.commit and not repo.branch:
        raise StackValidationError(
            "Stack CustomResource needs to specify either 'branch' or 'commit' "
            "for the tracking repo."
        )
    return repo


# =============================================================================
# Stack status
# =============================================================================

SUCCEEDED_STATE = "succeeded"
FAILED_STATE = "failed"


class StackUpdateState(BaseModel):
    """Outcome of the most recent update attempt."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    state: str | None = None
    last_attempted_commit: str | None = Field(None, alias="lastAttemptedCommit")
    last_successful_commit: str | None = Field(None, alias="lastSuccessfulCommit")
    permalink: str | None = None
    last_resync_time: datetime | None = Field(None, alias="lastResyncTime")


class StackStatus(BaseModel):
    """Observed state of a Stack."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    last_update: StackUpdateState | None = Field(None, alias="lastUpdate")
    outputs: dict[str, Any] | None = None

    def ensure_last_update(self) -> StackUpdateState:
        """Return the last update state, creating an empty one if missing."""
        if self.last_update is None:
            self.last_update = StackUpdateState()
        return self.last_update


# =============================================================================
# Stack resource
# =============================================================================


class ObjectMeta(BaseModel):
    """The subset of Kubernetes object metadata the controller reads or writes."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    namespace: str = "default"
    uid: str | None = None
    resource_version: str | None = Field(None, alias="resourceVersion")
    generation: int | None = None
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    finalizers: list[str] = Field(default_factory=list)


class Stack(BaseModel):
    """A Stack custom resource.

    The raw object is kept alongside the parsed model so writes send back
    every field, including ones this controller does not model.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field("pulumi.com/v1", alias="apiVersion")
    kind: str = "Stack"
    metadata: ObjectMeta
    spec: StackSpec
    status: StackStatus = Field(default_factory=StackStatus)

    _raw: dict[str, Any] = PrivateAttr(default_factory=dict)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> Stack:
        """Parse a raw Kubernetes object into a Stack."""
        data = dict(obj)
        if data.get("status") is None:
            data["status"] = {}
        try:
            stack = cls.model_validate(data)
        except ValidationError as e:
            name = (obj.get("metadata") or {}).get("name", "<unknown>")
            raise StackValidationError(f"invalid Stack {name!r}: {e}") from e
        stack._raw = copy.deepcopy(obj)
        return stack

    @classmethod
    def identity_of(cls, obj: dict[str, Any]) -> Stack:
        """Build a Stack carrying only the metadata of an object whose spec does not parse.

        Enough to post events against and to read finalizers and the
        deletion timestamp. The spec is left unvalidated, so never write it back.
        """
        return cls.model_construct(
            api_version=obj.get("apiVersion", "pulumi.com/v1"),
            kind=obj.get("kind", "Stack"),
            metadata=ObjectMeta.model_validate(obj.get("metadata") or {}),
            spec=StackSpec.model_construct(),
            status=StackStatus(),
        )

    def to_object(self) -> dict[str, Any]:
        """Render the Stack back into a Kubernetes object for writing."""
        obj = copy.deepcopy(self._raw) if self._raw else {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": {"name": self.metadata.name, "namespace": self.metadata.namespace},
            "spec": self.spec.model_dump(by_alias=True, exclude_defaults=True, mode="json"),
        }
        metadata = obj.setdefault("metadata", {})
        metadata["finalizers"] = list(self.metadata.finalizers)
        if self.metadata.resource_version is not None:
            metadata["resourceVersion"] = self.metadata.resource_version
        obj["status"] = self.status.model_dump(by_alias=True, exclude_none=True, mode="json")
        return obj

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        """Work queue key: namespace/name."""
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def is_being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def has_finalizer(self) -> bool:
        return STACK_FINALIZER in self.metadata.finalizers
