"""Program source acquisition.

Two strategies produce a workspace directory and the revision it holds:

* GitSource clones the inline ``projectRepo`` with the ``git`` CLI.
* ArtifactSource (artifact.py) downloads the tarball published by an
  external source object such as a Flux GitRepository.

Both leave the session's root directory pointing at the unpacked source so
the session can always remove it, and both seed the workspace environment
before any stack config is written.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlsplit, urlunsplit

from .errors import (
    CommandError,
    GitAuthError,
    NotFoundError,
    ResolutionError,
    SourceAcquisitionError,
    StackValidationError,
    StoreError,
)
from .models import InlineGitRepo
from .process import redact, run_command
from .session import ReconcileSession

logger = logging.getLogger(__name__)

TOKEN_USERNAME = "git"
PASSPHRASE_ENV_VAR = "STACK_CONTROLLER_SSH_PASSPHRASE"


# =============================================================================
# Git credentials
# =============================================================================


@dataclass(frozen=True)
class SSHAuth:
    private_key: str
    passphrase: str | None = None


@dataclass(frozen=True)
class TokenAuth:
    token: str


@dataclass(frozen=True)
class BasicAuth:
    username: str
    password: str


GitAuth = SSHAuth | TokenAuth | BasicAuth


def _secrets_of(auth: GitAuth | None) -> tuple[str, ...]:
    match auth:
        case SSHAuth(private_key=key, passphrase=passphrase):
            return (key, passphrase or "")
        case TokenAuth(token=token):
            return (token, quote(token, safe=""))
        case BasicAuth(password=password):
            return (password, quote(password, safe=""))
        case _:
            return ()


async def resolve_git_auth(repo: InlineGitRepo, session: ReconcileSession) -> GitAuth | None:
    """Resolve the credentials used to clone a repository.

    The structured ``gitAuth`` block wins over the legacy ``gitAuthSecret``.
    Within either, SSH wins over an access token, which wins over basic auth.

    Returns:
        The credentials, or None for anonymous access.

    Raises:
        StackValidationError: If gitAuth names no method, or the legacy
            secret has a username without a password.
        GitAuthError: If a credential cannot be resolved.
    """
    resolver = session.resolver
    try:
        if repo.git_auth is not None:
            git_auth = repo.git_auth
            if git_auth.ssh_auth is not None:
                key = await resolver.resolve("gitAuth.sshAuth.sshPrivateKey", git_auth.ssh_auth.ssh_private_key)
                passphrase = None
                if git_auth.ssh_auth.password is not None:
                    passphrase = await resolver.resolve("gitAuth.sshAuth.password", git_auth.ssh_auth.password)
                return SSHAuth(private_key=key, passphrase=passphrase)
            if git_auth.access_token is not None:
                return TokenAuth(token=await resolver.resolve("gitAuth.accessToken", git_auth.access_token))
            if git_auth.basic_auth is None:
                raise StackValidationError(
                    "gitAuth config must specify exactly one of "
                    "'accessToken', 'sshAuth' or 'basicAuth'"
                )
            username = await resolver.resolve("gitAuth.basicAuth.userName", git_auth.basic_auth.user_name)
            password = await resolver.resolve("gitAuth.basicAuth.password", git_auth.basic_auth.password)
            return BasicAuth(username=username, password=password)
    except ResolutionError as e:
        raise GitAuthError(str(e)) from e

    if repo.git_auth_secret:
        try:
            data = await session.store.get_secret(session.namespace, repo.git_auth_secret)
        except NotFoundError as e:
            raise GitAuthError(
                f"secret {session.namespace}/{repo.git_auth_secret} for git access not found"
            ) from e
        try:
            if "sshPrivateKey" in data:
                return SSHAuth(private_key=data["sshPrivateKey"], passphrase=data.get("password"))
            if "accessToken" in data:
                return TokenAuth(token=data["accessToken"])
            if "username" in data:
                if "password" not in data:
                    raise StackValidationError("creating gitAuth: missing 'password' secret entry")
                return BasicAuth(username=data["username"], password=data["password"])
        except StoreError as e:
            raise GitAuthError(str(e)) from e

    return None


def clone_url(url: str, auth: GitAuth | None) -> str:
    """Embed HTTPS credentials into a repository URL.

    SSH credentials and anonymous access leave the URL unchanged.

    Raises:
        GitAuthError: If token or basic auth is used with a non-HTTP(S) URL.
    """
    match auth:
        case TokenAuth(token=token):
            username, password = TOKEN_USERNAME, token
        case BasicAuth(username=username, password=password):
            pass
        case _:
            return url

    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        raise GitAuthError(
            f"token and basic authentication require an http(s) repository URL, got {parts.scheme or url!r}"
        )
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{quote(username, safe='')}:{quote(password, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def ssh_host_port(url: str) -> tuple[str, str | None]:
    """Extract the host and optional port from an SSH repository URL.

    Handles ``ssh://git@host:port/org/repo.git`` and the scp-like
    ``git@host:org/repo.git`` forms.
    """
    if "://" in url:
        parts = urlsplit(url)
        if not parts.hostname:
            raise SourceAcquisitionError(f"cannot parse host from repository URL {url!r}")
        return parts.hostname, str(parts.port) if parts.port else None
    rest = url.split("@", 1)[-1]
    segments = rest.split(":")
    if not segments[0]:
        raise SourceAcquisitionError(f"cannot parse host from repository URL {url!r}")
    port = segments[1] if len(segments) > 2 and segments[1].isdigit() else None
    return segments[0], port


async def add_ssh_known_hosts(repo_url: str) -> None:
    """Append the repository host's public keys to ~/.ssh/known_hosts.

    Failures are logged and ignored: cloning still proceeds and fails with a
    host key error if the key is genuinely unknown.
    """
    try:
        host, port = ssh_host_port(repo_url)
        args = ["ssh-keyscan"]
        if port:
            args += ["-p", port]
        args += ["-H", host]
        home = Path(os.environ.get("HOME") or Path.home())
        result = await run_command("SSH Key Scan", args, cwd=home)
        ssh_dir = home / ".ssh"
        ssh_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        known_hosts = ssh_dir / "known_hosts"
        fd = os.open(known_hosts, os.O_APPEND | os.O_WRONLY | os.O_CREAT, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(result.stdout)
    except (SourceAcquisitionError, CommandError, OSError) as e:
        logger.warning("Failed to add SSH host keys to known_hosts", extra={"error": str(e)})


# =============================================================================
# Workspace environment
# =============================================================================


async def seed_workspace_env(session: ReconcileSession) -> None:
    """Populate the workspace environment from backend, access token and envRefs.

    Raises:
        ResolutionError: If an envRef cannot be resolved.
    """
    spec = session.spec
    if spec.backend:
        session.env["PULUMI_BACKEND_URL"] = spec.backend

    if spec.access_token_secret:
        try:
            data = await session.store.get_secret(session.namespace, spec.access_token_secret)
        except NotFoundError:
            logger.error(
                "Could not find secret for Pulumi API access",
                extra={"stack": session.stack.key, "secret": spec.access_token_secret},
            )
        else:
            token = data.get("accessToken", "")
            if token:
                session.env["PULUMI_ACCESS_TOKEN"] = token
            else:
                logger.error(
                    "Illegal empty secret accessToken data for Pulumi API access",
                    extra={"stack": session.stack.key, "secret": spec.access_token_secret},
                )

    for name, ref in spec.env_refs.items():
        session.env[name] = await session.resolver.resolve(name, ref)


def work_dir_for(session: ReconcileSession) -> Path:
    work_dir = session.resolve_work_dir()
    if not work_dir.is_dir():
        raise SourceAcquisitionError(
            f"repoDir {session.spec.repo_dir!r} does not exist in the program source"
        )
    return work_dir


# =============================================================================
# Strategies
# =============================================================================


class SourceProvider(Protocol):
    """Produces a workspace directory and the revision it contains."""

    async def acquire(self, session: ReconcileSession) -> tuple[Path, str]:
        ...


class GitSource:
    """Clones an inline git repository into the session's root directory."""

    def __init__(self, repo: InlineGitRepo, add_known_hosts: bool = True) -> None:
        self._repo = repo
        self._add_known_hosts = add_known_hosts

    async def acquire(self, session: ReconcileSession) -> tuple[Path, str]:
        repo = self._repo
        auth = await resolve_git_auth(repo, session)
        if isinstance(auth, SSHAuth) and self._add_known_hosts:
            await add_ssh_known_hosts(repo.project_repo)

        root = session.make_root_dir("pulumi_auto")
        logger.info(
            "Cloning program repository",
            extra={
                "stack": session.stack.key,
                "repo": repo.project_repo,
                "branch": repo.branch,
                "commit": repo.commit,
            },
        )
        await self._clone(root, auth)
        revision = await self._revision(root)

        work_dir = work_dir_for(session)
        await seed_workspace_env(session)
        return work_dir, revision

    async def _clone(self, root: Path, auth: GitAuth | None) -> None:
        repo = self._repo
        url = clone_url(repo.project_repo, auth)
        secrets = _secrets_of(auth) + ((url,) if url != repo.project_repo else ())
        env = {"GIT_TERMINAL_PROMPT": "0"}

        creds_dir: str | None = None
        try:
            if isinstance(auth, SSHAuth):
                creds_dir = tempfile.mkdtemp(prefix="pulumi_git_auth")
                env.update(_ssh_env(Path(creds_dir), auth))

            args = ["git", "clone"]
            if repo.branch:
                args += ["--branch", repo.branch, "--single-branch"]
            args += [url, str(root)]
            await run_command("Git Clone", args, env=env, secrets=secrets)

            if repo.commit:
                await run_command(
                    "Git Checkout",
                    ["git", "-C", str(root), "checkout", "--detach", repo.commit],
                    env=env,
                    secrets=secrets,
                )
        except CommandError as e:
            raise SourceAcquisitionError(
                f"failed to fetch {repo.project_repo}: {redact(str(e), secrets)}"
            ) from e
        finally:
            if creds_dir is not None:
                shutil.rmtree(creds_dir, ignore_errors=True)

    async def _revision(self, root: Path) -> str:
        try:
            result = await run_command("Git Rev-Parse", ["git", "-C", str(root), "rev-parse", "HEAD"])
        except CommandError as e:
            raise SourceAcquisitionError(
                f"failed to determine revision for git repository at {root}: {e}"
            ) from e
        return result.stdout.strip()


def _ssh_env(creds_dir: Path, auth: SSHAuth) -> dict[str, str]:
    key_file = creds_dir / "id_key"
    fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        key = auth.private_key
        f.write(key if key.endswith("\n") else key + "\n")

    env = {"GIT_SSH_COMMAND": f"ssh -i {key_file} -o IdentitiesOnly=yes"}
    if auth.passphrase:
        askpass = creds_dir / "askpass.sh"
        askpass.write_text(f'#!/bin/sh\nprintf \'%s\\n\' "${PASSPHRASE_ENV_VAR}"\n')
        askpass.chmod(stat.S_IRWXU)
        env.update(
            {
                "SSH_ASKPASS": str(askpass),
                "SSH_ASKPASS_REQUIRE": "force",
                "DISPLAY": os.environ.get("DISPLAY", ":0"),
                PASSPHRASE_ENV_VAR: auth.passphrase,
            }
        )
    return env
