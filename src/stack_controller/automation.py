"""Narrow contract over the Pulumi automation API.

The reconciler only needs a handful of engine operations. AutomationDriver
names them, and PulumiAutomationDriver implements them on top of
``pulumi.automation``. The SDK shells out to the ``pulumi`` CLI and blocks,
so every call runs in the default executor.

Update outcomes are classified rather than raised:
- a concurrent update lock maps to CONFLICT
- a backend 404 maps to NOT_FOUND
- anything else is FAILED
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, TypeVar

from pulumi import automation as auto

from .config import SECRET_OUTPUT_SENTINEL
from .errors import AutomationError, CommandError
from .process import run_command
from .resolver import ConfigEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_FOUND_MARKER = "error: [404] Not found"

_PERMALINK_RE = re.compile(r"^\s*(?:View Live|Permalink):\s*(\S+)\s*$", re.MULTILINE)


class UpdateOutcome(str, Enum):
    """Classification of an update attempt."""

    SUCCEEDED = "succeeded"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass
class UpdateResult:
    """Outcome of an ``up`` with everything the reconciler needs from it."""

    outcome: UpdateOutcome
    permalink: str | None = None
    outputs: Mapping[str, Any] = field(default_factory=dict)
    error: Exception | None = None


def get_permalink(stdout: str) -> str | None:
    """Find the update permalink in engine output. Absence is not an error."""
    match = _PERMALINK_RE.search(stdout or "")
    return match.group(1) if match else None


def classify_update_error(err: Exception) -> UpdateOutcome:
    """Map an ``up`` failure to CONFLICT, NOT_FOUND or FAILED."""
    if isinstance(err, auto.ConcurrentUpdateError):
        return UpdateOutcome.CONFLICT
    if NOT_FOUND_MARKER in str(err):
        return UpdateOutcome.NOT_FOUND
    return UpdateOutcome.FAILED


def convert_outputs(outputs: Mapping[str, Any]) -> dict[str, Any] | None:
    """Translate engine outputs into JSON-safe status values.

    Secret outputs are replaced by a fixed sentinel so their values are
    never persisted. Returns None for an empty output set.

    Raises:
        AutomationError: If a value cannot be represented as JSON.
    """
    if not outputs:
        return None
    converted: dict[str, Any] = {}
    for key, output in outputs.items():
        if getattr(output, "secret", False):
            converted[key] = SECRET_OUTPUT_SENTINEL
            continue
        value = getattr(output, "value", output)
        try:
            converted[key] = json.loads(json.dumps(value))
        except (TypeError, ValueError) as e:
            raise AutomationError(f"marshaling stack output {key!r}: {e}") from e
    return converted


class AutomationDriver(Protocol):
    """Engine operations available to one reconciliation pass."""

    @property
    def env(self) -> dict[str, str]:
        """Environment passed to every engine command."""
        ...

    def set_env_vars(self, env: Mapping[str, str]) -> None:
        ...

    async def ensure_stack(self, select_only: bool) -> None:
        """Select the stack, or create it if missing and select_only is False."""
        ...

    async def get_all_config(self) -> dict[str, ConfigEntry]:
        ...

    async def ensure_stack_settings(self, secrets_provider: str) -> None:
        """Persist stack settings without clobbering a checked-in settings file."""
        ...

    async def set_all_config(self, config: dict[str, ConfigEntry]) -> None:
        ...

    async def project_runtime(self) -> tuple[str, dict[str, Any]]:
        """Return the project's runtime name and options."""
        ...

    async def refresh(self, expect_no_changes: bool) -> str | None:
        """Refresh the stack. Returns the permalink, raises AutomationError."""
        ...

    async def up(self) -> UpdateResult:
        ...

    async def destroy(self) -> None:
        ...

    async def remove_stack(self) -> None:
        ...

    async def info_url(self) -> str | None:
        """URL of the stack in the backend, if the backend has one."""
        ...


# Builds a driver for a stack in a work dir: (stack_name, work_dir, env, secrets_provider)
DriverFactory = Callable[[str, Path, Mapping[str, str], str], AutomationDriver]


class PulumiAutomationDriver:
    """AutomationDriver backed by a ``pulumi.automation`` LocalWorkspace."""

    def __init__(
        self,
        stack_name: str,
        work_dir: Path,
        env: Mapping[str, str],
        secrets_provider: str = "",
    ) -> None:
        self._stack_name = stack_name
        self._workspace = auto.LocalWorkspace(
            work_dir=str(work_dir),
            secrets_provider=secrets_provider or None,
            env_vars=dict(env),
        )
        self._stack: auto.Stack | None = None

    async def _run(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    def _on_output(self, title: str) -> Callable[[str], None]:
        def log_line(line: str) -> None:
            logger.debug(title, extra={"stack_name": self._stack_name, "line": line.rstrip()})

        return log_line

    @property
    def stack(self) -> auto.Stack:
        if self._stack is None:
            raise AutomationError(f"stack {self._stack_name!r} has not been selected")
        return self._stack

    @property
    def env(self) -> dict[str, str]:
        return dict(self._workspace.env_vars or {})

    def set_env_vars(self, env: Mapping[str, str]) -> None:
        self._workspace.env_vars = {**(self._workspace.env_vars or {}), **env}

    async def ensure_stack(self, select_only: bool) -> None:
        try:
            if select_only:
                logger.info("Using local stack", extra={"stack_name": self._stack_name})
                self._stack = await self._run(
                    lambda: auto.Stack.select(self._stack_name, self._workspace)
                )
            else:
                logger.info("Upserting stack", extra={"stack_name": self._stack_name})
                self._stack = await self._run(
                    lambda: auto.Stack.create_or_select(self._stack_name, self._workspace)
                )
        except auto.CommandError as e:
            raise AutomationError(
                f"failed to create and/or select stack {self._stack_name}: {e}"
            ) from e

    async def get_all_config(self) -> dict[str, ConfigEntry]:
        try:
            config = await self._run(self.stack.get_all_config)
        except auto.CommandError as e:
            raise AutomationError(f"reading stack config: {e}") from e
        return {key: ConfigEntry(value=str(v.value), secret=v.secret) for key, v in config.items()}

    async def ensure_stack_settings(self, secrets_provider: str) -> None:
        try:
            settings = await self._run(lambda: self._workspace.stack_settings(self._stack_name))
        except (OSError, ValueError) as e:
            logger.info(
                "Missing stack config file. Will assume no stack config checked-in.",
                extra={"stack_name": self._stack_name, "cause": str(e)},
            )
            settings = auto.StackSettings()

        # Secrets provider must be set before any config is written
        if secrets_provider:
            settings.secrets_provider = secrets_provider
        try:
            await self._run(
                lambda: self._workspace.save_stack_settings(self._stack_name, settings)
            )
        except (OSError, auto.CommandError) as e:
            raise AutomationError(f"failed to save stack settings: {e}") from e

    async def set_all_config(self, config: dict[str, ConfigEntry]) -> None:
        values = {key: auto.ConfigValue(value=e.value, secret=e.secret) for key, e in config.items()}
        try:
            await self._run(lambda: self.stack.set_all_config(values))
        except auto.CommandError as e:
            raise AutomationError(f"failed to set stack config: {e}") from e

    async def project_runtime(self) -> tuple[str, dict[str, Any]]:
        try:
            project = await self._run(self._workspace.project_settings)
        except (OSError, ValueError, auto.CommandError) as e:
            raise AutomationError(f"unable to get project runtime: {e}") from e
        runtime = project.runtime
        if isinstance(runtime, str):
            return runtime, {}
        return runtime.name, dict(runtime.options or {})

    async def refresh(self, expect_no_changes: bool) -> str | None:
        try:
            result = await self._run(
                lambda: self.stack.refresh(
                    on_output=self._on_output("Pulumi Refresh"),
                    expect_no_changes=expect_no_changes or None,
                )
            )
        except auto.CommandError as e:
            raise AutomationError(f"refreshing stack {self._stack_name!r}: {e}") from e
        permalink = get_permalink(result.stdout)
        if permalink is None:
            logger.debug("No permalink found", extra={"stack_name": self._stack_name})
        return permalink

    async def up(self) -> UpdateResult:
        try:
            result = await self._run(lambda: self.stack.up(on_output=self._on_output("Pulumi Update")))
        except auto.CommandError as e:
            return UpdateResult(outcome=classify_update_error(e), error=e)
        permalink = get_permalink(result.stdout)
        if permalink is None:
            logger.debug("No permalink found - ignoring", extra={"stack_name": self._stack_name})
        return UpdateResult(
            outcome=UpdateOutcome.SUCCEEDED,
            permalink=permalink,
            outputs=result.outputs or {},
        )

    async def destroy(self) -> None:
        try:
            await self._run(lambda: self.stack.destroy(on_output=self._on_output("Pulumi Destroy")))
        except auto.CommandError as e:
            raise AutomationError(f"destroying resources for stack {self._stack_name!r}: {e}") from e

    async def remove_stack(self) -> None:
        try:
            await self._run(lambda: self._workspace.remove_stack(self._stack_name))
        except auto.CommandError as e:
            raise AutomationError(f"removing stack {self._stack_name!r}: {e}") from e

    async def info_url(self) -> str | None:
        try:
            summaries = await self._run(self._workspace.list_stacks)
        except auto.CommandError as e:
            raise AutomationError(f"reading info for stack {self._stack_name!r}: {e}") from e
        for summary in summaries:
            if _same_stack(summary.name, self._stack_name):
                return summary.url
        return None


def _same_stack(listed: str, wanted: str) -> bool:
    # Backends list short or fully-qualified names depending on the project
    return listed == wanted or wanted.endswith("/" + listed) or listed.endswith("/" + wanted)


def pulumi_driver_factory(
    stack_name: str, work_dir: Path, env: Mapping[str, str], secrets_provider: str
) -> AutomationDriver:
    return PulumiAutomationDriver(stack_name, work_dir, env, secrets_provider)


# =============================================================================
# Project dependencies
# =============================================================================


async def install_project_dependencies(
    runtime: str,
    options: Mapping[str, Any],
    work_dir: Path,
    env: Mapping[str, str],
) -> None:
    """Install the program's language dependencies before running the engine.

    Raises:
        AutomationError: If a required tool is missing or an install fails.
    """
    logger.debug("Installing project dependencies", extra={"runtime": runtime, "work_dir": str(work_dir)})
    try:
        match runtime:
            case "nodejs":
                npm = shutil.which("npm") or shutil.which("yarn")
                if npm is None:
                    raise AutomationError(
                        "did not find 'npm' or 'yarn' on the PATH; can't install project dependencies"
                    )
                await run_command("NPM/Yarn", [npm, "install"], cwd=work_dir, env=env)
            case "python":
                python3 = shutil.which("python3")
                if python3 is None:
                    raise AutomationError(
                        "did not find 'python3' on the PATH; can't install project dependencies"
                    )
                venv = options.get("virtualenv")
                if not isinstance(venv, str) or not venv:
                    raise AutomationError(
                        "Python projects without a `virtualenv` project configuration "
                        "are not supported"
                    )
                venv_python = str(work_dir / venv / "bin" / "python")
                await run_command("Pip Install", [python3, "-m", "venv", venv], cwd=work_dir, env=env)
                await run_command(
                    "Pip Install",
                    [venv_python, "-m", "pip", "install", "--upgrade", "pip", "setuptools", "wheel"],
                    cwd=work_dir,
                    env=env,
                )
                await run_command(
                    "Pip Install",
                    [venv_python, "-m", "pip", "install", "-r", "requirements.txt"],
                    cwd=work_dir,
                    env=env,
                )
            case "go" | "dotnet":
                pass
            case _:
                logger.info("Handling unknown project runtime", extra={"runtime": runtime})
    except CommandError as e:
        raise AutomationError(f"installing project dependencies: {e}") from e
