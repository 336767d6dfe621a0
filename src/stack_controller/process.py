"""Child process execution with concurrently drained output streams.

Long-running tools (git, npm, pip, ssh-keyscan) write a lot of output. Both
pipes are read by their own task while the process runs, so the child never
blocks on a full pipe, and every line is logged at DEBUG as it arrives.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import CommandError

logger = logging.getLogger(__name__)

REDACTED = "***"
READ_CHUNK_SIZE = 65536


@dataclass(frozen=True)
class CommandResult:
    """Captured output of a finished command."""

    stdout: str
    stderr: str
    returncode: int


def redact(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of each secret in text."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


async def _drain(
    stream: asyncio.StreamReader,
    buffer: list[str],
    title: str,
    stream_name: str,
    secrets: tuple[str, ...],
) -> None:
    # Read in chunks so a single huge line cannot overrun the reader limit
    pending = b""
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            _emit(line, buffer, title, stream_name, secrets)
    if pending:
        _emit(pending, buffer, title, stream_name, secrets)


def _emit(
    line: bytes, buffer: list[str], title: str, stream_name: str, secrets: tuple[str, ...]
) -> None:
    text = redact(line.decode("utf-8", errors="replace"), secrets)
    logger.debug(title, extra={"stream": stream_name, "line": text})
    buffer.append(text + "\n")


async def run_command(
    title: str,
    args: list[str],
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    secrets: Iterable[str] = (),
    check: bool = True,
) -> CommandResult:
    """Run a command to completion.

    Args:
        title: Name used in log records and errors.
        args: Program and arguments.
        cwd: Working directory.
        env: Extra environment variables, layered over the controller's own.
        secrets: Values to redact from logs, errors and captured output.
        check: Raise CommandError on a non-zero exit status.

    Returns:
        The captured stdout/stderr and exit status.

    Raises:
        CommandError: If the program cannot be started, or exits non-zero
            and check is set.
    """
    hidden = tuple(s for s in secrets if s)
    full_env = dict(os.environ)
    if env:
        full_env.update(env)

    logger.debug(
        "Running command",
        extra={"title": title, "args": redact(" ".join(args), hidden), "cwd": str(cwd or "")},
    )

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd is not None else None,
            env=full_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise CommandError(title, None, redact(str(e), hidden)) from e

    stdout: list[str] = []
    stderr: list[str] = []
    assert proc.stdout is not None and proc.stderr is not None
    readers = [
        asyncio.create_task(_drain(proc.stdout, stdout, title, "stdout", hidden)),
        asyncio.create_task(_drain(proc.stderr, stderr, title, "stderr", hidden)),
    ]
    drained = False
    try:
        await asyncio.gather(*readers)
        drained = True
    except Exception as e:
        raise CommandError(title, None, redact(f"reading output: {e}", hidden)) from e
    finally:
        if not drained:
            for task in readers:
                task.cancel()
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
            await proc.wait()
    returncode = await proc.wait()

    result = CommandResult(stdout="".join(stdout), stderr="".join(stderr), returncode=returncode)
    if check and returncode != 0:
        raise CommandError(title, returncode, result.stderr)
    return result
