"""Per-pass reconciliation state.

A ReconcileSession lives for exactly one reconciliation pass. It owns the
temporary directory the program source is unpacked into and removes it on
exit, whatever the outcome of the pass.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .models import Stack, StackSpec
from .resolver import ResourceRefResolver
from .store import StackStore

if TYPE_CHECKING:
    from .automation import AutomationDriver

logger = logging.getLogger(__name__)


@dataclass
class ReconcileSession:
    """State shared by the steps of one reconciliation pass."""

    stack: Stack
    store: StackStore
    resolver: ResourceRefResolver
    root_dir: Path | None = None
    work_dir: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    driver: AutomationDriver | None = None

    @classmethod
    def for_stack(cls, stack: Stack, store: StackStore) -> ReconcileSession:
        return cls(stack=stack, store=store, resolver=ResourceRefResolver(store, stack.namespace))

    @property
    def spec(self) -> StackSpec:
        return self.stack.spec

    @property
    def namespace(self) -> str:
        return self.stack.namespace

    def make_root_dir(self, prefix: str) -> Path:
        """Create the session's temporary root directory and take ownership of it."""
        self.root_dir = Path(tempfile.mkdtemp(prefix=prefix))
        return self.root_dir

    def resolve_work_dir(self) -> Path:
        """Join repoDir onto the root directory and record it as the work dir."""
        assert self.root_dir is not None
        work_dir = self.root_dir / self.spec.repo_dir if self.spec.repo_dir else self.root_dir
        self.work_dir = work_dir
        return work_dir

    def cleanup(self) -> None:
        """Remove the temporary root directory, if one was created."""
        if self.root_dir is None:
            return
        try:
            shutil.rmtree(self.root_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(
                "Failed to delete temporary root dir",
                extra={"stack": self.stack.key, "root_dir": str(self.root_dir), "error": str(e)},
            )
        self.root_dir = None

    async def __aenter__(self) -> ReconcileSession:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cleanup()
