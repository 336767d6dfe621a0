"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for kube_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from kube_mock import FakeEngine, FakeGitRemote, InMemoryStackStore, RecordingEventRecorder  # noqa: E402
from stack_controller.config import Config  # noqa: E402


@pytest.fixture
def store() -> InMemoryStackStore:
    return InMemoryStackStore()


@pytest.fixture
def recorder() -> RecordingEventRecorder:
    return RecordingEventRecorder()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def config() -> Config:
    return Config(deletion_wait_seconds=0.5, update_retry_seconds=5.0)


@pytest.fixture
def git_remote(monkeypatch: pytest.MonkeyPatch) -> FakeGitRemote:
    """Replace git cloning in the reconciler with an in-memory remote."""
    remote = FakeGitRemote()
    monkeypatch.setattr("stack_controller.reconciler.GitSource", remote.source_class())
    return remote
