"""In-memory Kubernetes and automation engine doubles for testing.

This package provides fakes for every collaborator the reconciler talks to,
so whole reconciliation passes run without a cluster, a git server or the
Pulumi CLI.

Key Features:
- Resource store with resourceVersion checks, conflict injection and
  finalizer-aware deletion
- Event recorder that keeps every emitted event
- Scriptable automation driver that records every engine call
- Git remote whose HEAD tests can move between passes

Usage:
    from kube_mock import FakeEngine, FakeGitRemote, InMemoryStackStore, RecordingEventRecorder

    store = InMemoryStackStore()
    store.add_stack(make_stack_object("demo", branch="main"))
    engine = FakeEngine()
    reconciler = StackReconciler(config, store, RecordingEventRecorder(), engine.factory)
    result = await reconciler.reconcile("default", "demo")
"""

from .driver import FakeAutomationDriver, FakeEngine
from .events import RecordingEventRecorder
from .source import FakeGitRemote
from .store import InMemoryStackStore, make_stack_object

__all__ = [
    "FakeAutomationDriver",
    "FakeEngine",
    "FakeGitRemote",
    "InMemoryStackStore",
    "RecordingEventRecorder",
    "make_stack_object",
]
