"""Tests for Stack event reasons and the logging recorder."""

from __future__ import annotations

import logging

import pytest

from kube_mock import make_stack_object
from stack_controller.events import EventType, LoggingEventRecorder, StackEvent
from stack_controller.models import Stack


@pytest.mark.parametrize("event", [StackEvent.UPDATE_DETECTED, StackEvent.UPDATE_SUCCESSFUL])
def test_normal_events(event: StackEvent) -> None:
    assert event.event_type == EventType.NORMAL


def test_failures_are_warnings() -> None:
    warnings = [e for e in StackEvent if e.event_type == EventType.WARNING]

    assert len(warnings) == len(StackEvent) - 2
    assert StackEvent.UPDATE_FAILURE.reason == "StackUpdateFailure"


@pytest.mark.asyncio
async def test_logging_recorder(caplog: pytest.LogCaptureFixture) -> None:
    stack = Stack.from_object(make_stack_object("infra", projectRepo="https://example.com/r.git"))

    with caplog.at_level(logging.INFO, logger="stack_controller.events"):
        await LoggingEventRecorder().record(stack, StackEvent.NOT_FOUND, "Stack not found. Will retry.")

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert record.getMessage() == "Stack not found. Will retry."
    assert record.reason == "StackNotFound"
    assert record.stack == "default/infra"
