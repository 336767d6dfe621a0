"""Resync scheduling for git-tracked Stacks.

A Stack tracking a branch is polled for new commits. When the checked-out
revision matches the last successful commit there is nothing to deploy, and
the pass only schedules the next poll. Failed passes are retried with an
exponential backoff that resets after the first pass without an error.
"""

from __future__ import annotations

from .config import DEFAULT_RESYNC_FREQUENCY_SECONDS, MIN_RESYNC_FREQUENCY_SECONDS

FAILURE_BACKOFF_BASE_SECONDS = 0.005
FAILURE_BACKOFF_MAX_SECONDS = 1000.0


def clamp_resync_seconds(configured_seconds: int, periodic: bool) -> int:
    """Apply the resync floor to a configured frequency.

    Values in (0, 60) are raised to 60. Zero means unset, and defaults to 60
    only when periodic resync is active.
    """
    seconds = configured_seconds
    if 0 < seconds < MIN_RESYNC_FREQUENCY_SECONDS:
        seconds = MIN_RESYNC_FREQUENCY_SECONDS
    if periodic and seconds == 0:
        seconds = DEFAULT_RESYNC_FREQUENCY_SECONDS
    return seconds


def next_resync_delay(
    track_branch: bool, continue_on_match: bool, configured_seconds: int
) -> float | None:
    """Delay before the next periodic reconcile, or None if none is scheduled."""
    periodic = track_branch or continue_on_match
    if not periodic:
        return None
    return float(clamp_resync_seconds(configured_seconds, periodic))


def should_skip_for_unchanged_revision(
    track_branch: bool,
    current: str,
    last_successful: str | None,
    continue_on_match: bool,
) -> bool:
    """Whether the pass can stop before running any engine operation.

    Only a tracked branch whose HEAD still equals the last successfully
    deployed commit is skipped, unless continuous resync is forced.
    """
    if not track_branch or last_successful is None:
        return False
    return last_successful == current and not continue_on_match


def failure_backoff(failures: int) -> float:
    """Delay before retrying a failed pass: 5ms, 10ms, 20ms, ... capped at 1000s.

    Args:
        failures: Consecutive failed passes before this one.
    """
    # Avoid float overflow for Stacks that keep failing
    if failures > 40:
        return FAILURE_BACKOFF_MAX_SECONDS
    return min(FAILURE_BACKOFF_BASE_SECONDS * (2**failures), FAILURE_BACKOFF_MAX_SECONDS)
