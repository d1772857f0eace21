"""Completion percentage for finished and interrupted runs."""

from __future__ import annotations

import math

# A run that did not finish never reports 100%.
PROGRESS_CEILING = 95


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def estimate_progress(
    *,
    interrupted: bool,
    tool_calls: int,
    max_tool_calls: int,
    elapsed_s: float,
    timeout_s: float,
    previous_progress: int = 0,
) -> int:
    """Estimate completion.

    Interrupted runs with a tool budget are measured by calls made against the
    budget. Without a tool budget, elapsed time against the timeout is added to
    the progress carried over from earlier resumed runs.
    """
    if not interrupted:
        return 100
    if max_tool_calls > 0:
        estimate = _round_half_up(100 * tool_calls / max_tool_calls)
    else:
        time_share = _round_half_up(100 * elapsed_s / timeout_s) if timeout_s > 0 else 0
        estimate = previous_progress + time_share
    return max(0, min(PROGRESS_CEILING, estimate))
