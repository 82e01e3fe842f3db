"""Tests for the run state machine guard and listing limit clamp."""

from __future__ import annotations

import math

import pytest

from src.integration_sync.errors import RunStateError
from src.integration_sync.runs.schemas import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    RunOutcome,
    RunStatus,
    bounded_limit,
    ensure_transition,
)


@pytest.mark.parametrize("target", [RunStatus.COMPLETED, RunStatus.FAILED])
def test_running_run_can_finish(target):
    ensure_transition(RunStatus.RUNNING, target)


@pytest.mark.parametrize("current", [RunStatus.COMPLETED, RunStatus.FAILED])
@pytest.mark.parametrize("target", list(RunStatus))
def test_terminal_runs_are_never_modified(current, target):
    with pytest.raises(RunStateError):
        ensure_transition(current, target)


def test_running_cannot_move_to_running():
    with pytest.raises(RunStateError):
        ensure_transition(RunStatus.RUNNING, RunStatus.RUNNING)


@pytest.mark.asyncio
async def test_ledger_refuses_second_finalize(ledger):
    run = ledger.seed()
    await ledger.finalize(run.id, RunOutcome(status=RunStatus.COMPLETED, processed_count=1))

    with pytest.raises(RunStateError):
        await ledger.finalize(run.id, RunOutcome(status=RunStatus.FAILED, error_message="late"))
    assert ledger.runs[run.id].status is RunStatus.COMPLETED


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, DEFAULT_LIST_LIMIT),
        (25, 25),
        (0, 1),
        (-3, 1),
        (10_000, MAX_LIST_LIMIT),
        (12.9, 12),
        (math.nan, DEFAULT_LIST_LIMIT),
        (math.inf, DEFAULT_LIST_LIMIT),
        ("40", 40),
        ("many", DEFAULT_LIST_LIMIT),
    ],
)
def test_bounded_limit(value, expected):
    assert bounded_limit(value) == expected
