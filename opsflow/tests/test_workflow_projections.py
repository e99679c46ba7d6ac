from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from opsflow.services import projections

NOW = datetime(2026, 5, 10, 12, 0, tzinfo=timezone.utc)


def _instance(statuses, status="active", current_step=1, **kwargs):
    steps = [{"step_number": i + 1, "name": f"S{i + 1}", "status": s} for i, s in enumerate(statuses)]
    fields = {
        "status": status,
        "current_step": current_step,
        "steps_data": steps,
        "start_date": None,
        "completed_date": None,
        "due_date": None,
    }
    fields.update(kwargs)
    return SimpleNamespace(**fields)


@pytest.mark.parametrize(
    "statuses, expected",
    [
        ([], 0),
        (["pending"], 0),
        (["completed", "in_progress", "pending"], 33),
        (["completed", "completed", "pending"], 67),
        (["completed", "skipped"], 100),
        (["completed", "pending"], 50),
        (["completed"] + ["pending"] * 7, 13),  # 12.5 rounds half up
        (["completed", "rejected", "pending"], 33),
    ],
)
def test_progress_counts_completed_and_skipped(statuses, expected):
    assert projections.progress(_instance(statuses)) == expected


def test_time_elapsed_uses_completed_date_when_finished():
    running = _instance(["in_progress"], start_date=NOW - timedelta(days=3, hours=5))
    assert projections.time_elapsed(running, NOW) == 3

    done = _instance(
        ["completed"],
        status="completed",
        start_date=NOW - timedelta(days=10),
        completed_date=NOW - timedelta(days=8),
    )
    assert projections.time_elapsed(done, NOW) == 2

    assert projections.time_elapsed(_instance(["pending"], status="draft"), NOW) == 0


def test_time_remaining():
    assert projections.time_remaining(_instance(["in_progress"]), NOW) is None

    due_soon = _instance(["in_progress"], due_date=NOW + timedelta(days=2, hours=3))
    assert projections.time_remaining(due_soon, NOW) == 2

    late = _instance(["in_progress"], due_date=NOW - timedelta(days=1))
    assert projections.time_remaining(late, NOW) == 0


@pytest.mark.parametrize("status", ["completed", "cancelled", "rejected"])
def test_terminal_instances_have_no_time_left_and_are_never_overdue(status):
    instance = _instance(["completed"], status=status, due_date=NOW - timedelta(days=4))
    assert projections.time_remaining(instance, NOW) == 0
    assert projections.is_overdue(instance, NOW) is False

    without_due = _instance(["completed"], status=status)
    assert projections.time_remaining(without_due, NOW) == 0


def test_is_overdue_only_after_due_date():
    instance = _instance(["in_progress"], due_date=NOW)
    assert projections.is_overdue(instance, NOW) is False
    assert projections.is_overdue(instance, NOW + timedelta(seconds=1)) is True


def test_naive_datetimes_are_treated_as_utc():
    instance = _instance(["in_progress"], due_date=datetime(2026, 5, 9, 12, 0))
    assert projections.is_overdue(instance, NOW) is True


def test_current_step_is_overdue():
    instance = _instance(["completed", "in_progress"], current_step=2)
    instance.steps_data[1]["due_date"] = (NOW - timedelta(hours=1)).isoformat()
    assert projections.current_step_is_overdue(instance, NOW) is True

    instance.steps_data[1]["due_date"] = (NOW + timedelta(hours=1)).isoformat()
    assert projections.current_step_is_overdue(instance, NOW) is False

    paused_step = _instance(["pending"], current_step=1)
    assert projections.current_step_is_overdue(paused_step, NOW) is False


def test_snapshot_bundles_every_projection():
    instance = _instance(
        ["completed", "in_progress"],
        current_step=2,
        start_date=NOW - timedelta(days=1),
        due_date=NOW + timedelta(days=5),
    )
    assert projections.snapshot(instance, NOW) == {
        "progress": 50,
        "time_elapsed": 1,
        "time_remaining": 5,
        "is_overdue": False,
        "current_step_is_overdue": False,
    }
