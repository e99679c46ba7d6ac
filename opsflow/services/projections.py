"""Read-only views derived from an instance snapshot.

Every function takes the snapshot and an explicit ``now`` and has no other
inputs, so a freshly mutated instance and a stored one give the same answers.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from opsflow.models.workflow import TERMINAL_STATUSES, StepState, StepStatus, as_utc

_SECONDS_PER_DAY = 24 * 60 * 60

_DONE_STEP_STATUSES = {StepStatus.COMPLETED.value, StepStatus.SKIPPED.value}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _whole_days(seconds: float) -> int:
    return int(math.floor(seconds / _SECONDS_PER_DAY))


def _is_terminal(instance) -> bool:
    return str(instance.status) in TERMINAL_STATUSES


def progress(instance) -> int:
    """Completed-or-skipped steps as a percentage of all steps (0-100)."""
    steps = instance.steps_data or []
    if not steps:
        return 0

    done = sum(1 for s in steps if s.get("status") in _DONE_STEP_STATUSES)
    # Round half up.
    return int(math.floor(done * 100 / len(steps) + 0.5))


def time_elapsed(instance, now: Optional[datetime] = None) -> int:
    start = as_utc(instance.start_date)
    if start is None:
        return 0

    end = as_utc(instance.completed_date) or as_utc(now) or _utcnow()
    return _whole_days((end - start).total_seconds())


def time_remaining(instance, now: Optional[datetime] = None) -> Optional[int]:
    if _is_terminal(instance):
        return 0

    due = as_utc(instance.due_date)
    if due is None:
        return None

    now = as_utc(now) or _utcnow()
    return max(0, _whole_days((due - now).total_seconds()))


def is_overdue(instance, now: Optional[datetime] = None) -> bool:
    due = as_utc(instance.due_date)
    if due is None or _is_terminal(instance):
        return False

    now = as_utc(now) or _utcnow()
    return now > due


def current_step_is_overdue(instance, now: Optional[datetime] = None) -> bool:
    if _is_terminal(instance):
        return False

    for raw in instance.steps_data or []:
        if raw.get("step_number") != instance.current_step:
            continue
        step = StepState.from_dict(raw)
        if step.status != StepStatus.IN_PROGRESS.value or step.due_date is None:
            return False
        now = as_utc(now) or _utcnow()
        return now > step.due_date

    return False


def snapshot(instance, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = as_utc(now) or _utcnow()
    return {
        "progress": progress(instance),
        "time_elapsed": time_elapsed(instance, now),
        "time_remaining": time_remaining(instance, now),
        "is_overdue": is_overdue(instance, now),
        "current_step_is_overdue": current_step_is_overdue(instance, now),
    }
