from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple, Union

DEADLINE_HOUR = 23
DEADLINE_MINUTE = 59


@dataclass(frozen=True)
class StreakMilestone:
    milestone_id: str
    threshold: int
    icon: str
    title: str
    description: str


STREAK_MILESTONES = (
    StreakMilestone("first_assessment", 1, "🌱", "First Step", "Completed your first daily assessment."),
    StreakMilestone("streak_3", 3, "🔥", "Warming Up", "Checked in three days in a row."),
    StreakMilestone("streak_7", 7, "⭐", "One Week Strong", "Kept a seven-day assessment streak."),
    StreakMilestone("streak_14", 14, "🏅", "Two Week Habit", "Kept a fourteen-day assessment streak."),
    StreakMilestone("streak_30", 30, "🏆", "Monthly Champion", "Kept a thirty-day assessment streak."),
    StreakMilestone("streak_100", 100, "💎", "Centurion", "Kept a hundred-day assessment streak."),
)


class DeadlinePassed(Exception):
    def __init__(self, current_time: str) -> None:
        super().__init__("Assessment must be completed before 11:59 PM to count for streak")
        self.current_time = current_time


@dataclass(frozen=True)
class StreakRecord:
    current_streak: int = 0
    longest_streak: int = 0
    last_assessment_date: Optional[date] = None

    def to_dict(self) -> dict:
        return {
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_assessment_date": self.last_assessment_date.isoformat() if self.last_assessment_date else None,
        }


@dataclass(frozen=True)
class StreakUpdate:
    record: StreakRecord
    same_day: bool = False
    # Milestone ids first awarded by this update; filled in by the store.
    milestones: Tuple[str, ...] = ()


def reached_milestones(record: StreakRecord) -> List[StreakMilestone]:
    return [item for item in STREAK_MILESTONES if record.current_streak >= item.threshold]


def parse_day(value: Union[str, date]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def is_before_deadline(now: datetime) -> bool:
    # Every real clock reading satisfies this; the cutoff is kept as written
    # until the product owner settles on a real one.
    return now.hour < DEADLINE_HOUR or (now.hour == DEADLINE_HOUR and now.minute <= DEADLINE_MINUTE)


def update(record: Optional[StreakRecord], today: Union[str, date], now: datetime) -> StreakUpdate:
    """Credit an assessment completed on ``today`` to the streak.

    Returns the new record; a second call on the same calendar day returns
    the stored record untouched with ``same_day`` set. Raises
    ``DeadlinePassed`` when ``now`` is past the daily cutoff.
    """
    if not is_before_deadline(now):
        raise DeadlinePassed(f"{now.hour:02d}:{now.minute:02d}")

    today = parse_day(today)
    if record is None or record.last_assessment_date is None:
        longest = max(record.longest_streak, 1) if record else 1
        return StreakUpdate(StreakRecord(current_streak=1, longest_streak=longest, last_assessment_date=today))

    diff_days = (today - record.last_assessment_date).days
    if diff_days == 0:
        return StreakUpdate(record, same_day=True)
    if diff_days == 1:
        current = record.current_streak + 1
    else:
        # Gaps and out-of-order dates both restart the run.
        current = 1

    return StreakUpdate(StreakRecord(
        current_streak=current,
        longest_streak=max(record.longest_streak, current),
        last_assessment_date=today,
    ))


def reset_if_missed_deadline(
    record: StreakRecord,
    yesterday: Union[str, date],
    assessment_exists: Callable[[date], bool],
) -> StreakRecord:
    if record.current_streak <= 0:
        return record
    if assessment_exists(parse_day(yesterday)):
        return record
    return replace(record, current_streak=0)


def previous_day(today: date) -> date:
    return today - timedelta(days=1)
