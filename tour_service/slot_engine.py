"""
Available tour slot computation.

Everything here is pure: callers pass in a snapshot of the agent's holding
bookings and blocked times together with the current time, so the same
inputs always produce the same, ordered list of slots.
"""
import datetime
import math
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import ValidationError
from .schemas import AvailabilitySlot

Interval = Tuple[datetime.datetime, datetime.datetime]


@dataclass(frozen=True)
class WorkingHours:
    start: datetime.time
    end: datetime.time

    def __post_init__(self):
        if self.end <= self.start:
            raise ValidationError("Working hours must end after they start.")


@dataclass(frozen=True)
class WeeklyHours:
    """Working hours per weekday (0 = Monday). Weekdays missing from `days` are closed."""
    days: Mapping[int, WorkingHours]

    @classmethod
    def uniform(cls, hours: WorkingHours, weekdays: Iterable[int] = range(7)) -> "WeeklyHours":
        return cls({weekday: hours for weekday in weekdays})

    def for_day(self, day: datetime.date) -> Optional[WorkingHours]:
        return self.days.get(day.weekday())


Schedule = Union[WorkingHours, WeeklyHours]


def hours_on(schedule: Schedule, day: datetime.date) -> Optional[WorkingHours]:
    """Opening hours for `day`, or None if the agent is off that day."""
    if isinstance(schedule, WorkingHours):
        return schedule
    return schedule.for_day(day)


def overlaps(a_start: datetime.datetime, a_end: datetime.datetime,
             b_start: datetime.datetime, b_end: datetime.datetime) -> bool:
    """Half-open interval overlap: touching intervals do not overlap."""
    # (Existing Start < New End) AND (Existing End > New Start)
    return a_start < b_end and a_end > b_start


def step_minutes(duration_minutes: int, granularity_minutes: int) -> int:
    """
    Distance between candidate start times.

    Normally the configured granularity. When the duration is not a multiple
    of it (e.g. 45 minute tours on a 30 minute grid) the step is rounded down
    to the largest value that divides both, so duration-aligned starts stay
    reachable.
    """
    if duration_minutes % granularity_minutes == 0:
        return granularity_minutes
    return math.gcd(duration_minutes, granularity_minutes)


def clamp_range(range_start: datetime.datetime, range_end: datetime.datetime,
                max_lookahead_days: int) -> Interval:
    horizon = range_start + datetime.timedelta(days=max_lookahead_days)
    return range_start, min(range_end, horizon)


def _busy_intervals(bookings: Iterable, blocked: Iterable, buffer_minutes: int) -> List[Interval]:
    buffer = datetime.timedelta(minutes=buffer_minutes)
    busy = [(b.start - buffer, b.end + buffer) for b in bookings]
    busy.extend((b.start, b.end) for b in blocked)
    busy.sort()
    return busy


def compute_available_slots(
        bookings: Sequence,
        range_start: datetime.datetime,
        range_end: datetime.datetime,
        duration_minutes: int,
        *,
        now: datetime.datetime,
        working_hours: Schedule,
        granularity_minutes: int,
        allowed_durations: Sequence[int],
        max_lookahead_days: int,
        blocked: Sequence = (),
        buffer_minutes: int = 0,
) -> List[AvailabilitySlot]:
    """
    Returns every bookable [start, start + duration) window in the range.

    `bookings` and `blocked` are anything with `start`/`end` attributes; the
    caller is responsible for passing only the agent's holding bookings.
    """
    if range_start >= range_end:
        raise ValidationError("The range end must be after the range start.")
    if duration_minutes not in allowed_durations:
        raise ValidationError(
            f"Tour duration must be one of {sorted(allowed_durations)} minutes, got {duration_minutes}."
        )

    range_start, range_end = clamp_range(range_start, range_end, max_lookahead_days)
    duration = datetime.timedelta(minutes=duration_minutes)
    step = datetime.timedelta(minutes=step_minutes(duration_minutes, granularity_minutes))
    busy = _busy_intervals(bookings, blocked, buffer_minutes)

    slots: List[AvailabilitySlot] = []
    day = range_start.date()
    while day <= range_end.date():
        hours = hours_on(working_hours, day)
        if hours is None:
            day += datetime.timedelta(days=1)
            continue
        day_open = datetime.datetime.combine(day, hours.start)
        day_close = datetime.datetime.combine(day, hours.end)

        candidate = day_open
        while candidate + duration <= day_close:
            candidate_end = candidate + duration
            if (
                candidate >= range_start
                and candidate_end <= range_end
                and candidate >= now
                and not any(overlaps(b_start, b_end, candidate, candidate_end) for b_start, b_end in busy)
            ):
                slots.append(AvailabilitySlot(start=candidate, end=candidate_end))
            candidate += step

        day += datetime.timedelta(days=1)

    return slots


def nearest_alternatives(slots: Sequence[AvailabilitySlot], requested: datetime.datetime,
                         limit: int = 3) -> List[AvailabilitySlot]:
    """Slots closest to the requested start, returned in chronological order."""
    closest = sorted(slots, key=lambda s: (abs(s.start - requested), s.start))[:limit]
    return sorted(closest, key=lambda s: s.start)


def check_bookable_window(start: datetime.datetime, end: datetime.datetime, schedule: Schedule,
                          granularity_minutes: int, duration_minutes: int) -> None:
    """
    Raises ValidationError unless [start, end) is a window the slot
    computation could have offered: on an open day, inside that day's working
    hours and on the step grid counted from opening time.
    """
    hours = hours_on(schedule, start.date())
    if hours is None:
        raise ValidationError(f"The agent does not give tours on {start.strftime('%A')}s.")
    day_open = datetime.datetime.combine(start.date(), hours.start)
    day_close = datetime.datetime.combine(start.date(), hours.end)
    if start < day_open or end > day_close:
        raise ValidationError(
            f"Tours on {start.date()} must take place between {hours.start.strftime('%H:%M')} "
            f"and {hours.end.strftime('%H:%M')}.")
    step = step_minutes(duration_minutes, granularity_minutes)
    if (start - day_open) % datetime.timedelta(minutes=step):
        raise ValidationError(f"Tours start every {step} minutes counting "
                              f"from {hours.start.strftime('%H:%M')}.")
