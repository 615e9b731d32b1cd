"""Practice business rules: hours, lunch, holidays, blocked windows, durations."""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from app.config import settings

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

# Hour ranges (start inclusive, end exclusive)
TIME_OF_DAY_WINDOWS = {
    "morning": (8, 12),
    "afternoon": (12, 17),
    "evening": (17, 20),
}


def _parse_time(value) -> time:
    if isinstance(value, time):
        return value
    hours, minutes = str(value).split(":")[:2]
    return time(int(hours), int(minutes))


@dataclass
class DayHours:
    open: time
    close: time
    lunch_start: Optional[time] = None
    lunch_end: Optional[time] = None

    @classmethod
    def from_dict(cls, data: dict) -> "DayHours":
        return cls(
            open=_parse_time(data["open"]),
            close=_parse_time(data["close"]),
            lunch_start=_parse_time(data["lunch_start"]) if data.get("lunch_start") else None,
            lunch_end=_parse_time(data["lunch_end"]) if data.get("lunch_end") else None,
        )

    def in_lunch(self, at: time) -> bool:
        if self.lunch_start is None or self.lunch_end is None:
            return False
        return self.lunch_start <= at < self.lunch_end


@dataclass
class BlockedTime:
    """Recurring weekly window with no bookings (e.g. staff meeting)."""

    day_of_week: str
    start_time: time
    end_time: time
    reason: str = ""

    def covers(self, weekday: str, at: time) -> bool:
        return (
            self.day_of_week.lower() == weekday
            and self.start_time <= at < self.end_time
        )


@dataclass
class BusinessRules:
    """Scheduling rules for one practice.

    All times are wall-clock times in ``timezone``.
    """

    business_hours: dict[str, DayHours]
    appointment_durations: dict[str, int] = field(
        default_factory=lambda: {"routine": 60, "follow-up": 30, "urgent": 45}
    )
    standard_buffer: int = 10
    complex_buffer: int = 15
    holidays: set[str] = field(default_factory=set)
    blocked_times: list[BlockedTime] = field(default_factory=list)
    timezone: str = "UTC"

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def to_local(self, moment: datetime) -> datetime:
        return moment.astimezone(self.tz)

    def duration_for(self, appointment_type: Optional[str]) -> int:
        """Minutes required by an appointment type (routine when unknown)."""
        return self.appointment_durations.get(
            appointment_type or "routine", self.appointment_durations["routine"]
        )

    def hours_for(self, day: date) -> Optional[DayHours]:
        return self.business_hours.get(WEEKDAYS[day.weekday()])

    def is_holiday(self, day: date) -> bool:
        return day.isoformat() in self.holidays

    def rejection_reason(
        self,
        start: datetime,
        appointment_type: Optional[str] = None,
        time_of_day: Optional[str] = None,
    ) -> Optional[str]:
        """Return why a slot starting at ``start`` is not offerable, or None.

        Checks run in order: holiday, closed day, outside hours, lunch,
        blocked window, time-of-day preference, duration plus buffer past close.
        """
        local = self.to_local(start)
        day = local.date()
        at = local.time().replace(second=0, microsecond=0, tzinfo=None)
        weekday = WEEKDAYS[day.weekday()]

        if self.is_holiday(day):
            return "holiday"

        hours = self.hours_for(day)
        if hours is None:
            return "closed"

        if at < hours.open or at >= hours.close:
            return "outside_hours"

        if hours.in_lunch(at):
            return "lunch"

        if any(block.covers(weekday, at) for block in self.blocked_times):
            return "blocked"

        if time_of_day and not matches_time_of_day(at, time_of_day):
            return "time_preference"

        needed = self.duration_for(appointment_type) + self.standard_buffer
        finish = datetime.combine(day, at) + timedelta(minutes=needed)
        if finish > datetime.combine(day, hours.close):
            return "runs_past_close"

        return None

    def is_offerable(self, start: datetime, appointment_type: Optional[str] = None) -> bool:
        return self.rejection_reason(start, appointment_type) is None

    def fits_before_close(self, start: datetime, duration: int) -> bool:
        """Whether ``duration`` minutes plus the standard buffer end by closing."""
        local = self.to_local(start)
        hours = self.hours_for(local.date())
        if hours is None:
            return False
        finish = local.replace(tzinfo=None) + timedelta(minutes=duration + self.standard_buffer)
        return finish <= datetime.combine(local.date(), hours.close)

    def is_business_hours(self, moment: datetime) -> bool:
        """Whether the office is open at ``moment`` (used for outbound contact)."""
        local = self.to_local(moment)
        if self.is_holiday(local.date()):
            return False
        hours = self.hours_for(local.date())
        if hours is None:
            return False
        at = local.time().replace(tzinfo=None)
        return hours.open <= at < hours.close

    def next_business_opening(self, moment: datetime) -> datetime:
        """Return ``moment`` if within business hours, else the next opening time."""
        if self.is_business_hours(moment):
            return moment
        local = self.to_local(moment)
        for offset in range(0, 15):
            day = local.date() + timedelta(days=offset)
            hours = self.hours_for(day)
            if hours is None or self.is_holiday(day):
                continue
            opening = datetime.combine(day, hours.open, tzinfo=self.tz)
            if opening > local:
                return opening
        return moment

    @classmethod
    def from_dict(cls, data: dict) -> "BusinessRules":
        return cls(
            business_hours={
                day.lower(): DayHours.from_dict(hours)
                for day, hours in data.get("business_hours", {}).items()
            },
            appointment_durations=dict(
                data.get("appointment_durations") or {"routine": 60, "follow-up": 30, "urgent": 45}
            ),
            standard_buffer=int(data.get("standard_buffer", 10)),
            complex_buffer=int(data.get("complex_buffer", 15)),
            holidays=set(data.get("holidays", [])),
            blocked_times=[
                BlockedTime(
                    day_of_week=b["day_of_week"],
                    start_time=_parse_time(b["start_time"]),
                    end_time=_parse_time(b["end_time"]),
                    reason=b.get("reason", ""),
                )
                for b in data.get("blocked_times", [])
            ],
            timezone=data.get("timezone", "UTC"),
        )


def matches_time_of_day(at: time, preference: str) -> bool:
    window = TIME_OF_DAY_WINDOWS.get(preference)
    if window is None:
        return True
    return window[0] <= at.hour < window[1]


def default_business_rules(timezone: Optional[str] = None) -> BusinessRules:
    """Weekday 08:00-17:00 with a noon lunch hour and a Wednesday staff meeting."""
    weekday_hours = {
        "open": "08:00",
        "close": "17:00",
        "lunch_start": "12:00",
        "lunch_end": "13:00",
    }
    return BusinessRules.from_dict({
        "business_hours": {day: weekday_hours for day in WEEKDAYS[:5]},
        "blocked_times": [{
            "day_of_week": "wednesday",
            "start_time": "14:00",
            "end_time": "15:00",
            "reason": "Staff meeting",
        }],
        "timezone": timezone or settings.practice_timezone,
    })
