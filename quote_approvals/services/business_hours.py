"""
Eligible-hours clock for reminder and escalation deadlines.

With ``business_hours_only`` only the configured working window on weekdays
counts; with ``weekend_handling="pause"`` whole weekend days are skipped.
``"extend"`` keeps wall-clock hours but holds deadlines that fall on a
weekend until the weekend is over; the scheduler checks ``is_weekend``.
Otherwise elapsed time is plain wall-clock hours.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, time, timezone
from zoneinfo import ZoneInfo

from quote_approvals.config import settings


@dataclass(frozen=True)
class BusinessCalendar:
    tz: str = "UTC"
    day_start: int = 9
    day_end: int = 17

    @classmethod
    def from_settings(cls) -> "BusinessCalendar":
        return cls(
            tz=settings.BUSINESS_TIMEZONE,
            day_start=settings.BUSINESS_HOURS_START,
            day_end=settings.BUSINESS_HOURS_END,
        )

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.tz)

    def _window(self, day, business_hours_only: bool) -> tuple[datetime, datetime]:
        zone = self.zone
        if business_hours_only:
            start = datetime.combine(day, time(self.day_start), tzinfo=zone)
            end = datetime.combine(day, time(self.day_end), tzinfo=zone)
        else:
            start = datetime.combine(day, time(0), tzinfo=zone)
            end = datetime.combine(day + timedelta(days=1), time(0), tzinfo=zone)
        return start, end

    def eligible_hours(
        self,
        start: datetime,
        end: datetime,
        *,
        business_hours_only: bool = False,
        weekend_handling: str = "continue",
    ) -> float:
        if end <= start:
            return 0.0
        skip_weekends = business_hours_only or weekend_handling == "pause"
        if not skip_weekends:
            return (end - start).total_seconds() / 3600

        zone = self.zone
        day = start.astimezone(zone).date()
        last_day = end.astimezone(zone).date()
        seconds = 0.0
        while day <= last_day:
            if day.weekday() < 5:
                win_start, win_end = self._window(day, business_hours_only)
                lo = max(start, win_start)
                hi = min(end, win_end)
                if hi > lo:
                    seconds += (hi - lo).total_seconds()
            day += timedelta(days=1)
        return seconds / 3600

    def is_weekend(self, moment: datetime) -> bool:
        return moment.astimezone(self.zone).weekday() >= 5

    def is_open(self, moment: datetime) -> bool:
        if self.is_weekend(moment):
            return False
        return self.day_start <= moment.astimezone(self.zone).hour < self.day_end


def as_aware(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment
