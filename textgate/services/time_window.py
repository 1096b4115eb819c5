"""
Time-window evaluator - quiet hours in the recipient's local time.

Rules:
- Sends allowed only from 08:00 up to (not including) 21:00 recipient local time
- Campaigns may additionally block whole weekdays (local) and observe a
  holiday calendar (federal by default)

The recipient's timezone comes from the number→timezone resolver, never from
the sender or server clock.
"""
import logging
from datetime import datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from textgate.services.registry import CampaignInfo
from textgate.utils.holidays import is_holiday
from textgate.utils.timezone import TimezoneResolver, AreaCodeTimezoneResolver

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


class TimeWindowResult:
    """Result of a time-window check."""

    def __init__(
        self,
        allowed: bool,
        local_time: datetime,
        tz_name: str,
        rule: str = "",
        reason: str = "",
    ):
        self.allowed = allowed
        self.local_time = local_time
        self.tz_name = tz_name
        self.rule = rule  # quiet_hours, blocked_weekday, holiday
        self.reason = reason

    def __bool__(self) -> bool:
        return self.allowed

    def __repr__(self) -> str:
        status = "ALLOWED" if self.allowed else "BLOCKED"
        return f"<TimeWindowResult {status} {self.local_time.isoformat()} {self.tz_name}: {self.reason}>"


class TimeWindowEvaluator:

    def __init__(
        self,
        resolver: Optional[TimezoneResolver] = None,
        window_start_hour: int = 8,
        window_end_hour: int = 21,
    ) -> None:
        if not 0 <= window_start_hour < window_end_hour <= 24:
            raise ValueError(
                f"Invalid send window {window_start_hour}:00-{window_end_hour}:00"
            )
        self.resolver = resolver or AreaCodeTimezoneResolver()
        self.window_start = time(window_start_hour, 0)
        self.window_end_hour = window_end_hour

    @classmethod
    def from_settings(cls, resolver: Optional[TimezoneResolver] = None) -> "TimeWindowEvaluator":
        from textgate.config import get_settings
        settings = get_settings()
        return cls(
            resolver=resolver or AreaCodeTimezoneResolver(settings.default_timezone),
            window_start_hour=settings.quiet_hours_end,
            window_end_hour=settings.quiet_hours_start,
        )

    def evaluate(
        self,
        recipient: str,
        at: Optional[datetime] = None,
        campaign: Optional[CampaignInfo] = None,
    ) -> TimeWindowResult:
        """
        Check whether a send to recipient at instant `at` falls inside the window.
        Naive datetimes are taken as UTC.
        """
        tz_name = self.resolver.resolve(recipient)
        if at is None:
            at = datetime.now(timezone.utc)
        elif at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        local = at.astimezone(ZoneInfo(tz_name))
        local_clock = local.strftime("%H:%M")

        if local.time() < self.window_start or local.hour >= self.window_end_hour:
            return TimeWindowResult(
                False, local, tz_name, "quiet_hours",
                f"Outside {self.window_start.strftime('%H:%M')}-{self.window_end_hour:02d}:00 "
                f"recipient local time (now {local_clock} {tz_name})",
            )

        if campaign is not None:
            if local.weekday() in campaign.blocked_weekdays:
                return TimeWindowResult(
                    False, local, tz_name, "blocked_weekday",
                    f"Campaign does not send on {WEEKDAY_NAMES[local.weekday()]}",
                )
            if campaign.observe_holidays and is_holiday(local.date(), campaign.holiday_calendar):
                return TimeWindowResult(
                    False, local, tz_name, "holiday",
                    f"No sends on {campaign.holiday_calendar} holidays ({local.date().isoformat()})",
                )

        return TimeWindowResult(True, local, tz_name, reason="Within allowed hours")
