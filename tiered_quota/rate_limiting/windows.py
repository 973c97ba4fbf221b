"""Reset-boundary arithmetic for rolling and calendar quota windows."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from .clock import ensure_utc
from .policy import TierLimit, WindowKind
from .store import QuotaCounter


def start_of_next_month(moment: datetime) -> datetime:
    """First instant of the UTC month following moment."""
    moment = ensure_utc(moment)
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)


class WindowManager:
    """
    Decides when a subject's quota window is over.

    Rolling windows run for ``window_duration`` from the first request after the
    previous window expired; they are renewed, not slid. Calendar windows end
    when the UTC (year, month) changes, whatever the day or time.
    """

    def is_expired(self, counter: Optional[QuotaCounter], limit: TierLimit,
                   now: datetime) -> bool:
        if counter is None:
            return True

        now = ensure_utc(now)
        start = ensure_utc(counter.window_start)

        if limit.window_kind == WindowKind.CALENDAR:
            return (now.year, now.month) != (start.year, start.month)

        return now - start >= limit.window_duration

    def current_window_start(self, counter: Optional[QuotaCounter], limit: TierLimit,
                             now: datetime) -> datetime:
        """Start of the window a request at ``now`` falls into."""
        if self.is_expired(counter, limit, now):
            return ensure_utc(now)
        return ensure_utc(counter.window_start)

    def next_reset(self, counter: Optional[QuotaCounter], limit: TierLimit,
                   now: datetime) -> datetime:
        """Moment the window containing ``now`` closes."""
        start = self.current_window_start(counter, limit, now)
        if limit.window_kind == WindowKind.CALENDAR:
            return start_of_next_month(start)
        return start + limit.window_duration

    def retry_after(self, counter: Optional[QuotaCounter], limit: TierLimit,
                    now: datetime) -> timedelta:
        """Time left until the current window resets; never negative."""
        remaining = self.next_reset(counter, limit, now) - ensure_utc(now)
        return max(remaining, timedelta(0))

    def retention(self, limit: TierLimit, window_start: datetime,
                  grace: timedelta = timedelta(0)) -> timedelta:
        """How long a counter started at window_start needs to be kept."""
        if limit.window_kind == WindowKind.CALENDAR:
            end = start_of_next_month(window_start)
        else:
            end = ensure_utc(window_start) + limit.window_duration
        return max(end - ensure_utc(window_start), timedelta(seconds=1)) + grace
