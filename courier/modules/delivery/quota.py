import logging
from datetime import date, datetime
from zoneinfo import ZoneInfo
from courier.modules.delivery.channels import ChannelState

log = logging.getLogger("delivery.quota")

class QuotaTracker:
    """Per-channel daily send counter, reset on calendar-day rollover."""

    def __init__(self, tz: str = "UTC"):
        self.tz = ZoneInfo(tz)

    def _day(self, now: datetime) -> date:
        return now.astimezone(self.tz).date()

    def roll(self, channel: ChannelState, now: datetime) -> None:
        today = self._day(now)
        if channel.quota_reset_at != today:
            if channel.quota_reset_at is not None and channel.daily_count:
                log.info("[%s] New day, resetting daily count (was %d)", channel.id, channel.daily_count)
            channel.daily_count = 0
            channel.quota_reset_at = today

    def exhausted(self, channel: ChannelState, now: datetime) -> bool:
        self.roll(channel, now)
        return channel.daily_count >= channel.daily_quota

    def record_send(self, channel: ChannelState, now: datetime) -> int:
        self.roll(channel, now)
        channel.daily_count += 1
        return channel.daily_count
