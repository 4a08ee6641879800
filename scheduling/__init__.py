"""
Scheduling — when jobs become visible.

- delays:  spread N records over the day and fold into the queue's delay ceiling
- trigger: fire the dispatcher once per day at a fixed UTC time
"""
from scheduling.delays import (
    SECONDS_PER_DAY, DEFAULT_MAX_DELAY_SECONDS, DEFAULT_JITTER_SECONDS,
    spread_delays, small_jitter, fold_delay, schedule_delays,
)
from scheduling.trigger import DailyTrigger, seconds_until_next

__all__ = [
    "SECONDS_PER_DAY", "DEFAULT_MAX_DELAY_SECONDS", "DEFAULT_JITTER_SECONDS",
    "spread_delays", "small_jitter", "fold_delay", "schedule_delays",
    "DailyTrigger", "seconds_until_next",
]
