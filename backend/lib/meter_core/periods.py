# backend/lib/meter_core/periods.py
from datetime import datetime, timedelta, tzinfo
from typing import Iterable, List, Optional
from .models import Period, Reading

# Reminder slots: (hour the reading is due, hour after which it counts as missed, label)
REMINDER_SLOTS = [
    (Period.MORNING, 7, 8, "morning (7:00 AM)"),
    (Period.EVENING, 17, 18, "evening (5:00 PM)"),
    (Period.NIGHT, 21, 22, "night (9:00 PM)"),
]


def classify_hour(hour: int) -> Period:
    """
    Map a local wall-clock hour to its period.
    [5, 12) -> morning, [12, 20) -> evening, anything else -> night.
    """
    hour = int(hour) % 24
    if 5 <= hour < 12:
        return Period.MORNING
    if 12 <= hour < 20:
        return Period.EVENING
    return Period.NIGHT


def to_local(timestamp: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """
    Wall-clock view of a timestamp: its own offset, or tz when given.
    """
    return timestamp.astimezone(tz) if tz is not None else timestamp


def period_for(timestamp: datetime, tz: Optional[tzinfo] = None) -> Period:
    return classify_hour(to_local(timestamp, tz).hour)


def next_update_time(now: datetime) -> datetime:
    """
    Next reminder slot (07:00, 17:00, 21:00) at or after now.
    A time exactly on a slot returns that slot.
    """
    for _, due_hour, _, _ in REMINDER_SLOTS:
        slot = now.replace(hour=due_hour, minute=0, second=0, microsecond=0)
        if now <= slot:
            return slot
    tomorrow = now + timedelta(days=1)
    return tomorrow.replace(hour=REMINDER_SLOTS[0][1], minute=0, second=0, microsecond=0)


def missed_periods(readings: Iterable[Reading], now: datetime, tz: Optional[tzinfo] = None) -> List[str]:
    """
    Labels of today's reminder slots that have passed without a reading
    tagged with that period.
    """
    local_now = to_local(now, tz)
    today = local_now.date()
    seen = {r.period for r in readings if to_local(r.timestamp, tz).date() == today}
    missed = []
    for period, _, overdue_hour, label in REMINDER_SLOTS:
        if local_now.hour >= overdue_hour and period not in seen:
            missed.append(label)
    return missed
