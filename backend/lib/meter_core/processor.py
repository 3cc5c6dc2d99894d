# backend/lib/meter_core/processor.py
from collections import defaultdict
from datetime import tzinfo
from typing import Dict, Iterable, List, Optional
from .models import DailyUsage, MonthlyUsage, Period, Reading
from .periods import to_local


class UsageAnalyzer:
    def __init__(self, readings: Iterable[Reading], tz: Optional[tzinfo] = None):
        # sorted() is stable, so readings sharing a timestamp keep arrival order
        self.readings = sorted(readings, key=lambda r: r.timestamp)
        self.tz = tz

    def _day_key(self, reading: Reading) -> str:
        return to_local(reading.timestamp, self.tz).strftime("%Y-%m-%d")

    def _month_key(self, reading: Reading) -> str:
        return to_local(reading.timestamp, self.tz).strftime("%Y-%m")

    def readings_by_day(self) -> Dict[str, List[Reading]]:
        days = defaultdict(list)
        for r in self.readings:
            days[self._day_key(r)].append(r)
        return dict(days)

    def daily_usage(self) -> List[DailyUsage]:
        """
        Per-day consumption split into morning/evening/night.

        Readings are cumulative prepaid-meter values, so consumption is the
        decrease between two samples:
          morning = previous night - morning
          evening = morning - evening
          night   = evening - night
        A missing operand makes that period 0. The previous night value is
        carried across days until a newer night reading replaces it.
        Deltas are not clamped; see DailyUsage.clamped() for display.
        """
        if len(self.readings) < 2:
            return []

        by_day = self.readings_by_day()
        result = []
        previous_night: Optional[float] = None

        for day in sorted(by_day):
            selected: Dict[Period, Reading] = {}
            for r in by_day[day]:
                # first reading of a period wins; later ones are ignored
                selected.setdefault(r.period, r)

            morning = selected.get(Period.MORNING)
            evening = selected.get(Period.EVENING)
            night = selected.get(Period.NIGHT)

            morning_usage = 0.0
            evening_usage = 0.0
            night_usage = 0.0
            if morning and previous_night is not None:
                morning_usage = previous_night - morning.value
            if morning and evening:
                evening_usage = morning.value - evening.value
            if evening and night:
                night_usage = evening.value - night.value

            if night:
                previous_night = night.value

            result.append(DailyUsage(
                date=day,
                morning=morning.value if morning else None,
                evening=evening.value if evening else None,
                night=night.value if night else None,
                morning_usage=morning_usage,
                evening_usage=evening_usage,
                night_usage=night_usage,
                total=morning_usage + evening_usage + night_usage,
            ))
        return result

    def monthly_usage(self) -> List[MonthlyUsage]:
        """
        Monthly consumption (YYYY-MM) from consecutive reading pairs.

        Only decreases count; an increase (token top-up) contributes 0 to the
        month of the later reading. Unlike daily_usage() this needs no
        synthetic-reading bookkeeping to stay correct across top-ups.
        """
        monthly: Dict[str, float] = {}
        for prev, curr in zip(self.readings, self.readings[1:]):
            month = self._month_key(curr)
            delta = prev.value - curr.value
            monthly[month] = monthly.get(month, 0.0) + (delta if delta > 0 else 0.0)
        return [MonthlyUsage(month=m, usage=u) for m, u in sorted(monthly.items())]

    def latest_reading(self) -> Optional[Reading]:
        return self.readings[-1] if self.readings else None


def aggregate_daily(readings: Iterable[Reading], tz: Optional[tzinfo] = None) -> List[DailyUsage]:
    return UsageAnalyzer(readings, tz).daily_usage()


def aggregate_monthly(readings: Iterable[Reading], tz: Optional[tzinfo] = None) -> List[MonthlyUsage]:
    return UsageAnalyzer(readings, tz).monthly_usage()
