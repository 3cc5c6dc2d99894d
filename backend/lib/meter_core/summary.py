# backend/lib/meter_core/summary.py
from datetime import tzinfo
from typing import Any, Dict, Iterable, List, Optional
from .models import MonthlyUsage, PeakDay, Reading, TopUp, UsageSummary
from .processor import UsageAnalyzer

# Remaining-units thresholds, most urgent first
BALANCE_ALERT_LEVELS = [
    ("critical", 20.0),
    ("warning", 30.0),
    ("notice", 50.0),
]


def summarize(readings: Iterable[Reading], top_ups: Iterable[TopUp],
              tz: Optional[tzinfo] = None) -> UsageSummary:
    """
    Dashboard summary: average daily usage, peak day and total units bought.
    Empty input gives zeros, never a ZeroDivisionError.
    """
    daily = UsageAnalyzer(readings, tz).daily_usage()
    total_tokens = sum(t.units_added for t in top_ups)

    average = sum(d.total for d in daily) / len(daily) if daily else 0.0

    peak = None
    for day in daily:
        # strict comparison keeps the first of equal totals
        if peak is None or day.total > peak.usage:
            peak = PeakDay(date=day.date, usage=day.total)

    return UsageSummary(
        average_usage=average,
        peak_usage_day=peak or PeakDay(),
        total_tokens_purchased=float(total_tokens),
        daily_usage=daily,
    )


def current_balance(readings: Iterable[Reading]) -> float:
    """Units left on the meter, i.e. the latest reading (0 without readings)."""
    latest = UsageAnalyzer(readings).latest_reading()
    return latest.value if latest else 0.0


def balance_alert_level(balance: float) -> Optional[str]:
    for level, threshold in BALANCE_ALERT_LEVELS:
        if balance < threshold:
            return level
    return None


def monthly_report(monthly: List[MonthlyUsage]) -> Dict[str, Any]:
    """
    Totals and extremes for the monthly report. Average daily usage is an
    approximation over 30-day months.
    """
    total = sum(m.usage for m in monthly)
    average_monthly = total / max(len(monthly), 1)
    highest = max(monthly, key=lambda m: m.usage) if monthly else None
    lowest = min(monthly, key=lambda m: m.usage) if monthly else None
    return {
        "months": [m.to_dict() for m in monthly],
        "total_usage": total,
        "average_monthly_usage": average_monthly,
        "average_daily_usage": average_monthly / 30,
        "highest_month": highest.to_dict() if highest else None,
        "lowest_month": lowest.to_dict() if lowest else None,
    }
