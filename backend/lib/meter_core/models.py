# backend/lib/meter_core/models.py
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class RecordError(ValueError):
    """Raised when a stored or imported record does not have the expected shape."""


class Period(str, Enum):
    MORNING = "morning"
    EVENING = "evening"
    NIGHT = "night"


def parse_timestamp(raw: Any, field_name: str = "timestamp") -> datetime:
    if isinstance(raw, datetime):
        ts = raw
    elif isinstance(raw, str):
        try:
            ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            raise RecordError(f"{field_name} is not an ISO-8601 timestamp: {raw!r}")
    else:
        raise RecordError(f"{field_name} must be a timestamp string, got {type(raw).__name__}")
    if ts.tzinfo is None or ts.utcoffset() is None:
        raise RecordError(f"{field_name} has no timezone offset: {raw!r}")
    return ts


def _parse_number(raw: Any, field_name: str) -> float:
    # bool is an int subclass; a flag in a numeric column is a bad record
    if isinstance(raw, bool) or not isinstance(raw, (int, float, Decimal)):
        raise RecordError(f"{field_name} must be a number, got {type(raw).__name__}")
    value = float(raw)
    if not math.isfinite(value):
        raise RecordError(f"{field_name} must be a finite number, got {raw!r}")
    return value


def _parse_period(raw: Any) -> Period:
    try:
        return Period(raw)
    except ValueError:
        raise RecordError(f"period must be one of morning/evening/night, got {raw!r}")


def _optional_timestamp(raw: Any, field_name: str) -> Optional[datetime]:
    if raw is None:
        return None
    return parse_timestamp(raw, field_name)


@dataclass(frozen=True)
class Reading:
    reading_key: str
    timestamp: datetime
    value: float
    period: Period
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reading":
        """Build a Reading from a stored/imported mapping without coercing types."""
        key = data.get("reading_key")
        if not isinstance(key, str) or not key:
            raise RecordError("reading_key must be a non-empty string")
        value = _parse_number(data.get("value"), "value")
        if value < 0:
            raise RecordError("value must be >= 0")
        return cls(
            reading_key=key,
            timestamp=parse_timestamp(data.get("timestamp"), "timestamp"),
            value=value,
            period=_parse_period(data.get("period")),
            created_at=_optional_timestamp(data.get("created_at"), "created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reading_key": self.reading_key,
            "timestamp": self.timestamp.isoformat(),
            "value": self.value,
            "period": self.period.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class TopUp:
    top_up_key: str
    timestamp: datetime
    units_added: float
    resulting_reading: float
    cost: Optional[float] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TopUp":
        key = data.get("top_up_key")
        if not isinstance(key, str) or not key:
            raise RecordError("top_up_key must be a non-empty string")
        units = _parse_number(data.get("units_added"), "units_added")
        if units <= 0:
            raise RecordError("units_added must be > 0")
        cost = data.get("cost")
        return cls(
            top_up_key=key,
            timestamp=parse_timestamp(data.get("timestamp"), "timestamp"),
            units_added=units,
            resulting_reading=_parse_number(data.get("resulting_reading"), "resulting_reading"),
            cost=None if cost is None else _parse_number(cost, "cost"),
            created_at=_optional_timestamp(data.get("created_at"), "created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "top_up_key": self.top_up_key,
            "timestamp": self.timestamp.isoformat(),
            "units_added": self.units_added,
            "resulting_reading": self.resulting_reading,
            "cost": self.cost,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class DailyUsage:
    date: str
    morning: Optional[float] = None
    evening: Optional[float] = None
    night: Optional[float] = None
    morning_usage: float = 0.0
    evening_usage: float = 0.0
    night_usage: float = 0.0
    total: float = 0.0

    def clamped(self) -> "DailyUsage":
        """Copy with negative period usage floored at zero, for charts."""
        morning_usage = max(self.morning_usage, 0.0)
        evening_usage = max(self.evening_usage, 0.0)
        night_usage = max(self.night_usage, 0.0)
        return replace(
            self,
            morning_usage=morning_usage,
            evening_usage=evening_usage,
            night_usage=night_usage,
            total=morning_usage + evening_usage + night_usage,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "morning": self.morning,
            "evening": self.evening,
            "night": self.night,
            "morning_usage": self.morning_usage,
            "evening_usage": self.evening_usage,
            "night_usage": self.night_usage,
            "total": self.total,
        }


@dataclass
class MonthlyUsage:
    month: str
    usage: float

    def to_dict(self) -> Dict[str, Any]:
        return {"month": self.month, "usage": self.usage}


@dataclass
class PeakDay:
    date: str = ""
    usage: float = 0.0


@dataclass
class UsageSummary:
    average_usage: float
    peak_usage_day: PeakDay
    total_tokens_purchased: float
    daily_usage: List[DailyUsage] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "average_usage": self.average_usage,
            "peak_usage_day": {"date": self.peak_usage_day.date, "usage": self.peak_usage_day.usage},
            "total_tokens_purchased": self.total_tokens_purchased,
            "daily_usage": [d.to_dict() for d in self.daily_usage],
        }


@dataclass
class Rejection:
    item: Any
    reason: str


@dataclass
class StagedBatch:
    accepted_readings: List[Reading] = field(default_factory=list)
    accepted_top_ups: List[TopUp] = field(default_factory=list)
    rejected: List[Rejection] = field(default_factory=list)


@dataclass
class MigrationResult:
    success: bool
    inserted_readings: int = 0
    inserted_top_ups: int = 0
    skipped: int = 0

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "inserted_readings": self.inserted_readings,
            "inserted_top_ups": self.inserted_top_ups,
            "skipped": self.skipped,
        }
