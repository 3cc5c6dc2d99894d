# backend/lib/meter_core/io.py
import csv
import math
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, List, Optional
from .models import MonthlyUsage
from .periods import period_for
from io import StringIO


def parse_readings_csv(csv_text: str, tz: Optional[tzinfo] = None) -> List[Dict[str, Any]]:
    """
    Parse CSV text with header: reading_key,timestamp,reading[,period]
    Timestamp should be ISO8601 with an offset, e.g. 2025-11-01T07:00:00+02:00
    A blank period is derived from the timestamp's local hour.
    Returns mappings ready for validate_and_stage().
    """
    f = StringIO(csv_text.strip())
    reader = csv.DictReader(f)
    rows = []
    for row in reader:
        # Basic validation
        if not row.get('reading_key') or not row.get('timestamp') or not row.get('reading'):
            raise ValueError(f"Missing field in row: {row}")
        ts_text = row['timestamp'].replace("Z", "+00:00")
        timestamp = datetime.fromisoformat(ts_text)
        if timestamp.tzinfo is None:
            raise ValueError(f"timestamp has no offset in row: {row}")
        value = float(row['reading'])
        if not math.isfinite(value) or value < 0:
            raise ValueError(f"reading must be a finite number >= 0 in row: {row}")
        period = (row.get('period') or '').strip().lower() or period_for(timestamp, tz).value
        rows.append({
            "reading_key": row['reading_key'].strip(),
            "timestamp": timestamp.isoformat(),
            "value": value,
            "period": period,
        })
    return rows


def _legacy_timestamp(raw: Any) -> Any:
    # browser storage kept either Date.toISOString() text or epoch milliseconds
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return datetime.fromtimestamp(raw / 1000, tz=timezone.utc).isoformat()
    return raw


def _legacy_key(item: Dict[str, Any], key_field: str) -> Optional[str]:
    key = item.get(key_field)
    if key is None and item.get("id") is not None:
        key = str(item["id"])
    return key


def normalize_legacy_reading(item: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map a reading from the old local-storage format (reading_id/id, reading)
    to the canonical field names. Already canonical items pass through.
    Keys are never generated, so importing the same data twice is harmless.
    """
    if not isinstance(item, dict) or "reading_key" in item:
        return item
    return {
        "reading_key": _legacy_key(item, "reading_id"),
        "timestamp": _legacy_timestamp(item.get("timestamp")),
        "value": item.get("reading"),
        "period": item.get("period"),
    }


def normalize_legacy_top_up(item: Dict[str, Any]) -> Dict[str, Any]:
    """
    Same for token purchases: token_id/id, units, new_reading or the older
    camel-case newReading, total_cost.
    """
    if not isinstance(item, dict) or "top_up_key" in item:
        return item
    resulting = item.get("new_reading")
    if resulting is None:
        resulting = item.get("newReading")
    return {
        "top_up_key": _legacy_key(item, "token_id"),
        "timestamp": _legacy_timestamp(item.get("timestamp")),
        "units_added": item.get("units"),
        "resulting_reading": resulting,
        "cost": item.get("total_cost"),
    }


def monthly_report_csv(monthly: List[MonthlyUsage]) -> str:
    out = StringIO()
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(["Month", "Usage (kWh)"])
    for m in monthly:
        writer.writerow([m.month, round(m.usage, 2)])
    return out.getvalue()
