# backend/lib/meter_core/ingest.py
from typing import Any, Dict, Iterable
from .models import Reading, RecordError, Rejection, StagedBatch, TopUp

READING_REQUIRED = ("reading_key", "timestamp", "value", "period")
TOP_UP_REQUIRED = ("top_up_key", "timestamp", "units_added", "resulting_reading")


def _missing(item: Dict[str, Any], required) -> list:
    return [name for name in required if item.get(name) is None]


def validate_and_stage(readings: Iterable[Dict[str, Any]],
                       top_ups: Iterable[Dict[str, Any]]) -> StagedBatch:
    """
    Validate an untrusted batch before it reaches the store.

    Bad items are reported in `rejected` with a reason and never abort the
    batch. Within the batch the first occurrence of a key wins; whether a
    key already exists in the store is decided by store.migrate_batch().
    """
    batch = StagedBatch()

    seen_readings = set()
    for item in readings:
        if not isinstance(item, dict):
            batch.rejected.append(Rejection(item, "reading is not an object"))
            continue
        missing = _missing(item, READING_REQUIRED)
        if missing:
            batch.rejected.append(Rejection(item, f"missing field(s): {', '.join(missing)}"))
            continue
        try:
            reading = Reading.from_dict(item)
        except RecordError as e:
            batch.rejected.append(Rejection(item, str(e)))
            continue
        if reading.reading_key in seen_readings:
            batch.rejected.append(Rejection(item, f"duplicate reading_key in batch: {reading.reading_key}"))
            continue
        seen_readings.add(reading.reading_key)
        batch.accepted_readings.append(reading)

    seen_top_ups = set()
    for item in top_ups:
        if not isinstance(item, dict):
            batch.rejected.append(Rejection(item, "top-up is not an object"))
            continue
        missing = _missing(item, TOP_UP_REQUIRED)
        if missing:
            batch.rejected.append(Rejection(item, f"missing field(s): {', '.join(missing)}"))
            continue
        try:
            top_up = TopUp.from_dict(item)
        except RecordError as e:
            batch.rejected.append(Rejection(item, str(e)))
            continue
        if top_up.top_up_key in seen_top_ups:
            batch.rejected.append(Rejection(item, f"duplicate top_up_key in batch: {top_up.top_up_key}"))
            continue
        seen_top_ups.add(top_up.top_up_key)
        batch.accepted_top_ups.append(top_up)

    return batch
