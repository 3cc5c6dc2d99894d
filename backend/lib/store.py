"""
=============================================================================
STORE ADAPTER - Contract shared by every reading/top-up store
=============================================================================

The usage engine never talks to a database itself. It receives readings and
token purchases from a store object that offers:

- list_readings()   -> all readings, oldest first
- list_top_ups()    -> all token purchases, oldest first
- append_reading()  -> store one meter reading
- append_top_up()   -> store one purchase plus its synthetic reading
- migrate_batch()   -> idempotent, all-or-nothing bulk insert

Every store carries an explicit status (CONNECTED or UNAVAILABLE). Callers
check it: reads on an unavailable store are treated as "no data", writes
raise StoreUnavailableError.

Implementations:
- LocalJsonlStore  (backend/lib/local_store.py)      - JSON lines on disk
- DynamoDBService  (backend/lib/dynamodb_service.py) - Amazon DynamoDB
=============================================================================
"""

import threading
import uuid
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import List, Optional

from backend.lib.meter_core.models import MigrationResult, Period, Reading, StagedBatch, TopUp
from backend.lib.meter_core.periods import period_for


class StoreStatus(str, Enum):
    CONNECTED = "connected"
    UNAVAILABLE = "unavailable"


class StoreUnavailableError(Exception):
    """Raised when writing to a store that could not be reached."""


class DuplicateKeyError(ValueError):
    """Raised when a single append reuses an existing key."""


def new_key(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


class ReadingStore:
    """
    Base class for stores.

    Subclasses implement the storage primitives (_load_readings,
    _load_top_ups, _insert_reading, _insert_top_up, _migrate); this class
    implements the rules shared by all of them, such as deriving the period
    at write time and creating the synthetic reading for a top-up.

    Args:
        tz: Timezone whose wall clock decides the period of new readings.
            None means "use the timestamp's own offset".
    """

    def __init__(self, tz: Optional[tzinfo] = None):
        self.tz = tz
        self.status = StoreStatus.CONNECTED
        # Writes are serialized per store instance
        self._write_lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self.status == StoreStatus.CONNECTED

    def _require_available(self):
        if not self.available:
            raise StoreUnavailableError(f"{type(self).__name__} is unavailable")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_readings(self) -> List[Reading]:
        if not self.available:
            return []
        return sorted(self._load_readings(), key=lambda r: r.timestamp)

    def list_top_ups(self) -> List[TopUp]:
        if not self.available:
            return []
        return sorted(self._load_top_ups(), key=lambda t: t.timestamp)

    def latest_value(self) -> float:
        """Latest meter value, 0 when nothing has been recorded yet."""
        readings = self.list_readings()
        return readings[-1].value if readings else 0.0

    def _latest_stored_value(self) -> float:
        # Write paths must not mistake a failed read for an empty meter
        readings = sorted(self._load_readings(strict=True), key=lambda r: r.timestamp)
        return readings[-1].value if readings else 0.0

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def append_reading(self, value: float, timestamp: Optional[datetime] = None,
                       period: Optional[Period] = None,
                       reading_key: Optional[str] = None) -> Reading:
        """
        Store a meter reading.

        Args:
            value: Units shown on the meter
            timestamp: When the reading was taken (default: now). Passing an
                       older time records a backdated reading.
            period: Explicit period; derived from the local hour when omitted
            reading_key: Unique key (generated when omitted)

        Returns:
            Reading: The stored reading
        """
        self._require_available()
        now = datetime.now(timezone.utc)
        timestamp = timestamp or now
        reading = Reading.from_dict({
            "reading_key": reading_key or new_key("reading"),
            "timestamp": timestamp,
            "value": value,
            "period": Period(period) if period else period_for(timestamp, self.tz),
            "created_at": now,
        })
        with self._write_lock:
            self._insert_reading(reading)
        return reading

    def append_top_up(self, units_added: float, cost: Optional[float] = None,
                      timestamp: Optional[datetime] = None) -> TopUp:
        """
        Record a token purchase.

        The resulting meter value is the latest known reading plus the units
        bought. A synthetic reading with that value is stored at the same
        timestamp so the reading history shows the jump.
        """
        self._require_available()
        now = datetime.now(timezone.utc)
        timestamp = timestamp or now
        with self._write_lock:
            resulting = self._latest_stored_value() + float(units_added)
            top_up = TopUp.from_dict({
                "top_up_key": new_key("token"),
                "timestamp": timestamp,
                "units_added": units_added,
                "resulting_reading": resulting,
                "cost": cost,
                "created_at": now,
            })
            synthetic = Reading(
                reading_key=new_key("token-reading"),
                timestamp=timestamp,
                value=resulting,
                period=period_for(timestamp, self.tz),
                created_at=now,
            )
            self._insert_top_up(top_up, synthetic)
        return top_up

    def migrate_batch(self, batch: StagedBatch) -> MigrationResult:
        """
        Insert a validated batch (see meter_core.ingest.validate_and_stage).

        Items whose key already exists are skipped, never overwritten. Either
        every new item is written or none is: on failure the store is left as
        it was and the result is falsy.
        """
        self._require_available()
        with self._write_lock:
            return self._migrate(batch)

    # -------------------------------------------------------------------------
    # Storage primitives
    # -------------------------------------------------------------------------

    def _migrate(self, batch: StagedBatch) -> MigrationResult:
        raise NotImplementedError

    def _load_readings(self, strict: bool = False) -> List[Reading]:
        """
        All stored readings, unsorted. With strict=True a storage error
        raises StoreUnavailableError instead of giving an empty list.
        """
        raise NotImplementedError

    def _load_top_ups(self) -> List[TopUp]:
        raise NotImplementedError

    def _insert_reading(self, reading: Reading):
        raise NotImplementedError

    def _insert_top_up(self, top_up: TopUp, synthetic: Reading):
        raise NotImplementedError


def create_store(settings) -> ReadingStore:
    """
    Build the store selected by configuration.

    DynamoDB when USE_DYNAMODB is enabled, otherwise the local JSON lines
    file. A store that fails to initialise is returned with status
    UNAVAILABLE instead of silently falling back to another backend.
    """
    if settings.use_dynamodb:
        from backend.lib.dynamodb_service import DynamoDBService
        try:
            store = DynamoDBService(
                readings_table=settings.readings_table,
                top_ups_table=settings.top_ups_table,
                region=settings.aws_region,
                tz=settings.tz,
            )
        except Exception as e:
            print(f"DynamoDB initialization failed: {e}")
            return UnavailableStore(tz=settings.tz)
        store.create_tables_if_not_exist()
        return store

    from backend.lib.local_store import LocalJsonlStore
    return LocalJsonlStore(settings.data_dir, tz=settings.tz)


class UnavailableStore(ReadingStore):
    """Placeholder for a backend that could not be constructed at all."""

    def __init__(self, tz: Optional[tzinfo] = None):
        super().__init__(tz=tz)
        self.status = StoreStatus.UNAVAILABLE
