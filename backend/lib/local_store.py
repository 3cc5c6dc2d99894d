"""
=============================================================================
LOCAL STORE - Readings and token purchases in a JSON lines file
=============================================================================

Used when DynamoDB is not enabled (local development, tests, offline use).

File format (JSONL = one JSON object per line):
    {"kind": "reading", "data": {"reading_key": "...", "timestamp": "...", ...}}
    {"kind": "top_up",  "data": {"top_up_key": "...", "units_added": 50.0, ...}}

Appends add lines at the end of the file. Bulk migrations write a complete
new copy of the file and swap it in with os.replace(), which is atomic, so
a failed migration never leaves half a batch behind.
=============================================================================
"""

import json
import os
from pathlib import Path
from typing import Dict, List, Set

from backend.lib.meter_core.models import MigrationResult, Reading, StagedBatch, TopUp
from backend.lib.store import DuplicateKeyError, ReadingStore, StoreStatus, StoreUnavailableError

DATA_FILE_NAME = "meter_data.jsonl"


class LocalJsonlStore(ReadingStore):
    """
    File-backed store.

    Usage:
        store = LocalJsonlStore("backend/data")
        store.append_reading(182.4)
        store.append_top_up(50, cost=12.5)
        readings = store.list_readings()
    """

    def __init__(self, data_dir, tz=None):
        super().__init__(tz=tz)
        self.data_dir = Path(data_dir)
        self.data_file = self.data_dir / DATA_FILE_NAME
        try:
            # Create the directory if it doesn't exist
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            print(f"Local store unavailable ({self.data_dir}): {e}")
            self.status = StoreStatus.UNAVAILABLE

    # -------------------------------------------------------------------------
    # File helpers
    # -------------------------------------------------------------------------

    def _read_records(self) -> List[Dict]:
        if not self.data_file.exists():
            return []
        records = []
        with self.data_file.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    records.append(json.loads(line))
        return records

    def _existing_keys(self) -> Dict[str, Set[str]]:
        keys = {"reading": set(), "top_up": set()}
        for rec in self._read_records():
            data = rec.get("data", {})
            if rec.get("kind") == "reading":
                keys["reading"].add(data.get("reading_key"))
            elif rec.get("kind") == "top_up":
                keys["top_up"].add(data.get("top_up_key"))
        return keys

    @staticmethod
    def _line(kind: str, data: Dict) -> str:
        return json.dumps({"kind": kind, "data": data}) + "\n"

    def _append_lines(self, lines: List[str]):
        with self.data_file.open("a", encoding="utf-8") as f:
            f.write("".join(lines))

    # -------------------------------------------------------------------------
    # Storage primitives
    # -------------------------------------------------------------------------

    def _load_readings(self, strict: bool = False) -> List[Reading]:
        readings = {}
        try:
            records = self._read_records()
        except OSError as e:
            if strict:
                raise StoreUnavailableError(str(e)) from e
            raise
        for rec in records:
            if rec.get("kind") == "reading":
                reading = Reading.from_dict(rec["data"])
                # keep the first record for a key
                readings.setdefault(reading.reading_key, reading)
        return list(readings.values())

    def _load_top_ups(self) -> List[TopUp]:
        top_ups = {}
        for rec in self._read_records():
            if rec.get("kind") == "top_up":
                top_up = TopUp.from_dict(rec["data"])
                top_ups.setdefault(top_up.top_up_key, top_up)
        return list(top_ups.values())

    def _insert_reading(self, reading: Reading):
        if reading.reading_key in self._existing_keys()["reading"]:
            raise DuplicateKeyError(f"reading_key already exists: {reading.reading_key}")
        self._append_lines([self._line("reading", reading.to_dict())])

    def _insert_top_up(self, top_up: TopUp, synthetic: Reading):
        # one write call so the purchase and its reading land together
        self._append_lines([
            self._line("top_up", top_up.to_dict()),
            self._line("reading", synthetic.to_dict()),
        ])

    def _migrate(self, batch: StagedBatch) -> MigrationResult:
        try:
            existing = self._existing_keys()
        except (OSError, ValueError) as e:
            print(f"Migration failed reading {self.data_file}: {e}")
            return MigrationResult(success=False)

        new_lines = []
        inserted_readings = 0
        inserted_top_ups = 0
        skipped = 0

        for reading in batch.accepted_readings:
            if reading.reading_key in existing["reading"]:
                skipped += 1
                continue
            existing["reading"].add(reading.reading_key)
            new_lines.append(self._line("reading", reading.to_dict()))
            inserted_readings += 1

        for top_up in batch.accepted_top_ups:
            if top_up.top_up_key in existing["top_up"]:
                skipped += 1
                continue
            existing["top_up"].add(top_up.top_up_key)
            new_lines.append(self._line("top_up", top_up.to_dict()))
            inserted_top_ups += 1

        if not new_lines:
            return MigrationResult(success=True, skipped=skipped)

        tmp_file = self.data_file.with_name(self.data_file.name + ".tmp")
        try:
            current = self.data_file.read_text(encoding="utf-8") if self.data_file.exists() else ""
            if current and not current.endswith("\n"):
                current += "\n"
            with tmp_file.open("w", encoding="utf-8") as f:
                f.write(current)
                f.write("".join(new_lines))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_file, self.data_file)
        except OSError as e:
            print(f"Migration failed, store left unchanged: {e}")
            if tmp_file.exists():
                tmp_file.unlink()
            return MigrationResult(success=False)

        print(f"Migrated {inserted_readings} readings and {inserted_top_ups} top-ups "
              f"({skipped} already present)")
        return MigrationResult(
            success=True,
            inserted_readings=inserted_readings,
            inserted_top_ups=inserted_top_ups,
            skipped=skipped,
        )
