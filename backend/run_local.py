# backend/run_local.py
from backend.lib.meter_core.ingest import validate_and_stage
from backend.lib.meter_core.io import parse_readings_csv
from backend.lib.meter_core.processor import UsageAnalyzer
from backend.lib.meter_core.summary import summarize
import sys
from pathlib import Path

def main(csv_path):
    text = Path(csv_path).read_text()
    batch = validate_and_stage(parse_readings_csv(text), [])
    readings = batch.accepted_readings
    print(f"Parsed {len(readings)} readings ({len(batch.rejected)} rejected):")
    for rejection in batch.rejected:
        print(f" ! {rejection.reason}: {rejection.item}")

    summary = summarize(readings, [])
    print("Daily usage:")
    for d in summary.daily_usage:
        print(f" - {d.date}: morning {d.morning_usage:.2f}, evening {d.evening_usage:.2f}, "
              f"night {d.night_usage:.2f} -> {d.total:.2f} units")

    print("Monthly usage:")
    for m in UsageAnalyzer(readings).monthly_usage():
        print(f" - {m.month}: {m.usage:.2f} units")

    peak = summary.peak_usage_day
    print(f"Average daily usage: {summary.average_usage:.2f} units")
    print(f"Peak day: {peak.date or 'n/a'} ({peak.usage:.2f} units)")

if __name__ == "__main__":
    csv = sys.argv[1] if len(sys.argv) > 1 else "tests/sample.csv"
    main(csv)
