"""
=============================================================================
PREPAID METER TRACKER - FLASK APPLICATION
=============================================================================

REST API for logging prepaid electricity meter readings and token purchases
and for reading back the derived consumption statistics:

- Readings and token purchases (append / list)
- Daily usage split into morning / evening / night
- Monthly usage and the monthly report (JSON or CSV)
- Dashboard summary (average usage, peak day, tokens bought, balance)
- Bulk migration of historical data (JSON batch or CSV upload)
- Low balance and missed-reading e-mails through SNS

Storage is either DynamoDB or a local JSON lines file (backend/lib/store.py).
The store is created once and passed into create_app(); when it is
unavailable, read endpoints answer with empty data and write endpoints
answer 503.

How to run:
    python -m backend.app

Then visit: http://127.0.0.1:5000/summary
=============================================================================
"""

from datetime import datetime

from flask import Flask, Response, jsonify, request

from backend.config import Settings, load_settings
from backend.lib.meter_core.estimator import TariffEstimator
from backend.lib.meter_core.ingest import validate_and_stage
from backend.lib.meter_core.io import (
    monthly_report_csv, normalize_legacy_reading, normalize_legacy_top_up, parse_readings_csv,
)
from backend.lib.meter_core.models import Period, RecordError, parse_timestamp
from backend.lib.meter_core.periods import missed_periods, next_update_time
from backend.lib.meter_core.processor import UsageAnalyzer
from backend.lib.meter_core.summary import (
    balance_alert_level, current_balance, monthly_report, summarize,
)
from backend.lib.store import DuplicateKeyError, ReadingStore, StoreUnavailableError, create_store

# Levels that trigger an e-mail when a new reading is logged
ALERT_LEVELS_TO_NOTIFY = ("critical", "warning")


def create_sns_service(settings: Settings):
    """SNS notifier when USE_SNS is enabled, else None."""
    if not settings.use_sns:
        return None
    try:
        from backend.lib.sns_service import SNSService
        sns_service = SNSService(topic_arn=settings.sns_topic_arn,
                                 topic_name=settings.sns_topic_name,
                                 region=settings.aws_region)
        if not sns_service.topic_arn:
            sns_service.create_topic_if_not_exists()
        print("SNS notifications enabled")
        return sns_service
    except Exception as e:
        print(f"SNS initialization failed: {e}. Notifications disabled.")
        return None


def create_app(store: ReadingStore = None, settings: Settings = None, sns_service=None) -> Flask:
    """
    Build the Flask application.

    Args:
        store: Reading/top-up store. Built from settings when omitted.
        settings: Configuration (default: load_settings()).
        sns_service: Notifier for e-mail alerts, or None to disable them.
    """
    settings = settings or load_settings()
    if store is None:
        store = create_store(settings)
        print(f"Store: {type(store).__name__} ({store.status.value})")

    app = Flask(__name__)
    app.config["STORE"] = store
    app.config["SETTINGS"] = settings
    app.config["SNS_SERVICE"] = sns_service

    def now() -> datetime:
        return datetime.now(settings.tz) if settings.tz else datetime.now().astimezone()

    def analyzer() -> UsageAnalyzer:
        return UsageAnalyzer(store.list_readings(), settings.tz)

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.errorhandler(StoreUnavailableError)
    def store_unavailable(e):
        return jsonify({"error": "store unavailable", "detail": str(e)}), 503

    @app.errorhandler(DuplicateKeyError)
    def duplicate_key(e):
        return jsonify({"error": str(e)}), 409

    # =========================================================================
    # STATUS
    # =========================================================================

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({
            "store": type(store).__name__,
            "store_status": store.status.value,
            "sns_enabled": sns_service is not None,
        })

    # =========================================================================
    # READINGS AND TOKEN PURCHASES
    # =========================================================================

    @app.route("/readings", methods=["GET"])
    def list_readings():
        readings = store.list_readings()
        return jsonify({
            "store_status": store.status.value,
            "readings": [r.to_dict() for r in readings],
        })

    @app.route("/readings", methods=["POST"])
    def add_reading():
        """
        Log a meter reading.

        Request Body (JSON):
            {"reading": 182.4}
            {"reading": 175.0, "timestamp": "2025-11-01T21:00:00+02:00", "period": "night"}

        "timestamp" records a backdated reading; "period" is derived from the
        local hour of the timestamp when omitted. A client-chosen
        "reading_key" makes retries safe: reusing one answers 409.

        If the new balance is low and SNS is enabled, an alert e-mail is sent.
        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or data.get("reading") is None:
            return jsonify({"error": "reading required"}), 400

        try:
            timestamp = parse_timestamp(data["timestamp"]) if data.get("timestamp") else None
            period = Period(data["period"]) if data.get("period") else None
            reading = store.append_reading(data["reading"], timestamp=timestamp, period=period,
                                           reading_key=data.get("reading_key"))
        except DuplicateKeyError:
            raise
        except (RecordError, ValueError) as e:
            return jsonify({"error": str(e)}), 400

        response = {"reading": reading.to_dict()}

        level = balance_alert_level(reading.value)
        response["balance_alert"] = level
        if level in ALERT_LEVELS_TO_NOTIFY and sns_service:
            response["alert_sent"] = sns_service.send_low_balance_alert(reading.value, level)
            print(f"Low balance alert ({level}) for {reading.value} units")

        return jsonify(response), 201

    @app.route("/top-ups", methods=["GET"])
    def list_top_ups():
        top_ups = store.list_top_ups()
        return jsonify({
            "store_status": store.status.value,
            "top_ups": [t.to_dict() for t in top_ups],
        })

    @app.route("/top-ups", methods=["POST"])
    def add_top_up():
        """
        Record a token purchase.

        Request Body (JSON):
            {"units": 50, "cost": 12.5}

        The meter value after the purchase is the latest reading + units.
        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or data.get("units") is None:
            return jsonify({"error": "units required"}), 400

        try:
            top_up = store.append_top_up(data["units"], cost=data.get("cost"))
        except (RecordError, ValueError) as e:
            return jsonify({"error": str(e)}), 400

        return jsonify({"top_up": top_up.to_dict()}), 201

    # =========================================================================
    # USAGE AND REPORTS
    # =========================================================================

    @app.route("/usage", methods=["GET"])
    def usage():
        """
        Usage per day or per month.

        Query Parameters:
            period (optional): 'day' or 'month' (default: 'day')

        Example Response (period=month):
            {"period": "month", "store_status": "connected",
             "data": [{"month": "2025-11", "usage": 212.5}]}
        """
        period = request.args.get("period", "day").lower()
        if period not in ("day", "month"):
            return jsonify({"error": "period must be 'day' or 'month'"}), 400

        usage_analyzer = analyzer()
        if period == "day":
            data = [d.to_dict() for d in usage_analyzer.daily_usage()]
        else:
            data = [m.to_dict() for m in usage_analyzer.monthly_usage()]

        return jsonify({"period": period, "store_status": store.status.value, "data": data})

    @app.route("/usage/chart", methods=["GET"])
    def usage_chart():
        """Daily usage for charts: negative period deltas shown as 0."""
        data = [d.clamped().to_dict() for d in analyzer().daily_usage()]
        return jsonify({"store_status": store.status.value, "data": data})

    @app.route("/summary", methods=["GET"])
    def summary():
        readings = store.list_readings()
        top_ups = store.list_top_ups()
        result = summarize(readings, top_ups, settings.tz).to_dict()
        balance = current_balance(readings)
        result["current_balance"] = balance
        result["balance_alert"] = balance_alert_level(balance) if readings else None
        result["store_status"] = store.status.value
        return jsonify(result)

    @app.route("/reports/monthly", methods=["GET"])
    def report_monthly():
        """
        Monthly report.

        Query Parameters:
            format (optional): 'json' (default) or 'csv'
        """
        monthly = analyzer().monthly_usage()
        if request.args.get("format", "json").lower() == "csv":
            return Response(
                monthly_report_csv(monthly),
                mimetype="text/csv",
                headers={"Content-Disposition": "attachment; filename=electricity_monthly_report.csv"},
            )
        report = monthly_report(monthly)
        report["store_status"] = store.status.value
        return jsonify(report)

    @app.route("/estimate", methods=["GET"])
    def estimate():
        """
        Estimate what the consumed units cost.

        Query Parameters:
            rate (optional): Price per unit. Defaults to the average price
                             paid in recorded token purchases, or
                             DEFAULT_RATE_PER_UNIT when none has a cost.
            period (optional): 'day' or 'month' (default: 'month')
        """
        period = request.args.get("period", "month").lower()
        if period not in ("day", "month"):
            return jsonify({"error": "period must be 'day' or 'month'"}), 400

        if request.args.get("rate") is not None:
            try:
                estimator = TariffEstimator(float(request.args["rate"]))
            except ValueError:
                return jsonify({"error": "rate must be a number"}), 400
        else:
            estimator = TariffEstimator.from_top_ups(store.list_top_ups(), settings.default_rate_per_unit)

        usage_analyzer = analyzer()
        if period == "day":
            usage_by_period = {d.date: d.total for d in usage_analyzer.daily_usage()}
        else:
            usage_by_period = {m.month: m.usage for m in usage_analyzer.monthly_usage()}

        return jsonify({
            "period": period,
            "estimated_cost": estimator.estimate_cost(usage_by_period),
            "rate_per_unit": round(estimator.rate, 4),
            "store_status": store.status.value,
        })

    @app.route("/reminders", methods=["GET"])
    def reminders():
        current = now()
        return jsonify({
            "missed": missed_periods(store.list_readings(), current, settings.tz),
            "next_update": next_update_time(current).isoformat(),
            "store_status": store.status.value,
        })

    # =========================================================================
    # BULK IMPORT
    # =========================================================================

    def run_migration(raw_readings, raw_top_ups):
        batch = validate_and_stage(raw_readings, raw_top_ups)
        for rejection in batch.rejected:
            print(f"Skipping invalid item ({rejection.reason}): {rejection.item}")

        result = store.migrate_batch(batch)
        body = {
            "accepted_readings": len(batch.accepted_readings),
            "accepted_top_ups": len(batch.accepted_top_ups),
            "rejected": [{"item": r.item, "reason": r.reason} for r in batch.rejected],
            "migration": result.to_dict(),
        }
        return jsonify(body), (200 if result else 500)

    @app.route("/migrate", methods=["POST"])
    def migrate():
        """
        Import a batch of historical readings and token purchases.

        Request Body (JSON):
            {
                "readings": [{"reading_key": "...", "timestamp": "...",
                              "value": 182.4, "period": "morning"}],
                "top_ups": [{"top_up_key": "...", "timestamp": "...",
                             "units_added": 50, "resulting_reading": 232.4}]
            }

        The old local-storage format (reading_id, reading, token_id, units,
        new_reading / newReading) is accepted too; "tokens" may be used
        instead of "top_ups".

        Items already stored are skipped. Invalid items are listed in
        "rejected". The batch is written completely or not at all.
        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "JSON object required"}), 400

        raw_readings = data.get("readings") or []
        raw_top_ups = data.get("top_ups") or data.get("tokens") or []
        if not isinstance(raw_readings, list) or not isinstance(raw_top_ups, list):
            return jsonify({"error": "readings and top_ups must be lists"}), 400

        return run_migration(
            [normalize_legacy_reading(r) for r in raw_readings],
            [normalize_legacy_top_up(t) for t in raw_top_ups],
        )

    @app.route("/import/csv", methods=["POST"])
    def import_csv():
        """
        Import readings from an uploaded CSV file.

        Expected CSV format:
            reading_key,timestamp,reading,period
            r-001,2025-11-01T07:00:00+02:00,182.4,morning
            r-002,2025-11-01T17:05:00+02:00,176.9,
        """
        if "file" not in request.files:
            return jsonify({"error": "No file uploaded"}), 400

        content = request.files["file"].read().decode("utf-8")
        try:
            rows = parse_readings_csv(content, settings.tz)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        return run_migration(rows, [])

    # =========================================================================
    # SNS ENDPOINTS (E-mail Notifications)
    # =========================================================================

    @app.route("/sns/status", methods=["GET"])
    def sns_status():
        return jsonify({
            "sns_enabled": sns_service is not None,
            "topic_arn": sns_service.topic_arn if sns_service else None,
            "subscriptions": sns_service.list_subscriptions() if sns_service else [],
        })

    @app.route("/sns/subscribe", methods=["POST"])
    def sns_subscribe():
        """
        Subscribe an e-mail address to alerts.

        Request Body (JSON):
            {"email": "user@example.com"}
        """
        if not sns_service:
            return jsonify({"error": "SNS not enabled"}), 400

        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data.get("email"):
            return jsonify({"error": "email required"}), 400

        email = data["email"]
        subscription_arn = sns_service.subscribe_email(email)
        if subscription_arn:
            return jsonify({
                "message": f"Subscription pending. Check {email} for confirmation link.",
                "subscription_arn": subscription_arn
            })
        return jsonify({"error": "Failed to subscribe"}), 500

    @app.route("/sns/test", methods=["POST"])
    def sns_test_alert():
        if not sns_service:
            return jsonify({"error": "SNS not enabled"}), 400

        success = sns_service.send_alert(
            subject="Test Alert - Prepaid Meter Tracker",
            message="This is a test notification from your meter tracker.\n\n"
                    "If you received this, SNS is working correctly!"
        )
        if success:
            return jsonify({"message": "Test alert sent successfully"})
        return jsonify({"error": "Failed to send alert"}), 500

    return app


# =============================================================================
# RUN THE SERVER
# =============================================================================

if __name__ == "__main__":
    # Development server only; debug=True must not be used in production
    _settings = load_settings()
    create_app(settings=_settings, sns_service=create_sns_service(_settings)).run(debug=True)
