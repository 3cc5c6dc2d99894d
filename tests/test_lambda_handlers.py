# tests/test_lambda_handlers.py
import json
from datetime import datetime, timedelta, timezone
from backend.lambda_handlers.get_usage import handle_usage_request
from backend.lambda_handlers.send_alert import check_and_alert
from backend.lib.local_store import LocalJsonlStore
from backend.lib.store import UnavailableStore

TZ = timezone(timedelta(hours=2))


class FakeSNS:
    def __init__(self):
        self.low_balance = []
        self.reminders = []

    def send_low_balance_alert(self, balance, level):
        self.low_balance.append((balance, level))
        return True

    def send_missed_readings_reminder(self, missed):
        self.reminders.append(missed)
        return bool(missed)


def filled_store(tmp_path, values):
    store = LocalJsonlStore(tmp_path)
    for hour, value in values:
        store.append_reading(value, timestamp=datetime(2025, 11, 1, hour, 0, tzinfo=TZ))
    return store


def test_get_usage_day_and_month(tmp_path):
    store = filled_store(tmp_path, [(7, 100), (17, 90), (21, 85)])

    day = handle_usage_request({"queryStringParameters": {"period": "day"}}, store)
    assert day["statusCode"] == 200
    body = json.loads(day["body"])
    assert body["data"][0]["total"] == 15.0

    month = json.loads(handle_usage_request({"queryStringParameters": {"period": "month"}}, store)["body"])
    assert month["data"] == [{"month": "2025-11", "usage": 15.0}]


def test_get_usage_defaults_and_summary(tmp_path):
    store = filled_store(tmp_path, [(7, 100), (17, 90)])
    assert json.loads(handle_usage_request({}, store)["body"])["period"] == "day"

    summary = json.loads(handle_usage_request({"queryStringParameters": {"period": "summary"}}, store)["body"])
    assert summary["data"]["peak_usage_day"] == {"date": "2025-11-01", "usage": 10.0}


def test_get_usage_rejects_unknown_period(tmp_path):
    r = handle_usage_request({"queryStringParameters": {"period": "week"}}, LocalJsonlStore(tmp_path))
    assert r["statusCode"] == 400


def test_get_usage_unavailable_store():
    body = json.loads(handle_usage_request({}, UnavailableStore())["body"])
    assert body["store_status"] == "unavailable"
    assert body["data"] == []


def test_alert_for_low_balance_and_missed_readings(tmp_path):
    store = filled_store(tmp_path, [(7, 25)])
    sns = FakeSNS()

    result = check_and_alert(store, sns, now=datetime(2025, 11, 1, 22, 30, tzinfo=TZ))

    assert result["balance"] == 25.0
    assert result["balance_alert"] == "warning"
    assert result["missed"] == ["evening (5:00 PM)", "night (9:00 PM)"]
    assert result["alerts_sent"] == 2
    assert sns.low_balance == [(25.0, "warning")]


def test_no_alert_when_all_is_well(tmp_path):
    store = filled_store(tmp_path, [(7, 300)])
    sns = FakeSNS()

    result = check_and_alert(store, sns, now=datetime(2025, 11, 1, 7, 45, tzinfo=TZ))

    assert result["balance_alert"] is None
    assert result["missed"] == []
    assert result["alerts_sent"] == 0
    assert sns.low_balance == [] and sns.reminders == []


def test_alert_skipped_for_unavailable_store():
    sns = FakeSNS()
    result = check_and_alert(UnavailableStore(), sns)
    assert result == {"store_status": "unavailable", "alerts_sent": 0}
    assert sns.low_balance == []
