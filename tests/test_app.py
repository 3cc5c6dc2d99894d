# tests/test_app.py
import io
import pathlib
import pytest
from backend.app import create_app
from backend.config import Settings
from backend.lib.local_store import LocalJsonlStore
from backend.lib.store import UnavailableStore


class FakeSNS:
    topic_arn = "arn:aws:sns:us-east-1:123456789012:MeterAlerts"

    def __init__(self):
        self.sent = []

    def send_low_balance_alert(self, balance, level):
        self.sent.append(("low_balance", balance, level))
        return True

    def send_alert(self, subject, message):
        self.sent.append(("alert", subject))
        return True

    def subscribe_email(self, email):
        return f"{self.topic_arn}:pending"

    def list_subscriptions(self):
        return [{"endpoint": "user@example.com", "confirmed": False}]


@pytest.fixture
def sns():
    return FakeSNS()


@pytest.fixture
def client(tmp_path, sns):
    app = create_app(store=LocalJsonlStore(tmp_path), settings=Settings(data_dir=tmp_path), sns_service=sns)
    return app.test_client()


def post_readings(client, *pairs):
    for timestamp, value in pairs:
        r = client.post("/readings", json={"reading": value, "timestamp": timestamp})
        assert r.status_code == 201


FULL_DAY = [
    ("2025-11-01T21:00:00+02:00", 110),
    ("2025-11-02T07:00:00+02:00", 100),
    ("2025-11-02T17:00:00+02:00", 90),
    ("2025-11-02T21:00:00+02:00", 80),
]


def test_health(client):
    body = client.get("/health").get_json()
    assert body["store"] == "LocalJsonlStore"
    assert body["store_status"] == "connected"
    assert body["sns_enabled"] is True


def test_add_and_list_readings(client):
    r = client.post("/readings", json={"reading": 182.4, "timestamp": "2025-11-01T07:02:00+02:00"})
    assert r.status_code == 201
    body = r.get_json()
    assert body["reading"]["period"] == "morning"
    assert body["balance_alert"] is None

    listed = client.get("/readings").get_json()
    assert [x["value"] for x in listed["readings"]] == [182.4]


def test_add_reading_validation(client):
    assert client.post("/readings", json={}).status_code == 400
    assert client.post("/readings", json={"reading": "lots"}).status_code == 400
    assert client.post("/readings", json={"reading": -1}).status_code == 400
    assert client.post("/readings", json={"reading": 5, "period": "noon"}).status_code == 400
    assert client.post("/readings", json={"reading": 5, "timestamp": "yesterday"}).status_code == 400
    assert client.get("/readings").get_json()["readings"] == []


def test_reused_reading_key_conflicts(client):
    assert client.post("/readings", json={"reading": 50, "reading_key": "r-1"}).status_code == 201
    assert client.post("/readings", json={"reading": 49, "reading_key": "r-1"}).status_code == 409


def test_low_balance_sends_alert(client, sns):
    body = client.post("/readings", json={"reading": 15}).get_json()
    assert body["balance_alert"] == "critical"
    assert body["alert_sent"] is True
    assert sns.sent == [("low_balance", 15.0, "critical")]

    body = client.post("/readings", json={"reading": 45}).get_json()
    assert body["balance_alert"] == "notice"
    assert "alert_sent" not in body
    assert len(sns.sent) == 1


def test_top_up(client):
    post_readings(client, ("2025-11-01T07:00:00+02:00", 40))
    r = client.post("/top-ups", json={"units": 60, "cost": 15})
    assert r.status_code == 201
    assert r.get_json()["top_up"]["resulting_reading"] == 100.0

    assert len(client.get("/top-ups").get_json()["top_ups"]) == 1
    assert [x["value"] for x in client.get("/readings").get_json()["readings"]] == [40.0, 100.0]

    assert client.post("/top-ups", json={}).status_code == 400
    assert client.post("/top-ups", json={"units": 0}).status_code == 400


def test_usage_by_day_and_month(client):
    post_readings(client, *FULL_DAY)

    daily = client.get("/usage").get_json()
    assert daily["period"] == "day"
    assert [d["total"] for d in daily["data"]] == [0.0, 30.0]

    monthly = client.get("/usage?period=month").get_json()
    assert monthly["data"] == [{"month": "2025-11", "usage": 30.0}]

    assert client.get("/usage?period=year").status_code == 400


def test_chart_hides_negative_usage(client):
    post_readings(
        client,
        ("2025-11-01T21:00:00+02:00", 20),
        ("2025-11-02T07:00:00+02:00", 70),
        ("2025-11-02T17:00:00+02:00", 60),
    )
    assert client.get("/usage").get_json()["data"][1]["total"] == -40.0
    chart_day = client.get("/usage/chart").get_json()["data"][1]
    assert chart_day["morning_usage"] == 0.0
    assert chart_day["total"] == 10.0


def test_summary_empty(client):
    body = client.get("/summary").get_json()
    assert body["average_usage"] == 0.0
    assert body["peak_usage_day"] == {"date": "", "usage": 0.0}
    assert body["total_tokens_purchased"] == 0.0
    assert body["current_balance"] == 0.0
    assert body["balance_alert"] is None


def test_summary(client):
    post_readings(client, *FULL_DAY)
    body = client.get("/summary").get_json()
    assert body["average_usage"] == 15.0
    assert body["peak_usage_day"] == {"date": "2025-11-02", "usage": 30.0}
    assert body["current_balance"] == 80.0
    assert body["balance_alert"] is None


def test_monthly_report(client):
    post_readings(client, *FULL_DAY)
    report = client.get("/reports/monthly").get_json()
    assert report["total_usage"] == 30.0
    assert report["highest_month"] == {"month": "2025-11", "usage": 30.0}

    r = client.get("/reports/monthly?format=csv")
    assert r.mimetype == "text/csv"
    assert "attachment" in r.headers["Content-Disposition"]
    assert r.get_data(as_text=True) == "Month,Usage (kWh)\n2025-11,30.0\n"


def test_estimate(client):
    post_readings(client, *FULL_DAY)
    assert client.get("/estimate?rate=0.5").get_json()["estimated_cost"] == 15.0
    assert client.get("/estimate").get_json()["estimated_cost"] == 6.0
    assert client.get("/estimate?rate=abc").status_code == 400


def test_reminders(client):
    body = client.get("/reminders").get_json()
    assert isinstance(body["missed"], list)
    assert body["next_update"]


def test_migrate_canonical_and_legacy(client):
    payload = {
        "readings": [
            {"reading_key": "r-1", "timestamp": "2025-11-01T07:00:00+02:00", "value": 100, "period": "morning"},
            {"id": 2, "timestamp": 1761980400000, "reading": 95, "period": "evening"},
            {"reading_key": "r-3", "timestamp": "2025-11-01T21:00:00+02:00", "value": "90", "period": "night"},
        ],
        "tokens": [
            {"token_id": "t-1", "timestamp": "2025-11-01T09:00:00+02:00", "units": 50, "newReading": 150},
        ],
    }
    r = client.post("/migrate", json=payload)
    assert r.status_code == 200
    body = r.get_json()
    assert body["accepted_readings"] == 2
    assert body["accepted_top_ups"] == 1
    assert len(body["rejected"]) == 1
    assert body["migration"]["inserted_readings"] == 2
    keys = {x["reading_key"] for x in client.get("/readings").get_json()["readings"]}
    assert keys == {"r-1", "2"}

    again = client.post("/migrate", json=payload).get_json()
    assert again["migration"]["inserted_readings"] == 0
    assert again["migration"]["skipped"] == 3


def test_migrate_bad_payload(client):
    assert client.post("/migrate", json=[1, 2]).status_code == 400
    assert client.post("/migrate", json={"readings": "r-1"}).status_code == 400


def test_import_csv(client):
    sample = (pathlib.Path(__file__).parent / "sample.csv").read_bytes()
    r = client.post("/import/csv", data={"file": (io.BytesIO(sample), "sample.csv")},
                    content_type="multipart/form-data")
    assert r.status_code == 200
    assert r.get_json()["migration"]["inserted_readings"] == 3
    assert client.post("/import/csv").status_code == 400


def test_sns_endpoints(client, sns):
    status = client.get("/sns/status").get_json()
    assert status["sns_enabled"] is True
    assert status["subscriptions"] == [{"endpoint": "user@example.com", "confirmed": False}]
    assert client.post("/sns/subscribe", json={}).status_code == 400
    assert client.post("/sns/subscribe", json={"email": "user@example.com"}).status_code == 200
    assert client.post("/sns/test").status_code == 200
    assert sns.sent[-1][0] == "alert"


def test_sns_disabled(tmp_path):
    app = create_app(store=LocalJsonlStore(tmp_path), settings=Settings(data_dir=tmp_path))
    c = app.test_client()
    assert c.get("/sns/status").get_json()["sns_enabled"] is False
    assert c.post("/sns/test").status_code == 400


def test_unavailable_store(tmp_path):
    app = create_app(store=UnavailableStore(), settings=Settings(data_dir=tmp_path))
    c = app.test_client()

    summary = c.get("/summary").get_json()
    assert summary["store_status"] == "unavailable"
    assert summary["average_usage"] == 0.0
    assert c.get("/usage").get_json()["data"] == []

    assert c.post("/readings", json={"reading": 10}).status_code == 503
    assert c.post("/top-ups", json={"units": 10}).status_code == 503
    assert c.post("/migrate", json={"readings": []}).status_code == 503


def test_non_object_json_bodies_are_rejected(client):
    for body in ([1, 2], 42, "reading"):
        assert client.post("/readings", json=body).status_code == 400
        assert client.post("/top-ups", json=body).status_code == 400
        assert client.post("/sns/subscribe", json=body).status_code == 400


def test_nan_reading_is_rejected(client):
    r = client.post("/readings", data='{"reading": NaN}', content_type="application/json")
    assert r.status_code == 400
    assert client.get("/readings").get_json()["readings"] == []
