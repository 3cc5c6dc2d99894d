# backend/lambda_handlers/send_alert.py
"""
Lambda function to send meter alerts via SNS
Triggered by CloudWatch Events (schedule) or API Gateway
"""
import json
from datetime import datetime

from backend.config import load_settings
from backend.lib.meter_core.periods import missed_periods
from backend.lib.meter_core.summary import balance_alert_level, current_balance
from backend.lib.sns_service import SNSService
from backend.lib.store import create_store

# Balance levels worth an e-mail; 'notice' is only shown in the dashboard
NOTIFY_LEVELS = ('critical', 'warning')


def lambda_handler(event, context):
    """
    Check the latest balance and today's readings, and e-mail subscribers:
    - a low balance alert when the balance is 'critical' or 'warning'
    - a reminder listing readings that are overdue today
    """
    print(f"Received event: {json.dumps(event)}")

    try:
        settings = load_settings()
        sns = SNSService(topic_arn=settings.sns_topic_arn, region=settings.aws_region)
        result = check_and_alert(create_store(settings), sns, tz=settings.tz)
        return response(200, result)
    except Exception as e:
        print(f"Error: {str(e)}")
        return response(500, {'error': str(e)})


def check_and_alert(store, sns, now: datetime = None, tz=None) -> dict:
    if not store.available:
        print("Store unavailable, skipping alert check")
        return {'store_status': store.status.value, 'alerts_sent': 0}

    now = now or (datetime.now(tz) if tz else datetime.now().astimezone())
    readings = store.list_readings()
    alerts_sent = 0

    balance = current_balance(readings)
    level = balance_alert_level(balance) if readings else None
    if level in NOTIFY_LEVELS and sns.send_low_balance_alert(balance, level):
        print(f"Low balance alert sent: {balance} units ({level})")
        alerts_sent += 1

    missed = missed_periods(readings, now, tz)
    if missed and sns.send_missed_readings_reminder(missed):
        print(f"Reminder sent for: {', '.join(missed)}")
        alerts_sent += 1

    return {
        'store_status': store.status.value,
        'balance': balance,
        'balance_alert': level,
        'missed': missed,
        'alerts_sent': alerts_sent
    }


def response(status_code: int, body: dict) -> dict:
    """Create API Gateway response."""
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*'
        },
        'body': json.dumps(body)
    }
