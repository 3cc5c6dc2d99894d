# backend/lambda_handlers/get_usage.py
"""
Lambda function to get electricity usage data
Triggered by API Gateway
"""
import json

from backend.config import load_settings
from backend.lib.meter_core.processor import UsageAnalyzer
from backend.lib.meter_core.summary import summarize
from backend.lib.store import create_store


def lambda_handler(event, context):
    """
    Query parameters:
    - period: 'day', 'month' or 'summary' (default: 'day')
    """
    print(f"Received event: {json.dumps(event)}")

    try:
        settings = load_settings()
        return handle_usage_request(event, create_store(settings), settings.tz)
    except Exception as e:
        print(f"Error: {str(e)}")
        return response(500, {'error': str(e)})


def handle_usage_request(event, store, tz=None) -> dict:
    params = event.get('queryStringParameters') or {}
    period = params.get('period', 'day')

    if period not in ('day', 'month', 'summary'):
        return response(400, {'error': "period must be 'day', 'month' or 'summary'"})

    readings = store.list_readings()
    if period == 'summary':
        data = summarize(readings, store.list_top_ups(), tz).to_dict()
    elif period == 'month':
        data = [m.to_dict() for m in UsageAnalyzer(readings, tz).monthly_usage()]
    else:
        data = [d.to_dict() for d in UsageAnalyzer(readings, tz).daily_usage()]

    return response(200, {
        'period': period,
        'store_status': store.status.value,
        'data': data
    })


def response(status_code: int, body: dict) -> dict:
    """Create API Gateway response."""
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Allow-Methods': 'GET,POST,OPTIONS',
            'Access-Control-Allow-Headers': 'Content-Type'
        },
        'body': json.dumps(body)
    }
