"""
Configuration for the meter tracker, read from environment variables.

A .env file in the working directory is loaded first (python-dotenv), so
local settings and AWS keys stay out of the code.
"""

import os
from dataclasses import dataclass
from datetime import tzinfo
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

# Must run before any os.getenv below
load_dotenv()


def _flag(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).lower() == 'true'


@dataclass
class Settings:
    use_dynamodb: bool = False
    use_sns: bool = False
    aws_region: str = 'us-east-1'
    readings_table: str = 'MeterReadings'
    top_ups_table: str = 'TokenPurchases'
    sns_topic_arn: Optional[str] = None
    sns_topic_name: str = 'MeterAlerts'
    data_dir: Path = Path('backend/data')
    # None: use each timestamp's own UTC offset as the local wall clock
    tz: Optional[tzinfo] = None
    default_rate_per_unit: float = 0.20


def load_settings() -> Settings:
    tz_name = os.getenv('METER_TIMEZONE', '')
    return Settings(
        use_dynamodb=_flag('USE_DYNAMODB'),
        use_sns=_flag('USE_SNS'),
        aws_region=os.getenv('AWS_REGION', 'us-east-1'),
        readings_table=os.getenv('DYNAMODB_READINGS_TABLE', 'MeterReadings'),
        top_ups_table=os.getenv('DYNAMODB_TOPUPS_TABLE', 'TokenPurchases'),
        sns_topic_arn=os.getenv('SNS_TOPIC_ARN') or None,
        sns_topic_name=os.getenv('SNS_TOPIC_NAME', 'MeterAlerts'),
        data_dir=Path(os.getenv('DATA_DIR', 'backend/data')),
        tz=ZoneInfo(tz_name) if tz_name else None,
        default_rate_per_unit=float(os.getenv('DEFAULT_RATE_PER_UNIT', '0.20')),
    )


def aws_client_kwargs(region: str) -> dict:
    """
    Keyword arguments for boto3.client()/boto3.resource(). Unset keys are
    passed as None so boto3 falls back to its own credential chain
    (instance role, ~/.aws/credentials).
    """
    return dict(
        region_name=region,
        aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID') or None,
        aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY') or None,
        # only set for temporary credentials
        aws_session_token=os.getenv('AWS_SESSION_TOKEN') or None,
    )
