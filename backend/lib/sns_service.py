"""
=============================================================================
SNS SERVICE - E-mail notifications through Amazon SNS
=============================================================================

Subscribers of one SNS topic receive:
- Low balance alerts (few prepaid units left on the meter)
- Reminders for meter readings that were not taken today

Flow:
-----
[Tracker] --> [SNS Topic: MeterAlerts] --> [Email Subscriber 1]
                                       --> [Email Subscriber 2]

E-mail subscriptions must be confirmed by clicking the link AWS sends;
until then they stay "PendingConfirmation" and receive nothing.
=============================================================================
"""

# boto3 - AWS SDK for Python
import boto3

from botocore.exceptions import ClientError

import os
from typing import Dict, List, Optional

from backend.config import aws_client_kwargs

LOW_BALANCE_MESSAGES = {
    "critical": "Your electricity balance is critically low. Purchase tokens "
                "immediately to avoid power interruption.",
    "warning": "Your electricity balance is running low. Consider purchasing tokens soon.",
    "notice": "Your electricity balance is getting low. Plan your next token purchase.",
}

FOOTER = "\n\n---\nPrepaid Meter Tracker"

# SNS rejects e-mail subjects longer than this
MAX_SUBJECT_LENGTH = 100


class SNSService:
    """
    Notifier for the meter alert topic.

    Usage:
        notifier = SNSService(topic_name="MeterAlerts")
        notifier.create_topic_if_not_exists()
        notifier.subscribe_email("user@example.com")
        notifier.send_low_balance_alert(18.5, "critical")

    Every AWS call returns a plain value (ARN, list, bool) and prints the
    error instead of raising, so a notification problem never fails the
    request that triggered it.
    """

    def __init__(self, topic_arn: str = None, topic_name: str = None,
                 region: str = None, client=None):
        self.topic_arn = topic_arn or os.getenv('SNS_TOPIC_ARN')
        self.topic_name = topic_name or os.getenv('SNS_TOPIC_NAME', 'MeterAlerts')
        self.region = region or os.getenv('AWS_REGION', 'us-east-1')
        self.sns_client = client or boto3.client('sns', **aws_client_kwargs(self.region))

    def _has_topic(self, action: str) -> bool:
        if self.topic_arn:
            return True
        print(f"Cannot {action}: no SNS topic ARN configured")
        return False

    def create_topic_if_not_exists(self) -> Optional[str]:
        """
        create_topic is idempotent: for an existing name it returns the
        existing ARN.
        """
        try:
            self.topic_arn = self.sns_client.create_topic(Name=self.topic_name)['TopicArn']
        except ClientError as e:
            print(f"Could not create SNS topic '{self.topic_name}': {e}")
            return None
        print(f"Using SNS topic {self.topic_arn}")
        return self.topic_arn

    def subscribe_email(self, email: str) -> Optional[str]:
        """Returns the subscription ARN ('pending confirmation' at first)."""
        if not self._has_topic("subscribe"):
            return None
        try:
            result = self.sns_client.subscribe(TopicArn=self.topic_arn, Protocol='email',
                                               Endpoint=email)
        except ClientError as e:
            print(f"Could not subscribe {email}: {e}")
            return None
        print(f"Subscription requested for {email}")
        return result['SubscriptionArn']

    def list_subscriptions(self) -> List[Dict]:
        """[{"endpoint": "user@example.com", "confirmed": True}, ...]"""
        if not self.topic_arn:
            return []
        try:
            result = self.sns_client.list_subscriptions_by_topic(TopicArn=self.topic_arn)
        except ClientError as e:
            print(f"Could not list subscriptions: {e}")
            return []
        return [
            {
                "endpoint": sub.get('Endpoint'),
                "confirmed": sub.get('SubscriptionArn') not in (None, 'PendingConfirmation'),
            }
            for sub in result.get('Subscriptions', [])
        ]

    def send_alert(self, subject: str, message: str) -> bool:
        """Publish to every confirmed subscriber. True when SNS accepted it."""
        if not self._has_topic("publish"):
            return False
        try:
            self.sns_client.publish(TopicArn=self.topic_arn,
                                    Subject=subject[:MAX_SUBJECT_LENGTH],
                                    Message=message + FOOTER)
        except ClientError as e:
            print(f"Could not publish '{subject}': {e}")
            return False
        return True

    def send_low_balance_alert(self, balance: float, level: str) -> bool:
        # level: see meter_core.summary.balance_alert_level
        subject = f"Low Electricity Balance ({level}) - {balance:.1f} units left"
        message = (
            "Electricity Balance Alert\n\n"
            f"Units remaining: {balance:.2f}\n"
            f"Level: {level}\n\n"
            f"{LOW_BALANCE_MESSAGES.get(level, '')}"
        )
        return self.send_alert(subject, message)

    def send_missed_readings_reminder(self, missed: List[str]) -> bool:
        """
        Reminder listing today's overdue readings, e.g.
        ["morning (7:00 AM)", "evening (5:00 PM)"]. Nothing is sent for an
        empty list.
        """
        if not missed:
            return False
        lines = "\n".join(f"- {label}" for label in missed)
        message = (
            "Meter Reading Reminder\n\n"
            f"The following readings are missing today:\n{lines}\n\n"
            "Take a reading now to keep your usage statistics accurate."
        )
        return self.send_alert("Meter Reading Reminder", message)
