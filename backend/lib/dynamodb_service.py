"""
=============================================================================
DYNAMODB SERVICE - Readings and token purchases in Amazon DynamoDB
=============================================================================

Two tables, one per record type:

Table: MeterReadings
- reading_key (String) - Partition Key - unique, never overwritten
- timestamp   (String) - ISO-8601 with offset
- value       (Number) - units shown on the meter
- period      (String) - morning / evening / night, fixed at write time
- created_at  (String)

Table: TokenPurchases
- top_up_key        (String) - Partition Key
- timestamp         (String)
- units_added       (Number)
- resulting_reading (Number) - meter value right after the purchase
- cost              (Number, optional)
- created_at        (String)

Example Item (MeterReadings):
{
    "reading_key": "reading-3f1c...",
    "timestamp": "2025-11-01T07:02:11+02:00",
    "value": 182.4,
    "period": "morning",
    "created_at": "2025-11-01T05:02:11.512+00:00"
}

Writes use "attribute_not_exists" conditions so an existing key is never
replaced. A token purchase and its synthetic reading are written in one
DynamoDB transaction.
=============================================================================
"""

# boto3 - AWS SDK for Python
import boto3

# ClientError / BotoCoreError - API errors and connection/credential errors
from botocore.exceptions import BotoCoreError, ClientError

# TypeSerializer - converts Python values to DynamoDB's typed JSON for the
# low-level client (transact_write_items needs it)
from boto3.dynamodb.types import TypeSerializer

import os
from decimal import Decimal
from typing import Dict, Iterable, List, Set

from backend.config import aws_client_kwargs
from backend.lib.meter_core.models import MigrationResult, Reading, StagedBatch, TopUp
from backend.lib.store import DuplicateKeyError, ReadingStore, StoreStatus, StoreUnavailableError

# Items per transaction. DynamoDB accepts up to 100; 25 matches batch_writer
TRANSACTION_CHUNK = 25

# batch_get_item accepts at most 100 keys per request
BATCH_GET_LIMIT = 100

_serializer = TypeSerializer()


def to_item(data: Dict) -> Dict:
    """
    Prepare a record dict for DynamoDB.

    DynamoDB requires Decimal for numbers, not float, and does not store
    None; floats are converted via str() to avoid precision noise.
    """
    item = {}
    for name, value in data.items():
        if value is None:
            continue
        if isinstance(value, float):
            value = Decimal(str(value))
        item[name] = value
    return item


def _serialize(item: Dict) -> Dict:
    return {name: _serializer.serialize(value) for name, value in item.items()}


class DynamoDBService(ReadingStore):
    """
    Store backed by two DynamoDB tables.

    Usage:
        db = DynamoDBService()
        db.create_tables_if_not_exist()
        db.append_reading(182.4)
        db.append_top_up(50, cost=12.5)

    The boto3 resource and client can be passed in (tests, custom sessions);
    otherwise they are built from the AWS_* environment variables.
    """

    def __init__(self, readings_table: str = None, top_ups_table: str = None,
                 region: str = None, tz=None, resource=None, client=None):
        super().__init__(tz=tz)
        self.readings_table_name = readings_table or os.getenv('DYNAMODB_READINGS_TABLE', 'MeterReadings')
        self.top_ups_table_name = top_ups_table or os.getenv('DYNAMODB_TOPUPS_TABLE', 'TokenPurchases')
        self.region = region or os.getenv('AWS_REGION', 'us-east-1')

        credentials = aws_client_kwargs(self.region)

        # Resource: Table objects for put/get/scan/delete
        # Client: describe_table and transact_write_items
        self.dynamodb = resource or boto3.resource('dynamodb', **credentials)
        self.client = client or boto3.client('dynamodb', **credentials)

        self.readings_table = self.dynamodb.Table(self.readings_table_name)
        self.top_ups_table = self.dynamodb.Table(self.top_ups_table_name)

    # -------------------------------------------------------------------------
    # Table setup
    # -------------------------------------------------------------------------

    def _ensure_table(self, table_name: str, key_name: str) -> bool:
        try:
            self.client.describe_table(TableName=table_name)
            print(f"DynamoDB table '{table_name}' exists")
            return True
        except ClientError as e:
            if e.response['Error']['Code'] != 'ResourceNotFoundException':
                print(f"Error checking table '{table_name}': {e}")
                return False

        try:
            table = self.dynamodb.create_table(
                TableName=table_name,
                KeySchema=[{'AttributeName': key_name, 'KeyType': 'HASH'}],
                AttributeDefinitions=[{'AttributeName': key_name, 'AttributeType': 'S'}],
                # On-demand pricing, no capacity planning needed
                BillingMode='PAY_PER_REQUEST'
            )
            table.wait_until_exists()
            print(f"Created DynamoDB table '{table_name}'")
            return True
        except ClientError as e:
            print(f"Failed to create table '{table_name}': {e}")
            return False

    def create_tables_if_not_exist(self) -> bool:
        """
        Make sure both tables exist.

        Returns:
            bool: True when both tables are usable. On False the store's
                  status is UNAVAILABLE.
        """
        try:
            ok = (self._ensure_table(self.readings_table_name, 'reading_key')
                  and self._ensure_table(self.top_ups_table_name, 'top_up_key'))
        except BotoCoreError as e:
            # No credentials, no network, unknown region...
            print(f"DynamoDB unreachable: {e}")
            ok = False
        self.status = StoreStatus.CONNECTED if ok else StoreStatus.UNAVAILABLE
        return ok

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _scan_all(self, table) -> List[Dict]:
        """
        Scan a whole table. DynamoDB returns at most 1MB per call, so follow
        LastEvaluatedKey until it is gone.
        """
        response = table.scan()
        items = list(response.get('Items', []))
        while 'LastEvaluatedKey' in response:
            response = table.scan(ExclusiveStartKey=response['LastEvaluatedKey'])
            items.extend(response.get('Items', []))
        return items

    def _load_readings(self, strict: bool = False) -> List[Reading]:
        try:
            items = self._scan_all(self.readings_table)
        except (ClientError, BotoCoreError) as e:
            print(f"Failed to get readings: {e}")
            if strict:
                raise StoreUnavailableError(str(e)) from e
            return []
        return [Reading.from_dict(item) for item in items]

    def _load_top_ups(self) -> List[TopUp]:
        try:
            items = self._scan_all(self.top_ups_table)
        except (ClientError, BotoCoreError) as e:
            print(f"Failed to get top-ups: {e}")
            return []
        return [TopUp.from_dict(item) for item in items]

    def _existing_keys(self, table_name: str, key_name: str, keys: List[str]) -> Set[str]:
        found = set()
        for i in range(0, len(keys), BATCH_GET_LIMIT):
            request = {
                table_name: {
                    'Keys': [{key_name: k} for k in keys[i:i + BATCH_GET_LIMIT]],
                    'ProjectionExpression': key_name,
                }
            }
            while request:
                response = self.dynamodb.batch_get_item(RequestItems=request)
                for item in response.get('Responses', {}).get(table_name, []):
                    found.add(item[key_name])
                # Throttled keys come back in UnprocessedKeys
                request = response.get('UnprocessedKeys') or None
        return found

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _put_op(self, table_name: str, key_name: str, data: Dict) -> Dict:
        return {
            'Put': {
                'TableName': table_name,
                'Item': _serialize(to_item(data)),
                'ConditionExpression': 'attribute_not_exists(#k)',
                'ExpressionAttributeNames': {'#k': key_name},
            }
        }

    def _insert_reading(self, reading: Reading):
        try:
            self.readings_table.put_item(
                Item=to_item(reading.to_dict()),
                ConditionExpression='attribute_not_exists(reading_key)'
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                raise DuplicateKeyError(f"reading_key already exists: {reading.reading_key}")
            print(f"Failed to put reading: {e}")
            raise StoreUnavailableError(str(e)) from e
        except BotoCoreError as e:
            print(f"Failed to put reading: {e}")
            raise StoreUnavailableError(str(e)) from e

    def _insert_top_up(self, top_up: TopUp, synthetic: Reading):
        try:
            self.client.transact_write_items(TransactItems=[
                self._put_op(self.top_ups_table_name, 'top_up_key', top_up.to_dict()),
                self._put_op(self.readings_table_name, 'reading_key', synthetic.to_dict()),
            ])
        except (ClientError, BotoCoreError) as e:
            print(f"Failed to put token purchase: {e}")
            raise StoreUnavailableError(str(e)) from e

    def _rollback(self, written: Iterable):
        """Delete items committed by earlier chunks of a failed migration."""
        for table, key_name, key in written:
            try:
                table.delete_item(Key={key_name: key})
            except (ClientError, BotoCoreError) as e:
                print(f"Rollback could not delete {key_name}={key}: {e}")

    def _migrate(self, batch: StagedBatch) -> MigrationResult:
        """
        Idempotent bulk insert.

        1. Look up which keys already exist (batch_get_item) and skip them
        2. Write the rest with transact_write_items, TRANSACTION_CHUNK at a time
        3. If any chunk fails, delete what earlier chunks wrote
        """
        try:
            existing_readings = self._existing_keys(
                self.readings_table_name, 'reading_key',
                [r.reading_key for r in batch.accepted_readings])
            existing_top_ups = self._existing_keys(
                self.top_ups_table_name, 'top_up_key',
                [t.top_up_key for t in batch.accepted_top_ups])
        except (ClientError, BotoCoreError) as e:
            print(f"Migration failed checking existing keys: {e}")
            return MigrationResult(success=False)

        ops = []
        skipped = 0
        inserted_readings = 0
        inserted_top_ups = 0

        for reading in batch.accepted_readings:
            if reading.reading_key in existing_readings:
                skipped += 1
                continue
            existing_readings.add(reading.reading_key)
            ops.append((self.readings_table, 'reading_key', reading.reading_key,
                        self._put_op(self.readings_table_name, 'reading_key', reading.to_dict())))
            inserted_readings += 1

        for top_up in batch.accepted_top_ups:
            if top_up.top_up_key in existing_top_ups:
                skipped += 1
                continue
            existing_top_ups.add(top_up.top_up_key)
            ops.append((self.top_ups_table, 'top_up_key', top_up.top_up_key,
                        self._put_op(self.top_ups_table_name, 'top_up_key', top_up.to_dict())))
            inserted_top_ups += 1

        written = []
        for i in range(0, len(ops), TRANSACTION_CHUNK):
            chunk = ops[i:i + TRANSACTION_CHUNK]
            try:
                self.client.transact_write_items(TransactItems=[op for _, _, _, op in chunk])
            except (ClientError, BotoCoreError) as e:
                print(f"Migration failed, rolling back {len(written)} items: {e}")
                self._rollback(written)
                return MigrationResult(success=False)
            written.extend((table, key_name, key) for table, key_name, key, _ in chunk)

        print(f"Migrated {inserted_readings} readings and {inserted_top_ups} top-ups "
              f"({skipped} already present)")
        return MigrationResult(
            success=True,
            inserted_readings=inserted_readings,
            inserted_top_ups=inserted_top_ups,
            skipped=skipped,
        )
