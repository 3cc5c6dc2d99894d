# tests/test_dynamodb_service.py
#
# DynamoDBService against in-memory stand-ins for the boto3 resource and
# client. Only the calls the service makes are implemented.
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError
from backend.lib.dynamodb_service import DynamoDBService, to_item
from backend.lib.meter_core.ingest import validate_and_stage
from backend.lib.store import DuplicateKeyError, StoreStatus, StoreUnavailableError

TZ = timezone(timedelta(hours=2))
_deserializer = TypeDeserializer()


def client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeTable:
    def __init__(self, name, key_name, page_size=2):
        self.name = name
        self.key_name = key_name
        self.items = {}
        self.page_size = page_size

    def put_item(self, Item, ConditionExpression=None):
        key = Item[self.key_name]
        if ConditionExpression and key in self.items:
            raise client_error("ConditionalCheckFailedException", "PutItem")
        self.items[key] = dict(Item)

    def delete_item(self, Key):
        self.items.pop(Key[self.key_name], None)

    def scan(self, ExclusiveStartKey=None):
        values = list(self.items.values())
        start = ExclusiveStartKey["pos"] if ExclusiveStartKey else 0
        end = start + self.page_size
        response = {"Items": values[start:end]}
        if end < len(values):
            response["LastEvaluatedKey"] = {"pos": end}
        return response

    def wait_until_exists(self):
        pass


class FakeResource:
    def __init__(self):
        self.tables = {
            "MeterReadings": FakeTable("MeterReadings", "reading_key"),
            "TokenPurchases": FakeTable("TokenPurchases", "top_up_key"),
        }
        self.batch_get_calls = 0
        self.throttle_first_batch_get = False

    def Table(self, name):
        return self.tables[name]

    def create_table(self, TableName, KeySchema, AttributeDefinitions, BillingMode):
        table = FakeTable(TableName, KeySchema[0]["AttributeName"])
        self.tables[TableName] = table
        return table

    def batch_get_item(self, RequestItems):
        self.batch_get_calls += 1
        responses = {}
        unprocessed = {}
        for table_name, request in RequestItems.items():
            table = self.tables[table_name]
            keys = request["Keys"]
            if self.throttle_first_batch_get and self.batch_get_calls == 1 and len(keys) > 1:
                unprocessed[table_name] = dict(request, Keys=keys[1:])
                keys = keys[:1]
            responses[table_name] = [
                {table.key_name: k[table.key_name]} for k in keys if k[table.key_name] in table.items
            ]
        return {"Responses": responses, "UnprocessedKeys": unprocessed}


class FakeClient:
    def __init__(self, resource, fail_on_call=None, missing_tables=(), fail_with=None):
        self.resource = resource
        self.fail_on_call = fail_on_call
        self.fail_with = fail_with
        self.missing_tables = set(missing_tables)
        self.transact_calls = 0

    def describe_table(self, TableName):
        if TableName in self.missing_tables:
            self.missing_tables.discard(TableName)
            raise client_error("ResourceNotFoundException", "DescribeTable")
        return {"Table": {"TableName": TableName}}

    def transact_write_items(self, TransactItems):
        self.transact_calls += 1
        if self.transact_calls == self.fail_on_call:
            if self.fail_with is not None:
                raise self.fail_with
            raise client_error("TransactionCanceledException", "TransactWriteItems")
        puts = []
        for op in TransactItems:
            put = op["Put"]
            table = self.resource.tables[put["TableName"]]
            item = {k: _deserializer.deserialize(v) for k, v in put["Item"].items()}
            if item[table.key_name] in table.items:
                raise client_error("TransactionCanceledException", "TransactWriteItems")
            puts.append((table, item))
        for table, item in puts:
            table.items[item[table.key_name]] = item


def make_service(**client_kwargs):
    resource = FakeResource()
    client = FakeClient(resource, **client_kwargs)
    return DynamoDBService(tz=TZ, resource=resource, client=client), resource, client


def reading_items(count, start_value=500.0):
    base = datetime(2025, 11, 1, 7, 0, tzinfo=TZ)
    return [
        {
            "reading_key": f"r-{i:03d}",
            "timestamp": (base + timedelta(hours=i)).isoformat(),
            "value": start_value - i,
            "period": "morning",
        }
        for i in range(count)
    ]


def test_to_item_converts_floats_and_drops_none():
    item = to_item({"value": 182.4, "count": 3, "cost": None, "period": "morning"})
    assert item == {"value": Decimal("182.4"), "count": 3, "period": "morning"}


def test_create_tables_when_missing():
    service, resource, _ = make_service(missing_tables={"MeterReadings"})
    resource.tables.pop("MeterReadings")
    assert service.create_tables_if_not_exist() is True
    assert service.status == StoreStatus.CONNECTED
    assert "MeterReadings" in resource.tables


def test_unreachable_dynamodb_marks_store_unavailable():
    service, _, client = make_service()

    def no_credentials(TableName):
        raise NoCredentialsError()

    client.describe_table = no_credentials
    assert service.create_tables_if_not_exist() is False
    assert service.status == StoreStatus.UNAVAILABLE
    assert service.list_readings() == []


def test_append_and_list_readings_across_scan_pages():
    service, resource, _ = make_service()
    for value, hour in [(100.0, 7), (95.5, 17), (90.0, 21)]:
        service.append_reading(value, timestamp=datetime(2025, 11, 1, hour, 0, tzinfo=TZ))

    stored = list(resource.tables["MeterReadings"].items.values())
    assert isinstance(stored[0]["value"], Decimal)

    readings = service.list_readings()
    assert [r.value for r in readings] == [100.0, 95.5, 90.0]
    assert [r.period.value for r in readings] == ["morning", "evening", "night"]


def test_duplicate_reading_key():
    service, _, _ = make_service()
    service.append_reading(100.0, reading_key="r-1")
    with pytest.raises(DuplicateKeyError):
        service.append_reading(90.0, reading_key="r-1")


def test_top_up_writes_purchase_and_reading_together():
    service, resource, client = make_service()
    service.append_reading(40.0, timestamp=datetime(2025, 11, 1, 7, 0, tzinfo=TZ))
    top_up = service.append_top_up(60, cost=15.0, timestamp=datetime(2025, 11, 1, 9, 0, tzinfo=TZ))

    assert client.transact_calls == 1
    assert top_up.resulting_reading == 100.0
    assert len(resource.tables["TokenPurchases"].items) == 1
    assert [r.value for r in service.list_readings()] == [40.0, 100.0]
    assert service.list_top_ups()[0].cost == 15.0


def test_migrate_skips_existing_keys():
    service, resource, _ = make_service()
    resource.throttle_first_batch_get = True
    service.append_reading(999.0, reading_key="r-001")

    result = service.migrate_batch(validate_and_stage(reading_items(3), []))

    assert result
    assert (result.inserted_readings, result.skipped) == (2, 1)
    assert resource.batch_get_calls == 2
    values = {r.reading_key: r.value for r in service.list_readings()}
    assert values == {"r-000": 500.0, "r-001": 999.0, "r-002": 498.0}

    again = service.migrate_batch(validate_and_stage(reading_items(3), []))
    assert (again.inserted_readings, again.skipped) == (0, 3)


def test_failed_chunk_rolls_back_earlier_chunks():
    service, resource, client = make_service(fail_on_call=2)
    service.append_reading(1000.0, reading_key="existing")
    client.transact_calls = 0

    # 30 new items -> two transactions, the second one fails
    result = service.migrate_batch(validate_and_stage(reading_items(30), []))

    assert not result
    assert client.transact_calls == 2
    assert list(resource.tables["MeterReadings"].items) == ["existing"]


def test_connection_loss_mid_migration_rolls_back():
    lost = EndpointConnectionError(endpoint_url="https://dynamodb.us-east-1.amazonaws.com")
    service, resource, client = make_service(fail_on_call=2, fail_with=lost)

    result = service.migrate_batch(validate_and_stage(reading_items(30), []))

    assert not result
    assert client.transact_calls == 2
    assert resource.tables["MeterReadings"].items == {}


def test_connection_loss_while_checking_keys():
    service, resource, client = make_service()

    def unreachable(RequestItems):
        raise EndpointConnectionError(endpoint_url="https://dynamodb.us-east-1.amazonaws.com")

    resource.batch_get_item = unreachable
    result = service.migrate_batch(validate_and_stage(reading_items(3), []))

    assert not result
    assert client.transact_calls == 0


def test_top_up_fails_when_latest_reading_cannot_be_read():
    service, resource, client = make_service()
    service.append_reading(200.0, timestamp=datetime(2025, 11, 1, 7, 0, tzinfo=TZ))
    table = resource.tables["MeterReadings"]

    def throttled(ExclusiveStartKey=None):
        raise client_error("ProvisionedThroughputExceededException", "Scan")

    table.scan = throttled

    with pytest.raises(StoreUnavailableError):
        service.append_top_up(50)
    assert client.transact_calls == 0
    assert resource.tables["TokenPurchases"].items == {}
    assert len(table.items) == 1
    # plain reads still degrade to no data
    assert service.list_readings() == []


def test_top_up_write_connection_loss():
    lost = EndpointConnectionError(endpoint_url="https://dynamodb.us-east-1.amazonaws.com")
    service, resource, _ = make_service(fail_on_call=1, fail_with=lost)
    with pytest.raises(StoreUnavailableError):
        service.append_top_up(50)
    assert resource.tables["TokenPurchases"].items == {}
