import base64
import json

import httpx
import pytest

from shakesync.dynamo_proxy import API_VERSION, DynamoProxyWriter, build_update_expression
from shakesync.writer import NS, WriterError


class Recorder:
    def __init__(self, responder=None):
        self.calls = []
        self.requests = []
        self.responder = responder

    def __call__(self, request):
        target = request.headers["X-Amz-Target"].split(".", 1)[1]
        body = json.loads(request.content)
        self.calls.append((target, body))
        self.requests.append(request)
        if self.responder is not None:
            return self.responder(target, body)
        return httpx.Response(200, json={})


class Opts:
    full_enable_index_user = True


def make_writer(recorder, options=None, address="http://proxy.example.com"):
    client = httpx.Client(transport=httpx.MockTransport(recorder))
    writer = DynamoProxyWriter("aliyun_dynamo_proxy", address, NS("db", "table"), options, client)
    writer.ready_check_interval = 0
    writer.retry_delay = 0
    return writer


def error_response(code, status=400):
    return httpx.Response(
        status, json={"__type": f"com.amazonaws.dynamodb.v20120810#{code}", "message": "boom"}
    )


TABLE = {
    "TableName": "table",
    "AttributeDefinitions": [
        {"AttributeName": "pid", "AttributeType": "S"},
        {"AttributeName": "sid", "AttributeType": "N"},
    ],
    "KeySchema": [
        {"AttributeName": "pid", "KeyType": "HASH"},
        {"AttributeName": "sid", "KeyType": "RANGE"},
    ],
    "GlobalSecondaryIndexes": [
        {
            "IndexName": "gsi",
            "KeySchema": [{"AttributeName": "sid", "KeyType": "HASH"}],
            "Projection": {"ProjectionType": "ALL"},
            "IndexStatus": "ACTIVE",
        }
    ],
}


def test_build_update_expression_numbers_placeholders_in_order():
    item = {"a": {"S": "x"}, "b": {"N": "1"}}
    expression, values = build_update_expression(item)
    assert expression == "SET a=:v1,b=:v2"
    assert values == {":v1": {"S": "x"}, ":v2": {"N": "1"}}


def test_build_update_expression_every_value_referenced():
    item = {f"f{i}": {"N": str(i)} for i in range(5)}
    expression, values = build_update_expression(item)
    assert expression.startswith("SET ")
    assert len(values) == len(item)
    for placeholder in values:
        assert placeholder in expression


def test_str_is_name():
    writer = make_writer(Recorder())
    assert str(writer) == "aliyun_dynamo_proxy"


def test_insert_sends_batch_write_of_put_requests():
    recorder = Recorder()
    writer = make_writer(recorder)
    items = [{"pid": {"S": "1"}, "sid": {"N": "100"}}, {"pid": {"S": "2"}, "sid": {"N": "200"}}]
    writer.insert(items, items)
    assert len(recorder.calls) == 1
    target, body = recorder.calls[0]
    assert target == "BatchWriteItem"
    assert recorder.requests[0].headers["X-Amz-Target"] == f"{API_VERSION}.BatchWriteItem"
    assert body == {"RequestItems": {"table": [{"PutRequest": {"Item": item}} for item in items]}}


def test_insert_and_delete_of_nothing_send_nothing():
    recorder = Recorder()
    writer = make_writer(recorder)
    writer.insert([], [])
    writer.delete([])
    writer.update([], [])
    writer.write_bulk([])
    assert recorder.calls == []


def test_delete_sends_delete_requests():
    recorder = Recorder()
    writer = make_writer(recorder)
    keys = [{"pid": {"S": "1"}}]
    writer.delete(keys)
    assert recorder.calls == [("BatchWriteItem", {"RequestItems": {"table": [{"DeleteRequest": {"Key": keys[0]}}]}})]


def test_update_sends_one_update_item_per_document():
    recorder = Recorder()
    writer = make_writer(recorder)
    documents = [{"pid": {"S": "1"}, "data": {"N": "5"}}, {"pid": {"S": "2"}}]
    keys = [{"pid": {"S": "1"}}, {"pid": {"S": "2"}}]
    writer.update(documents, keys)
    assert [target for target, _ in recorder.calls] == ["UpdateItem", "UpdateItem"]
    for (_, body), document, key in zip(recorder.calls, documents, keys):
        expression, values = build_update_expression(document)
        assert body == {
            "TableName": "table",
            "Key": key,
            "UpdateExpression": expression,
            "ExpressionAttributeValues": values,
        }


def test_binary_values_travel_as_base64():
    recorder = Recorder()
    writer = make_writer(recorder)
    raw = bytes([123, 45, 78, 0, 12])
    writer.write_bulk([{"blob": {"B": raw}}])
    _, body = recorder.calls[0]
    encoded = body["RequestItems"]["table"][0]["PutRequest"]["Item"]["blob"]["B"]
    assert base64.b64decode(encoded) == raw


def test_address_without_scheme_uses_http():
    recorder = Recorder()
    writer = make_writer(recorder, address="proxy.example.com:3717")
    writer.delete([{"pid": {"S": "1"}}])
    assert recorder.requests[0].url.scheme == "http"
    assert recorder.requests[0].url.host == "proxy.example.com"


def test_client_error_raises_with_code():
    writer = make_writer(Recorder(lambda target, body: error_response("ValidationException")))
    with pytest.raises(WriterError, match="ValidationException"):
        writer.insert([{"pid": {"S": "1"}}], [{"pid": {"S": "1"}}])


def test_server_error_is_retried():
    answers = iter([httpx.Response(500, json={}), httpx.Response(200, json={})])
    recorder = Recorder(lambda target, body: next(answers))
    writer = make_writer(recorder)
    writer.delete([{"pid": {"S": "1"}}])
    assert len(recorder.calls) == 2


def test_retries_run_out():
    recorder = Recorder(lambda target, body: httpx.Response(503, json={}))
    writer = make_writer(recorder)
    with pytest.raises(WriterError):
        writer.delete([{"pid": {"S": "1"}}])
    assert len(recorder.calls) == writer.max_retries + 1


def test_create_table_waits_until_active_and_sends_user_indexes():
    statuses = iter(["CREATING", "ACTIVE"])

    def responder(target, body):
        if target == "DescribeTable":
            return httpx.Response(200, json={"Table": {"TableStatus": next(statuses)}})
        return httpx.Response(200, json={})

    recorder = Recorder(responder)
    writer = make_writer(recorder, Opts())
    writer.create_table(TABLE)
    targets = [target for target, _ in recorder.calls]
    assert targets == ["CreateTable", "DescribeTable", "DescribeTable"]
    create = recorder.calls[0][1]
    assert create["TableName"] == "table"
    assert create["KeySchema"] == TABLE["KeySchema"]
    assert create["GlobalSecondaryIndexes"] == [
        {
            "IndexName": "gsi",
            "KeySchema": [{"AttributeName": "sid", "KeyType": "HASH"}],
            "Projection": {"ProjectionType": "ALL"},
        }
    ]
    assert "LocalSecondaryIndexes" not in create


def test_create_table_without_user_index_option_omits_indexes():
    def responder(target, body):
        if target == "DescribeTable":
            return httpx.Response(200, json={"Table": {"TableStatus": "ACTIVE"}})
        return httpx.Response(200, json={})

    recorder = Recorder(responder)
    writer = make_writer(recorder)
    writer.create_table(TABLE)
    assert "GlobalSecondaryIndexes" not in recorder.calls[0][1]


def test_create_table_never_ready_fails():
    def responder(target, body):
        if target == "DescribeTable":
            return httpx.Response(200, json={"Table": {"TableStatus": "CREATING"}})
        return httpx.Response(200, json={})

    recorder = Recorder(responder)
    writer = make_writer(recorder)
    with pytest.raises(WriterError, match="check ready fail"):
        writer.create_table(TABLE)
    assert sum(1 for target, _ in recorder.calls if target == "DescribeTable") == writer.ready_check_times


def test_drop_table_ignores_missing_table():
    recorder = Recorder(lambda target, body: error_response("ResourceNotFoundException"))
    writer = make_writer(recorder)
    writer.drop_table()
    assert recorder.calls == [("DeleteTable", {"TableName": "table"})]


def test_drop_table_reports_other_errors():
    writer = make_writer(Recorder(lambda target, body: error_response("ResourceInUseException")))
    with pytest.raises(WriterError, match="ResourceInUseException"):
        writer.drop_table()