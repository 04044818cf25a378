"""Writer that sends DynamoDB items to a DynamoDB-compatible HTTP endpoint."""

from __future__ import annotations

import base64
import json
import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from shakesync.writer import NS, Writer, WriterError

log = logging.getLogger(__name__)

API_VERSION = "DynamoDB_20120810"
CONTENT_TYPE = "application/x-amz-json-1.0"
REQUEST_TIMEOUT = 5.0
MAX_RETRIES = 3
READY_CHECK_TIMES = 5
READY_CHECK_INTERVAL = 1.0
TABLE_STATUS_ACTIVE = "ACTIVE"

_RETRYABLE_CODES = frozenset({
    "ThrottlingException",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
})
_NOT_FOUND_CODE = "ResourceNotFoundException"


class _DynamoRequestError(WriterError):
    """An error answer from the endpoint, with the error code it carried."""

    def __init__(self, message: str, code: str, status: int) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


def _to_wire(value: Any) -> Any:
    """Encode a payload for JSON: binary values become base64 text."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, Mapping):
        return {key: _to_wire(inner) for key, inner in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_wire(inner) for inner in value]
    return value


def build_update_expression(item: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
    """Build a ``SET`` update expression and its attribute values for ``item``."""
    parts: list[str] = []
    values: dict[str, Any] = {}
    for position, (name, value) in enumerate(item.items(), start=1):
        placeholder = f":v{position}"
        values[placeholder] = value
        parts.append(f"{name}={placeholder}")
    expression = "SET" + (" " + ",".join(parts) if parts else "")
    return expression, values


class DynamoProxyWriter(Writer):
    """Writes into table ``ns.collection`` through the DynamoDB JSON protocol."""

    def __init__(
        self,
        name: str,
        address: str,
        ns: NS,
        options: Any = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.name = name
        self.ns = ns
        self.options = options
        self.address = address if "://" in address else f"http://{address}"
        self.max_retries = MAX_RETRIES
        self.retry_delay = 0.1
        self.ready_check_times = READY_CHECK_TIMES
        self.ready_check_interval = READY_CHECK_INTERVAL
        self._client = client
        self._owns_client = client is None

    def __str__(self) -> str:
        return self.name

    def _option(self, name: str, default: Any) -> Any:
        return getattr(self.options, name, default)

    @property
    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=REQUEST_TIMEOUT)
            self._owns_client = True
        return self._client

    def _error(self, operation: str, response: httpx.Response) -> _DynamoRequestError:
        code = ""
        message = response.text
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, Mapping):
            code = str(data.get("__type", "")).rsplit("#", 1)[-1]
            message = data.get("message") or data.get("Message") or message
        return _DynamoRequestError(
            f"{self} {operation} failed[{response.status_code} {code}: {message}]",
            code,
            response.status_code,
        )

    def _call(self, operation: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        body = json.dumps(_to_wire(payload))
        headers = {"X-Amz-Target": f"{API_VERSION}.{operation}", "Content-Type": CONTENT_TYPE}
        if self._option("log_level", "") == "debug":
            log.debug("%s %s request: %s", self, operation, body)
        last_error: WriterError | None = None
        for attempt in range(self.max_retries + 1):
            if attempt and self.retry_delay:
                time.sleep(self.retry_delay * attempt)
            try:
                response = self._http.post(self.address, content=body, headers=headers)
            except httpx.HTTPError as exc:
                last_error = WriterError(f"{self} {operation} request failed[{exc}]")
                continue
            if response.status_code >= 400:
                error = self._error(operation, response)
                if response.status_code >= 500 or error.code in _RETRYABLE_CODES:
                    last_error = error
                    continue
                raise error
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                raise WriterError(f"{self} {operation} returned invalid json[{exc}]") from exc
        assert last_error is not None
        raise last_error

    def _batch_write(self, requests: list[dict[str, Any]]) -> None:
        result = self._call("BatchWriteItem", {"RequestItems": {self.ns.collection: requests}})
        unprocessed = result.get("UnprocessedItems")
        if unprocessed:
            log.warning("%s unprocessed items left by batch write: %s", self, unprocessed)

    def pass_table_desc(self, table_description: Mapping[str, Any]) -> None:
        """Nothing is kept: the endpoint knows its own key schema."""

    def create_table(self, table_description: Mapping[str, Any]) -> None:
        table_name = table_description.get("TableName")
        request: dict[str, Any] = {
            "AttributeDefinitions": list(table_description.get("AttributeDefinitions") or []),
            "KeySchema": list(table_description.get("KeySchema") or []),
            "TableName": table_name,
        }
        if self._option("full_enable_index_user", False):
            global_indexes = [
                {key: gsi[key] for key in ("IndexName", "KeySchema", "Projection") if key in gsi}
                for gsi in table_description.get("GlobalSecondaryIndexes") or []
            ]
            local_indexes = [
                {key: lsi[key] for key in ("IndexName", "KeySchema", "Projection") if key in lsi}
                for lsi in table_description.get("LocalSecondaryIndexes") or []
            ]
            if global_indexes:
                request["GlobalSecondaryIndexes"] = global_indexes
            if local_indexes:
                request["LocalSecondaryIndexes"] = local_indexes

        try:
            self._call("CreateTable", request)
        except WriterError as exc:
            log.error("create table[%s] fail: %s", table_name, exc)
            raise
        self._wait_ready(table_name)

    def _wait_ready(self, table_name: Any) -> None:
        for attempt in range(self.ready_check_times):
            if attempt and self.ready_check_interval:
                time.sleep(self.ready_check_interval)
            try:
                described = self._call("DescribeTable", {"TableName": table_name})
            except WriterError as exc:
                log.warning("create table[%s] ok but describe failed: %s", table_name, exc)
                continue
            status = (described.get("Table") or {}).get("TableStatus")
            if status == TABLE_STATUS_ACTIVE:
                return
            log.warning("create table[%s] ok but describe not ready: %s", table_name, status)
        raise WriterError(f"create table[{self.ns.collection}] fail: check ready fail")

    def drop_table(self) -> None:
        try:
            self._call("DeleteTable", {"TableName": self.ns.collection})
        except _DynamoRequestError as exc:
            if exc.code != _NOT_FOUND_CODE:
                raise

    def write_bulk(self, documents: Sequence[Any]) -> None:
        if not documents:
            return
        self._batch_write([{"PutRequest": {"Item": document}} for document in documents])

    def insert(self, documents: Sequence[Any], index: Sequence[Any]) -> None:
        if not documents:
            return
        self._batch_write([{"PutRequest": {"Item": document}} for document in documents])

    def delete(self, index: Sequence[Any]) -> None:
        if not index:
            return
        self._batch_write([{"DeleteRequest": {"Key": key}} for key in index])

    def update(self, documents: Sequence[Any], index: Sequence[Any]) -> None:
        """Upsert every document under its key, one request per document."""
        if not documents:
            return
        for item, key in zip(documents, index):
            expression, values = build_update_expression(item)
            self._call("UpdateItem", {
                "TableName": self.ns.collection,
                "Key": key,
                "UpdateExpression": expression,
                "ExpressionAttributeValues": values,
            })

    def close(self) -> None:
        """Release the HTTP client this writer created; a later call opens a new one."""
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None