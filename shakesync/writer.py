"""Common interface of sync targets and helpers for DynamoDB key schemas."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

TARGET_TYPE_MONGO = "mongodb"
TARGET_TYPE_ALIYUN_DYNAMO_PROXY = "aliyun_dynamo_proxy"

TARGET_MONGODB_TYPE_REPLICA = "replica"
TARGET_MONGODB_TYPE_SHARDING = "sharding"

KEY_TYPE_HASH = "HASH"
KEY_TYPE_RANGE = "RANGE"


class WriterError(Exception):
    """Raised when a target refuses or fails an operation."""


@dataclass(frozen=True)
class NS:
    """A namespace on the target: database and collection (table)."""

    database: str
    collection: str

    def __str__(self) -> str:
        return f"{self.database}.{self.collection}"


class Writer(ABC):
    """A target that tables and change batches are written to."""

    @abstractmethod
    def create_table(self, table_description: Mapping[str, Any]) -> None:
        """Create the table described by a DynamoDB table description."""

    @abstractmethod
    def pass_table_desc(self, table_description: Mapping[str, Any]) -> None:
        """Remember the table description without creating anything."""

    @abstractmethod
    def drop_table(self) -> None:
        """Drop the table; a missing table is not an error."""

    @abstractmethod
    def write_bulk(self, documents: Sequence[Any]) -> None:
        """Write a batch of documents during full sync."""

    @abstractmethod
    def insert(self, documents: Sequence[Any], index: Sequence[Any]) -> None:
        """Insert documents whose keys are given in ``index``."""

    @abstractmethod
    def delete(self, index: Sequence[Any]) -> None:
        """Delete the documents matching the keys in ``index``."""

    @abstractmethod
    def update(self, documents: Sequence[Any], index: Sequence[Any]) -> None:
        """Replace the documents matching ``index`` by ``documents``."""

    @abstractmethod
    def close(self) -> None:
        """Release the connection to the target."""

    def __enter__(self) -> Writer:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def parse_index_types(attribute_definitions: Iterable[Mapping[str, Any]] | None) -> dict[str, str]:
    """Map each defined attribute name to its DynamoDB type ("S", "N" or "B")."""
    types: dict[str, str] = {}
    for definition in attribute_definitions or ():
        try:
            types[definition["AttributeName"]] = definition["AttributeType"]
        except KeyError as exc:
            raise WriterError(f"illegal attribute definition[{definition}]") from exc
    return types


def parse_primary_and_sort_key(
    key_schema: Iterable[Mapping[str, Any]] | None, index_types: Mapping[str, str]
) -> tuple[str, str]:
    """Return the partition key and the sort key ("" when absent) of a key schema."""
    primary = ""
    sort = ""
    for element in key_schema or ():
        name = element.get("AttributeName")
        key_type = element.get("KeyType")
        if not name:
            raise WriterError(f"key schema element[{element}] has no attribute name")
        if name not in index_types:
            raise WriterError(f"key[{name}] has no attribute definition")
        if key_type == KEY_TYPE_HASH:
            if primary:
                raise WriterError(f"duplicate partition key[{primary}, {name}]")
            primary = name
        elif key_type == KEY_TYPE_RANGE:
            if sort:
                raise WriterError(f"duplicate sort key[{sort}, {name}]")
            sort = name
        else:
            raise WriterError(f"unknown key type[{key_type}] of key[{name}]")
    if not primary:
        raise WriterError("partition key not found")
    return primary, sort