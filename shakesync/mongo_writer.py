"""Writer that stores DynamoDB items in a MongoDB collection."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from pymongo import ASCENDING, DeleteOne, MongoClient, ReplaceOne
from pymongo.errors import BulkWriteError, DuplicateKeyError, OperationFailure, PyMongoError

from shakesync.converter import CONVERT_TYPE_CHANGE, CONVERT_TYPE_RAW, CONVERT_TYPE_SAME
from shakesync.writer import (
    NS,
    TARGET_MONGODB_TYPE_SHARDING,
    Writer,
    WriterError,
    parse_index_types,
    parse_primary_and_sort_key,
)

log = logging.getLogger(__name__)

NUM_INITIAL_CHUNKS = 1024

_DUPLICATE_CODES = frozenset({11000, 11001, 12582})
_NS_NOT_FOUND_CODE = 26

_DEFAULT_OPTIONS: dict[str, Any] = {
    "convert_type": CONVERT_TYPE_CHANGE,
    "target_mongodb_type": "",
    "full_enable_index_primary": True,
    "full_enable_index_user": False,
    "full_executor_insert_on_dup_update": False,
    "increase_executor_insert_on_dup_update": False,
    "increase_executor_upsert": False,
}


def _write_errors(exc: BaseException) -> list[Mapping[str, Any]]:
    if isinstance(exc, BulkWriteError):
        return list((exc.details or {}).get("writeErrors") or [])
    return []


def _is_duplicate(exc: BaseException) -> bool:
    if isinstance(exc, DuplicateKeyError):
        return True
    if isinstance(exc, BulkWriteError):
        return any(error.get("code") in _DUPLICATE_CODES for error in _write_errors(exc))
    return isinstance(exc, OperationFailure) and exc.code in _DUPLICATE_CODES


def _is_ns_not_found(exc: BaseException) -> bool:
    if isinstance(exc, BulkWriteError):
        return any(
            error.get("code") == _NS_NOT_FOUND_CODE or "ns not found" in str(error.get("errmsg", ""))
            for error in _write_errors(exc)
        )
    if isinstance(exc, OperationFailure):
        return exc.code == _NS_NOT_FOUND_CODE or "ns not found" in str(exc)
    return False


def _first_error_index(exc: BaseException) -> int | None:
    errors = _write_errors(exc)
    if not errors:
        return None
    return min(int(error.get("index", 0)) for error in errors)


class MongoWriter(Writer):
    """Writes into ``ns`` of a MongoDB deployment.

    ``options`` is any object carrying the option attributes named in
    ``_DEFAULT_OPTIONS``; missing attributes fall back to those defaults.
    """

    def __init__(
        self,
        name: str,
        address: str,
        ns: NS,
        options: Any = None,
        client: Any = None,
    ) -> None:
        self.name = name
        self.ns = ns
        self.options = options
        if client is None:
            try:
                client = MongoClient(address)
            except PyMongoError as exc:
                raise WriterError(f"create mongodb connection error[{exc}]") from exc
        self.client = client
        self.primary_indexes: list[Mapping[str, Any]] = []

    def __str__(self) -> str:
        return self.name

    def _option(self, name: str) -> Any:
        return getattr(self.options, name, _DEFAULT_OPTIONS[name])

    @property
    def _database(self) -> Any:
        return self.client[self.ns.database]

    @property
    def _collection(self) -> Any:
        return self._database[self.ns.collection]

    def pass_table_desc(self, table_description: Mapping[str, Any]) -> None:
        self.primary_indexes = list(table_description.get("KeySchema") or [])

    def create_table(self, table_description: Mapping[str, Any]) -> None:
        key_schema = list(table_description.get("KeySchema") or [])
        global_indexes = list(table_description.get("GlobalSecondaryIndexes") or [])
        self.primary_indexes = key_schema
        log.info(
            "%s table[%s] primary index length: %d",
            self, table_description.get("TableName"), len(key_schema),
        )

        index_types = parse_index_types(table_description.get("AttributeDefinitions"))
        if not key_schema:
            log.info("%s no index found", self)
            return
        if len(key_schema) > 2:
            raise WriterError(f"{self} illegal primary index[{len(key_schema)}] number, should <= 2")

        if self._option("full_enable_index_primary"):
            log.info("%s try create primary index", self)
            self._create_primary_index(key_schema, index_types)
            if self._option("full_enable_index_user"):
                log.info("%s try create user index", self)
                for gsi in global_indexes:
                    self._create_single_index(gsi.get("KeySchema") or [], index_types, primary=False)

    def drop_table(self) -> None:
        try:
            self._collection.drop()
        except PyMongoError as exc:
            if _is_ns_not_found(exc):
                return
            raise WriterError(f"{self} drop ns[{self.ns}] failed[{exc}]") from exc

    def write_bulk(self, documents: Sequence[Any]) -> None:
        if not documents:
            return
        try:
            self._collection.insert_many([dict(document) for document in documents], ordered=True)
        except PyMongoError as exc:
            if not _is_duplicate(exc):
                raise WriterError(
                    f"{self} insert docs with length[{len(documents)}] into ns[{self.ns}] of dest mongo "
                    f"failed[{exc}]. first doc: {documents[0]}"
                ) from exc
            log.warning("%s duplicated document found[%s]. reinsert or update", self, exc)
            if not self._option("full_executor_insert_on_dup_update") or not self.primary_indexes:
                raise WriterError(
                    f"{self} duplicated document found, full.executor.insert_on_dup_update=="
                    f"[{self._option('full_executor_insert_on_dup_update')}], "
                    f"primary indexes length[{len(self.primary_indexes)}]"
                ) from exc
            key_names = [element["AttributeName"] for element in self.primary_indexes]
            index_list = []
            for document in documents:
                selector = {}
                for key in key_names:
                    if key in document:
                        selector[key] = document[key]
                    else:
                        log.error("primary key[%s] is not exists on input data[%s]", key, document)
                index_list.append(selector)
            self._update_on_insert(documents, index_list)

    def insert(self, documents: Sequence[Any], index: Sequence[Any]) -> None:
        if not documents:
            return
        try:
            self._collection.insert_many([dict(document) for document in documents], ordered=False)
        except PyMongoError as exc:
            if _is_duplicate(exc) and self._option("increase_executor_insert_on_dup_update"):
                log.warning("%s duplicated document found. reinsert or update", self)
                self._update_on_insert(documents, index)
                return
            raise WriterError(f"{self} insert failed[{exc}]") from exc

    def _update_on_insert(self, documents: Sequence[Any], index: Sequence[Any]) -> None:
        for selector, document in zip(index, documents):
            log.debug("upsert: selector[%s] update[%s]", selector, document)
            try:
                self._collection.replace_one(selector, dict(document), upsert=True)
            except PyMongoError as exc:
                if _is_ns_not_found(exc):
                    log.warning("%s ignore error[%s] when upsert", self, exc)
                    return
                raise WriterError(f"{self} upsert failed[{exc}]") from exc

    def delete(self, index: Sequence[Any]) -> None:
        if not index:
            return
        try:
            self._collection.bulk_write([DeleteOne(dict(selector)) for selector in index], ordered=False)
        except PyMongoError as exc:
            if _is_ns_not_found(exc):
                log.warning("%s ignore error[%s] when delete", self, exc)
                return
            raise WriterError(f"{self} delete failed[{exc}]") from exc

    def update(self, documents: Sequence[Any], index: Sequence[Any]) -> None:
        if not documents:
            return
        upsert = bool(self._option("increase_executor_upsert"))
        requests = [
            ReplaceOne(dict(selector), dict(document), upsert=upsert)
            for selector, document in zip(index, documents)
        ]
        try:
            self._collection.bulk_write(requests, ordered=True)
        except PyMongoError as exc:
            log.warning("%s update failed[%s]", self, exc)
            failed_at = _first_error_index(exc)
            if failed_at is None:
                raise WriterError(f"{self} update failed[{exc}]") from exc
            if _is_ns_not_found(exc):
                self._update_on_insert(documents[failed_at:], index[failed_at:])
                return
            if _is_duplicate(exc):
                self._update_on_insert(documents[failed_at + 1:], index[failed_at + 1:])
                return
            raise WriterError(f"{self} update failed[{exc}]") from exc

    def close(self) -> None:
        self.client.close()

    def fetch_key(self, key: str, attribute_type: str) -> str:
        """Field name of ``key`` in stored documents for the configured conversion."""
        convert_type = self._option("convert_type")
        if convert_type in (CONVERT_TYPE_CHANGE, CONVERT_TYPE_SAME):
            return key
        if convert_type == CONVERT_TYPE_RAW:
            return f"{key}.{attribute_type}"
        return ""

    def _create_primary_index(self, key_schema: Sequence[Mapping[str, Any]], index_types: Mapping[str, str]) -> None:
        primary_key = self._create_single_index(key_schema, index_types, primary=True)
        if self._option("target_mongodb_type") != TARGET_MONGODB_TYPE_SHARDING:
            return
        admin = self.client["admin"]
        try:
            admin.command("enablesharding", self.ns.database)
        except PyMongoError as exc:
            if "sharding already enabled" not in str(exc):
                raise WriterError(f"enable sharding failed[{exc}]") from exc
            log.warning("ns[%s] sharding already enabled: %s", self.ns, exc)
        try:
            admin.command({
                "shardCollection": str(self.ns),
                "key": {primary_key: "hashed"},
                "options": {"numInitialChunks": NUM_INITIAL_CHUNKS},
            })
        except PyMongoError as exc:
            raise WriterError(f"shard collection[{self.ns}] failed[{exc}]") from exc

    def _create_single_index(
        self,
        key_schema: Sequence[Mapping[str, Any]],
        index_types: Mapping[str, str],
        primary: bool,
    ) -> str:
        try:
            primary_name, sort_name = parse_primary_and_sort_key(key_schema, index_types)
        except WriterError as exc:
            raise WriterError(f"parse primary and sort key failed[{exc}]") from exc

        primary_key = self.fetch_key(primary_name, index_types[primary_name])
        keys = [primary_key]
        if sort_name:
            keys.append(self.fetch_key(sort_name, index_types[sort_name]))
        log.info("ns[%s] single index[%s] list[%s]", self.ns, primary_key, keys)

        if primary:
            try:
                self._collection.create_index([(key, ASCENDING) for key in keys], unique=True, background=True)
            except PyMongoError as exc:
                raise WriterError(f"create primary union unique index failed[{exc}]") from exc

        command = {
            "createIndexes": self.ns.collection,
            "indexes": [{
                "key": {primary_key: "hashed"},
                "name": f"{primary_key}_hashed",
                "background": True,
            }],
        }
        log.info("create index isPrimary[%s]: %s", primary, command)
        try:
            self._database.command(command)
        except PyMongoError as exc:
            raise WriterError(f"create primary[{primary}] hash index failed[{exc}]") from exc
        return primary_key