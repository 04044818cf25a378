"""Sync options: loading from a configuration file, checking and defaults."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from shakesync.converter import CONVERT_TYPE_CHANGE, CONVERT_TYPE_RAW, CONVERT_TYPE_SAME
from shakesync.dynamo_proxy import DynamoProxyWriter
from shakesync.mongo_writer import MongoWriter
from shakesync.writer import (
    NS,
    TARGET_MONGODB_TYPE_REPLICA,
    TARGET_MONGODB_TYPE_SHARDING,
    TARGET_TYPE_ALIYUN_DYNAMO_PROXY,
    TARGET_TYPE_MONGO,
    Writer,
    WriterError,
)

log = logging.getLogger(__name__)

SYNC_MODE_ALL = "all"
SYNC_MODE_FULL = "full"

TARGET_DB_EXIST_RENAME = "rename"
TARGET_DB_EXIST_DROP = "drop"

CHECKPOINT_WRITER_TYPE_FILE = "file"
CHECKPOINT_WRITER_TYPE_MONGO = "mongodb"

DEFAULT_BATCH_NUM = 128
MAX_CONCURRENCY = 4096

_TRUE = frozenset({"true", "yes", "on", "1"})
_FALSE = frozenset({"false", "no", "off", "0"})

_ENTRY_SOURCE_ID = "source.access_key_id"
_ENTRY_SOURCE_SIGNING = "source.secret_access_key"


class OptionsError(ValueError):
    """Raised when options cannot be read or are not acceptable."""


def _key(name: str, default: Any) -> Any:
    return field(default=default, metadata={"key": name})


def _text(name: str) -> Any:
    """A text setting named ``name`` in the configuration, empty by default."""
    return _key(name, str())


@dataclass
class Options:
    """Every setting of a sync run; ``key`` metadata names the configuration entry."""

    id: str = _key("id", "")
    version: str = _key("conf.version", "")
    log_file: str = _key("log.file", "")
    log_level: str = _key("log.level", "")
    log_buffer: bool = _key("log.buffer", False)
    system_profile: int = _key("system_profile", 0)
    full_sync_http_listen_port: int = _key("full_sync.http_port", 0)
    incr_sync_http_listen_port: int = _key("incr_sync.http_port", 0)
    sync_mode: str = _key("sync_mode", "")
    sync_schema_only: bool = _key("sync_schema_only", False)
    source_access_key_id: str = _text(_ENTRY_SOURCE_ID)
    source_secret_access_key: str = _text(_ENTRY_SOURCE_SIGNING)
    source_session_token: str = _text("source.session_token")
    source_region: str = _key("source.region", "")
    source_session_max_retries: int = _key("source.session.max_retries", 0)
    source_session_timeout: int = _key("source.session.timeout", 0)
    qps_full: int = _key("qps.full", 0)
    qps_full_batch_num: int = _key("qps.full.batch_num", 0)
    qps_incr: int = _key("qps.incr", 0)
    qps_incr_batch_num: int = _key("qps.incr.batch_num", 0)
    filter_collection_white: str = _key("filter.collection.white", "")
    filter_collection_black: str = _key("filter.collection.black", "")
    target_type: str = _key("target.type", "")
    target_address: str = _key("target.address", "")
    target_mongodb_type: str = _key("target.mongodb.type", "")
    target_db_exist: str = _key("target.mongodb.exist", "")
    full_concurrency: int = _key("full.concurrency", 0)
    full_document_concurrency: int = _key("full.document.concurrency", 0)
    full_document_parser: int = _key("full.document.parser", 0)
    full_enable_index_primary: bool = _key("full.enable_index.primary", False)
    full_enable_index_user: bool = _key("full.enable_index.user", False)
    full_executor_insert_on_dup_update: bool = _key("full.executor.insert_on_dup_update", False)
    convert_type: str = _key("convert.type", "")
    increase_concurrency: int = _key("increase.concurrency", 0)
    increase_executor_insert_on_dup_update: bool = _key("increase.executor.insert_on_dup_update", False)
    increase_executor_upsert: bool = _key("increase.executor.upsert", False)
    checkpoint_type: str = _key("checkpoint.type", "")
    checkpoint_address: str = _key("checkpoint.address", "")
    checkpoint_db: str = _key("checkpoint.db", "")


def _parse_value(key: str, default: Any, text: str) -> Any:
    if isinstance(default, bool):
        lowered = text.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise OptionsError(f"{key}[{text}] should be true or false")
    if isinstance(default, int):
        try:
            return int(text)
        except ValueError:
            raise OptionsError(f"{key}[{text}] should be an integer") from None
    return text


def load_options(path: str | Path) -> Options:
    """Read ``key = value`` lines from ``path``; ``#`` starts a comment line."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise OptionsError(f"Configure file open failed. {exc}") from exc

    by_key = {item.metadata["key"]: item for item in fields(Options)}
    values: dict[str, Any] = {}
    for number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, separator, value = line.partition("=")
        if not separator:
            raise OptionsError(f"Configure file {path} parse failed. line {number}: missing '='")
        key = key.strip()
        value = value.strip()
        item = by_key.get(key)
        if item is None:
            log.warning("unknown configuration key[%s] in %s ignored", key, path)
            continue
        values[item.name] = _parse_value(key, item.default, value)
    return Options(**values)


def _in_concurrency_range(value: int) -> bool:
    return 0 < value <= MAX_CONCURRENCY


def sanitize_options(options: Options) -> Options:
    """Check ``options`` and fill in derived defaults, in place; return them."""
    if not options.id:
        raise OptionsError(f"id[{options.id}] shouldn't be empty")

    if options.sync_mode not in (SYNC_MODE_ALL, SYNC_MODE_FULL):
        raise OptionsError(f"sync_mode[{options.sync_mode}] illegal, should in {{all, full}}")

    if not options.source_access_key_id:
        raise OptionsError(f"{_ENTRY_SOURCE_ID} shouldn't be empty")
    if not options.source_secret_access_key:
        raise OptionsError(f"{_ENTRY_SOURCE_SIGNING} shouldn't be empty")

    if options.filter_collection_black and options.filter_collection_white:
        raise OptionsError("filter.collection.white and filter.collection.black can't both be given")

    if options.qps_full <= 0 or options.qps_incr <= 0:
        raise OptionsError("qps should > 0")

    if options.qps_full_batch_num <= 0:
        options.qps_full_batch_num = DEFAULT_BATCH_NUM
    if options.qps_incr_batch_num <= 0:
        options.qps_incr_batch_num = DEFAULT_BATCH_NUM

    if options.target_type not in (TARGET_TYPE_MONGO, TARGET_TYPE_ALIYUN_DYNAMO_PROXY):
        raise OptionsError(
            f"target.type[{options.target_type}] supports {{mongodb, aliyun_dynamo_proxy}} currently"
        )

    if not options.target_address:
        raise OptionsError(f"target.address[{options.target_address}] illegal")

    if not _in_concurrency_range(options.full_concurrency):
        raise OptionsError(f"full.concurrency[{options.full_concurrency}] should in (0, 4096]")
    if not _in_concurrency_range(options.full_document_concurrency):
        raise OptionsError(
            f"full.document.concurrency[{options.full_document_concurrency}] should in (0, 4096]"
        )
    if not _in_concurrency_range(options.full_document_parser):
        raise OptionsError(f"full.document.parser[{options.full_document_parser}] should in (0, 4096]")

    options.full_enable_index_primary = True

    if not options.convert_type:
        options.convert_type = CONVERT_TYPE_CHANGE
    if options.convert_type not in (CONVERT_TYPE_RAW, CONVERT_TYPE_CHANGE):
        raise OptionsError(f"convert.type[{options.convert_type}] illegal")

    if options.increase_concurrency <= 0:
        raise OptionsError("increase.concurrency should > 0")

    if options.target_mongodb_type not in ("", TARGET_MONGODB_TYPE_REPLICA, TARGET_MONGODB_TYPE_SHARDING):
        raise OptionsError(f"illegal target.mongodb.type[{options.target_mongodb_type}]")

    exist = options.target_db_exist
    if options.target_type == TARGET_TYPE_MONGO:
        allowed_exist = ("", TARGET_DB_EXIST_RENAME, TARGET_DB_EXIST_DROP)
    else:
        allowed_exist = ("", TARGET_DB_EXIST_DROP)
    if exist not in allowed_exist:
        raise OptionsError(f"illegal target.mongodb.exist[{exist}] when target.type={options.target_type}")

    if options.target_type == TARGET_TYPE_ALIYUN_DYNAMO_PROXY:
        options.convert_type = CONVERT_TYPE_SAME

    if not options.checkpoint_type:
        options.checkpoint_type = CHECKPOINT_WRITER_TYPE_FILE
    if (
        options.checkpoint_type == CHECKPOINT_WRITER_TYPE_MONGO
        and not options.checkpoint_address
        and options.target_type != TARGET_TYPE_MONGO
    ):
        raise OptionsError(
            "checkpoint.type should == file when checkpoint.address is empty and target.type != mongodb"
        )

    if not options.checkpoint_address:
        if options.target_type == TARGET_TYPE_MONGO:
            options.checkpoint_address = options.target_address
        else:
            options.checkpoint_address = "checkpoint"
    if not options.checkpoint_db:
        options.checkpoint_db = f"{options.id}-checkpoint"

    if options.target_type == TARGET_TYPE_ALIYUN_DYNAMO_PROXY and (
        not options.increase_executor_upsert or not options.increase_executor_insert_on_dup_update
    ):
        raise OptionsError(
            "increase.executor.upsert and increase.executor.insert_on_dup_update should be "
            f"enable when target type is {TARGET_TYPE_ALIYUN_DYNAMO_PROXY}"
        )

    return options


def new_writer(options: Options, ns: NS, client: Any = None) -> Writer:
    """Create the writer for ``options.target_type`` writing into ``ns``."""
    name = options.target_type
    if name == TARGET_TYPE_MONGO:
        return MongoWriter(name, options.target_address, ns, options, client)
    if name == TARGET_TYPE_ALIYUN_DYNAMO_PROXY:
        return DynamoProxyWriter(name, options.target_address, ns, options, client)
    raise WriterError(f"unknown writer[{name}]")