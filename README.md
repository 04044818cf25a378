# shakesync

`shakesync` is a library for moving DynamoDB data into another store. The target can be
MongoDB or an HTTP endpoint that speaks the DynamoDB JSON protocol. It provides:

- converters that turn DynamoDB attribute values into documents (`shakesync.converter`),
- writers that create tables and apply writes on the target (`shakesync.writer`,
  `shakesync.mongo_writer`, `shakesync.dynamo_proxy`),
- option loading and checking (`shakesync.options`),
- a dispatcher that groups stream change records into batched writes (`shakesync.syncer`),
- a token-bucket rate limiter (`shakesync.qps`).

Install with `pip install .`. The test dependencies are in the `test` extra.

## Converters

A converter takes one DynamoDB item, which is a mapping of attribute name to attribute
value such as `{"id": {"S": "user-1"}}`.

```python
from shakesync.converter import new_converter

item = {"id": {"S": "user-1"}, "age": {"N": "42"}}

raw = new_converter("raw").run(item)        # RawData; data == {"id": {"S": "user-1"}, "age": {"N": "42"}}
typed = new_converter("change").run(item)   # RawData; data == {"id": "user-1", "age": Decimal128("42")}
same = new_converter("same").run(item)      # the item itself, unchanged
```

- `RawConverter` ("raw") keeps the type tags. Numbers stay strings, and `B` and `BS`
  become `bytes`.
- `TypeConverter` ("change") drops the tags. `N` and `NS` become `bson.Decimal128`. A
  number too long for Decimal128 is stored at float precision. `L` becomes a list and
  `M` a nested dict.
- `SameConverter` ("same") returns the input mapping as it is.

`raw` and `change` return a `RawData(size, data)`, where `size` is a rough byte count.
An empty or malformed item raises `ConversionError`. So does an unknown converter kind
passed to `new_converter`.

## Writers

Each writer subclasses `Writer` and works on one namespace, `NS(database, collection)`.
Its methods are:

- `create_table(table_description)`: creates the table and its indexes from a DynamoDB
  table description, given as a dict with `TableName`, `KeySchema`,
  `AttributeDefinitions` and so on.
- `pass_table_desc(table_description)`: records the key schema without creating anything.
- `drop_table()`: drops the table. A table that does not exist is not an error.
- `write_bulk(documents)`: bulk write, for a full copy.
- `insert(documents, index)`, `update(documents, index)` and `delete(index)`:
  incremental changes. `index` holds the key of each document.
- `close()`: releases the connection. A writer can also be used as a context manager.

If the target fails an operation, the writer raises `WriterError`.
`parse_index_types` and `parse_primary_and_sort_key` read DynamoDB attribute definitions
and key schemas.

### MongoWriter

`MongoWriter(name, address, ns, options, client)` writes to MongoDB through pymongo. If
`client` is `None`, it creates a `MongoClient` for `address`. `options` can be any object
that has the option attributes. Attributes it lacks take a default value.

- `create_table` builds a unique index over the partition and sort keys, and a hashed
  index on the partition key. With `full_enable_index_user`, it also indexes the global
  secondary indexes. When `target_mongodb_type` is `"sharding"`, it enables sharding and
  shards the collection on the hashed partition key.
- `fetch_key(key, attribute_type)` returns the field name that the configured
  `convert_type` gives a key: `key` for "change" and "same", `key.TYPE` for "raw".
- A duplicate key during `insert` is followed by an upsert of each document, if
  `increase_executor_insert_on_dup_update` is set. In `write_bulk` the same happens when
  `full_executor_insert_on_dup_update` is set and the key schema is known.
- `update` replaces documents. It upserts when `increase_executor_upsert` is set.

### DynamoProxyWriter

`DynamoProxyWriter(name, address, ns, options, client)` posts DynamoDB JSON-protocol
requests to `address` with httpx. `http://` is added to the address when it has no
scheme.

- Puts and deletes go out as `BatchWriteItem`.
- Each update becomes an `UpdateItem` request. Its `SET` expression comes from
  `build_update_expression(item)`, which returns the expression and the `:vN` values.
- Requests are retried up to 3 times after server errors and throttling.
- `create_table` checks `DescribeTable` up to 5 times, waiting until the table is
  `ACTIVE`.

## Options

`load_options(path)` reads a file of `key = value` lines. Lines starting with `#` are
comments. Keys use dotted names such as `target.type`, `target.address`, `qps.incr` or
`convert.type`. Unknown keys are ignored with a warning.

`sanitize_options(options)` checks the options and fills in defaults, in place. It
raises `OptionsError` when a setting is invalid. Among the defaults it sets:

- batch sizes of 128,
- `convert_type` "change", or "same" for a DynamoDB-proxy target,
- `checkpoint_type` "file",
- `checkpoint_db` "`<id>-checkpoint`".

`new_writer(options, ns, client)` creates the writer for `options.target_type`, either
`"mongodb"` or `"aliyun_dynamo_proxy"`.

```python
from shakesync.options import load_options, new_writer, sanitize_options
from shakesync.writer import NS

options = sanitize_options(load_options("shake.conf"))
writer = new_writer(options, NS(options.id, "orders"), None)
```

## Applying stream changes

A `Dispatcher` takes stream records through `put`. A record is a mapping such as:

```python
{
    "eventName": "INSERT",                 # or "MODIFY" / "REMOVE"
    "dynamodb": {
        "Keys": {"id": {"S": "user-1"}},
        "NewImage": {"id": {"S": "user-1"}, "age": {"N": "42"}},
        "SequenceNumber": "100",
    },
}
```

The batcher groups consecutive records that share an `EventName` into `ExecuteNode`
batches. A batch is closed when it reaches `batch_number` records, when the event type
changes, or when no record arrives for `batch_timeout` seconds. The executor then writes
each batch:

- INSERT batches go to `insert`,
- MODIFY batches go to `update`,
- REMOVE batches go to `delete`.

After each successful batch, `checkpoint_position` is set to the batch's last sequence
number. `IncrMetric` counts records written and checkpoints taken.

```python
from shakesync.converter import new_converter
from shakesync.syncer import Dispatcher, IncrMetric

dispatcher = Dispatcher(writer, new_converter("raw"), IncrMetric(), "orders-shard-0", 25, 1.0)
dispatcher.start()
for record in records:
    dispatcher.put(record)
dispatcher.finish()
dispatcher.join(10.0)   # raises the first conversion or write error, if any
```

After an error, the dispatcher writes nothing more. `join` returns whether both threads
finished.

## Rate limiting

`start_qos(limit)` returns a `Qos` token bucket, and `Qos(limit, interval)` makes one
with its own interval. The bucket starts empty. It is refilled to `limit` tokens every
`interval` seconds (1 by default). `acquire(timeout)` takes a token and returns whether
it got one. `close()` stops the refills. Used as a context manager, the bucket is closed
on exit.

## What is not included

This package provides building blocks only. It has:

- no command-line program,
- no code that reads DynamoDB tables or polls DynamoDB streams,
- no full-copy driver,
- no checkpoint storage,
- no HTTP metrics server.

The caller supplies stream records and table descriptions and keeps track of progress,
for example through `Dispatcher.checkpoint_position`.