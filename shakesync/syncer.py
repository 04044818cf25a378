"""Incremental sync of one stream shard: batch change records and apply them to the target."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from shakesync.converter import ConversionError, Converter, RawData
from shakesync.writer import Writer, WriterError

log = logging.getLogger(__name__)

BATCHER_NUMBER = 25
BATCHER_TIMEOUT = 1.0
DISPATCHER_BATCHER_QUEUE_SIZE = 4096
DISPATCHER_EXECUTOR_QUEUE_SIZE = 4096

_CLOSED = object()


class EventName(str, Enum):
    """Kinds of change carried by a stream record."""

    INSERT = "INSERT"
    MODIFY = "MODIFY"
    REMOVE = "REMOVE"


class IncrMetric:
    """Thread-safe counters of the incremental sync."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.records_get = 0
        self.records_write = 0
        self.checkpoint_times = 0

    def add_get(self, count: int) -> None:
        with self._lock:
            self.records_get += count

    def add_success(self, count: int) -> None:
        with self._lock:
            self.records_write += count

    def add_checkpoint(self, count: int) -> None:
        with self._lock:
            self.checkpoint_times += count


@dataclass
class ExecuteNode:
    """One batch of changes of the same kind, ready to be written."""

    tp: EventName
    operate: list[Any] = field(default_factory=list)
    index: list[Any] = field(default_factory=list)
    last_sequence_number: str = ""
    approximate_creation_date_time: str = ""


def _payload(value: Any) -> Any:
    return value.data if isinstance(value, RawData) else value


class Dispatcher:
    """Turns the change records of one shard into batched writes.

    Records go in through :meth:`put`; :meth:`finish` marks the end of the shard.
    A batcher groups consecutive records of the same event kind (at most
    ``batch_number`` per batch, flushed after ``batch_timeout`` seconds of
    silence) and an executor applies each batch to ``writer``.
    """

    def __init__(
        self,
        writer: Writer,
        converter: Converter,
        metric: IncrMetric | None = None,
        name: str = "dispatcher",
        batch_number: int = BATCHER_NUMBER,
        batch_timeout: float = BATCHER_TIMEOUT,
    ) -> None:
        if batch_number <= 0:
            raise ValueError(f"batch number[{batch_number}] should > 0")
        if batch_timeout <= 0:
            raise ValueError(f"batch timeout[{batch_timeout}] should > 0")
        self.writer = writer
        self.converter = converter
        self.metric = metric if metric is not None else IncrMetric()
        self.name = name
        self.batch_number = batch_number
        self.batch_timeout = batch_timeout
        self.batch_queue: queue.Queue[Any] = queue.Queue(DISPATCHER_BATCHER_QUEUE_SIZE)
        self.executor_queue: queue.Queue[Any] = queue.Queue(DISPATCHER_EXECUTOR_QUEUE_SIZE)
        self.checkpoint_position = ""
        self.checkpoint_approximate_time = ""
        self.error: BaseException | None = None
        self._failed = threading.Event()
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    def __str__(self) -> str:
        return self.name

    def _fail(self, exc: BaseException) -> None:
        with self._lock:
            if self.error is None:
                self.error = exc
        self._failed.set()
        log.error("%s failed[%s]", self, exc)

    def put(self, record: Any) -> None:
        """Queue one stream record for writing."""
        self.batch_queue.put(record)

    def finish(self) -> None:
        """Mark that no more records will come."""
        self.batch_queue.put(_CLOSED)

    def _add_record(self, node: ExecuteNode, event: EventName, record: Any) -> None:
        body = record["dynamodb"]
        index = _payload(self.converter.run(body["Keys"]))
        if event is EventName.REMOVE:
            node.index.append(index)
        else:
            value = _payload(self.converter.run(body["NewImage"]))
            node.operate.append(value)
            node.index.append(index)
        node.last_sequence_number = str(body["SequenceNumber"])
        approximate = body.get("ApproximateCreationDateTime")
        if approximate is not None:
            node.approximate_creation_date_time = str(approximate)

    def batcher(self) -> None:
        """Group records from the batch queue into nodes for the executor queue."""
        node: ExecuteNode | None = None
        count = 0

        def flush() -> None:
            nonlocal node, count
            if node is not None and (node.operate or node.index) and not self._failed.is_set():
                self.executor_queue.put(node)
            node = None
            count = 0

        while True:
            try:
                record = self.batch_queue.get(timeout=self.batch_timeout)
            except queue.Empty:
                flush()
                continue
            if record is _CLOSED:
                flush()
                break
            if self._failed.is_set():
                continue
            try:
                raw_event = record["eventName"]
                try:
                    event = EventName(raw_event)
                except ValueError:
                    raise ConversionError(f"{self} unknown event name[{raw_event}]") from None
                if node is None or node.tp is not event or count >= self.batch_number:
                    flush()
                    node = ExecuteNode(tp=event)
                self._add_record(node, event, record)
                count += 1
            except (KeyError, TypeError) as exc:
                self._fail(ConversionError(f"{self} illegal record[{record}]: {exc}"))
            except Exception as exc:  # noqa: BLE001 - surfaced by join()
                self._fail(exc)

        log.info("%s batcher exit", self)
        self.executor_queue.put(_CLOSED)

    def _execute(self, node: ExecuteNode) -> None:
        if node.tp is EventName.INSERT:
            self.writer.insert(node.operate, node.index)
        elif node.tp is EventName.MODIFY:
            self.writer.update(node.operate, node.index)
        elif node.tp is EventName.REMOVE:
            self.writer.delete(node.index)
        else:
            raise WriterError(f"unknown write operation[{node.tp}]")

    def executor(self) -> None:
        """Apply nodes from the executor queue to the writer and advance the checkpoint."""
        while True:
            node = self.executor_queue.get()
            if node is _CLOSED:
                break
            if self._failed.is_set():
                continue
            log.debug(
                "%s try write data with length[%d], tp[%s] approximate[%s]",
                self, len(node.index), node.tp, node.approximate_creation_date_time,
            )
            try:
                self._execute(node)
            except Exception as exc:  # noqa: BLE001 - surfaced by join()
                self._fail(exc)
                continue
            self.metric.add_success(len(node.index))
            self.metric.add_checkpoint(1)
            self.checkpoint_position = node.last_sequence_number
            self.checkpoint_approximate_time = node.approximate_creation_date_time
        log.info("%s executor exit", self)

    def start(self) -> Dispatcher:
        """Run the batcher and the executor in background threads."""
        if self._threads:
            raise RuntimeError(f"{self} already started")
        self._threads = [
            threading.Thread(target=self.batcher, name=f"{self.name}-batcher", daemon=True),
            threading.Thread(target=self.executor, name=f"{self.name}-executor", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        return self

    def join(self, timeout: float | None = None) -> bool:
        """Wait for both threads; raise the first error met, else return whether they finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        if self.error is not None:
            raise self.error
        return not any(thread.is_alive() for thread in self._threads)