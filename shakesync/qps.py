"""Token-bucket rate limiting refilled once per interval."""

from __future__ import annotations

import queue
import threading


class Qos:
    """A bucket holding at most ``limit`` tokens, refilled to full every ``interval`` seconds.

    The bucket starts empty; the first tokens arrive after one interval.
    """

    def __init__(self, limit: int, interval: float = 1.0) -> None:
        if limit <= 0:
            raise ValueError(f"qps limit[{limit}] should > 0")
        if interval <= 0:
            raise ValueError(f"interval[{interval}] should > 0")
        self.limit = limit
        self.interval = interval
        self._bucket: queue.Queue[None] = queue.Queue(maxsize=limit)
        self._closed = threading.Event()
        self._timer = threading.Thread(target=self._refill_loop, name="qos-timer", daemon=True)
        self._timer.start()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _refill_loop(self) -> None:
        while not self._closed.wait(self.interval):
            for _ in range(self.limit):
                try:
                    self._bucket.put_nowait(None)
                except queue.Full:
                    break

    def acquire(self, timeout: float | None = None) -> bool:
        """Take one token, waiting up to ``timeout`` seconds; return whether one was taken."""
        try:
            self._bucket.get(timeout=timeout)
        except queue.Empty:
            return False
        return True

    def close(self) -> None:
        """Stop refilling; tokens already in the bucket can still be taken."""
        self._closed.set()

    def __enter__(self) -> Qos:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def start_qos(limit: int) -> Qos:
    """Start a limiter allowing ``limit`` operations per second."""
    return Qos(limit)