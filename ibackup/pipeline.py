"""Bounded work queue drained by a fixed number of worker threads."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Optional

from ibackup.exception import ConfigurationError

logger = logging.getLogger(__name__)

_STOP = object()
PUT_POLL_INTERVAL = 0.1


def check_positive(name: str, value: Any) -> int:
    """Return `value` if it is a positive integer, raise ConfigurationError otherwise."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"'{name}' should be a positive integer, not {value!r}.")
    return value


class BoundedPipeline():
    """Fixed capacity queue with a fixed size pool of worker threads.

    The producer calls :meth:`submit`, which blocks while `capacity` items are
    waiting to be processed. Each worker takes items from the queue and calls
    `handler` with them; the return value is passed to `on_result`. The
    pipeline is done after :meth:`close` returns: no more items are accepted and
    every submitted item has been handled.

    Parameters
    ----------
    handler:
        Function that processes one item.
    capacity:
        Maximum number of submitted items that are not yet taken by a worker.
    workers:
        Number of worker threads.
    on_result, optional
        Called with the return value of the handler, from the worker thread.
    cancel_event, optional
        When set, :meth:`submit` stops accepting items and the workers discard
        the items they take from the queue instead of handling them.

    Raises
    ------
    ConfigurationError:
        If `capacity` or `workers` is not a positive integer.

    Examples
    --------
    >>> with BoundedPipeline(print, capacity=10, workers=2) as pipeline:
    >>>     for item in range(100):
    >>>         pipeline.submit(item)

    """

    def __init__(self, handler: Callable[[Any], Any], capacity: int, workers: int,
                 on_result: Optional[Callable[[Any], None]] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.capacity = check_positive("bounded_capacity", capacity)
        self.n_workers = check_positive("max_parallelism", workers)
        self.handler = handler
        self.on_result = on_result
        self.cancel_event = threading.Event() if cancel_event is None else cancel_event
        self._queue: queue.Queue = queue.Queue(maxsize=self.capacity)
        self._threads: list[threading.Thread] = []
        self._stops_sent = 0
        self._closed = False

    def __enter__(self):
        """Start the worker threads."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, exc_trace_back):
        """Wait for all submitted items to be handled.

        When the block is left with an exception, the items that no worker has
        taken yet are discarded.
        """
        if exc_type is not None:
            self.cancel_event.set()
        self.close()

    @property
    def pending(self) -> int:
        """Number of submitted items that no worker has taken yet."""
        return self._queue.qsize()

    def start(self):
        """Start the worker threads."""
        if self._threads:
            return
        for i_worker in range(self.n_workers):
            thread = threading.Thread(target=self._work, name=f"ibackup-worker-{i_worker}",
                                      daemon=True)
            thread.start()
            self._threads.append(thread)

    def submit(self, item) -> bool:
        """Add an item, waiting while the queue is full.

        Returns
        -------
            False if the item was not accepted because the pipeline was cancelled.

        """
        if self._closed:
            raise ValueError("Cannot submit items to a closed pipeline.")
        if not self._threads:
            self.start()
        while not self.cancel_event.is_set():
            try:
                self._queue.put(item, timeout=PUT_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def close(self):
        """Signal that no more items will be submitted and wait until all are handled.

        Calling it again after it was interrupted waits for the remaining workers.
        """
        self._closed = True
        while self._stops_sent < len(self._threads):
            self._queue.put(_STOP)
            self._stops_sent += 1
        for thread in self._threads:
            thread.join()
        self._threads = []
        self._stops_sent = 0

    def _work(self):
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if self.cancel_event.is_set():
                    continue
                try:
                    result = self.handler(item)
                    if self.on_result is not None:
                        self.on_result(result)
                except Exception:  # pylint: disable=broad-exception-caught
                    logger.exception("Unhandled error while processing %r", item)
            finally:
                self._queue.task_done()
