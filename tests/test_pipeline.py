import threading
import time

import pytest
from pytest import mark

from ibackup.exception import ConfigurationError
from ibackup.pipeline import BoundedPipeline, check_positive


@mark.parametrize("value", [0, -1, True, "3", 2.0, None])
def test_invalid_settings(value):
    with pytest.raises(ConfigurationError):
        check_positive("bounded_capacity", value)
    with pytest.raises(ConfigurationError):
        BoundedPipeline(print, value, 1)
    with pytest.raises(ConfigurationError):
        BoundedPipeline(print, 1, value)


def test_in_order_with_single_worker():
    results = []
    with BoundedPipeline(lambda x: x * 2, 1, 1, on_result=results.append) as pipeline:
        for item in range(20):
            assert pipeline.submit(item)
    assert results == [x * 2 for x in range(20)]


def test_all_items_handled():
    results = []
    lock = threading.Lock()

    def _record(result):
        with lock:
            results.append(result)

    with BoundedPipeline(lambda x: x, 5, 4, on_result=_record) as pipeline:
        for item in range(200):
            pipeline.submit(item)
    assert sorted(results) == list(range(200))


def test_submit_blocks_when_full():
    release = threading.Event()
    pipeline = BoundedPipeline(lambda x: release.wait(), 2, 1)
    pipeline.start()
    for item in range(3):
        pipeline.submit(item)
    while pipeline.pending > 2:
        time.sleep(0.01)

    submitted = threading.Event()

    def _produce():
        pipeline.submit(3)
        submitted.set()

    producer = threading.Thread(target=_produce)
    producer.start()
    assert not submitted.wait(0.3)
    assert pipeline.pending <= 2
    release.set()
    assert submitted.wait(5)
    producer.join()
    pipeline.close()


def test_handler_error_does_not_stop_workers():
    results = []

    def _handler(item):
        if item == 3:
            raise RuntimeError("broken item")
        return item

    with BoundedPipeline(_handler, 2, 1, on_result=results.append) as pipeline:
        for item in range(6):
            pipeline.submit(item)
    assert results == [0, 1, 2, 4, 5]


def test_cancel():
    cancel_event = threading.Event()
    results = []

    def _handler(item):
        if item == 0:
            cancel_event.set()
        return item

    with BoundedPipeline(_handler, 1, 1, on_result=results.append,
                         cancel_event=cancel_event) as pipeline:
        accepted = [pipeline.submit(item) for item in range(10)]
    assert results == [0]
    assert not accepted[-1]


def test_closed_pipeline():
    pipeline = BoundedPipeline(print, 1, 1)
    pipeline.close()
    with pytest.raises(ValueError):
        pipeline.submit(1)


def test_exit_with_error_discards_queued():
    started = threading.Event()
    cancel_event = threading.Event()
    handled = []

    def _handle(item):
        started.set()
        cancel_event.wait(5)
        handled.append(item)

    pipeline = BoundedPipeline(_handle, capacity=5, workers=1, cancel_event=cancel_event)
    with pytest.raises(RuntimeError):
        with pipeline:
            for item in range(4):
                pipeline.submit(item)
            started.wait(5)
            raise RuntimeError("producer failed")
    assert handled == [0]
    assert pipeline.cancel_event.is_set()
    pipeline.close()
