import time

import pytest

from rpcfilters.slidingwindow import SlidingWindow


def test_sliding_window():
    size = 0.1
    w = SlidingWindow(size)
    assert w.size() == size
    assert w.count() == 0

    w.record()
    assert w.count() == 1

    time.sleep(size)
    for _ in range(5):
        w.record()
    assert w.count() == 5


def test_record_n_far_past_is_dropped_from_count():
    w = SlidingWindow(1.0)
    w.record_n(time.time() - 100, 7)
    assert w.count() == 0


def test_record_n_now_counts():
    w = SlidingWindow(60.0)
    w.record_n(time.time(), 3)
    w.record_n(time.time(), 4)
    assert w.count() == 7


def test_invalid_size():
    with pytest.raises(ValueError):
        SlidingWindow(0)