from __future__ import annotations

import threading
import time

import pytest

from write_queue import WriteQueue


def _wait_until(pred, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not pred():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.005)


def test_returns_result_and_cleans_idle_key():
    queue = WriteQueue()
    assert queue.with_lock("GLEIZE/2026-02", lambda a, b: a + b, 2, b=3) == 5
    assert queue.pending() == 0
    assert len(queue) == 0


def test_fifo_order_per_key():
    queue = WriteQueue()
    release = threading.Event()
    order = []

    def first():
        release.wait(5)
        order.append(0)

    threads = [threading.Thread(target=queue.with_lock, args=("K", first))]
    threads[0].start()
    _wait_until(lambda: queue.pending("K") == 1)

    for i in range(1, 6):
        t = threading.Thread(target=queue.with_lock, args=("K", order.append, i))
        threads.append(t)
        t.start()
        _wait_until(lambda n=i: queue.pending("K") == n + 1)

    release.set()
    for t in threads:
        t.join(5)

    assert order == [0, 1, 2, 3, 4, 5]
    assert len(queue) == 0


def test_failure_does_not_poison_key():
    queue = WriteQueue()

    def boom():
        raise RuntimeError("ftp down")

    with pytest.raises(RuntimeError):
        queue.with_lock("K", boom)
    assert queue.with_lock("K", lambda: "next") == "next"
    assert queue.pending() == 0


def test_distinct_keys_do_not_block_each_other():
    queue = WriteQueue()
    release = threading.Event()
    blocker = threading.Thread(target=queue.with_lock, args=("A", release.wait, 5))
    blocker.start()
    _wait_until(lambda: queue.pending("A") == 1)

    # B passe pendant que A est occupe
    assert queue.with_lock("B", lambda: "b") == "b"
    assert queue.pending("A") == 1

    release.set()
    blocker.join(5)
    assert queue.pending() == 0


def test_mutual_exclusion_under_contention():
    queue = WriteQueue()
    inside = []
    overlaps = []
    lock = threading.Lock()

    def critical():
        with lock:
            inside.append(1)
            if len(inside) > 1:
                overlaps.append(len(inside))
        time.sleep(0.002)
        with lock:
            inside.pop()

    threads = [threading.Thread(target=queue.with_lock, args=("K", critical)) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert overlaps == []
    assert len(queue) == 0
