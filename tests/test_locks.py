"""Tests for keyed locks."""

import threading
import time
import uuid

from billcycle.services.locks import KeyedLock


def test_same_key_is_serialized():
    lock = KeyedLock("test")
    key = uuid.uuid4()
    state = {"inside": 0, "max_inside": 0}
    state_guard = threading.Lock()

    def worker():
        with lock.hold(key):
            with state_guard:
                state["inside"] += 1
                state["max_inside"] = max(state["max_inside"], state["inside"])
            time.sleep(0.01)
            with state_guard:
                state["inside"] -= 1

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert state["max_inside"] == 1
    assert lock.active_keys() == 0


def test_different_keys_run_concurrently():
    lock = KeyedLock("test")
    barrier = threading.Barrier(2, timeout=5)
    errors = []

    def worker():
        with lock.hold(uuid.uuid4()):
            try:
                barrier.wait()
            except threading.BrokenBarrierError as exc:
                errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []


def test_uuid_and_string_keys_share_a_lock():
    lock = KeyedLock("test")
    key = uuid.uuid4()
    with lock.hold(key):
        acquired = threading.Event()

        def worker():
            with lock.hold(str(key)):
                acquired.set()

        thread = threading.Thread(target=worker)
        thread.start()
        assert not acquired.wait(0.05)
    thread.join()
    assert acquired.is_set()


def test_lock_released_on_error():
    lock = KeyedLock("test")
    try:
        with lock.hold("k"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert lock.active_keys() == 0
    with lock.hold("k"):
        assert lock.active_keys() == 1
