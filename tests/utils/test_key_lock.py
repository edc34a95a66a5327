# tests/utils/test_key_lock.py
import threading
import time

from orchestrate.utils.key_lock import KeyedLock


def test_same_key_is_serialized():
    locks = KeyedLock()
    active, overlaps = [], []

    def worker():
        with locks.hold(("proj", "render")):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            active.pop()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []


def test_different_keys_do_not_contend():
    locks = KeyedLock()
    inner_acquired = threading.Event()

    def other_key():
        with locks.hold(("proj", "comp")):
            inner_acquired.set()

    with locks.hold(("proj", "render")):
        thread = threading.Thread(target=other_key)
        thread.start()
        assert inner_acquired.wait(2)
    thread.join()


def test_lock_is_dropped_after_release():
    locks = KeyedLock()

    with locks.hold("key"):
        assert locks.is_held("key")
    assert not locks.is_held("key")


def test_released_when_the_body_raises():
    locks = KeyedLock()

    try:
        with locks.hold("key"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    assert not locks.is_held("key")
