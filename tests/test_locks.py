import threading
import time

import allure

from delegation_engine.delegation.locks import KeyedLock

pytestmark = [
    allure.epic("Delegation Engine"),
    allure.feature("Claim Arbitration"),
]


def test_same_key_is_mutually_exclusive() -> None:
    locks = KeyedLock()
    inside = 0
    overlap = []
    guard = threading.Lock()

    def worker() -> None:
        nonlocal inside
        with locks.hold("T1"):
            with guard:
                inside += 1
                overlap.append(inside)
            time.sleep(0.01)
            with guard:
                inside -= 1

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert max(overlap) == 1
    assert len(locks) == 0


def test_different_keys_do_not_block_each_other() -> None:
    locks = KeyedLock()
    entered = threading.Event()

    def other() -> None:
        with locks.hold("T2"):
            entered.set()

    with locks.hold("T1"):
        thread = threading.Thread(target=other)
        thread.start()
        assert entered.wait(timeout=2)
        thread.join(timeout=2)
        assert len(locks) == 1

    assert len(locks) == 0


def test_lock_entry_is_released_after_exception() -> None:
    locks = KeyedLock()

    try:
        with locks.hold("T1"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    assert len(locks) == 0
    with locks.hold("T1"):
        assert len(locks) == 1
