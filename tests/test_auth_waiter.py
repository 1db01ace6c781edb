import queue
import threading

import pytest

from src.qapilot.services.auth_waiter import CONNECTED, FAILED, TIMEOUT, AuthWaiter


def test_emits_connected_once_check_passes():
    sink = queue.Queue()
    calls = {"n": 0}

    def check():
        calls["n"] += 1
        return calls["n"] >= 3

    waiter = AuthWaiter("s1", check, sink, interval=0.01, timeout=5).start()
    outcome = sink.get(timeout=2)
    waiter.join(2)

    assert outcome.session_id == "s1"
    assert outcome.status == CONNECTED
    assert waiter.done
    assert sink.empty()


def test_emits_timeout_when_never_connected():
    sink = queue.Queue()
    waiter = AuthWaiter("s1", lambda: False, sink, interval=0.01, timeout=0.05).start()

    outcome = sink.get(timeout=2)
    waiter.join(2)

    assert outcome.status == TIMEOUT
    assert sink.empty()


def test_cancel_emits_nothing():
    sink = queue.Queue()
    gate = threading.Event()

    def check():
        gate.set()
        return False

    waiter = AuthWaiter("s1", check, sink, interval=0.01, timeout=5).start()
    assert gate.wait(2)
    waiter.cancel()
    waiter.join(2)

    assert sink.empty()
    assert waiter.done


def test_failing_check_is_reported():
    sink = queue.Queue()

    def check():
        raise RuntimeError("popup blocked")

    AuthWaiter("s1", check, sink, interval=0.01, timeout=5).start().join(2)
    outcome = sink.get_nowait()
    assert outcome.status == FAILED
    assert outcome.detail == "popup blocked"


def test_waiter_starts_only_once():
    waiter = AuthWaiter("s1", lambda: True, queue.Queue(), interval=0.01)
    waiter.start()
    with pytest.raises(RuntimeError):
        waiter.start()
    waiter.join(2)


def test_invalid_bounds_are_rejected():
    with pytest.raises(ValueError):
        AuthWaiter("s1", lambda: True, queue.Queue(), interval=0)
