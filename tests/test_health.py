import threading
import time

import pytest

from tierstore.health import BackendHealth
from tierstore.model import NotExistError, TierNotFoundError


class MemBackend:
    def __init__(self):
        self.store = {}

    def stat(self, rel_path):
        if rel_path not in self.store:
            raise NotExistError()
        return self.store[rel_path]


class ErrorBackend:
    def stat(self, rel_path):
        raise ConnectionError("connection refused")


class HangingBackend:
    def __init__(self):
        self.release = threading.Event()

    def stat(self, rel_path):
        self.release.wait(5)
        raise NotExistError()


class SwappableBackend:
    def __init__(self, current):
        self._lock = threading.Lock()
        self._current = current

    def swap(self, backend):
        with self._lock:
            self._current = backend

    def stat(self, rel_path):
        with self._lock:
            current = self._current
        return current.stat(rel_path)


class FakeTierLookup:
    def __init__(self, backends):
        self.backends = backends

    def backend_for(self, name):
        try:
            return self.backends[name]
        except KeyError:
            raise TierNotFoundError(name) from None


def _eventually(condition, timeout, interval):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


@pytest.fixture
def started():
    checkers = []

    def make(*args, **kwargs):
        h = BackendHealth(*args, **kwargs)
        checkers.append(h)
        return h

    yield make
    for h in checkers:
        h.stop()


def test_healthy_backend(started):
    lookup = FakeTierLookup({"tier0": MemBackend()})
    h = started(["tier0"], lookup, 3600, 5)
    h.start()
    assert h.is_healthy("tier0") is True


def test_unhealthy_backend(started):
    lookup = FakeTierLookup({"tier0": ErrorBackend()})
    h = started(["tier0"], lookup, 3600, 5)
    h.start()
    assert h.is_healthy("tier0") is False


def test_recovery_after_failure(started):
    sw = SwappableBackend(ErrorBackend())
    lookup = FakeTierLookup({"tier0": sw})
    h = started(["tier0"], lookup, 0.05, 5)
    h.start()
    assert h.is_healthy("tier0") is False

    sw.swap(MemBackend())
    assert _eventually(lambda: h.is_healthy("tier0"), 3, 0.025)


def test_unknown_tier_fail_open(started):
    h = started([], FakeTierLookup({}), 3600, 5)
    h.start()
    assert h.is_healthy("unknown-tier") is True


def test_statuses_snapshot(started):
    lookup = FakeTierLookup({"tier0": MemBackend(), "tier1": ErrorBackend()})
    h = started(["tier0", "tier1"], lookup, 3600, 5)
    h.start()
    statuses = h.statuses()
    assert statuses == {"tier0": True, "tier1": False}
    statuses["tier1"] = True
    assert h.is_healthy("tier1") is False


def test_listener_receives_status(started):
    calls = []
    lookup = FakeTierLookup({"tier0": MemBackend()})
    h = started(["tier0"], lookup, 3600, 5)
    h.set_status_listener(lambda tier, healthy: calls.append((tier, healthy)))
    h.start()
    assert calls == [("tier0", True)]


def test_missing_backend_is_unhealthy(started):
    h = started(["tier9"], FakeTierLookup({}), 3600, 5)
    h.start()
    assert h.is_healthy("tier9") is False


def test_probe_timeout_is_unhealthy(started):
    backend = HangingBackend()
    h = started(["tier0"], FakeTierLookup({"tier0": backend}), 3600, 0.05)
    try:
        h.start()
        assert h.is_healthy("tier0") is False
    finally:
        backend.release.set()


def test_assumed_healthy_before_first_probe():
    h = BackendHealth(["tier0"], FakeTierLookup({"tier0": ErrorBackend()}), 3600, 5)
    assert h.is_healthy("tier0") is True
    h.probe_all()
    assert h.is_healthy("tier0") is False