"""Periodic reachability probes of each tier's backend."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterable

from tierstore.model import NotExistError

PROBE_PATH = ".tierfs-health-probe"

StatusListener = Callable[[str, bool], None]


def _reachable(backend: Any, timeout: float) -> bool:
    outcome: list[bool] = []

    def probe() -> None:
        try:
            backend.stat(PROBE_PATH)
        except NotExistError:
            outcome.append(True)
        except Exception:
            outcome.append(False)
        else:
            outcome.append(True)

    worker = threading.Thread(target=probe, name="tier-health-probe", daemon=True)
    worker.start()
    worker.join(timeout)
    return bool(outcome) and outcome[0]


class BackendHealth:
    """Tracks whether each tier's backend answers.

    A backend is healthy when a stat of a sentinel path either succeeds or
    reports that the path does not exist within ``timeout`` seconds. Unknown
    tiers are reported healthy.
    """

    def __init__(
        self,
        tier_names: Iterable[str],
        tiers: Any,
        interval: float,
        timeout: float,
        logger: logging.Logger | None = None,
    ) -> None:
        self._tier_names = list(tier_names)
        self._tiers = tiers
        self._interval = interval
        self._timeout = timeout
        self._log = logger or logging.getLogger(__name__)
        self._statuses = {name: True for name in self._tier_names}
        self._lock = threading.Lock()
        self._listener: StatusListener | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def set_status_listener(self, listener: StatusListener | None) -> None:
        """Call ``listener(tier_name, healthy)`` after every probe. Set before start()."""
        self._listener = listener

    def start(self) -> None:
        """Probe every tier now, then keep probing in the background."""
        self.probe_all()
        self._thread = threading.Thread(target=self._loop, name="tier-health", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def is_healthy(self, tier_name: str) -> bool:
        with self._lock:
            return self._statuses.get(tier_name, True)

    def statuses(self) -> dict[str, bool]:
        with self._lock:
            return dict(self._statuses)

    def probe_all(self) -> None:
        for name in self._tier_names:
            self._set_status(name, self._probe(name))

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.probe_all()

    def _probe(self, tier_name: str) -> bool:
        try:
            backend = self._tiers.backend_for(tier_name)
        except Exception:
            return False
        return _reachable(backend, self._timeout)

    def _set_status(self, tier_name: str, healthy: bool) -> None:
        with self._lock:
            previous = self._statuses.get(tier_name)
            self._statuses[tier_name] = healthy

        if self._listener is not None:
            self._listener(tier_name, healthy)

        if previous is not None and previous != healthy:
            if healthy:
                self._log.info("backend recovered", extra={"tier": tier_name})
            else:
                self._log.warning("backend unhealthy", extra={"tier": tier_name})