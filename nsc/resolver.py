from __future__ import annotations

import socket
from threading import Event, Thread
from typing import Callable

from .db import log_event


class BackendResolver:
    """Resolve a backend hostname to the set of addresses that take traffic.

    Uses the system resolver, so inside a swarm ``tasks.<service>`` names
    resolve through Docker's embedded DNS to one address per running task.
    """

    def __init__(self, hostname: str, family: int = 4):
        self.hostname = hostname
        self.family = socket.AF_INET if family == 4 else socket.AF_UNSPEC

    def resolve(self) -> set[str]:
        """One-shot resolution. Failures yield an empty set."""
        try:
            infos = socket.getaddrinfo(self.hostname, None, self.family, socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError) as e:
            log_event("WARN", f"DNS lookup failed for {self.hostname}: {e}")
            return set()
        return {info[4][0] for info in infos}


class ResolverPoller:
    """Periodically runs a resolution callback on a daemon thread.

    The interval starts at ``min_interval_s`` and grows by ``step_s`` up to
    ``max_interval_s`` while the callback reports no change; any change drops
    it back to the minimum. ``wake()`` forces an immediate run.
    """

    def __init__(
        self,
        callback: Callable[[], bool],
        max_interval_s: float,
        min_interval_s: float = 1.0,
        step_s: float = 5.0,
        name: str = "resolver",
    ):
        self.callback = callback
        self.max_interval_s = max(0.0, float(max_interval_s))
        self.min_interval_s = min(max(0.0, float(min_interval_s)), self.max_interval_s)
        self.step_s = max(0.0, float(step_s))
        self.name = name
        self._interval = self.min_interval_s
        self._stop = Event()
        self._wake = Event()
        self._thr: Thread | None = None

    @property
    def is_running(self) -> bool:
        return bool(self._thr and self._thr.is_alive() and not self._stop.is_set())

    @property
    def interval(self) -> float:
        return self._interval

    def start(self) -> None:
        if self.is_running:
            return
        self._stop = Event()
        self._interval = self.min_interval_s
        self._thr = Thread(target=self._loop, name=f"poll-{self.name}", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()

    def wake(self) -> None:
        self._interval = self.min_interval_s
        self._wake.set()

    def _loop(self) -> None:
        stop = self._stop
        while not stop.is_set():
            self._wake.clear()
            try:
                changed = self.callback()
            except Exception as e:
                log_event("ERROR", f"Resolver poll failed: {type(e).__name__}: {e}", service_name=self.name)
                changed = False
            self._interval = self.next_interval(changed)
            self._wake.wait(self._interval)

    def next_interval(self, changed: bool) -> float:
        if changed:
            return self.min_interval_s
        return min(self.max_interval_s, self._interval + self.step_s)
