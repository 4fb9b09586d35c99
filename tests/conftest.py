import os
import sys
import time
from threading import Event, Lock

import pytest

# Ensure project root is importable (so `import nsc`, `import cli` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from nsc import db  # noqa: E402
from nsc.controller import Controller  # noqa: E402
from nsc.runtime import PatchResult  # noqa: E402
from nsc.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def journal(tmp_path, monkeypatch):
    """Point the event journal at an isolated sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "events.db")))
    db.init_db()


class FakeResolver:
    def __init__(self, addresses=()):
        self.addresses = set(addresses)
        self.calls = 0

    def resolve(self):
        self.calls += 1
        return set(self.addresses)


class FakePatchClient:
    """Records patch calls; can fail selected (op, server) pairs and slow calls down."""

    def __init__(self, delay_s=0.0):
        self.calls = []
        self.fail = set()
        self.delay_s = delay_s
        self.active = 0
        self.max_active = 0
        self.on_patch = None
        self._lock = Lock()

    def patch(self, upstream, peer, op):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay_s:
                time.sleep(self.delay_s)
            self.calls.append((upstream, peer.server, op))
            if self.on_patch is not None:
                self.on_patch(upstream, peer, op)
            if (op, peer.server) in self.fail:
                return PatchResult(False, "HTTP 500")
            return PatchResult(True, "OK")
        finally:
            with self._lock:
                self.active -= 1

    def ops(self, op):
        return [c for c in self.calls if c[2] == op]


class FakeProc:
    def __init__(self, *args, **kwargs):
        self.args = args
        self.signals = []
        self._exit = Event()
        self.returncode = None

    def send_signal(self, sig):
        self.signals.append(sig)

    def wait(self):
        self._exit.wait()
        return self.returncode

    def exit(self, code):
        self.returncode = code
        self._exit.set()


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def resolvers():
    return {}


@pytest.fixture
def patch_client():
    return FakePatchClient()


@pytest.fixture
def controller(tmp_path, resolvers, patch_client):
    ctl = Controller(
        location=str(tmp_path / "nginx"),
        reload_delay_s=0,
        startup_delay_s=0,
        upstream_update_interval_s=0,
        patch_client=patch_client,
        resolver_factory=lambda hostname: resolvers.setdefault(hostname, FakeResolver()),
    )
    os.makedirs(ctl.vhosts_dir)
    os.makedirs(ctl.cache_dir)
    return ctl


@pytest.fixture
def reloads(controller, monkeypatch):
    """Replace Controller.reload with a recorder of the requested delays."""
    calls = []
    monkeypatch.setattr(controller, "reload", lambda delayed=False: calls.append(delayed))
    return calls


def start(ctl, monkeypatch, test_ok=True):
    """Mark a controller as running against a fake nginx process."""
    proc = FakeProc()
    monkeypatch.setattr(ctl, "test", lambda: test_ok)
    ctl._proc = proc
    ctl._is_started = True
    return proc


@pytest.fixture
def started(controller, monkeypatch):
    return start(controller, monkeypatch)
