import socket
import threading

from conftest import wait_for

from nsc import resolver as resolver_mod
from nsc.resolver import BackendResolver, ResolverPoller


def test_resolve_collects_unique_addresses(monkeypatch):
    def fake_getaddrinfo(host, port, family, type):
        assert host == "tasks.web"
        assert family == socket.AF_INET
        return [
            (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.0.0.1", 0)),
            (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.0.0.2", 0)),
            (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.0.0.1", 0)),
        ]

    monkeypatch.setattr(resolver_mod.socket, "getaddrinfo", fake_getaddrinfo)
    assert BackendResolver("tasks.web").resolve() == {"10.0.0.1", "10.0.0.2"}


def test_resolve_failure_yields_empty_set(monkeypatch):
    def fake_getaddrinfo(*args):
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")

    monkeypatch.setattr(resolver_mod.socket, "getaddrinfo", fake_getaddrinfo)
    assert BackendResolver("tasks.gone").resolve() == set()


def test_ipv6_family_resolves_any_family():
    assert BackendResolver("tasks.web", family=6).family == socket.AF_UNSPEC


def test_poller_backs_off_and_resets_on_change():
    poller = ResolverPoller(lambda: False, max_interval_s=12, min_interval_s=1, step_s=5)
    assert poller.next_interval(False) == 6
    poller._interval = 6
    assert poller.next_interval(False) == 11
    poller._interval = 11
    assert poller.next_interval(False) == 12
    assert poller.next_interval(True) == 1


def test_poller_runs_until_stopped_and_wakes_early():
    calls = []
    ran = threading.Event()

    def callback():
        calls.append(True)
        ran.set()
        return False

    poller = ResolverPoller(callback, max_interval_s=30, min_interval_s=30)
    poller.start()
    assert ran.wait(2)
    assert poller.is_running

    ran.clear()
    poller.wake()
    assert ran.wait(2)
    assert len(calls) >= 2

    poller.stop()
    assert not poller.is_running
    count = len(calls)
    poller.wake()
    assert not wait_for(lambda: len(calls) > count, timeout=0.2)


def test_poller_survives_callback_errors():
    calls = []

    def callback():
        calls.append(True)
        raise RuntimeError("boom")

    poller = ResolverPoller(callback, max_interval_s=0.05, min_interval_s=0.01, step_s=0.01)
    poller.start()
    assert wait_for(lambda: len(calls) >= 3)
    poller.stop()
