import importlib.util
import os

import pytest

import cli
from nsc.controller import ConfigTestError
from nsc.docker_ops import SwarmSource
from nsc.settings import Settings
from nsc.upstreams import UpstreamPatchClient


def _import_main_module(project_root):
    """Import main.py as a module without requiring it to be installed as a package."""
    main_path = os.path.join(project_root, "main.py")
    spec = importlib.util.spec_from_file_location("nginx_swarm_controller_main", main_path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[attr-defined]
    return mod


@pytest.fixture
def main():
    return _import_main_module(os.path.dirname(os.path.dirname(__file__)))


def test_build_controller_uses_settings(main, monkeypatch, tmp_path):
    monkeypatch.setattr(
        main,
        "settings",
        Settings(
            location=str(tmp_path / "nginx"),
            listen_ip_family=6,
            reload_delay_s=2.5,
            conflict_policy="reject",
            control_url="http://127.0.0.1:8081",
        ),
    )

    ctl = main.build_controller()

    assert ctl.location == str(tmp_path / "nginx")
    assert ctl.use_ipv6
    assert ctl.reload_delay_s == 2.5
    assert ctl.conflict_policy == "reject"
    assert isinstance(ctl.patch_client, UpstreamPatchClient)
    assert ctl.patch_client.control_url == "http://127.0.0.1:8081"
    assert isinstance(ctl._source, SwarmSource)


def test_main_exits_nonzero_on_invalid_configuration(main, monkeypatch, tmp_path):
    class BrokenController:
        def on(self, event, callback):
            pass

        def run(self):
            raise ConfigTestError("nginx configuration test failed")

    monkeypatch.setattr(main, "build_controller", BrokenController)
    monkeypatch.setattr(main.db, "init_db", lambda: None)
    assert main.main() == 1


def test_main_returns_nginx_exit_code(main, monkeypatch):
    class ExitingController:
        def on(self, event, callback):
            self.exit_callback = callback

        def run(self):
            self.exit_callback(7)

    monkeypatch.setattr(main, "build_controller", ExitingController)
    monkeypatch.setattr(main.db, "init_db", lambda: None)
    monkeypatch.setattr(main, "settings", Settings(enable_api=False))
    assert main.main() == 7


class FakeResponse:
    def __init__(self, payload, ok=True):
        self.payload = payload
        self.ok = ok

    def json(self):
        return self.payload


def test_cli_events_passes_filters(monkeypatch, capsys):
    seen = {}

    def fake_get(url, params=None, timeout=None):
        seen["url"] = url
        seen["params"] = params
        return FakeResponse([{"message": "updated"}])

    monkeypatch.setattr(cli.requests, "get", fake_get)

    assert cli.main(["--api", "http://ctl:8080/", "events", "--limit", "5", "--service", "web"]) == 0
    assert seen == {"url": "http://ctl:8080/events", "params": {"limit": 5, "service": "web"}}
    assert '"updated"' in capsys.readouterr().out


def test_cli_reload_reports_conflict(monkeypatch, capsys):
    monkeypatch.setattr(cli.requests, "post", lambda url, timeout=None: FakeResponse({"detail": "Nginx is not running"}, ok=False))
    assert cli.main(["reload"]) == 1
    assert "not running" in capsys.readouterr().out
