from __future__ import annotations

import logging
from threading import Event, Thread

import uvicorn

from nsc import db
from nsc.api import create_app
from nsc.controller import ConfigTestError, Controller
from nsc.docker_ops import SwarmSource
from nsc.settings import settings
from nsc.upstreams import UpstreamPatchClient


def build_controller() -> Controller:
    return Controller(
        location=settings.location,
        listen_ip_family=settings.listen_ip_family,
        nginx_bin=settings.nginx_bin,
        reload_delay_s=settings.reload_delay_s,
        startup_delay_s=settings.startup_delay_s,
        upstream_update_interval_s=settings.upstream_update_interval_s,
        conflict_policy=settings.conflict_policy,
        patch_client=UpstreamPatchClient(settings.control_url, settings.patch_timeout_s),
        source=SwarmSource(),
    )


def serve_api(controller: Controller) -> None:
    config = uvicorn.Config(create_app(controller), host=settings.api_host, port=settings.api_port, log_level="warning")
    server = uvicorn.Server(config)
    # Off the main thread uvicorn leaves signal handling to the controller.
    Thread(target=server.run, name="control-api", daemon=True).start()


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    db.init_db()

    controller = build_controller()
    exited = Event()
    exit_code: list[int] = []

    def on_exit(code: int) -> None:
        exit_code.append(code)
        exited.set()

    controller.on("exit", on_exit)

    try:
        controller.run()
    except ConfigTestError as e:
        db.log_event("ERROR", str(e))
        return 1

    if settings.enable_api:
        serve_api(controller)

    # Signals are delivered to the main thread; keep it responsive.
    while not exited.wait(1.0):
        pass
    return exit_code[0] if exit_code else 0


if __name__ == "__main__":
    raise SystemExit(main())
