from __future__ import annotations

import time
from dataclasses import dataclass, field
from threading import Thread
from typing import TYPE_CHECKING, Any

import docker
from docker.errors import DockerException, NotFound

from .db import log_event
from .options import options_from_labels

if TYPE_CHECKING:
    from .controller import Controller


@dataclass(frozen=True)
class ServiceInfo:
    id: str
    name: str
    hostname: str
    options: dict[str, Any] = field(default_factory=dict)


def _client() -> docker.DockerClient:
    return docker.from_env()


def service_info(attrs: dict[str, Any]) -> ServiceInfo:
    """Build a ServiceInfo from a swarm service's inspect data.

    Task addresses of a swarm service resolve under ``tasks.<name>``.
    """
    spec = attrs.get("Spec") or {}
    name = spec.get("Name") or attrs["ID"]
    return ServiceInfo(
        id=attrs["ID"],
        name=name,
        hostname=f"tasks.{name}",
        options=options_from_labels(spec.get("Labels")),
    )


class SwarmSource:
    """Swarm services and their lifecycle events, read through the Docker API."""

    def __init__(self, client: docker.DockerClient | None = None, retry_interval_s: float = 5.0):
        self._client = client
        self.retry_interval_s = retry_interval_s
        self._stream = None
        self._stop = False
        self._thr: Thread | None = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = _client()
        return self._client

    def get_services(self) -> list[ServiceInfo]:
        return [service_info(s.attrs) for s in self.client.services.list()]

    def get_service(self, id: str) -> ServiceInfo | None:
        try:
            return service_info(self.client.services.get(id).attrs)
        except NotFound:
            return None

    def watch(self, controller: Controller) -> None:
        """Forward service events to ``controller`` from a daemon thread."""
        if self._thr and self._thr.is_alive():
            return
        self._stop = False
        self._thr = Thread(target=self._loop, args=(controller,), name="swarm-events", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop = True
        stream = self._stream
        if stream is not None:
            stream.close()

    def _loop(self, controller: Controller) -> None:
        reconnect = False
        while not self._stop:
            try:
                self._stream = self.client.events(decode=True, filters={"scope": "swarm", "type": "service"})
                if reconnect:
                    self.resync(controller)
                for event in self._stream:
                    self.dispatch(controller, event)
            except DockerException as e:
                log_event("ERROR", f"Swarm event stream failed: {type(e).__name__}: {e}")
            except Exception as e:
                if self._stop:
                    break
                log_event("ERROR", f"Swarm event handling failed: {type(e).__name__}: {e}")
            finally:
                self._stream = None
            reconnect = True
            if not self._stop:
                time.sleep(self.retry_interval_s)

    def dispatch(self, controller: Controller, event: dict[str, Any]) -> None:
        action = event.get("Action")
        id = (event.get("Actor") or {}).get("ID")
        if not id:
            return

        if action == "remove":
            controller.remove_service(id)
        elif action in {"create", "update"}:
            info = self.get_service(id)
            if info is None:
                controller.remove_service(id)
                return
            controller.add_service(info.id, info.name, info.hostname, info.options)

    def resync(self, controller: Controller) -> None:
        """Catch up on events missed while the stream was down."""
        current = {info.id: info for info in self.get_services()}
        for id in controller.services:
            if id not in current:
                controller.remove_service(id)
        for info in current.values():
            controller.add_service(info.id, info.name, info.hostname, info.options)
