from __future__ import annotations

import os
import shutil
import signal
import subprocess
import threading
import time
from threading import Lock, RLock, Thread
from typing import Any, Callable

from . import templates
from .db import log_event
from .options import normalize_ports, normalize_server_names
from .resolver import BackendResolver
from .runtime import RELOAD_IDLE, RELOAD_RUNNING, RELOAD_RUNNING_PENDING
from .service import NginxService
from .upstreams import UpstreamPatchClient

CONFLICT_POLICIES = {"drop", "reject"}


class ConfigTestError(RuntimeError):
    """nginx rejected the generated configuration at startup."""


class Controller:
    """Runs nginx and keeps its configuration in line with the swarm services.

    Owns the nginx process, the service registry and the reload pipeline.
    Emits ``"reload"`` after every completed reload and ``"exit"`` (with the
    exit code) when the nginx process ends.
    """

    def __init__(
        self,
        location: str = "/var/lib/nginx",
        listen_ip_family: int = 4,
        nginx_bin: str = "nginx",
        reload_delay_s: float = 3.0,
        startup_delay_s: float = 3.0,
        upstream_update_interval_s: float = 60.0,
        conflict_policy: str = "drop",
        patch_client: UpstreamPatchClient | None = None,
        resolver_factory: Callable[[str], BackendResolver] | None = None,
        source: Any = None,
        handle_signals: bool = True,
    ):
        if conflict_policy not in CONFLICT_POLICIES:
            raise ValueError(f"conflict_policy must be one of {sorted(CONFLICT_POLICIES)}")

        self._location = location
        self._listen_ip_family = 6 if int(listen_ip_family) == 6 else 4
        self.nginx_bin = nginx_bin
        self.reload_delay_s = max(0.0, float(reload_delay_s))
        self.startup_delay_s = max(0.0, float(startup_delay_s))
        self.upstream_update_interval_s = max(0.0, float(upstream_update_interval_s))
        self.conflict_policy = conflict_policy
        self.patch_client = patch_client or UpstreamPatchClient()
        self._resolver_factory = resolver_factory
        self._source = source
        self.handle_signals = handle_signals

        self._proc: subprocess.Popen | None = None
        self._is_started = False
        self._is_reloading = False
        self._pending_reload = False
        self._state_lock = Lock()
        self._lock = RLock()
        self._services: dict[str, NginxService] = {}
        self._listeners: dict[str, list[Callable[..., Any]]] = {}
        self._listeners_lock = Lock()

    # properties
    @property
    def location(self) -> str:
        return self._location

    @property
    def listen_ip_family(self) -> int:
        return self._listen_ip_family

    @property
    def use_ipv6(self) -> bool:
        return self._listen_ip_family == 6

    @property
    def config_path(self) -> str:
        return os.path.join(self._location, "nginx.conf")

    @property
    def cache_dir(self) -> str:
        return os.path.join(self._location, "cache")

    @property
    def vhosts_dir(self) -> str:
        return os.path.join(self._location, "vhosts")

    @property
    def default_vhost_path(self) -> str:
        return os.path.join(self.vhosts_dir, "_default.nginx.conf")

    @property
    def is_started(self) -> bool:
        return self._is_started

    @property
    def is_reloading(self) -> bool:
        return self._is_reloading

    @property
    def reload_state(self) -> str:
        with self._state_lock:
            if not self._is_reloading:
                return RELOAD_IDLE
            return RELOAD_RUNNING_PENDING if self._pending_reload else RELOAD_RUNNING

    @property
    def services(self) -> dict[str, NginxService]:
        with self._lock:
            return dict(self._services)

    # events
    def on(self, event: str, callback: Callable[..., Any]) -> None:
        with self._listeners_lock:
            self._listeners.setdefault(event, []).append(callback)

    def off(self, event: str, callback: Callable[..., Any]) -> None:
        with self._listeners_lock:
            listeners = self._listeners.get(event, [])
            if callback in listeners:
                listeners.remove(callback)

    def listener_count(self, event: str) -> int:
        with self._listeners_lock:
            return len(self._listeners.get(event, []))

    def _emit(self, event: str, *args: Any) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners.get(event, []))
        for callback in listeners:
            try:
                callback(*args)
            except Exception as e:
                log_event("ERROR", f"'{event}' listener failed: {type(e).__name__}: {e}")

    # lifecycle
    def run(self) -> None:
        """Bring nginx up with the current set of swarm services.

        Raises ConfigTestError if the generated configuration does not pass
        ``nginx -t``; nginx is not started in that case.
        """
        if self._is_started:
            return

        log_event("INFO", "Nginx starting")

        # vhosts are regenerated from scratch
        if os.path.exists(self.vhosts_dir):
            shutil.rmtree(self.vhosts_dir, ignore_errors=True)
        for path in (self._location, self.cache_dir, self.vhosts_dir):
            os.makedirs(path, exist_ok=True)

        conf = templates.render_nginx_conf(
            base_dir=self._location,
            vhosts_dir=self.vhosts_dir,
            cache_dir=self.cache_dir,
            listen_ip_family=self._listen_ip_family,
        )
        with open(self.config_path, "w") as f:
            f.write(conf)
        with open(self.default_vhost_path, "w") as f:
            f.write(templates.render_default_vhost(self.use_ipv6))

        if self._source is not None:
            self._source.watch(self)
            for info in self._source.get_services():
                self.add_service(info.id, info.name, info.hostname, info.options)

        self._remove_stale_cache()

        if not self.test():
            log_event("ERROR", "Nginx configuration test failed, not starting")
            raise ConfigTestError(f"nginx -t failed for {self.config_path}")

        self._spawn()
        self._install_signal_handlers()

        # Peer sync stays gated until nginx has had time to come up.
        with self._state_lock:
            self._is_started = True
            self._is_reloading = True
            self._pending_reload = False
        time.sleep(self.startup_delay_s)
        with self._state_lock:
            pending = self._pending_reload
            if not pending:
                self._is_reloading = False

        log_event("INFO", "Nginx started")
        if pending:
            self._reload_loop(delayed=False)
        else:
            self._emit("reload")

    def test(self) -> bool:
        log_event("INFO", "Nginx testing configuration")
        try:
            res = subprocess.run(
                [self.nginx_bin, "-t", "-c", self.config_path],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except OSError as e:
            log_event("ERROR", f"Nginx test could not run: {e}")
            return False
        if res.returncode != 0:
            log_event("ERROR", f"Nginx configuration test failed: {res.stdout.strip()}")
            return False
        return True

    def reload(self, delayed: bool = False) -> Thread | None:
        """Request a configuration reload.

        Requests are coalesced: while a reload is in flight a new request
        only marks it pending, and the running loop does one more pass.
        Returns the thread running the reload loop, or None if none was
        started.
        """
        with self._state_lock:
            if not self._is_started:
                return None
            if self._is_reloading:
                self._pending_reload = True
                return None
            self._is_reloading = True

        thr = Thread(target=self._reload_loop, args=(delayed,), name="nginx-reload", daemon=True)
        thr.start()
        return thr

    def _reload_loop(self, delayed: bool) -> None:
        try:
            if delayed:
                time.sleep(self.reload_delay_s)

            while True:
                with self._state_lock:
                    self._pending_reload = False

                if self.test():
                    log_event("INFO", "Nginx reloading")
                    self._send_signal(signal.SIGHUP)

                # wait for nginx to finish reloading
                time.sleep(self.startup_delay_s)

                with self._state_lock:
                    if not self._pending_reload:
                        self._is_reloading = False
                        break
        except Exception as e:
            with self._state_lock:
                self._is_reloading = False
                self._pending_reload = False
            log_event("ERROR", f"Nginx reload failed: {type(e).__name__}: {e}")

        # nginx may have been signalled before the failure; peers are rebuilt either way.
        self._emit("reload")

    def terminate(self) -> None:
        if not self._is_started:
            return
        log_event("INFO", "Nginx shutdown started")
        self._send_signal(signal.SIGTERM)

    def graceful_shutdown(self) -> None:
        if not self._is_started:
            return
        log_event("INFO", "Nginx graceful shutdown started")
        self._send_signal(signal.SIGQUIT)

    def reopen_log_files(self) -> None:
        if not self._is_started:
            return
        log_event("INFO", "Nginx reopening log files")
        self._send_signal(signal.SIGUSR1)

    def upgrade_executable(self) -> None:
        if not self._is_started:
            return
        log_event("INFO", "Nginx upgrading executable")
        self._send_signal(signal.SIGUSR2)

    def graceful_shutdown_workers(self) -> None:
        if not self._is_started:
            return
        log_event("INFO", "Nginx graceful shutdown workers")
        self._send_signal(signal.SIGWINCH)

    # services
    def make_resolver(self, hostname: str) -> BackendResolver:
        if self._resolver_factory is not None:
            return self._resolver_factory(hostname)
        return BackendResolver(hostname, family=self._listen_ip_family)

    def add_service(self, id: str, name: str, hostname: str | None = None, options: dict[str, Any] | None = None) -> bool:
        with self._lock:
            if id not in self._services:
                self._services[id] = NginxService(self, id, name, hostname=hostname)
            return self.update_service(id, options)

    def update_service(self, id: str, options: dict[str, Any] | None = None) -> bool:
        with self._lock:
            service = self._services.get(id)
            if service is None:
                return False

            options = options or {}
            taken_names, taken_ports = self._claimed_by_others(id)

            if self.conflict_policy == "reject" and self._has_conflicts(service, options, taken_names, taken_ports):
                changed = False
            else:
                changed = service.update(options, taken_names=taken_names, taken_ports=taken_ports)

            # a service without vhosts is not tracked
            if not service.is_enabled:
                del self._services[id]
                service.remove()

            return changed

    def remove_service(self, id: str) -> None:
        with self._lock:
            service = self._services.pop(id, None)
        if service is None:
            return
        service.remove()

    # private
    def _claimed_by_others(self, id: str) -> tuple[set[str], set[int]]:
        names: set[str] = set()
        ports: set[int] = set()
        for other in self._services.values():
            if other.id == id or not other.is_enabled:
                continue
            options = other.options
            names.update(options.http_server_name)
            ports.update(options.stream_port)
        return names, ports

    def _has_conflicts(self, service: NginxService, options: dict[str, Any], taken_names: set[str], taken_ports: set[int]) -> bool:
        conflicts: list[tuple[str, Any]] = []
        if "http_server_name" in options:
            names, _ = normalize_server_names(options["http_server_name"])
            conflicts += [("http_server_name", n) for n in names if n in taken_names]
        if "stream_port" in options:
            ports, _ = normalize_ports(options["stream_port"])
            conflicts += [("stream_port", p) for p in ports if p in taken_ports]
        for field, value in conflicts:
            log_event("WARN", "Update rejected, value already used by another service", service_name=service.name, field=field, value=value)
        return bool(conflicts)

    def _remove_stale_cache(self) -> None:
        with self._lock:
            keep = {sid for sid, s in self._services.items() if s.is_enabled and s.is_http_enabled}
        for entry in os.scandir(self.cache_dir):
            if entry.is_dir() and not entry.name.startswith("_") and entry.name not in keep:
                shutil.rmtree(entry.path, ignore_errors=True)
                log_event("INFO", f"Removed stale cache {entry.name}")

    def _spawn(self) -> None:
        self._proc = subprocess.Popen([self.nginx_bin, "-c", self.config_path], start_new_session=True)
        Thread(target=self._wait_proc, args=(self._proc,), name="nginx-wait", daemon=True).start()

    def _wait_proc(self, proc: subprocess.Popen) -> None:
        code = proc.wait()
        self._on_proc_exit(code)

    def _on_proc_exit(self, code: int) -> None:
        with self._state_lock:
            self._proc = None
            self._is_started = False
        log_event("INFO", f"Nginx process exited, code: {code}")
        self._emit("exit", code)

    def _send_signal(self, sig: signal.Signals) -> None:
        proc = self._proc
        if proc is None:
            return
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            return

    def _install_signal_handlers(self) -> None:
        if not self.handle_signals or threading.current_thread() is not threading.main_thread():
            return
        handlers = {
            signal.SIGINT: self.terminate,
            signal.SIGTERM: self.terminate,
            signal.SIGQUIT: self.graceful_shutdown,
            signal.SIGHUP: self.reload,
            signal.SIGUSR1: self.reopen_log_files,
            signal.SIGUSR2: self.upgrade_executable,
            signal.SIGWINCH: self.graceful_shutdown_workers,
        }
        for sig, handler in handlers.items():
            signal.signal(sig, lambda signum, frame, handler=handler: handler())
