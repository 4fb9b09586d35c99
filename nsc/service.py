from __future__ import annotations

import os
import shutil
from threading import Lock, Thread
from typing import TYPE_CHECKING, Any

from . import templates
from .db import log_event
from .options import (
    coerce_bool,
    is_size_value,
    is_time_value,
    normalize_ports,
    normalize_server_names,
    option_text,
)
from .resolver import BackendResolver, ResolverPoller
from .runtime import DEFAULT_OPTIONS, HTTP_PORT, OPTION_NAMES, Peer, ServiceOptions
from .upstreams import upstream_name

if TYPE_CHECKING:
    from .controller import Controller


class NginxService:
    """One backend service as seen by nginx.

    Owns the validated options, the vhost files rendered from them and the
    set of peers registered in nginx's live upstream pools.
    """

    def __init__(
        self,
        controller: Controller,
        id: str,
        name: str,
        hostname: str | None = None,
        resolver: BackendResolver | None = None,
    ):
        self._controller = controller
        self._id = id
        self._name = name
        self._hostname = hostname
        self._options = ServiceOptions()
        self._is_removed = False
        self._peers: dict[Peer, bool] = {}
        self._reset_peers = False
        self._sync_lock = Lock()

        if resolver is None and hostname:
            resolver = controller.make_resolver(hostname)
        self._resolver = resolver

        self._poller: ResolverPoller | None = None
        if self._resolver is not None and controller.upstream_update_interval_s > 0:
            self._poller = ResolverPoller(
                self.update_upstreams,
                max_interval_s=controller.upstream_update_interval_s,
                name=name,
            )

        self._reload_listener = self._on_controller_reload
        controller.on("reload", self._reload_listener)

    # properties
    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def hostname(self) -> str | None:
        return self._hostname

    @property
    def options(self) -> ServiceOptions:
        return ServiceOptions(**self._options.to_dict())

    @property
    def is_removed(self) -> bool:
        return self._is_removed

    @property
    def is_http_enabled(self) -> bool:
        return bool(self._options.http_server_name)

    @property
    def is_stream_enabled(self) -> bool:
        return bool(self._options.stream_port)

    @property
    def is_enabled(self) -> bool:
        return self.is_http_enabled or self.is_stream_enabled

    @property
    def peers(self) -> dict[Peer, bool]:
        return dict(self._peers)

    @property
    def vhost_http_path(self) -> str:
        return os.path.join(self._controller.vhosts_dir, f"{self.id}.http.nginx.conf")

    @property
    def vhost_stream_path(self) -> str:
        return os.path.join(self._controller.vhosts_dir, f"{self.id}.stream.nginx.conf")

    @property
    def cache_path(self) -> str:
        return os.path.join(self._controller.cache_dir, self.id)

    def has_http_server_name(self, name: str) -> bool:
        return name in self._options.http_server_name

    def has_stream_port(self, port: int) -> bool:
        return port in self._options.stream_port

    # public
    def update(
        self,
        options: dict[str, Any] | None = None,
        taken_names: set[str] | frozenset[str] = frozenset(),
        taken_ports: set[int] | frozenset[int] = frozenset(),
    ) -> bool:
        """Merge ``options`` over the accepted options and apply the result.

        ``taken_names``/``taken_ports`` are owned by other services and are
        dropped from the incoming values. Returns True if anything changed.
        """
        if self._is_removed:
            return False

        incoming = {k: v for k, v in (options or {}).items() if k in OPTION_NAMES}
        merged = self.options

        if "http_server_name" in incoming:
            names, rejected = normalize_server_names(incoming["http_server_name"])
            for name in names:
                if name in taken_names:
                    rejected.append((name, "already used by another service"))
            names = [n for n in names if n not in taken_names]
            self._log_rejected("http_server_name", rejected)
            # Input that was rejected as a whole leaves the field untouched.
            if names or not rejected:
                merged.http_server_name = sorted(names)

        if "stream_port" in incoming:
            ports, rejected = normalize_ports(incoming["stream_port"])
            for port in ports:
                if port in taken_ports:
                    rejected.append((port, "already used by another service"))
            ports = [p for p in ports if p not in taken_ports]
            self._log_rejected("stream_port", rejected)
            if ports or not rejected:
                merged.stream_port = sorted(ports)

        for field, check in (
            ("http_client_max_body_size", is_size_value),
            ("http_cache_max_size", is_size_value),
            ("http_cache_inactive", is_time_value),
        ):
            if field not in incoming:
                continue
            value = incoming[field]
            if check(value):
                setattr(merged, field, option_text(value))
            else:
                default = getattr(DEFAULT_OPTIONS, field)
                log_event("WARN", f"Invalid value, using default {default!r}", service_name=self.name, field=field, value=value)
                setattr(merged, field, default)

        if "http_cache_enabled" in incoming:
            merged.http_cache_enabled = coerce_bool(incoming["http_cache_enabled"], DEFAULT_OPTIONS.http_cache_enabled)

        if merged.same_as(self._options):
            return False

        self._options = merged
        log_event("INFO", f"updated: {merged.to_dict()}", service_name=self.name)

        if self.is_http_enabled:
            self._write_vhost(self.vhost_http_path, self._render_http)
        else:
            self._remove_file(self.vhost_http_path)

        if self.is_stream_enabled:
            self._write_vhost(self.vhost_stream_path, self._render_stream)
        else:
            self._remove_file(self.vhost_stream_path)

        self._controller.reload(delayed=True)

        if self._poller is not None:
            if self.is_enabled:
                self._poller.start()
            else:
                self._poller.stop()
        if not self.is_enabled:
            self._reset_peers = True

        return True

    def update_upstreams(self) -> bool:
        """Reconcile the live upstream pools with the resolved addresses.

        Skipped while the controller is not running or reloading, while the
        service is disabled or removed, and while another pass for this
        service is in flight. Returns True if the peer set changed.
        """
        if self._is_removed or not self.is_enabled or self._resolver is None:
            return False
        if not self._controller.is_started or self._controller.is_reloading:
            return False
        if not self._sync_lock.acquire(blocking=False):
            return False

        try:
            if self._reset_peers:
                self._peers.clear()
                self._reset_peers = False

            options = self._options
            addresses = self._resolver.resolve()
            target = self._target_peers(addresses, options)
            client = self._controller.patch_client
            changed = False

            for peer in sorted(target, key=lambda p: (p.port, p.address)):
                if self._peers.get(peer):
                    continue
                changed = True
                result = client.patch(upstream_name(self.id, peer.port), peer, "add")
                self._peers[peer] = result.ok
                if result.ok:
                    log_event("INFO", f"add peer {peer.server}", service_name=self.name)
                else:
                    log_event("WARN", f"add peer {peer.server} failed: {result.message}", service_name=self.name)

            for peer, registered in list(self._peers.items()):
                if peer in target:
                    continue
                changed = True
                self._peers.pop(peer, None)
                if not registered:
                    continue
                result = client.patch(upstream_name(self.id, peer.port), peer, "remove")
                if result.ok:
                    log_event("INFO", f"remove peer {peer.server}", service_name=self.name)
                else:
                    log_event("WARN", f"remove peer {peer.server} failed: {result.message}", service_name=self.name)

            return changed
        finally:
            self._sync_lock.release()
            if self._is_removed:
                self._clear_peers()

    def remove(self) -> None:
        if self._is_removed:
            return

        self._is_removed = True
        log_event("INFO", "removed", service_name=self.name)

        if self._poller is not None:
            self._poller.stop()

        self._controller.off("reload", self._reload_listener)

        reload = self._remove_file(self.vhost_http_path)
        reload = self._remove_file(self.vhost_stream_path) or reload

        if os.path.isdir(self.cache_path):
            shutil.rmtree(self.cache_path, ignore_errors=True)

        # An in-flight pass clears the peers itself when it finishes.
        self._clear_peers()

        if reload:
            self._controller.reload()

    # private
    def _on_controller_reload(self) -> None:
        # nginx drops runtime upstream changes on reload; rebuild from scratch.
        if self._is_removed:
            return
        self._reset_peers = True
        if self._poller is not None and self._poller.is_running:
            self._poller.wake()
        elif self.is_enabled:
            Thread(target=self.update_upstreams, name=f"sync-{self.name}", daemon=True).start()

    def _clear_peers(self) -> None:
        if not self._sync_lock.acquire(blocking=False):
            return
        try:
            self._peers.clear()
        finally:
            self._sync_lock.release()

    def _target_peers(self, addresses: set[str], options: ServiceOptions) -> set[Peer]:
        peers: set[Peer] = set()
        for address in addresses:
            if options.http_server_name:
                peers.add(Peer(address, HTTP_PORT))
            for port in options.stream_port:
                peers.add(Peer(address, port, stream=True))
        return peers

    def _render_http(self) -> str:
        o = self._options
        return templates.render_http_vhost(
            id=self.id,
            server_name=o.http_server_name,
            client_max_body_size=o.http_client_max_body_size,
            cache_dir=self._controller.cache_dir,
            cache=o.http_cache_enabled,
            cache_max_size=o.http_cache_max_size,
            cache_inactive=o.http_cache_inactive,
            use_ipv6=self._controller.use_ipv6,
        )

    def _render_stream(self) -> str:
        return templates.render_stream_vhost(
            id=self.id,
            stream_port=self._options.stream_port,
            use_ipv6=self._controller.use_ipv6,
        )

    def _write_vhost(self, path: str, render) -> None:
        # Fatal until nginx is up; afterwards the previous file stays in place.
        try:
            conf = render()
            with open(path, "w") as f:
                f.write(conf)
        except Exception as e:
            log_event("ERROR", f"Failed to write vhost {os.path.basename(path)}: {type(e).__name__}: {e}", service_name=self.name)
            if not self._controller.is_started:
                raise

    def _remove_file(self, path: str) -> bool:
        if not os.path.exists(path):
            return False
        os.remove(path)
        return True

    def _log_rejected(self, field: str, rejected: list[tuple[Any, str]]) -> None:
        for value, reason in rejected:
            log_event("WARN", f"Rejected value: {reason}", service_name=self.name, field=field, value=value)
