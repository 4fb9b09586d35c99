from __future__ import annotations

from dataclasses import asdict, dataclass, field

# Controller reload states.
RELOAD_IDLE = "idle"
RELOAD_RUNNING = "reloading"
RELOAD_RUNNING_PENDING = "reloading-with-pending"

# nginx listens for proxied http traffic on this port; http peers use it too.
HTTP_PORT = 80

RESERVED_PORTS = frozenset({80, 443})


@dataclass
class ServiceOptions:
    """Desired vhost configuration of one backend service."""

    http_server_name: list[str] = field(default_factory=list)
    http_client_max_body_size: str = "10m"
    http_cache_enabled: bool = True
    http_cache_max_size: str = "10g"
    http_cache_inactive: str = "1w"
    stream_port: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    def same_as(self, other: ServiceOptions) -> bool:
        """Compare names/ports as sets, everything else by value."""
        return (
            set(self.http_server_name) == set(other.http_server_name)
            and set(self.stream_port) == set(other.stream_port)
            and self.http_client_max_body_size == other.http_client_max_body_size
            and self.http_cache_enabled == other.http_cache_enabled
            and self.http_cache_max_size == other.http_cache_max_size
            and self.http_cache_inactive == other.http_cache_inactive
        )


OPTION_NAMES = frozenset(ServiceOptions.__dataclass_fields__)

DEFAULT_OPTIONS = ServiceOptions()


@dataclass(frozen=True)
class Peer:
    """One backend address registered in a live upstream pool."""

    address: str
    port: int
    stream: bool = False

    @property
    def server(self) -> str:
        if ":" in self.address:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"


@dataclass(frozen=True)
class PatchResult:
    ok: bool
    message: str
