from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    location: str = os.getenv("NSC_LOCATION", "/var/lib/nginx")
    nginx_bin: str = os.getenv("NSC_NGINX_BIN", "nginx")
    listen_ip_family: int = _env_int("NSC_LISTEN_IP_FAMILY", 4)
    db_path: str = os.getenv("NSC_DB_PATH", "nsc.db")

    # Reload pipeline
    reload_delay_s: float = _env_float("NSC_RELOAD_DELAY_S", 3.0)
    startup_delay_s: float = _env_float("NSC_STARTUP_DELAY_S", 3.0)

    # Peer synchronization
    # 0 disables periodic re-resolution; peers are then only rebuilt after reloads.
    upstream_update_interval_s: float = _env_float("NSC_UPSTREAM_UPDATE_INTERVAL_S", 60.0)
    control_url: str = os.getenv("NSC_CONTROL_URL", "http://127.0.0.1")
    patch_timeout_s: float = _env_float("NSC_PATCH_TIMEOUT_S", 5.0)

    # drop|reject
    conflict_policy: str = os.getenv("NSC_CONFLICT_POLICY", "drop")

    # Control API
    enable_api: bool = _env_bool("NSC_ENABLE_API", True)
    api_host: str = os.getenv("NSC_API_HOST", "127.0.0.1")
    api_port: int = _env_int("NSC_API_PORT", 8080)


settings = Settings()
