from __future__ import annotations

import re
from typing import Any

from .runtime import RESERVED_PORTS

# nginx "size" values: 512, 64k, 10m, 1g.
SIZE_RE = re.compile(r"^\d+[kKmMgG]?$")
# nginx "time" values: 30s, 1w, "1h 30m", 1h30m, 500ms.
_TIME_UNIT = r"(?:ms|s|m|h|d|w|M|y)"
TIME_RE = re.compile(rf"^\d+{_TIME_UNIT}?(?:\s+\d+{_TIME_UNIT}?|(?<=[smhdwMy])\d+{_TIME_UNIT}?)*$")

# Docker label -> option field.
LABELS = {
    # http
    "nginx.server-name": "http_server_name",
    "nginx.client-max-body-size": "http_client_max_body_size",
    "nginx.cache": "http_cache_enabled",
    "nginx.cache.max-size": "http_cache_max_size",
    "nginx.cache.inactive": "http_cache_inactive",
    # stream
    "nginx.stream-port": "stream_port",
}

Rejected = list[tuple[Any, str]]


def option_text(value: Any) -> str | None:
    """Plain text of a scalar option value; integers are accepted as-is."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return None


def is_size_value(value: Any) -> bool:
    text = option_text(value)
    return text is not None and bool(SIZE_RE.match(text))


def is_time_value(value: Any) -> bool:
    text = option_text(value)
    return text is not None and bool(TIME_RE.match(text))


def split_list(value: Any) -> list[Any]:
    """Accept a list, a single value or a comma-joined string."""
    if value is None:
        return []
    if isinstance(value, str):
        return re.split(r"\s*,\s*", value)
    if isinstance(value, (list, tuple, set, frozenset)):
        out: list[Any] = []
        for item in value:
            out.extend(split_list(item) if isinstance(item, str) else [item])
        return out
    return [value]


def coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off", ""}:
        return False
    return default


def normalize_server_names(value: Any) -> tuple[list[str], Rejected]:
    """Trim names and drop empty and duplicate entries.

    Returns (accepted, rejected) where rejected holds (value, reason) pairs.
    """
    accepted: list[str] = []
    rejected: Rejected = []
    for raw in split_list(value):
        if not isinstance(raw, str):
            rejected.append((raw, "not a string"))
            continue
        name = raw.strip()
        if not name:
            continue
        if name in accepted:
            rejected.append((name, "duplicate"))
            continue
        accepted.append(name)
    return accepted, rejected


def parse_port(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def normalize_ports(value: Any) -> tuple[list[int], Rejected]:
    """Parse ports and drop out-of-range, reserved and duplicate entries."""
    accepted: list[int] = []
    rejected: Rejected = []
    for raw in split_list(value):
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            continue
        port = parse_port(raw)
        if port is None:
            rejected.append((raw, "not a port number"))
        elif port <= 0 or port > 65535:
            rejected.append((raw, "out of range"))
        elif port in RESERVED_PORTS:
            rejected.append((raw, "reserved"))
        elif port in accepted:
            rejected.append((raw, "duplicate"))
        else:
            accepted.append(port)
    return accepted, rejected


def options_from_labels(labels: dict[str, str] | None) -> dict[str, Any]:
    """Map docker service labels to a flat options mapping.

    Unrecognized labels are ignored. List-valued options keep their
    comma-joined form; the service splits them.
    """
    options: dict[str, Any] = {}
    for label, value in (labels or {}).items():
        name = LABELS.get(label)
        if name:
            options[name] = value
    return options
