from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Nginx Swarm Controller CLI")
    p.add_argument("--api", default="http://localhost:8080", help="Control API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("health", help="Show controller state")

    s_svc = sub.add_parser("services", help="List services")
    s_svc.add_argument("--id", help="Show a single service")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service", help="Only events of this service name")

    sub.add_parser("reload", help="Request an nginx reload")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "health":
        _print(requests.get(f"{base}/health", timeout=10).json())
        return 0

    if args.cmd == "services":
        url = f"{base}/services/{args.id}" if args.id else f"{base}/services"
        r = requests.get(url, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.service:
            params["service"] = args.service
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "reload":
        r = requests.post(f"{base}/reload", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
