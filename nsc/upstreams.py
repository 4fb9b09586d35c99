from __future__ import annotations

import httpx

from .runtime import PatchResult, Peer

OPERATIONS = {"add", "remove"}


def upstream_name(service_id: str, port: int) -> str:
    return f"{service_id}-{port}"


class UpstreamPatchClient:
    """Add/remove single peers in nginx's live upstream pools.

    Talks to the ``dynamic_upstream`` location exposed on loopback by the
    generated nginx.conf. No retries: the next reconciliation pass is the retry.
    """

    def __init__(self, control_url: str = "http://127.0.0.1", timeout_s: float = 5.0, transport: httpx.BaseTransport | None = None):
        self.control_url = control_url.rstrip("/")
        self.timeout_s = timeout_s
        self.transport = transport

    def patch(self, upstream: str, peer: Peer, op: str) -> PatchResult:
        """Apply one change. Returns a PatchResult, never raises."""
        if op not in OPERATIONS:
            return PatchResult(False, f"unknown operation {op!r}")

        params = {"upstream": upstream, op: "", "server": peer.server}
        if peer.stream:
            params["stream"] = ""

        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=False, transport=self.transport) as client:
                resp = client.get(f"{self.control_url}/dynamic-upstream", params=params)
        except httpx.HTTPError as e:
            return PatchResult(False, f"Error: {type(e).__name__}: {e}")

        if resp.status_code != 200:
            body = resp.text.strip()
            return PatchResult(False, f"HTTP {resp.status_code}" + (f": {body}" if body else ""))
        return PatchResult(True, "OK")
