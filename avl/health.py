from __future__ import annotations

import time
from urllib.parse import urlparse

import httpx


def rpc_host(docker_address: str) -> str:
    """Hostname at which a host's published node ports are reachable."""
    parsed = urlparse(docker_address)
    if parsed.scheme in {"tcp", "ssh"} and parsed.hostname:
        return parsed.hostname
    return "127.0.0.1"


def fetch_node_id(base_url: str, timeout_s: float = 2.0) -> tuple[str | None, str, float | None]:
    """Ask a running node for its NodeID via the ``info.getNodeID`` JSON-RPC call.

    Expected JSON: {"result": {"nodeID": "NodeID-..."}}.
    Returns (node_id or None, message, latency_ms).
    """
    url = f"{base_url.rstrip('/')}/ext/info"
    payload = {"jsonrpc": "2.0", "id": 1, "method": "info.getNodeID"}
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.post(url, json=payload)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return None, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return None, "Invalid JSON", latency_ms
        result = data.get("result") if isinstance(data, dict) else None
        node_id = result.get("nodeID") if isinstance(result, dict) else None
        if isinstance(node_id, str) and node_id:
            return node_id, "OK", latency_ms
        return None, f"Unexpected payload: {data!r}", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return None, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return None, f"Error: {type(e).__name__}: {e}", latency_ms
