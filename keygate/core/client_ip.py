"""Best-effort client address resolution from proxy headers."""

from __future__ import annotations

from starlette.requests import HTTPConnection

UNKNOWN_CLIENT_IP = "unknown"


def extract_client_ip(request: HTTPConnection) -> str:
    """Resolve the original client IP, treating the first forwarded hop as the client."""
    forwarded_for = request.headers.get("x-forwarded-for", "").strip()
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    for header_name in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header_name, "").strip()
        if value:
            return value

    client = request.client
    return client.host if client and client.host else UNKNOWN_CLIENT_IP
