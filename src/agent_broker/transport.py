from __future__ import annotations

from typing import Dict, Optional

import httpx


def build_httpx_client(
    *,
    base_url: str = "",
    headers: Optional[Dict[str, str]] = None,
    connect_timeout_sec: float = 10.0,
    read_timeout_sec: float = 30.0,
    max_connections: int = 30,
    max_keepalive_connections: int = 10,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Shared outbound client. Redirects are never followed implicitly."""
    timeout = httpx.Timeout(connect=connect_timeout_sec, read=read_timeout_sec, write=read_timeout_sec, pool=5.0)
    limits = httpx.Limits(
        max_connections=max(1, int(max_connections)),
        max_keepalive_connections=max(1, int(max_keepalive_connections)),
    )
    return httpx.AsyncClient(
        base_url=base_url,
        headers=headers or {},
        timeout=timeout,
        limits=limits,
        follow_redirects=False,
        transport=transport,
    )
