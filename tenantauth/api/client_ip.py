from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import Request

from tenantauth.service.keys import UNKNOWN

# Only meaningful behind a proxy that overwrites these headers
_PROXY_HEADERS = ("X-Forwarded-For", "X-Real-IP")


def _valid_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    candidate = value.strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def client_ip(request: Request, *, trust_proxy_headers: bool = True) -> str:
    """Resolve the caller's address, or ``"unknown"`` when it cannot be parsed."""
    if trust_proxy_headers:
        for header in _PROXY_HEADERS:
            raw = request.headers.get(header)
            if not raw:
                continue
            # X-Forwarded-For is "client, proxy1, proxy2"; the first hop is the client
            first = raw.split(",", 1)[0]
            return _valid_ip(first) or UNKNOWN
    peer = request.client.host if request.client else None
    return _valid_ip(peer) or UNKNOWN
