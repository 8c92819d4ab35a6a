from __future__ import annotations

import ipaddress
from typing import Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse


def parse_nets(values: Iterable[str]) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    nets = []
    for value in values:
        s = (value or "").strip()
        if not s:
            continue
        try:
            nets.append(ipaddress.ip_network(s, strict=False))
        except ValueError as exc:
            raise ValueError(f"invalid allowed network: {s}") from exc
    return nets


class NetworkAllowlistMiddleware(BaseHTTPMiddleware):
    """Reject requests whose source address is outside ``allowed_nets``. An empty list allows all."""

    def __init__(self, app, allowed_nets: Iterable[str]):
        super().__init__(app)
        self.allowed = []
        self.allowlist_error: str | None = None
        try:
            self.allowed = parse_nets(allowed_nets)
        except ValueError as exc:
            self.allowlist_error = str(exc)

    async def dispatch(self, request: Request, call_next):
        if self.allowlist_error:
            return PlainTextResponse(f"access denied: {self.allowlist_error}", status_code=503)

        client_host = request.client.host if request.client else ""
        try:
            ip = ipaddress.ip_address(client_host)
        except ValueError:
            return PlainTextResponse("access denied: unrecognized source address", status_code=403)

        if self.allowed and not any(ip in net for net in self.allowed):
            return PlainTextResponse("access denied: source address not allowed", status_code=403)

        return await call_next(request)
