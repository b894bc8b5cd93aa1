from __future__ import annotations

import re
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from placement.core.logging_config import correlation_id_var

_TOKEN_RE = re.compile(r"^[A-Za-z0-9._-]{8,128}$")


def derive_correlation_id(request: Request) -> str:
    header = request.headers.get("X-Correlation-ID") or request.headers.get("X-Request-ID")
    if header and _TOKEN_RE.fullmatch(header):
        return header
    return str(uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        corr = derive_correlation_id(request)
        request.state.correlation_id = corr
        token = correlation_id_var.set(corr)
        try:
            response = await call_next(request)
            response.headers["X-Correlation-ID"] = corr
            return response
        finally:
            correlation_id_var.reset(token)


__all__ = ["CorrelationIdMiddleware", "derive_correlation_id"]
