"""
HTTP middleware: admission control and request logging.

``AdmissionMiddleware`` resolves the caller (``X-API-Key`` or network origin),
asks the AdmissionController for a decision and either lets the request
through with ``x-ratelimit-*`` headers or answers it directly:

- 429 with the rate limit details and a ``Retry-After`` header
- 503 when the quota or credential store is unreachable (fail closed)

An unknown or revoked key is counted as an anonymous caller here; routes that
need a credential reject it with 401 on their own.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from .admission import AdmissionRequest, Deny
from .errors import BackingStoreUnavailable
from .key_manager import APIKeyRecord
from .metrics import ADMISSION_DENIALS, STORE_OUTAGES
from .models import RateLimitErrorResponse, RateLimitInfo, RateLimitKeyInfo

logger = logging.getLogger(__name__)


def client_ip(request: Request, trust_proxy: bool = False) -> str:
    forwarded = request.headers.get("x-forwarded-for") if trust_proxy else None
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def unavailable_response(store: str, retry_after: int = 5) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"detail": f"The {store} store is temporarily unavailable. Try again shortly."},
        headers={"Retry-After": str(retry_after)},
    )


class AdmissionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        services = request.app.state.services
        controller = services.admission
        route, method = request.url.path, request.method

        if controller.is_exempt(route, method):
            return await call_next(request)

        raw_key = request.headers.get("X-API-Key")
        master_key = services.config.admin.master_key
        if raw_key and master_key and secrets.compare_digest(raw_key, master_key):
            # Operators are not subject to quotas
            return await call_next(request)

        record: Optional[APIKeyRecord] = None
        if raw_key:
            try:
                record = await run_in_threadpool(services.keys.validate_key, raw_key)
            except BackingStoreUnavailable as exc:
                logger.error(f"admission store unavailable (credentials): {exc}")
                STORE_OUTAGES.labels(store=exc.store).inc()
                return unavailable_response("credential")
        request.state.api_key = record

        admission_request = AdmissionRequest(
            route=route,
            method=method,
            client_ip=client_ip(request, bool(services.config.server.trust_proxy)),
            user_agent=request.headers.get("user-agent", ""),
            identity=record.to_identity() if record else None,
        )
        decision = await run_in_threadpool(controller.admit, admission_request)
        request.state.accounting_key = decision.key or controller.accounting_key(admission_request)

        if isinstance(decision, Deny):
            return self._deny(decision, record)

        response = await call_next(request)
        if decision.remaining is not None:
            response.headers["x-ratelimit-limit"] = str(decision.quota)
            response.headers["x-ratelimit-remaining"] = str(decision.remaining)
            response.headers["x-ratelimit-reset"] = str(int(decision.reset_at))
        return response

    def _deny(self, decision: Deny, record: Optional[APIKeyRecord]) -> JSONResponse:
        if decision.store_unavailable:
            ADMISSION_DENIALS.labels(reason="store_unavailable").inc()
            STORE_OUTAGES.labels(store="quota").inc()
            return unavailable_response("quota", decision.retry_after)

        ADMISSION_DENIALS.labels(reason="api_key" if record else "anonymous").inc()
        body = RateLimitErrorResponse(
            rate_limit=RateLimitInfo(
                limit=decision.limit,
                remaining=0,
                reset_time=decision.reset_time,
                retry_after_seconds=decision.retry_after,
            ),
            suggestion=decision.hint,
            api_key=RateLimitKeyInfo(name=record.name, tier=record.tier, limit=decision.limit) if record else None,
        )
        return JSONResponse(
            status_code=429,
            content=body.model_dump(mode="json", exclude_none=True),
            headers={
                "Retry-After": str(decision.retry_after),
                "x-ratelimit-limit": str(decision.limit),
                "x-ratelimit-remaining": "0",
                "x-ratelimit-reset": str(int(decision.reset_time.timestamp())),
            },
        )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request and stamps ``x-response-time`` and ``x-api-version``."""

    def __init__(self, app, api_version: str = "1.0.0"):
        super().__init__(app)
        self.api_version = api_version

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        record = getattr(request.state, "api_key", None)
        trust_proxy = bool(request.app.state.services.config.server.trust_proxy)
        logger.info(
            f"{request.method} {request.url.path} {response.status_code} {elapsed_ms:.1f}ms "
            f"client={client_ip(request, trust_proxy)} key={record.name if record else '-'}"
        )
        response.headers["x-response-time"] = f"{elapsed_ms:.1f}ms"
        response.headers["x-api-version"] = self.api_version
        return response
