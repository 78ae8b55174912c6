"""
HTTP surface: FastAPI application exposing the OAuth endpoints, the
manual verification trigger and a health probe.

Routes:
    GET /oauth/start?telegram_id=<int>      302 to Discord
    GET /oauth/callback?code=&state=        200 HTML success page
    GET /cron?secret=                       run a verification cycle now
    GET /health                             database reachability

Domain errors render as an HTML error page with the status carried by
the error class.  Internal errors (storage, upstream) are logged with
full context but shown to the user as a generic message.
"""

from __future__ import annotations

import hmac
import logging
import time
import uuid
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from linker.oauth import OAuthLinker, validate_telegram_id
from linker.pages import error_page, success_page
from shared.errors import GatekeeperError, InvalidInput, PermissionDenied

logger = logging.getLogger("linker.web")

HealthProbe = Callable[[], Awaitable[bool]]


def _parse_telegram_id(raw: Optional[str]) -> int:
    if raw is None or not raw.strip():
        raise InvalidInput("missing telegram_id")
    digits = raw.strip()
    # int() would also take signs, underscores and non-ASCII digits
    if not (digits.isascii() and digits.isdigit()):
        raise InvalidInput("invalid telegram id for oauth flow")
    return validate_telegram_id(int(digits))


def create_app(
    linker: OAuthLinker,
    trigger_verification: Callable[[], None],
    cron_secret: str,
    health_probe: Optional[HealthProbe] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        linker: The OAuth linker serving ``/oauth/*``.
        trigger_verification: Non-blocking callable that schedules an
            out-of-schedule verification cycle.
        cron_secret: Shared secret required by ``/cron``.
        health_probe: Async callable returning database health.
    """
    app = FastAPI(title="rolegate", docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def trace_requests(request: Request, call_next):
        request_id = uuid.uuid4().hex[:12]
        start = time.monotonic()
        response = await call_next(request)
        duration_ms = (time.monotonic() - start) * 1000
        status = response.status_code
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            "%s %s -> %d (%.1f ms) request_id=%s",
            request.method,
            request.url.path,
            status,
            duration_ms,
            request_id,
        )
        return response

    @app.exception_handler(GatekeeperError)
    async def handle_domain_error(request: Request, exc: GatekeeperError) -> Response:
        if exc.exposes_detail:
            logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
            message = exc.message
        else:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
            message = exc.public_message
        return HTMLResponse(error_page(message), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> Response:
        logger.exception("Unhandled error on %s", request.url.path)
        return HTMLResponse(error_page("Internal server error"), status_code=500)

    @app.get("/oauth/start")
    async def oauth_start(telegram_id: Optional[str] = None) -> Response:
        url = await linker.start(_parse_telegram_id(telegram_id))
        return RedirectResponse(url, status_code=302)

    @app.get("/oauth/callback")
    async def oauth_callback(
        code: Optional[str] = None, state: Optional[str] = None
    ) -> Response:
        if not code:
            raise InvalidInput("missing code")
        if not state:
            raise InvalidInput("missing state")
        username = await linker.callback(code, state)
        return HTMLResponse(success_page(username))

    @app.get("/cron")
    async def cron_start(secret: Optional[str] = None) -> Response:
        if not secret or not hmac.compare_digest(secret.encode(), cron_secret.encode()):
            raise PermissionDenied("invalid cron secret")
        trigger_verification()
        logger.info("Manual verification cycle requested")
        return JSONResponse({"ok": True})

    @app.get("/health")
    async def health() -> Response:
        ok = True if health_probe is None else await health_probe()
        return JSONResponse({"ok": ok}, status_code=200 if ok else 503)

    return app
