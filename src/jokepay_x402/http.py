"""FastAPI application exposing the paid joke endpoint."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Dict, Optional

from fastapi import FastAPI, Header, Request, Response, status
from fastapi.responses import JSONResponse

from .config import ServerConfig
from .constants import PAYMENT_HEADER, REQUEST_ID_HEADER
from .facilitator import Facilitator, build_facilitator
from .invoices import InvoiceStore, utcnow
from .server import ChallengeServer

logger = logging.getLogger(__name__)


def _cors_headers(config: ServerConfig, *, preflight: bool = False) -> Dict[str, str]:
    headers = {
        "Access-Control-Allow-Origin": config.allowed_origin,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Expose-Headers": REQUEST_ID_HEADER,
    }
    if preflight:
        headers["Access-Control-Allow-Methods"] = "GET,OPTIONS"
        headers["Access-Control-Allow-Headers"] = f"Content-Type, {PAYMENT_HEADER}, {REQUEST_ID_HEADER}"
    return headers


def create_app(
    config: Optional[ServerConfig] = None,
    *,
    facilitator: Optional[Facilitator] = None,
    store: Optional[InvoiceStore] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    config = config or ServerConfig.from_env()
    challenge_server = ChallengeServer(
        config,
        facilitator or build_facilitator(config),
        store=store,
        clock=clock,
    )
    started = time.monotonic()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        challenge_server.start_sweeper()
        logger.info(
            "paid joke API ready on port %s (mock facilitator: %s)",
            config.port,
            "on" if config.mock_facilitator else "off",
        )
        try:
            yield
        finally:
            await challenge_server.aclose()

    app = FastAPI(title="Paid Joke API", lifespan=lifespan)
    app.state.challenge_server = challenge_server

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        body = {"ok": True, "uptime": round(time.monotonic() - started, 3)}
        return JSONResponse(body, headers=_cors_headers(config))

    @app.get(config.path)
    async def paid_joke(
        x_payment: Optional[str] = Header(default=None, alias=PAYMENT_HEADER),
        x_request_id: Optional[str] = Header(default=None, alias=REQUEST_ID_HEADER),
    ) -> JSONResponse:
        logger.debug("received %s request (has_x_payment=%s)", config.path, x_payment is not None)
        result = await challenge_server.handle(x_payment, x_request_id)
        headers = {**_cors_headers(config), **result.headers}
        return JSONResponse(result.body, status_code=result.status, headers=headers)

    @app.options(config.path)
    async def paid_joke_preflight(request: Request) -> Response:
        preflight = "access-control-request-method" in request.headers
        return Response(
            status_code=status.HTTP_204_NO_CONTENT,
            headers=_cors_headers(config, preflight=preflight),
        )

    @app.exception_handler(404)
    async def not_found(_: Request, __: Exception) -> JSONResponse:
        return JSONResponse({"error": "not_found"}, status_code=status.HTTP_404_NOT_FOUND)

    _ = (healthz, paid_joke, paid_joke_preflight, not_found)
    return app
