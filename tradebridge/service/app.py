from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from tradebridge.bridge import VenueBridge
from tradebridge.common.config import REQUIRED_ENV, BridgeConfig
from tradebridge.common.errors import BridgeError, OrderValidationError
from tradebridge.common.logging import (
    default_env_name,
    default_service_name,
    init_structured_logging,
    install_fastapi_request_id_middleware,
    log_event,
)
from tradebridge.common.startup_validation import validate_required_env_or_exit

logger = logging.getLogger(__name__)

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class TradeRequest(BaseModel):
    # Untyped so "", null and absent all surface as "<field> is required".
    symbol: Optional[Any] = Field(default=None, description="Underlying symbol; falls back to defaults")
    contract_type: Optional[Any] = Field(default=None, description="e.g. CALL, PUT, DIGITEVEN")
    duration: Optional[Any] = Field(default=None, description="Contract duration")
    duration_unit: Optional[Any] = Field(default=None, description="t|s|m|h|d (default t)")
    stake: Optional[Any] = Field(default=None, description="Stake amount")
    currency: Optional[Any] = None
    basis: Optional[Any] = None
    barrier: Optional[Any] = None
    prediction: Optional[Any] = None


class SubscribeRequest(BaseModel):
    symbol: Optional[Any] = None


class DefaultsRequest(BaseModel):
    # Any scalar is accepted and stored as its string form.
    symbol: Optional[Any] = None
    currency: Optional[Any] = None
    basis: Optional[Any] = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message})


def _cors_origins(config: BridgeConfig) -> list[str]:
    origins = [o for o in config.cors_origins if o]
    if not origins or "*" in origins:
        return ["*"]
    return origins


def create_app(
    config: BridgeConfig | None = None,
    *,
    bridge: VenueBridge | None = None,
    start_connection: bool = True,
) -> FastAPI:
    """
    Build the HTTP facade around one `VenueBridge`.

    `start_connection=False` leaves the stream connection down (tests drive the
    bridge directly).
    """
    if bridge is None:
        bridge = VenueBridge(config or BridgeConfig.from_env())
    cfg = bridge.config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_connection:
            bridge.start()
        try:
            yield
        finally:
            await bridge.stop()

    app = FastAPI(title="tradebridge", lifespan=lifespan)
    app.state.bridge = bridge

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(cfg),
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    install_fastapi_request_id_middleware(app, service=default_service_name())

    @app.exception_handler(RequestValidationError)
    async def _on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        log_event(logger, "http.invalid_body", severity="WARNING", path=str(request.url.path))
        return _error(400, "invalid request body")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return bridge.health()

    @app.get("/status")
    async def status() -> dict[str, Any]:
        return bridge.status()

    @app.post("/set-defaults")
    async def set_defaults(body: Optional[DefaultsRequest] = None) -> dict[str, Any]:
        req = body or DefaultsRequest()
        defaults = bridge.set_defaults(symbol=req.symbol, currency=req.currency, basis=req.basis)
        return {"ok": True, "defaults": defaults.to_dict()}

    @app.post("/subscribe")
    async def subscribe(body: Optional[SubscribeRequest] = None):
        symbol = (body.symbol if body else None)
        if symbol is None or str(symbol).strip() == "":
            return _error(400, "symbol is required")
        try:
            subscribed = await bridge.subscribe(str(symbol).strip())
        except BridgeError as e:
            log_event(logger, "ticks.subscribe_failed", severity="ERROR", symbol=symbol, error=str(e))
            return _error(500, str(e))
        return {"ok": True, "symbol": subscribed}

    @app.post("/trade")
    async def trade(body: Optional[TradeRequest] = None):
        payload = body.model_dump() if body else {}
        try:
            res = bridge.submit_trade(payload)
        except OrderValidationError as e:
            return _error(400, str(e))
        except Exception as e:
            logger.exception("trade.submit_failed")
            return _error(500, str(e) or type(e).__name__)
        return {"ok": True, **res}

    @app.get("/metrics")
    async def metrics() -> PlainTextResponse:
        return PlainTextResponse(bridge.metrics.render(), media_type=PROMETHEUS_CONTENT_TYPE)

    return app


def main() -> None:
    # Values already present in the process environment win over .env.
    load_dotenv(find_dotenv(usecwd=True))
    init_structured_logging(service=default_service_name(), env=default_env_name())
    validate_required_env_or_exit(required=REQUIRED_ENV)
    config = BridgeConfig.from_env()

    import uvicorn

    uvicorn.run(create_app(config), host="0.0.0.0", port=config.port, log_config=None)


if __name__ == "__main__":
    main()
