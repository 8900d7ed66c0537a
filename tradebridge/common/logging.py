"""
Structured JSON logging for the bridge (stdlib `logging` only).

One JSON object per stdout line with the process identity (service, env,
version, sha), the bound HTTP request id, a stable `event_type`, and any
fields the caller passed through `log_event`.

Stream and engine code never formats messages by hand; it emits semantic
events such as `ws.state_transition`, `request.timeout` or `trade.finished`.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("tradebridge_request_id", default=None)

# Attributes every LogRecord carries; anything else on a record came from `extra=`.
_RECORD_ATTRS: frozenset[str] = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}
_PAYLOAD_KEYS: frozenset[str] = frozenset(
    {"timestamp", "severity", "service", "env", "version", "sha", "request_id", "correlation_id", "event_type", "logger"}
)
_SEVERITIES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _clip(v: Any, max_len: int) -> str:
    s = "" if v is None else str(v)
    s = " ".join(s.splitlines()).strip()
    return s if len(s) <= max_len else s[: max_len - 1] + "…"


def _first_env(names: tuple[str, ...], default: str) -> str:
    for name in names:
        v = (os.getenv(name) or "").strip()
        if v:
            return _clip(v, 128)
    return default


def _severity(level: str | int | None) -> str:
    name = logging.getLevelName(level) if isinstance(level, int) else str(level or "INFO")
    name = str(name).strip().upper()
    name = {"WARN": "WARNING", "FATAL": "CRITICAL"}.get(name, name)
    return name if name in _SEVERITIES else "INFO"


def default_service_name() -> str:
    return _first_env(("SERVICE_NAME", "K_SERVICE"), "tradebridge")


def default_env_name() -> str:
    return _first_env(("ENV", "ENVIRONMENT", "APP_ENV"), "unknown")


def default_sha() -> str:
    return _first_env(("GIT_SHA", "COMMIT_SHA"), "unknown")


def default_version() -> str:
    return _first_env(("APP_VERSION", "VERSION"), "unknown")


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


@contextmanager
def bind_request_id(*, request_id: str | None = None) -> Iterator[str]:
    """
    Bind a request id for the current context; generates one when absent.
    """
    rid = _clip(request_id, 128) or uuid.uuid4().hex
    token = _REQUEST_ID.set(rid)
    try:
        yield rid
    finally:
        _REQUEST_ID.reset(token)


class JsonLogFormatter(logging.Formatter):
    def __init__(
        self,
        *,
        service: str | None = None,
        env: str | None = None,
        version: str | None = None,
        sha: str | None = None,
    ) -> None:
        super().__init__()
        self._identity = {
            "service": _clip(service, 128) or default_service_name(),
            "env": _clip(env, 64) or default_env_name(),
            "version": _clip(version, 128) or default_version(),
            "sha": _clip(sha, 64) or default_sha(),
        }

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        extra = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS and not k.startswith("_")}
        rid = extra.pop("request_id", None) or get_request_id()

        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": _severity(record.levelno),
            **self._identity,
            "request_id": rid,
            "correlation_id": extra.pop("correlation_id", None) or rid,
            "event_type": _clip(extra.pop("event_type", None), 128) or "log",
            "message": _clip(record.getMessage(), 4000),
            "logger": record.name,
        }
        if "service" in extra:
            payload["service"] = _clip(extra.pop("service"), 128)

        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))[-8000:]
        elif record.stack_info:
            payload["stack"] = _clip(record.stack_info, 8000)

        for k, v in extra.items():
            payload[k if k not in _PAYLOAD_KEYS else f"field_{k}"] = v
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def init_structured_logging(
    *,
    service: str | None = None,
    env: str | None = None,
    version: str | None = None,
    sha: str | None = None,
    level: str | int | None = None,
) -> None:
    """
    Route the root logger to stdout as JSON lines. Re-running replaces the handler.
    """
    lvl = level or (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(service=service, env=env, version=version, sha=sha))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(lvl)
    logging.captureWarnings(True)

    # Uvicorn installs its own handlers; send its records through ours instead.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.propagate = True


def log_event(
    logger: logging.Logger,
    event_type: str,
    *,
    severity: str = "INFO",
    message: str | None = None,
    **fields: Any,
) -> None:
    """
    Emit one semantic event; `fields` become top-level JSON keys.
    """
    logger.log(
        getattr(logging, _severity(severity)),
        message or event_type,
        extra={"event_type": event_type, **fields},
    )


def install_fastapi_request_id_middleware(app: Any, *, service: str | None = None) -> None:
    """
    Propagate `X-Request-ID` (or mint one) and log one `http.request` line per request.
    """
    from starlette.requests import Request
    from starlette.responses import Response

    http_logger = logging.getLogger("tradebridge.http")
    svc = service or default_service_name()

    @app.middleware("http")
    async def _request_id_mw(request: Request, call_next) -> Response:
        incoming = request.headers.get("x-request-id") or request.headers.get("x-correlation-id")
        started = time.perf_counter()
        status_code = 500
        with bind_request_id(request_id=incoming) as rid:
            try:
                resp: Response = await call_next(request)
                status_code = resp.status_code
            finally:
                log_event(
                    http_logger,
                    "http.request",
                    severity="INFO" if status_code < 500 else "ERROR",
                    service=svc,
                    method=request.method,
                    path=request.url.path,
                    status_code=status_code,
                    duration_ms=int((time.perf_counter() - started) * 1000),
                )
            resp.headers["X-Request-ID"] = rid
            return resp
