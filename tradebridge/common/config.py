from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping
from urllib.parse import quote

from tradebridge.streams.reconnect_policy import ReconnectBackoff

DEFAULT_WS_URL = "wss://ws.derivws.com/websockets/v3"
DEFAULT_APP_ID = "1089"

REQUIRED_ENV: tuple[str, ...] = ("DERIV_TOKEN",)


def _str_env(env: Mapping[str, str], name: str, default: str | None = None) -> str | None:
    v = env.get(name)
    if v is None or str(v).strip() == "":
        return default
    return str(v).strip()


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    v = env.get(name)
    if v is None or str(v).strip() == "":
        return int(default)
    return int(str(v).strip())


def _bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    v = env.get(name)
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "on"}


def _csv_env(env: Mapping[str, str], name: str, default: str) -> tuple[str, ...]:
    raw = _str_env(env, name, default) or default
    return tuple(s.strip() for s in raw.split(",") if s.strip())


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    """
    Process configuration for the venue bridge.

    `tradebridge` (the console entrypoint) loads a `.env` file from the working
    directory before reading these, so DERIV_TOKEN may be set there.

    Env overrides:
      - DERIV_APP_ID               (default: 1089)
      - DERIV_TOKEN                (required)
      - DERIV_WS_URL               (default: wss://ws.derivws.com/websockets/v3)
      - PING_INTERVAL_MS           (default: 10000)
      - RECONNECT_BASE_DELAY_MS    (default: 500)
      - RECONNECT_MAX_DELAY_MS     (default: 10000)
      - REQUEST_TIMEOUT_MS         (default: 15000)
      - TRADE_RESULT_TIMEOUT_MS    (default: 30000)
      - MAX_TICKS_BUFFER           (default: 2000)
      - LOG_TICKS                  (default: false)
      - CORS_ORIGINS               (default: *)
      - PORT                       (default: 8080)
      - DEFAULT_SYMBOL             (default: R_50)
      - DEFAULT_CURRENCY           (default: USD)
    """

    token: str
    app_id: str = DEFAULT_APP_ID
    ws_url: str = DEFAULT_WS_URL
    ping_interval_ms: int = 10_000
    reconnect_base_delay_ms: int = 500
    reconnect_max_delay_ms: int = 10_000
    request_timeout_ms: int = 15_000
    trade_result_timeout_ms: int = 30_000
    max_ticks_buffer: int = 2_000
    log_ticks: bool = False
    cors_origins: tuple[str, ...] = field(default=("*",))
    port: int = 8080
    default_symbol: str = "R_50"
    default_currency: str = "USD"
    default_basis: str = "stake"

    @staticmethod
    def from_env(env: Mapping[str, str] | None = None) -> "BridgeConfig":
        e = os.environ if env is None else env
        token = _str_env(e, "DERIV_TOKEN")
        if not token:
            raise RuntimeError("Missing required env var: DERIV_TOKEN")
        return BridgeConfig(
            token=token,
            app_id=_str_env(e, "DERIV_APP_ID", DEFAULT_APP_ID) or DEFAULT_APP_ID,
            ws_url=_str_env(e, "DERIV_WS_URL", DEFAULT_WS_URL) or DEFAULT_WS_URL,
            ping_interval_ms=_int_env(e, "PING_INTERVAL_MS", 10_000),
            reconnect_base_delay_ms=_int_env(e, "RECONNECT_BASE_DELAY_MS", 500),
            reconnect_max_delay_ms=_int_env(e, "RECONNECT_MAX_DELAY_MS", 10_000),
            request_timeout_ms=_int_env(e, "REQUEST_TIMEOUT_MS", 15_000),
            trade_result_timeout_ms=_int_env(e, "TRADE_RESULT_TIMEOUT_MS", 30_000),
            max_ticks_buffer=max(1, _int_env(e, "MAX_TICKS_BUFFER", 2_000)),
            log_ticks=_bool_env(e, "LOG_TICKS", False),
            cors_origins=_csv_env(e, "CORS_ORIGINS", "*"),
            port=_int_env(e, "PORT", 8080),
            default_symbol=_str_env(e, "DEFAULT_SYMBOL", "R_50") or "R_50",
            default_currency=_str_env(e, "DEFAULT_CURRENCY", "USD") or "USD",
        )

    @property
    def connect_url(self) -> str:
        return f"{self.ws_url}?app_id={quote(str(self.app_id), safe='')}"

    @property
    def ping_interval_s(self) -> float:
        return self.ping_interval_ms / 1000.0

    @property
    def request_timeout_s(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def settlement_timeout_s(self) -> float:
        return self.trade_result_timeout_ms / 1000.0

    def reconnect_policy(self) -> ReconnectBackoff:
        return ReconnectBackoff(
            base_seconds=self.reconnect_base_delay_ms / 1000.0,
            max_seconds=self.reconnect_max_delay_ms / 1000.0,
        )

    def redacted(self) -> dict[str, object]:
        return {
            "app_id": self.app_id,
            "ws_url": self.ws_url,
            "token_present": bool(self.token),
            "ping_interval_ms": self.ping_interval_ms,
            "reconnect_base_delay_ms": self.reconnect_base_delay_ms,
            "reconnect_max_delay_ms": self.reconnect_max_delay_ms,
            "request_timeout_ms": self.request_timeout_ms,
            "trade_result_timeout_ms": self.trade_result_timeout_ms,
            "max_ticks_buffer": self.max_ticks_buffer,
            "log_ticks": self.log_ticks,
            "cors_origins": list(self.cors_origins),
            "port": self.port,
        }
