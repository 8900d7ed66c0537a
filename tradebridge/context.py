from __future__ import annotations

import time
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionState(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    AUTHORIZING = "Authorizing"
    READY = "Ready"


_LINK_UP_STATES = frozenset({ConnectionState.CONNECTED, ConnectionState.AUTHORIZING, ConnectionState.READY})


@dataclass(frozen=True)
class TradeDefaults:
    symbol: str = "R_50"
    currency: str = "USD"
    basis: str = "stake"

    def merged(
        self,
        *,
        symbol: Any = None,
        currency: Any = None,
        basis: Any = None,
    ) -> "TradeDefaults":
        return replace(
            self,
            symbol=str(symbol) if symbol else self.symbol,
            currency=str(currency) if currency else self.currency,
            basis=str(basis) if basis else self.basis,
        )

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


class BridgeContext:
    """
    Process-wide mutable state shared by the bridge components.

    One instance is created per `VenueBridge` and passed explicitly to the
    components that read or write it; nothing here is a module global.
    """

    def __init__(self, *, defaults: TradeDefaults | None = None) -> None:
        self._defaults = defaults or TradeDefaults()
        self.connection_state: ConnectionState = ConnectionState.DISCONNECTED
        self.last_error: str | None = None
        self.last_error_at: datetime | None = None
        self.started_at: datetime = _utc_now()
        self._started_monotonic = time.monotonic()

    @property
    def connected(self) -> bool:
        return self.connection_state in _LINK_UP_STATES

    @property
    def authorized(self) -> bool:
        return self.connection_state == ConnectionState.READY

    @property
    def defaults(self) -> TradeDefaults:
        return self._defaults

    def set_defaults(
        self,
        *,
        symbol: Any = None,
        currency: Any = None,
        basis: Any = None,
    ) -> TradeDefaults:
        # Single assignment: readers see either the old or the new value object.
        self._defaults = self._defaults.merged(symbol=symbol, currency=currency, basis=basis)
        return self._defaults

    def record_error(self, error: BaseException | str) -> None:
        self.last_error = str(error) if not isinstance(error, str) else error
        self.last_error_at = _utc_now()

    def clear_error(self) -> None:
        self.last_error = None
        self.last_error_at = None

    def uptime_s(self) -> float:
        return max(0.0, time.monotonic() - self._started_monotonic)

    def connection_snapshot(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "authorized": self.authorized,
            "state": self.connection_state.value,
            "lastError": self.last_error,
        }
