from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional

from tradebridge.common.logging import log_event
from tradebridge.common.ops_metrics import BridgeMetrics

logger = logging.getLogger(__name__)

DEFAULT_TICK_CAPACITY = 2000

Issue = Callable[[dict[str, Any], str], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class Tick:
    symbol: str | None
    quote: float | None
    epoch: int | None
    pip_size: float | None = None
    id: str | None = None

    @staticmethod
    def from_message(raw: dict[str, Any]) -> "Tick":
        quote = raw.get("quote")
        epoch = raw.get("epoch")
        return Tick(
            symbol=raw.get("symbol"),
            quote=float(quote) if quote is not None else None,
            epoch=int(epoch) if epoch is not None else None,
            pip_size=raw.get("pip_size"),
            id=raw.get("id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class TickBuffer:
    """
    Bounded FIFO of the most recent ticks for one symbol.
    """

    def __init__(self, *, symbol: str | None, capacity: int) -> None:
        self.symbol = symbol
        self.capacity = max(1, int(capacity))
        self.latest: Tick | None = None
        self._history: deque[Tick] = deque(maxlen=self.capacity)

    def append(self, tick: Tick) -> None:
        self.latest = tick
        # deque(maxlen) drops from the left once full.
        self._history.append(tick)

    def __len__(self) -> int:
        return len(self._history)

    def history(self) -> list[Tick]:
        return list(self._history)


class MarketDataStream:
    def __init__(
        self,
        *,
        issue: Issue,
        capacity: int = DEFAULT_TICK_CAPACITY,
        log_ticks: bool = False,
        metrics: BridgeMetrics | None = None,
    ) -> None:
        self._issue = issue
        self._capacity = max(1, int(capacity))
        self._log_ticks = bool(log_ticks)
        self._metrics = metrics or BridgeMetrics()
        self.buffer = TickBuffer(symbol=None, capacity=self._capacity)
        self.acknowledged_symbol: Optional[str] = None

    async def subscribe(self, symbol: str) -> str:
        """
        Replace the tick subscription with `symbol`.

        The buffer is swapped before the request is sent so ticks for the
        new symbol are accepted as soon as they arrive.
        """
        symbol = str(symbol)
        self.buffer = TickBuffer(symbol=symbol, capacity=self._capacity)
        await self._issue({"ticks": symbol, "subscribe": 1}, "ticks_subscribe")
        self.acknowledged_symbol = symbol
        log_event(logger, "ticks.subscribed", symbol=symbol)
        return symbol

    def on_tick(self, raw: dict[str, Any] | None) -> Tick | None:
        if not raw:
            return None
        tick = Tick.from_message(raw)
        current = self.buffer.symbol
        if current is not None and tick.symbol is not None and tick.symbol != current:
            # Leftover stream from a previous subscription.
            return None
        if current is None and tick.symbol is not None:
            self.buffer.symbol = tick.symbol
        self.buffer.append(tick)
        self._metrics.ticks_received_total.inc()
        if self._log_ticks:
            log_event(logger, "tick", symbol=tick.symbol, quote=tick.quote, epoch=tick.epoch)
        return tick

    def history(self) -> list[Tick]:
        return self.buffer.history()

    def summary(self) -> dict[str, Any]:
        latest = self.buffer.latest
        return {
            "symbol": self.buffer.symbol,
            "last": latest.to_dict() if latest else None,
            "buffer_size": len(self.buffer),
        }
