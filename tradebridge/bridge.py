from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from tradebridge.common.config import BridgeConfig
from tradebridge.common.logging import log_event
from tradebridge.common.ops_metrics import BridgeMetrics
from tradebridge.context import BridgeContext, TradeDefaults
from tradebridge.execution.orders import TradeOrder
from tradebridge.execution.trade_engine import TradeEngine
from tradebridge.streams.connection import ConnectionManager
from tradebridge.streams.dispatcher import MessageDispatcher
from tradebridge.streams.market_data import MarketDataStream

logger = logging.getLogger(__name__)


class VenueBridge:
    """
    Wires the stream connection, correlator, market data and trade engine
    around one `BridgeContext`, and owns their start/stop lifecycle.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        connect: Callable[[str], Any] | None = None,
        reconnect_sleep: Callable[[float], Awaitable[Any]] | None = None,
        metrics: BridgeMetrics | None = None,
    ) -> None:
        self.config = config
        self.metrics = metrics or BridgeMetrics()
        self.context = BridgeContext(
            defaults=TradeDefaults(
                symbol=config.default_symbol,
                currency=config.default_currency,
                basis=config.default_basis,
            )
        )
        self.connection = ConnectionManager(
            url=config.connect_url,
            token=config.token,
            context=self.context,
            ping_interval_s=config.ping_interval_s,
            backoff=config.reconnect_policy(),
            request_timeout_s=config.request_timeout_s,
            metrics=self.metrics,
            connect=connect,
            reconnect_sleep=reconnect_sleep,
        )
        self.correlator = self.connection.correlator
        self.market_data = MarketDataStream(
            issue=self.correlator.issue,
            capacity=config.max_ticks_buffer,
            log_ticks=config.log_ticks,
            metrics=self.metrics,
        )
        self.engine = TradeEngine(
            issue=self.correlator.issue,
            context=self.context,
            settlement_timeout_s=config.settlement_timeout_s,
            is_ready=lambda: self.context.authorized,
            metrics=self.metrics,
        )
        self.dispatcher = MessageDispatcher(
            correlator=self.correlator,
            context=self.context,
            market_data=self.market_data,
            engine=self.engine,
        )
        self.connection.set_message_handler(self.dispatcher.dispatch)
        self.connection.add_ready_hook(self._on_ready)

    async def _on_ready(self) -> None:
        awaiting = self.engine.awaiting_settlement_contract_id
        if awaiting is not None:
            # Settlement updates are not re-requested on a new connection; the
            # settlement timer still bounds the trade.
            log_event(
                logger,
                "trade.settlement_resubscribe_gap",
                severity="WARNING",
                contract_id=awaiting,
            )
        await self.market_data.subscribe(self.context.defaults.symbol)

    # ---- lifecycle ----

    def start(self) -> None:
        log_event(logger, "bridge.starting", **self.config.redacted())
        self.connection.start()

    async def stop(self) -> None:
        await self.engine.stop()
        await self.connection.stop()
        log_event(logger, "bridge.stopped")

    # ---- operations used by the HTTP facade ----

    def submit_trade(self, payload: dict[str, Any] | None) -> dict[str, Any]:
        order = TradeOrder.from_payload(payload)
        return self.engine.submit(order)

    async def subscribe(self, symbol: str) -> str:
        return await self.market_data.subscribe(symbol)

    def set_defaults(
        self,
        *,
        symbol: Any = None,
        currency: Any = None,
        basis: Any = None,
    ) -> TradeDefaults:
        defaults = self.context.set_defaults(symbol=symbol, currency=currency, basis=basis)
        log_event(logger, "defaults.updated", **defaults.to_dict())
        return defaults

    def health(self) -> dict[str, Any]:
        return {
            "ok": True,
            "connected": self.context.connected,
            "authorized": self.context.authorized,
            "time": datetime.now(timezone.utc).isoformat(),
        }

    def status(self) -> dict[str, Any]:
        return {
            **self.context.connection_snapshot(),
            "defaults": self.context.defaults.to_dict(),
            "ticks": self.market_data.summary(),
            "trade": self.engine.snapshot(),
            "uptime": round(self.context.uptime_s(), 3),
        }
