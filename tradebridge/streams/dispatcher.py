from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from tradebridge.common.errors import VenueError
from tradebridge.context import BridgeContext
from tradebridge.streams.correlator import RequestCorrelator
from tradebridge.streams.market_data import MarketDataStream

logger = logging.getLogger(__name__)


class SettlementSink(Protocol):
    def on_order_accepted(self, buy: dict[str, Any] | None) -> None: ...

    def on_settlement_event(self, contract: dict[str, Any] | None) -> None: ...


class MessageDispatcher:
    """
    Single entry point for every decoded inbound frame.

    Routing, in order:
      1. `req_id` of a pending request -> RequestCorrelator.resolve
      2. `msg_type` tick / buy / proposal_open_contract -> stream handler
      3. top-level `error` -> BridgeContext.last_error

    Subscription updates echo the `req_id` of their subscribe request, so a
    frame can both resolve a request and feed a stream handler.
    """

    def __init__(
        self,
        *,
        correlator: RequestCorrelator,
        context: BridgeContext,
        market_data: MarketDataStream,
        engine: SettlementSink,
    ) -> None:
        self._correlator = correlator
        self._context = context
        self._handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            "tick": lambda msg: market_data.on_tick(msg.get("tick")),
            "buy": lambda msg: engine.on_order_accepted(msg.get("buy")),
            "proposal_open_contract": lambda msg: engine.on_settlement_event(msg.get("proposal_open_contract")),
        }

    def dispatch(self, msg: dict[str, Any]) -> None:
        req_id = msg.get("req_id")
        if req_id is not None and self._correlator.is_pending(req_id):
            self._correlator.resolve(req_id, msg)

        handler = self._handlers.get(str(msg.get("msg_type") or ""))
        if handler is not None:
            handler(msg)

        error = msg.get("error")
        if error:
            self._context.record_error(VenueError.from_payload(error))
            logger.debug("venue error msg_type=%s error=%s", msg.get("msg_type"), error)
