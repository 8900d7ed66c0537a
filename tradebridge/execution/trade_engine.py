"""
Single-flight trade execution.

At most one trade holds the execution slot. A trade that takes the slot runs
propose -> buy -> await settlement; every other submission waits in a FIFO
queue. The slot is freed only by finalizing the active trade (settlement
event, settlement timeout, or failure), and that same step promotes the next
queued trade so a fresh submission can never overtake the queue.

Settlement events and the settlement timer race on the active contract id:
whichever finalizes first clears the marker, and the loser becomes a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from tradebridge.common.errors import (
    BridgeError,
    EngineFailure,
    ProtocolViolation,
    TransportError,
)
from tradebridge.common.logging import log_event
from tradebridge.common.ops_metrics import BridgeMetrics
from tradebridge.context import BridgeContext
from tradebridge.execution.orders import TradeOrder

logger = logging.getLogger(__name__)

DEFAULT_SETTLEMENT_TIMEOUT_S = 30.0
FINAL_STATUSES: frozenset[str] = frozenset({"won", "lost"})

Issue = Callable[[dict[str, Any], str], Awaitable[dict[str, Any]]]
ResultListener = Callable[["TradeResult"], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


class TradePhase(str, Enum):
    QUEUED = "Queued"
    PROPOSING = "Proposing"
    EXECUTING = "Executing"
    AWAITING_SETTLEMENT = "AwaitingSettlement"
    SETTLED = "Settled"
    TIMED_OUT = "TimedOut"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TradePhase.SETTLED, TradePhase.TIMED_OUT, TradePhase.FAILED)

    @property
    def is_in_flight(self) -> bool:
        return self in (TradePhase.PROPOSING, TradePhase.EXECUTING, TradePhase.AWAITING_SETTLEMENT)


@dataclass
class Trade:
    request_id: str
    order: TradeOrder
    submitted_at: datetime = field(default_factory=_utc_now)
    started_at: datetime | None = None
    proposal_id: str | None = None
    contract_id: Any = None
    phase: TradePhase = TradePhase.QUEUED
    finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "contractId": self.contract_id,
            "phase": self.phase.value,
            "submittedAt": _iso(self.submitted_at),
            "startedAt": _iso(self.started_at),
            "payload": self.order.to_dict(),
        }


@dataclass(frozen=True)
class TradeResult:
    request_id: str
    contract_id: Any
    status: str
    is_sold: bool | None = None
    profit: float | None = None
    payout: float | None = None
    buy_price: float | None = None
    sell_price: float | None = None
    exit_tick: float | None = None
    exit_tick_time: int | None = None
    transaction_ids: dict[str, Any] | None = None
    error: str | None = None
    ended_at: datetime = field(default_factory=_utc_now)

    @staticmethod
    def settled(trade: Trade, contract: dict[str, Any]) -> "TradeResult":
        return TradeResult(
            request_id=trade.request_id,
            contract_id=contract.get("contract_id", trade.contract_id),
            status=str(contract.get("status") or ("sold" if contract.get("is_sold") else "unknown")),
            is_sold=bool(contract.get("is_sold")),
            profit=contract.get("profit"),
            payout=contract.get("payout"),
            buy_price=contract.get("buy_price"),
            sell_price=contract.get("sell_price"),
            exit_tick=contract.get("exit_tick"),
            exit_tick_time=contract.get("exit_tick_time"),
            transaction_ids=contract.get("transaction_ids") or None,
        )

    @staticmethod
    def timed_out(trade: Trade) -> "TradeResult":
        return TradeResult(
            request_id=trade.request_id,
            contract_id=trade.contract_id,
            status="timeout",
            is_sold=False,
        )

    @staticmethod
    def failed(trade: Trade, error: BaseException) -> "TradeResult":
        return TradeResult(
            request_id=trade.request_id,
            contract_id=trade.contract_id,
            status="error",
            error=str(error) or type(error).__name__,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "contract_id": self.contract_id,
            "status": self.status,
            "is_sold": self.is_sold,
            "profit": self.profit,
            "payout": self.payout,
            "buy_price": self.buy_price,
            "sell_price": self.sell_price,
            "exit_tick": self.exit_tick,
            "exit_tick_time": self.exit_tick_time,
            "transaction_ids": self.transaction_ids,
            "error": self.error,
            "endedAt": _iso(self.ended_at),
        }


class ExecutionLock:
    """
    Single execution slot plus the FIFO queue of trades waiting for it.
    """

    def __init__(self) -> None:
        self._active: Trade | None = None
        self._queue: deque[Trade] = deque()

    @property
    def active(self) -> Trade | None:
        return self._active

    def __len__(self) -> int:
        return len(self._queue)

    def try_acquire(self, trade: Trade) -> bool:
        if self._active is not None or self._queue:
            return False
        self._active = trade
        return True

    def enqueue(self, trade: Trade) -> int:
        self._queue.append(trade)
        return len(self._queue)

    def release(self, trade: Trade) -> Trade | None:
        """
        Free the slot held by `trade` and hand it to the next queued trade.
        """
        if self._active is not trade:
            raise RuntimeError("release by a trade that does not hold the execution slot")
        self._active = self._queue.popleft() if self._queue else None
        return self._active

    def queued(self) -> list[Trade]:
        return list(self._queue)


class TradeEngine:
    def __init__(
        self,
        *,
        issue: Issue,
        context: BridgeContext,
        settlement_timeout_s: float = DEFAULT_SETTLEMENT_TIMEOUT_S,
        is_ready: Callable[[], bool] | None = None,
        metrics: BridgeMetrics | None = None,
    ) -> None:
        self._issue = issue
        self._context = context
        self._settlement_timeout_s = float(settlement_timeout_s)
        self._is_ready = is_ready or (lambda: context.authorized)
        self._metrics = metrics or BridgeMetrics()

        self._lock = ExecutionLock()
        self._active_contract_id: Any = None
        self._settlement_timer: asyncio.TimerHandle | None = None
        self._drain_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._listeners: list[ResultListener] = []
        self.last_result: Optional[TradeResult] = None

    @property
    def active_trade(self) -> Trade | None:
        return self._lock.active

    @property
    def queue_length(self) -> int:
        return len(self._lock)

    @property
    def awaiting_settlement_contract_id(self) -> Any:
        return self._active_contract_id

    def add_listener(self, listener: ResultListener) -> None:
        self._listeners.append(listener)

    # ---- admission ----

    def submit(self, order: TradeOrder) -> dict[str, Any]:
        """
        Admit a trade without suspending.

        Returns {accepted, queued, request_id[, queue_position]}; the queue
        position is 1-based and equals the queue length after the append.
        """
        trade = Trade(request_id=uuid.uuid4().hex, order=order)
        self._metrics.trades_submitted_total.inc()

        if self._lock.try_acquire(trade):
            try:
                self._ensure_drain()
            except RuntimeError as exc:
                self._lock.release(trade)
                raise EngineFailure(f"cannot start trade: {exc}") from exc
            log_event(logger, "trade.accepted", request_id=trade.request_id, queued=False)
            return {"accepted": True, "queued": False, "request_id": trade.request_id}

        position = self._lock.enqueue(trade)
        self._metrics.trade_queue_length.set(len(self._lock))
        log_event(logger, "trade.queued", request_id=trade.request_id, queue_position=position)
        return {
            "accepted": True,
            "queued": True,
            "request_id": trade.request_id,
            "queue_position": position,
        }

    def _ensure_drain(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            return
        loop = asyncio.get_running_loop()
        self._drain_task = loop.create_task(self._drain(), name="trade-drain")

    async def _drain(self) -> None:
        # Iterative: each pass runs whichever trade currently holds the slot.
        while True:
            trade = self._lock.active
            if trade is None:
                return
            if trade.phase is TradePhase.QUEUED:
                try:
                    await self._start(trade)
                except asyncio.CancelledError:
                    raise
                except BridgeError as exc:
                    self._fail(trade, exc)
                except Exception as exc:
                    logger.exception("trade.start_crashed request_id=%s", trade.request_id)
                    self._fail(trade, EngineFailure(f"{type(exc).__name__}: {exc}"))
            if not trade.phase.is_terminal:
                await trade.finished.wait()

    # ---- start sequence ----

    def _set_phase(self, trade: Trade, phase: TradePhase) -> None:
        prev = trade.phase
        trade.phase = phase
        log_event(
            logger,
            "trade.phase",
            request_id=trade.request_id,
            from_phase=prev.value,
            to_phase=phase.value,
            contract_id=trade.contract_id,
        )

    async def _start(self, trade: Trade) -> None:
        trade.started_at = _utc_now()
        self._set_phase(trade, TradePhase.PROPOSING)
        if not self._is_ready():
            raise TransportError("not authorized")

        proposal_req = trade.order.build_proposal(self._context.defaults)
        proposal_res = await self._issue(proposal_req, "proposal")
        proposal_id = (proposal_res.get("proposal") or {}).get("id")
        if not proposal_id:
            raise ProtocolViolation("missing proposal id")
        trade.proposal_id = str(proposal_id)

        self._set_phase(trade, TradePhase.EXECUTING)
        buy_res = await self._issue({"buy": proposal_id, "price": trade.order.stake}, "buy")
        contract_id = (buy_res.get("buy") or {}).get("contract_id")
        if not contract_id:
            raise ProtocolViolation("missing contract id")

        # Join key for settlement events, which arrive keyed by contract id only.
        trade.contract_id = contract_id
        self._active_contract_id = contract_id
        self._set_phase(trade, TradePhase.AWAITING_SETTLEMENT)

        self._spawn(self._subscribe_settlement(trade, contract_id), name=f"poc-subscribe-{contract_id}")
        self._settlement_timer = asyncio.get_running_loop().call_later(
            self._settlement_timeout_s, self._on_settlement_timeout, trade, contract_id
        )
        log_event(
            logger,
            "trade.started",
            request_id=trade.request_id,
            contract_id=contract_id,
            contract_type=trade.order.contract_type,
            symbol=proposal_req["symbol"],
            stake=trade.order.stake,
            duration=proposal_req["duration"],
        )

    async def _subscribe_settlement(self, trade: Trade, contract_id: Any) -> None:
        try:
            await self._issue(
                {"proposal_open_contract": 1, "contract_id": contract_id, "subscribe": 1},
                "proposal_open_contract",
            )
        except BridgeError as exc:
            # Progression never waits on this ack; the settlement timer still guards the slot.
            log_event(
                logger,
                "trade.settlement_subscribe_failed",
                severity="WARNING",
                request_id=trade.request_id,
                contract_id=contract_id,
                error=str(exc),
            )

    def _spawn(self, coro: Awaitable[None], *, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ---- inbound stream events ----

    def on_order_accepted(self, buy: dict[str, Any] | None) -> None:
        trade = self._lock.active
        if not buy or trade is None or trade.contract_id is not None:
            return
        contract_id = buy.get("contract_id")
        if contract_id:
            trade.contract_id = contract_id

    def on_settlement_event(self, contract: dict[str, Any] | None) -> None:
        if not contract:
            return
        marker = self._active_contract_id
        if marker is None or str(contract.get("contract_id")) != str(marker):
            return
        is_final = bool(contract.get("is_sold")) or contract.get("status") in FINAL_STATUSES
        if not is_final:
            return
        trade = self._lock.active
        if trade is None:
            return
        self._finalize(trade, TradeResult.settled(trade, contract), TradePhase.SETTLED)

    def _on_settlement_timeout(self, trade: Trade, contract_id: Any) -> None:
        if self._active_contract_id is None or self._active_contract_id != contract_id:
            return
        if trade.phase is not TradePhase.AWAITING_SETTLEMENT:
            return
        log_event(
            logger,
            "trade.settlement_timeout",
            severity="WARNING",
            request_id=trade.request_id,
            contract_id=contract_id,
            timeout_s=self._settlement_timeout_s,
        )
        self._finalize(trade, TradeResult.timed_out(trade), TradePhase.TIMED_OUT)

    # ---- finalize ----

    def _fail(self, trade: Trade, error: BaseException) -> None:
        log_event(
            logger,
            "trade.failed",
            severity="ERROR",
            request_id=trade.request_id,
            phase=trade.phase.value,
            error=str(error),
            error_type=type(error).__name__,
        )
        self._finalize(trade, TradeResult.failed(trade, error), TradePhase.FAILED)

    def _finalize(self, trade: Trade, result: TradeResult, phase: TradePhase) -> bool:
        if self._lock.active is not trade or trade.phase.is_terminal:
            return False

        # Clearing the marker first makes any racing settlement/timeout a no-op.
        self._active_contract_id = None
        if self._settlement_timer is not None:
            self._settlement_timer.cancel()
            self._settlement_timer = None

        self._set_phase(trade, phase)
        self.last_result = result
        next_trade = self._lock.release(trade)
        self._metrics.trades_finished_total.inc(labels={"status": result.status})
        self._metrics.trade_queue_length.set(len(self._lock))
        log_event(logger, "trade.finished", **result.to_dict())
        trade.finished.set()

        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception:
                logger.exception("trade.listener_failed")

        if next_trade is not None:
            log_event(logger, "trade.dequeued", request_id=next_trade.request_id, remaining=len(self._lock))
            try:
                self._ensure_drain()
            except RuntimeError:
                logger.exception("trade.drain_schedule_failed")
        return True

    # ---- introspection / shutdown ----

    def snapshot(self) -> dict[str, Any]:
        active = self._lock.active
        return {
            "inProgress": active is not None,
            "queue_length": len(self._lock),
            "active": active.to_dict() if active else None,
            "lastResult": self.last_result.to_dict() if self.last_result else None,
        }

    async def stop(self) -> None:
        if self._settlement_timer is not None:
            self._settlement_timer.cancel()
            self._settlement_timer = None
        tasks = [t for t in (self._drain_task, *self._background) if t is not None and not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._drain_task = None
