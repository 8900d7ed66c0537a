"""
Request/response correlation over the shared stream connection.

Every correlated outbound message carries an integer `req_id`; the venue
echoes it on the response. `issue()` parks a `PendingRequest` in the table
and awaits its completion future. Exactly one of `resolve`, `expire` or
`fail_all` completes a given request: the `settled` flag is flipped by the
first caller and every later caller observes a no-op.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator

from tradebridge.common.errors import RequestTimeout, VenueError
from tradebridge.common.logging import log_event
from tradebridge.common.ops_metrics import BridgeMetrics

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_S = 15.0

Transmit = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class PendingRequest:
    req_id: int
    kind: str
    deadline: float
    completion: asyncio.Future
    settled: bool = False
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    def settle(self) -> bool:
        if self.settled:
            return False
        self.settled = True
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        return True


class RequestCorrelator:
    def __init__(
        self,
        *,
        transmit: Transmit,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        metrics: BridgeMetrics | None = None,
        id_source: Iterator[int] | None = None,
    ) -> None:
        self._transmit = transmit
        self._timeout_s = float(timeout_s)
        self._metrics = metrics or BridgeMetrics()
        self._ids = id_source or itertools.count(1)
        self._pending: dict[int, PendingRequest] = {}

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    def __len__(self) -> int:
        return len(self._pending)

    def is_pending(self, req_id: Any) -> bool:
        return req_id in self._pending

    def pending_kinds(self) -> list[str]:
        return [p.kind for p in self._pending.values()]

    def _allocate_id(self) -> int:
        for candidate in self._ids:
            if candidate not in self._pending:
                return int(candidate)
        raise RuntimeError("correlation id source exhausted")

    async def issue(self, body: dict[str, Any], kind: str = "request") -> dict[str, Any]:
        """
        Send `body` tagged with a fresh `req_id` and await the matching response.

        Raises `VenueError` when the response carries an error object,
        `RequestTimeout` when no response arrives in time, and whatever error
        `fail_all` was given (usually `ConnectionClosed`) on disconnect.
        """
        loop = asyncio.get_running_loop()
        req_id = self._allocate_id()
        pending = PendingRequest(
            req_id=req_id,
            kind=str(kind),
            deadline=loop.time() + self._timeout_s,
            completion=loop.create_future(),
        )
        self._pending[req_id] = pending
        pending.timer = loop.call_later(self._timeout_s, self.expire, req_id)

        try:
            await self._transmit({**body, "req_id": req_id})
        except BaseException:
            if self._pending.get(req_id) is pending:
                del self._pending[req_id]
            pending.settle()
            raise

        return await pending.completion

    def resolve(self, req_id: Any, message: dict[str, Any]) -> bool:
        pending = self._pending.pop(req_id, None)
        if pending is None or not pending.settle():
            return False
        error = message.get("error")
        if error:
            outcome = "error"
            exc = VenueError.from_payload(error)
            if not pending.completion.done():
                pending.completion.set_exception(exc)
        else:
            outcome = "ok"
            if not pending.completion.done():
                pending.completion.set_result(message)
        self._metrics.correlated_requests_total.inc(labels={"kind": pending.kind, "outcome": outcome})
        return True

    def expire(self, req_id: Any) -> bool:
        pending = self._pending.pop(req_id, None)
        if pending is None or not pending.settle():
            return False
        log_event(logger, "request.timeout", severity="WARNING", req_id=req_id, kind=pending.kind)
        if not pending.completion.done():
            pending.completion.set_exception(RequestTimeout(pending.kind))
        self._metrics.correlated_requests_total.inc(labels={"kind": pending.kind, "outcome": "timeout"})
        return True

    def fail_all(self, error: BaseException) -> int:
        drained = list(self._pending.values())
        self._pending.clear()
        failed = 0
        for pending in drained:
            if not pending.settle():
                continue
            if not pending.completion.done():
                pending.completion.set_exception(error)
            self._metrics.correlated_requests_total.inc(labels={"kind": pending.kind, "outcome": "closed"})
            failed += 1
        if failed:
            log_event(logger, "request.fail_all", severity="WARNING", failed=failed, error=str(error))
        return failed
