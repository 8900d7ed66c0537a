"""
In-process stand-ins for the venue websocket and the correlated `issue()` call.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Callable, Iterable

_CLOSE = object()

Responder = Callable[[dict[str, Any]], Iterable[dict[str, Any]] | None]


async def wait_until(predicate: Callable[[], Any], *, timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class FakeWebSocket:
    """
    Scripted websocket: an async context manager and async iterator of frames.

    Every outbound frame is decoded into `sent`. A `responder` may answer a
    frame by returning inbound messages, which are queued for the reader.
    """

    def __init__(self, *, responder: Responder | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._responder = responder
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()

    async def __aenter__(self) -> "FakeWebSocket":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.closed = True

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSE:
            self.closed = True
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self.closed = True
            raise item
        return item

    async def send(self, data: str) -> None:
        if self.closed:
            raise OSError("socket closed")
        msg = json.loads(data)
        self.sent.append(msg)
        if self._responder is not None:
            for reply in self._responder(msg) or ():
                self.push(reply)

    async def close(self) -> None:
        self._inbox.put_nowait(_CLOSE)

    def push(self, msg: dict[str, Any] | str) -> None:
        self._inbox.put_nowait(msg if isinstance(msg, str) else json.dumps(msg))

    def drop(self, error: BaseException | None = None) -> None:
        self._inbox.put_nowait(error if error is not None else _CLOSE)

    def sent_kinds(self) -> list[str]:
        return [next(iter(m)) for m in self.sent]


class FakeConnector:
    """
    Replacement for `websockets.connect`: hands out scripted sockets in order.

    An exception in the script is raised as a connect failure. Once the script
    is exhausted every further connect gets a fresh idle socket.
    """

    def __init__(self, script: Iterable[FakeWebSocket | BaseException]) -> None:
        self._script = list(script)
        self.urls: list[str] = []
        self.sockets: list[FakeWebSocket] = []

    def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        item = self._script.pop(0) if self._script else FakeWebSocket()
        if isinstance(item, BaseException):
            raise item
        self.sockets.append(item)
        return item


class RecordingSleep:
    """
    Records reconnect delays instead of sleeping. With `hold=True` the first
    reconnect parks until the task is cancelled.
    """

    def __init__(self, *, hold: bool = False) -> None:
        self.delays: list[float] = []
        self._hold = hold

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._hold:
            await asyncio.Event().wait()
        await asyncio.sleep(0)


def venue_responder(
    *,
    auth_error: dict[str, Any] | None = None,
    silent_kinds: Iterable[str] = (),
    contract_id: int = 777,
    settlement: dict[str, Any] | None = None,
) -> Responder:
    """
    Minimal venue: answers authorize, ticks, proposal, buy and contract
    subscriptions; stays silent for anything listed in `silent_kinds`.

    A contract subscription is acknowledged with an open update, followed by
    `settlement` (merged over the contract) when one is given.
    """
    silent = set(silent_kinds)

    def respond(msg: dict[str, Any]) -> list[dict[str, Any]]:
        req_id = msg.get("req_id")
        if req_id is None:
            return []
        if "authorize" in msg and "authorize" not in silent:
            if auth_error is not None:
                return [{"msg_type": "authorize", "req_id": req_id, "error": auth_error}]
            return [{"msg_type": "authorize", "req_id": req_id, "authorize": {"loginid": "VRTC1", "currency": "USD"}}]
        if "ticks" in msg and "ticks" not in silent:
            return [
                {
                    "msg_type": "tick",
                    "req_id": req_id,
                    "tick": {"symbol": msg["ticks"], "quote": 100.5, "epoch": 1700000000, "pip_size": 2},
                }
            ]
        if "proposal_open_contract" in msg and "proposal_open_contract" not in silent:
            contract = {"contract_id": msg["contract_id"], "is_sold": 0, "status": "open"}
            replies = [{"msg_type": "proposal_open_contract", "req_id": req_id, "proposal_open_contract": contract}]
            if settlement is not None:
                replies.append(
                    {
                        "msg_type": "proposal_open_contract",
                        "req_id": req_id,
                        "proposal_open_contract": {**contract, "is_sold": 1, **settlement},
                    }
                )
            return replies
        if msg.get("proposal") == 1 and "proposal" not in silent:
            return [{"msg_type": "proposal", "req_id": req_id, "proposal": {"id": f"PROP-{req_id}", "ask_price": msg.get("amount")}}]
        if "buy" in msg and "buy" not in silent:
            return [
                {
                    "msg_type": "buy",
                    "req_id": req_id,
                    "buy": {"contract_id": contract_id, "buy_price": msg.get("price"), "transaction_id": 9001},
                }
            ]
        return []

    return respond


class ScriptedIssuer:
    """
    Stand-in for `RequestCorrelator.issue`.

    `script` maps request kind -> response dict, exception, or a callable
    taking the request body and returning either. Unscripted kinds answer `{}`.
    """

    def __init__(self, script: dict[str, Any] | None = None, *, on_issue: Callable[[str, dict], None] | None = None) -> None:
        self.script = dict(script or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._on_issue = on_issue

    @property
    def kinds(self) -> list[str]:
        return [k for k, _ in self.calls]

    def bodies(self, kind: str) -> list[dict[str, Any]]:
        return [b for k, b in self.calls if k == kind]

    async def __call__(self, body: dict[str, Any], kind: str = "request") -> dict[str, Any]:
        self.calls.append((kind, dict(body)))
        if self._on_issue is not None:
            self._on_issue(kind, body)
        await asyncio.sleep(0)
        outcome = self.script.get(kind, {})
        if callable(outcome) and not isinstance(outcome, BaseException):
            outcome = outcome(body)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def sequential_contracts(start: int = 1) -> dict[str, Callable[[dict], dict]]:
    """
    Script where every proposal/buy pair yields a new contract id.
    """
    proposals = itertools.count(start)
    contracts = itertools.count(start)
    return {
        "proposal": lambda body: {"proposal": {"id": f"P{next(proposals)}"}},
        "buy": lambda body: {"buy": {"contract_id": next(contracts), "buy_price": body["price"]}},
    }
