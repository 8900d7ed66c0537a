import logging

import pytest

from tradebridge.common.errors import VenueError
from tradebridge.streams.market_data import MarketDataStream, Tick, TickBuffer
from tests.fakes import ScriptedIssuer


def _tick(epoch: int, *, symbol: str = "R_50", quote: float = 100.0) -> dict:
    return {"symbol": symbol, "quote": quote + epoch / 100.0, "epoch": epoch, "pip_size": 2}


def test_tick_buffer_evicts_oldest_first() -> None:
    buf = TickBuffer(symbol="R_50", capacity=3)
    for epoch in range(1, 6):
        buf.append(Tick.from_message(_tick(epoch)))
    assert len(buf) == 3
    assert [t.epoch for t in buf.history()] == [3, 4, 5]
    assert buf.latest is not None and buf.latest.epoch == 5


def test_tick_from_message_normalizes_numbers() -> None:
    tick = Tick.from_message({"symbol": "R_10", "quote": "6143.21", "epoch": "1700000001", "id": "abc"})
    assert tick.quote == 6143.21
    assert tick.epoch == 1700000001
    assert tick.to_dict() == {"symbol": "R_10", "quote": 6143.21, "epoch": 1700000001, "id": "abc"}


@pytest.mark.asyncio
async def test_subscribe_replaces_buffer_and_records_symbol() -> None:
    issuer = ScriptedIssuer()
    stream = MarketDataStream(issue=issuer, capacity=10)
    stream.on_tick(_tick(1))
    assert stream.buffer.symbol == "R_50"

    assert await stream.subscribe("R_100") == "R_100"
    assert issuer.calls == [("ticks_subscribe", {"ticks": "R_100", "subscribe": 1})]
    assert stream.acknowledged_symbol == "R_100"
    assert stream.summary() == {"symbol": "R_100", "last": None, "buffer_size": 0}


@pytest.mark.asyncio
async def test_subscribe_failure_propagates_without_acknowledging() -> None:
    issuer = ScriptedIssuer({"ticks_subscribe": VenueError("InvalidSymbol", "Symbol FOO is invalid.")})
    stream = MarketDataStream(issue=issuer, capacity=10)
    with pytest.raises(VenueError):
        await stream.subscribe("FOO")
    assert stream.acknowledged_symbol is None


@pytest.mark.asyncio
async def test_ticks_for_previous_symbol_are_dropped() -> None:
    stream = MarketDataStream(issue=ScriptedIssuer(), capacity=10)
    await stream.subscribe("R_75")

    assert stream.on_tick(_tick(1, symbol="R_50")) is None
    accepted = stream.on_tick(_tick(2, symbol="R_75"))
    assert accepted is not None
    assert [t.epoch for t in stream.history()] == [2]


def test_first_tick_adopts_symbol_when_unsubscribed() -> None:
    stream = MarketDataStream(issue=ScriptedIssuer(), capacity=2)
    stream.on_tick(_tick(1, symbol="R_25"))
    stream.on_tick(_tick(2, symbol="R_25"))
    stream.on_tick(_tick(3, symbol="R_25"))

    summary = stream.summary()
    assert summary["symbol"] == "R_25"
    assert summary["buffer_size"] == 2
    assert summary["last"]["epoch"] == 3
    assert stream.on_tick(None) is None


def test_tick_logging_toggle(caplog) -> None:
    caplog.set_level(logging.INFO, logger="tradebridge.streams.market_data")

    quiet = MarketDataStream(issue=ScriptedIssuer(), capacity=5, log_ticks=False)
    quiet.on_tick(_tick(1))
    assert not [r for r in caplog.records if getattr(r, "event_type", None) == "tick"]

    loud = MarketDataStream(issue=ScriptedIssuer(), capacity=5, log_ticks=True)
    loud.on_tick(_tick(2))
    rows = [r for r in caplog.records if getattr(r, "event_type", None) == "tick"]
    assert len(rows) == 1
    assert rows[0].epoch == 2
    assert rows[0].symbol == "R_50"
