from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Mapping

from tradebridge.common.errors import OrderValidationError
from tradebridge.context import TradeDefaults

REQUIRED_FIELDS: tuple[str, ...] = ("contract_type", "duration", "stake")
DEFAULT_DURATION_UNIT = "t"


def _is_missing(v: Any) -> bool:
    return v is None or (isinstance(v, str) and v.strip() == "")


def _as_number(v: Any, *, name: str) -> int | float:
    if isinstance(v, bool):
        raise OrderValidationError(f"{name} must be numeric")
    try:
        f = float(v)
    except (TypeError, ValueError):
        raise OrderValidationError(f"{name} must be numeric") from None
    if not math.isfinite(f):
        raise OrderValidationError(f"{name} must be numeric")
    return int(f) if f.is_integer() else f


def _opt_str(v: Any) -> str | None:
    return None if _is_missing(v) else str(v).strip()


@dataclass(frozen=True)
class TradeOrder:
    """
    Order parameters for one binary-options contract purchase.

    `symbol`, `currency` and `basis` may be omitted; the proposal falls back to
    the process defaults at the moment the trade starts, not at submission.
    """

    contract_type: str
    duration: int | float
    stake: float
    symbol: str | None = None
    duration_unit: str = DEFAULT_DURATION_UNIT
    currency: str | None = None
    basis: str | None = None
    barrier: str | None = None
    prediction: int | float | None = None

    @staticmethod
    def from_payload(payload: Mapping[str, Any] | None) -> "TradeOrder":
        body = dict(payload or {})
        for k in REQUIRED_FIELDS:
            if _is_missing(body.get(k)):
                raise OrderValidationError(f"{k} is required")

        barrier = body.get("barrier")
        prediction = body.get("prediction")
        return TradeOrder(
            contract_type=str(body["contract_type"]).strip(),
            duration=_as_number(body["duration"], name="duration"),
            stake=float(_as_number(body["stake"], name="stake")),
            symbol=_opt_str(body.get("symbol")),
            duration_unit=_opt_str(body.get("duration_unit")) or DEFAULT_DURATION_UNIT,
            currency=_opt_str(body.get("currency")),
            basis=_opt_str(body.get("basis")),
            barrier=None if barrier is None else str(barrier),
            prediction=None if prediction is None else _as_number(prediction, name="prediction"),
        )

    def build_proposal(self, defaults: TradeDefaults) -> dict[str, Any]:
        req: dict[str, Any] = {
            "proposal": 1,
            "amount": self.stake,
            "basis": self.basis or defaults.basis or "stake",
            "contract_type": self.contract_type,
            "currency": self.currency or defaults.currency,
            "duration": self.duration,
            "duration_unit": self.duration_unit or DEFAULT_DURATION_UNIT,
            "symbol": self.symbol or defaults.symbol,
        }
        if self.barrier is not None:
            req["barrier"] = str(self.barrier)
        if self.prediction is not None:
            req["prediction"] = self.prediction
        return req

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}
