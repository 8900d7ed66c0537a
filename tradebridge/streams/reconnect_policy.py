from __future__ import annotations

import re
from dataclasses import dataclass

# Exponent cap: delays stop doubling after 2**8 * base.
MAX_BACKOFF_EXPONENT = 8


@dataclass
class ReconnectBackoff:
    """
    Deterministic exponential backoff for stream reconnects.

    delay = min(max_seconds, base_seconds * 2 ** min(attempt, 8))

    `attempt` counts failures since the last successful Ready transition; the
    delay is computed before the counter advances, so consecutive failures
    wait base, 2*base, 4*base, ... There is no give-up state.
    """

    base_seconds: float = 0.5
    max_seconds: float = 10.0

    _attempt: int = 0

    @property
    def attempt(self) -> int:
        return self._attempt

    def reset(self) -> None:
        self._attempt = 0

    def peek_delay_s(self) -> float:
        exponent = min(self._attempt, MAX_BACKOFF_EXPONENT)
        return max(0.0, min(self.max_seconds, self.base_seconds * (2 ** exponent)))

    def next_delay_s(self) -> float:
        delay = self.peek_delay_s()
        self._attempt += 1
        return delay


@dataclass(frozen=True)
class WsFailureInfo:
    """
    Why a stream connect or read failed. Informational only: every category
    is retried with the same backoff.
    """

    category: str  # auth_failure | rate_limited | transient
    http_status: int | None
    reason: str  # http_status | message_match | default


_STATUS_RE = re.compile(r"(?<!\d)(401|403|429)(?!\d)")

_STATUS_CATEGORIES = {401: "auth_failure", 403: "auth_failure", 429: "rate_limited"}
_MESSAGE_HINTS = (
    ("auth_failure", ("invalidtoken", "authorizationrequired", "unauthorized", "forbidden")),
    ("rate_limited", ("too many requests", "ratelimit", "rate limit")),
)


def _handshake_status(exc: BaseException) -> int | None:
    # websockets>=14 raises InvalidStatus carrying `.response.status_code`;
    # older releases put `status_code` on the exception itself.
    for holder in (getattr(exc, "response", None), exc):
        if holder is None:
            continue
        for attr in ("status_code", "status"):
            v = getattr(holder, attr, None)
            v = getattr(v, "value", v)
            if isinstance(v, int):
                return v
    m = _STATUS_RE.search(str(exc))
    return int(m.group(1)) if m else None


def classify_ws_failure(exc: BaseException) -> WsFailureInfo:
    status = _handshake_status(exc)
    if status in _STATUS_CATEGORIES:
        return WsFailureInfo(category=_STATUS_CATEGORIES[status], http_status=status, reason="http_status")

    text = str(exc).lower()
    for category, hints in _MESSAGE_HINTS:
        if any(h in text for h in hints):
            return WsFailureInfo(category=category, http_status=status, reason="message_match")
    return WsFailureInfo(category="transient", http_status=status, reason="default")
