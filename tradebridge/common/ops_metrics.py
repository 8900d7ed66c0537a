"""
In-process counters and gauges with Prometheus text exposition.

No prometheus_client: the registry is a lock-guarded dict keyed by metric
name and sorted label tuples. HTTP handlers read it while the event loop
writes, hence the lock.

Each `VenueBridge` owns one `BridgeMetrics` bound to its own registry, so
isolated instances (tests) never share counters.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


def _escape(v: str) -> str:
    return str(v).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _render_labels(key: LabelKey) -> str:
    if not key:
        return ""
    return "{" + ",".join(f'{k}="{_escape(v)}"' for k, v in key) + "}"


@dataclass(frozen=True)
class _MetricDef:
    name: str
    kind: str  # counter | gauge
    help: str = ""
    labels: Tuple[str, ...] = ()


class MetricRegistry:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._defs: Dict[str, _MetricDef] = {}
        self._samples: Dict[str, Dict[LabelKey, float]] = {}

    def counter(self, name: str, *, help: str = "", label_names: Iterable[str] = ()) -> "Counter":
        return Counter(self, self._register(_MetricDef(name, "counter", help, tuple(label_names))))

    def gauge(self, name: str, *, help: str = "", label_names: Iterable[str] = ()) -> "Gauge":
        return Gauge(self, self._register(_MetricDef(name, "gauge", help, tuple(label_names))))

    def _register(self, defn: _MetricDef) -> _MetricDef:
        with self._lock:
            known = self._defs.get(defn.name)
            if known is None:
                self._defs[defn.name] = defn
                self._samples[defn.name] = {}
                return defn
            if (known.kind, known.labels) != (defn.kind, defn.labels):
                raise ValueError(f"metric {defn.name} already registered as {known.kind}{list(known.labels)}")
            return known

    def _key(self, defn: _MetricDef, labels: Mapping[str, Any] | None) -> LabelKey:
        if not defn.labels:
            return ()
        labels = labels or {}
        missing = [n for n in defn.labels if n not in labels]
        if missing:
            raise ValueError(f"metric {defn.name} missing labels: {missing}")
        return tuple((n, str(labels[n])) for n in defn.labels)

    def inc(self, name: str, *, by: float = 1.0, labels: Mapping[str, Any] | None = None) -> None:
        with self._lock:
            series = self._samples[name]
            key = self._key(self._defs[name], labels)
            series[key] = series.get(key, 0.0) + float(by)

    def set(self, name: str, *, value: float, labels: Mapping[str, Any] | None = None) -> None:
        with self._lock:
            self._samples[name][self._key(self._defs[name], labels)] = float(value)

    def value(self, name: str, *, labels: Mapping[str, Any] | None = None) -> float:
        with self._lock:
            return self._samples[name].get(self._key(self._defs[name], labels), 0.0)

    def snapshot(self) -> Dict[str, Dict[LabelKey, float]]:
        with self._lock:
            return {name: dict(series) for name, series in self._samples.items()}

    def render_prometheus_text(self) -> str:
        """
        Prometheus text format v0.0.4, metrics and label sets sorted.
        """
        lines: list[str] = []
        with self._lock:
            for name in sorted(self._defs):
                defn = self._defs[name]
                if defn.help:
                    lines.append(f"# HELP {name} {defn.help}")
                lines.append(f"# TYPE {name} {defn.kind}")
                series = self._samples[name]
                lines.extend(f"{name}{_render_labels(key)} {series[key]}" for key in sorted(series))
        return "\n".join(lines) + "\n"


class _Metric:
    def __init__(self, registry: MetricRegistry, defn: _MetricDef) -> None:
        self._registry = registry
        self._name = defn.name

    def value(self, *, labels: Mapping[str, Any] | None = None) -> float:
        return self._registry.value(self._name, labels=labels)


class Counter(_Metric):
    def inc(self, by: float = 1.0, *, labels: Mapping[str, Any] | None = None) -> None:
        self._registry.inc(self._name, by=by, labels=labels)


class Gauge(_Metric):
    def set(self, value: float, *, labels: Mapping[str, Any] | None = None) -> None:
        self._registry.set(self._name, value=value, labels=labels)


class BridgeMetrics:
    def __init__(self, registry: MetricRegistry | None = None) -> None:
        self.registry = registry or MetricRegistry()
        reg = self.registry
        self.ws_reconnect_attempts_total = reg.counter(
            "ws_reconnect_attempts_total",
            help="Total reconnect attempts scheduled after a stream close or connect failure.",
        )
        self.ws_messages_received_total = reg.counter(
            "ws_messages_received_total",
            help="Total inbound stream frames decoded as JSON.",
        )
        self.ws_connection_ready = reg.gauge(
            "ws_connection_ready",
            help="1 when the stream connection is authorized and ready, else 0.",
        )
        self.ticks_received_total = reg.counter(
            "ticks_received_total",
            help="Total price ticks accepted into the tick buffer.",
        )
        self.correlated_requests_total = reg.counter(
            "correlated_requests_total",
            help="Correlated venue requests, labeled by kind and outcome.",
            label_names=("kind", "outcome"),
        )
        self.trades_submitted_total = reg.counter(
            "trades_submitted_total",
            help="Total trade submissions accepted by the engine.",
        )
        self.trades_finished_total = reg.counter(
            "trades_finished_total",
            help="Total trades finalized, labeled by terminal status.",
            label_names=("status",),
        )
        self.trade_queue_length = reg.gauge(
            "trade_queue_length",
            help="Trades waiting for the execution slot.",
        )

        # Unlabeled series are exported as zero before the first event.
        for counter in (
            self.ws_reconnect_attempts_total,
            self.ws_messages_received_total,
            self.ticks_received_total,
            self.trades_submitted_total,
        ):
            counter.inc(0.0)
        self.ws_connection_ready.set(0.0)
        self.trade_queue_length.set(0.0)

    def render(self) -> str:
        return self.registry.render_prometheus_text()
