import pytest

from tradebridge.common.ops_metrics import BridgeMetrics, MetricRegistry


def test_prometheus_text_includes_labels_and_zero_series() -> None:
    metrics = BridgeMetrics()
    metrics.correlated_requests_total.inc(labels={"kind": "proposal", "outcome": "ok"})
    metrics.trades_finished_total.inc(labels={"status": "won"})
    metrics.trade_queue_length.set(2)

    text = metrics.render()
    assert "# TYPE correlated_requests_total counter" in text
    assert 'correlated_requests_total{kind="proposal",outcome="ok"} 1.0' in text
    assert 'trades_finished_total{status="won"} 1.0' in text
    assert "trade_queue_length 2.0" in text
    assert "ws_reconnect_attempts_total 0.0" in text
    assert text.endswith("\n")


def test_instances_do_not_share_counters() -> None:
    a, b = BridgeMetrics(), BridgeMetrics()
    a.ticks_received_total.inc()
    assert a.ticks_received_total.value() == 1.0
    assert b.ticks_received_total.value() == 0.0


def test_labeled_metric_requires_all_labels() -> None:
    metrics = BridgeMetrics()
    with pytest.raises(ValueError):
        metrics.correlated_requests_total.inc(labels={"kind": "buy"})


def test_redefinition_with_different_type_is_rejected() -> None:
    reg = MetricRegistry()
    reg.counter("x_total")
    with pytest.raises(ValueError):
        reg.gauge("x_total")


def test_label_values_are_escaped() -> None:
    reg = MetricRegistry()
    c = reg.counter("errors_total", label_names=("reason",))
    c.inc(labels={"reason": 'bad "quote"\n'})
    assert 'errors_total{reason="bad \\"quote\\"\\n"} 1.0' in reg.render_prometheus_text()
