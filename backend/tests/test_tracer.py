from loyalty.tracer import LoyaltyTracer


def test_spans_are_ordered_and_carry_data():
    tracer = LoyaltyTracer()
    trace_id = tracer.start_trace({"order_id": "ORD-1"})

    tracer.span("ORDER_RECEIVED", line_item_count=2)
    tracer.span("CUSTOMER_IDENTIFIED", method="ORDER_CUSTOMER_ID")

    spans = tracer.get_spans()
    assert [s["name"] for s in spans] == ["ORDER_RECEIVED", "CUSTOMER_IDENTIFIED"]
    assert spans[0]["line_item_count"] == 2
    assert spans[1]["elapsed_ms"] >= spans[0]["elapsed_ms"]
    assert tracer.trace_id == trace_id


def test_end_trace_returns_summary_and_resets():
    tracer = LoyaltyTracer()
    trace_id = tracer.start_trace({"order_id": "ORD-1"})
    tracer.span("ORDER_COMPLETED")

    summary = tracer.end_trace()
    assert summary["id"] == trace_id
    assert summary["context"] == {"order_id": "ORD-1"}
    assert summary["span_count"] == 1
    assert summary["duration_ms"] >= 0
    assert not tracer.is_active
    assert tracer.get_spans() == []


def test_span_and_end_without_active_trace_are_noops():
    tracer = LoyaltyTracer()
    tracer.span("IGNORED")
    assert tracer.get_spans() == []

    empty = tracer.end_trace()
    assert empty["id"] is None
    assert empty["span_count"] == 0
    assert empty["spans"] == []
    assert empty["started_at"] is None and empty["ended_at"] is None
    assert set(empty) == {"id", "duration_ms", "started_at", "ended_at", "context", "spans", "span_count"}


def test_start_trace_discards_previous_spans():
    tracer = LoyaltyTracer()
    first = tracer.start_trace()
    tracer.span("OLD")
    second = tracer.start_trace()

    assert first != second
    assert tracer.get_spans() == []
