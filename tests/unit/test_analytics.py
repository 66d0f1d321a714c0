from datetime import date, datetime, timedelta
from itertools import count

import pytest

from schemas.events import CanonicalEvent
from tracking import analytics

_ids = count(1)


def _event(source_system, event_type, occurred_at, **payload):
    return CanonicalEvent(
        event_id=f"evt-{next(_ids)}",
        source_system=source_system,
        event_type=event_type,
        occurred_at=occurred_at,
        received_at=occurred_at,
        payload=payload,
    )


T0 = datetime(2024, 1, 15, 10, 0, 0)


def test_funnel_counts_unique_sessions_per_step():
    events = []
    for session in ("s1", "s2", "s3", "s4"):
        events.append(_event("user_activity", "page_view", T0, sessionId=session))
        events.append(_event("user_activity", "page_view", T0, sessionId=session))
    for session in ("s1", "s2"):
        events.append(_event("user_activity", "product_view", T0, sessionId=session))
    events.append(_event("user_activity", "add_to_cart", T0, sessionId="s1"))
    events.append(_event("user_activity", "purchase", T0, sessionId="s1"))
    events.append(_event("order", "created", T0, orderId="ORD-1"))

    steps = {s.step: s for s in analytics.funnel_metrics(events)}

    assert steps["page_view"].sessions == 4
    assert steps["product_view"].step_conversion == 0.5
    assert steps["add_to_cart"].overall_conversion == 0.25
    assert steps["checkout_started"].sessions == 0
    assert steps["purchase"].step_conversion == 0.0


def test_funnel_rows_are_keyed_by_period_and_step():
    rows = analytics.funnel_rows([], "2024-01-15T10:00")

    assert [key for key, _ in rows][0] == "2024-01-15T10:00:page_view"
    assert rows[0][1] == ["2024-01-15T10:00:page_view", "2024-01-15T10:00", "page_view", 0, 0.0, 0.0]


def test_agent_performance_follows_reassignment():
    events = [
        _event("support", "ticket_updated", T0, ticketId="T-1", status="in_progress", assignedTo="alice"),
        _event("support", "ticket_updated", T0 + timedelta(minutes=5), ticketId="T-1", status="resolved"),
        _event("support", "ticket_updated", T0, ticketId="T-2", status="open", assignedTo="alice"),
        _event("support", "ticket_updated", T0 + timedelta(minutes=1), ticketId="T-2", status="in_progress", assignedTo="bob"),
        _event("support", "satisfaction_score", T0 + timedelta(hours=1), ticketId="T-1", score=5),
        _event("support", "satisfaction_score", T0 + timedelta(hours=1), ticketId="T-2", score=2),
        _event("support", "ticket_updated", T0, ticketId="T-3", status="open"),
    ]

    stats = analytics.agent_performance(events)

    assert set(stats) == {"alice", "bob"}
    assert stats["alice"].tickets_assigned == 2
    assert stats["alice"].tickets_resolved == 1
    assert stats["alice"].resolution_rate == 0.5
    assert stats["alice"].average_rating == 5.0
    assert stats["bob"].average_rating == 2.0


def test_agent_rows_leave_missing_rating_blank():
    events = [_event("support", "ticket_updated", T0, ticketId="T-1", status="open", assignedTo="carol")]

    rows = analytics.agent_rows(events, "2024-01-15T10:00")

    assert rows == [("2024-01-15T10:00:carol", ["2024-01-15T10:00:carol", "2024-01-15T10:00", "carol", 1, 0, 0.0, ""])]


def test_daily_summary_headline_numbers():
    events = [
        _event("order", "created", T0, orderId="ORD-1", amount=100.0),
        _event("order", "created", T0, orderId="ORD-2", amount=50.5),
        _event("payment", "payment_failed", T0, paymentId="P-1", orderId="ORD-3"),
        _event("payment", "refund_processed", T0, paymentId="P-2", orderId="ORD-1", amount=20.0),
        _event("support", "ticket_created", T0, ticketId="T-1", priority="urgent"),
        _event("support", "ticket_created", T0, ticketId="T-2", priority="low"),
        _event("inventory", "low_stock_alert", T0, productId="P-1"),
        _event("shipping", "tracking_update", T0, orderId="ORD-1", status="exception"),
        _event("shipping", "tracking_update", T0, orderId="ORD-2", status="in_transit", delayDays=2),
        _event("shipping", "tracking_update", T0, orderId="ORD-4", status="in_transit"),
    ]

    summary = analytics.daily_summary(events)

    assert summary["total_events"] == 10
    assert summary["orders"] == 2
    assert summary["revenue"] == 150.5
    assert summary["average_order_value"] == 75.25
    assert summary["payments_failed"] == 1
    assert summary["refunded_amount"] == 20.0
    assert summary["urgent_tickets"] == 1
    assert summary["low_stock_alerts"] == 1
    assert summary["shipping_delays"] == 2
    assert summary["events_by_type"]["shipping.tracking_update"] == 3


def test_daily_summary_of_nothing():
    summary = analytics.daily_summary([])

    assert summary["total_events"] == 0
    assert summary["average_order_value"] == 0.0


def test_inventory_forecast_flags_reorder():
    as_of = datetime(2024, 1, 31)
    events = [
        _event("inventory", "product_updated", as_of - timedelta(days=2),
               productId="P-1", sku="SKU-1", name="Mug", currentStock=300, lowStockThreshold=10),
        _event("commerce", "product_snapshot", as_of - timedelta(days=1),
               productId="P-1", sku="SKU-1", name="Mug", currentStock=150, lowStockThreshold=10),
        _event("inventory", "product_updated", as_of - timedelta(days=1),
               productId="P-2", sku="SKU-2", name="Plate", currentStock=5, lowStockThreshold=10),
        _event("inventory", "stock_movement", as_of - timedelta(days=3),
               productId="P-1", sku="SKU-1", movementType="out", quantity=-300),
        _event("inventory", "stock_movement", as_of - timedelta(days=40),
               productId="P-1", sku="SKU-1", movementType="out", quantity=900),
        _event("inventory", "stock_movement", as_of - timedelta(days=3),
               productId="P-1", sku="SKU-1", movementType="in", quantity=500),
    ]

    forecasts = {f.product_id: f for f in analytics.inventory_forecast(events, as_of=as_of)}

    assert forecasts["P-1"].current_stock == 150
    assert forecasts["P-1"].daily_outflow == 10.0
    assert forecasts["P-1"].days_remaining == 15.0
    assert forecasts["P-1"].reorder is False
    assert forecasts["P-2"].days_remaining is None
    assert forecasts["P-2"].reorder is True

    rows = dict(analytics.forecast_rows(list(forecasts.values()), "2024-01-31"))
    assert rows["P-2"][5] == ""
    assert rows["P-2"][6] == "yes"


def test_week_start_is_monday():
    assert analytics.week_start(datetime(2024, 1, 17, 23, 59)) == date(2024, 1, 15)
    assert analytics.week_start(datetime(2024, 1, 15, 0, 0)) == date(2024, 1, 15)


def test_cohort_retention():
    as_of = datetime(2024, 1, 17)
    week0 = datetime(2024, 1, 1, 9)
    events = [
        _event("order", "created", week0, customerId="C-1"),
        _event("order", "created", week0, customerId="C-2"),
        _event("order", "created", week0 + timedelta(weeks=1), customerId="C-1"),
        _event("order", "created", week0 + timedelta(weeks=2), customerId="C-1"),
        _event("order", "created", week0 + timedelta(weeks=2), customerId="C-2"),
        _event("order", "created", week0 + timedelta(weeks=1), customerId="C-3"),
        _event("order", "created", datetime(2023, 6, 5), customerId="C-old"),
    ]

    retention = analytics.cohort_retention(events, periods=4, as_of=as_of)

    assert retention == {
        date(2024, 1, 1): [1.0, 0.5, 1.0],
        date(2024, 1, 8): [1.0, 0.0],
    }

    rows = analytics.cohort_rows(retention, periods=4)
    assert rows[1] == ("2024-01-08", ["2024-01-08", 1.0, 0.0, "", ""])


@pytest.mark.parametrize("orders,days_ago,segment", [
    (3, 5, "champion"),
    (4, 60, "loyal"),
    (1, 120, "at_risk"),
    (1, 10, "new"),
    (2, 45, "regular"),
])
def test_customer_segments(orders, days_ago, segment):
    as_of = datetime(2024, 2, 1)
    events = [
        _event("order", "created", as_of - timedelta(days=days_ago + n),
               orderId=f"ORD-{n}", customerId="C-1", status="delivered", amount=10.0)
        for n in range(orders)
    ]

    [result] = analytics.customer_segments(events, as_of=as_of)

    assert result.segment == segment
    assert result.orders == orders
    assert result.recency_days == days_ago


def test_customer_segments_use_latest_order_version():
    as_of = datetime(2024, 2, 1)
    events = [
        _event("order", "created", as_of - timedelta(days=3), orderId="ORD-1", customerId="C-1", status="pending", amount=10.0),
        _event("order", "updated", as_of - timedelta(days=2), orderId="ORD-1", customerId="C-1", status="cancelled", amount=10.0),
        _event("commerce", "order_snapshot", as_of - timedelta(days=2), orderId="ORD-2", customerId="C-2", status="delivered", amount=25.0),
        _event("commerce", "order_snapshot", as_of - timedelta(days=1), orderId="ORD-2", customerId="C-2", status="delivered", amount=30.0),
    ]

    segments = analytics.customer_segments(events, as_of=as_of)

    assert [(s.customer_id, s.orders, s.total_spend) for s in segments] == [("C-2", 1, 30.0)]


def test_supplier_rollup():
    events = [
        _event("inventory", "product_updated", T0, productId="P-1", supplier="Acme"),
        _event("inventory", "stock_movement", T0 + timedelta(hours=1),
               productId="P-1", supplier="Acme", movementType="in", quantity=100, costImpact=250.0),
        _event("inventory", "stock_movement", T0 + timedelta(hours=2),
               productId="P-1", supplier="Acme", movementType="out", quantity=10),
        _event("inventory", "low_stock_alert", T0 + timedelta(hours=3), productId="P-1"),
        _event("inventory", "product_updated", T0, productId="P-2", supplier="Globex"),
    ]

    rollup = analytics.supplier_rollup(events)

    assert rollup == {
        "Acme": {"products": 1, "inbound_units": 100, "inbound_cost": 250.0, "low_stock_products": 1},
        "Globex": {"products": 1, "inbound_units": 0, "inbound_cost": 0.0, "low_stock_products": 0},
    }
    assert analytics.supplier_rows(rollup, "2024-01")[0][0] == "2024-01:Acme"


def test_order_versions_count_once_in_summary():
    events = [
        _event("order", "created", T0, orderId="ORD-1", customerId="C-1", amount=100.0),
        _event("order", "created", T0 + timedelta(minutes=5), orderId="ORD-1", customerId="C-1", amount=120.0),
        _event("order", "updated", T0 + timedelta(hours=1), orderId="ORD-1", customerId="C-1",
               status="shipped", amount=120.0),
        _event("order", "created", T0, orderId="ORD-2", customerId="C-2", amount=30.0),
        _event("order", "updated", T0, orderId="ORD-3", customerId="C-3", amount=999.0),
    ]

    summary = analytics.daily_summary(events)

    assert summary["orders"] == 2
    assert summary["revenue"] == 150.0
    assert [e.payload["orderId"] for e in analytics.placed_orders(events)] == ["ORD-1", "ORD-2"]
    assert analytics.placed_orders(events)[0].event_type == "updated"


def test_cohort_counts_resent_order_once():
    as_of = datetime(2024, 1, 17)
    week0 = datetime(2024, 1, 1, 9)
    events = [
        _event("order", "created", week0, orderId="ORD-1", customerId="C-1"),
        _event("order", "created", week0 + timedelta(weeks=1), orderId="ORD-1", customerId="C-1"),
        _event("order", "created", week0 + timedelta(weeks=2), orderId="ORD-2", customerId="C-1"),
    ]

    retention = analytics.cohort_retention(events, periods=4, as_of=as_of)

    assert retention == {date(2024, 1, 1): [1.0, 0.0, 1.0]}


def _journey_events():
    return [
        _event("user_activity", "page_view", T0, sessionId="S-1", userId="U-1"),
        _event("user_activity", "product_view", T0 + timedelta(minutes=2), sessionId="S-1", userId="U-1",
               productId="P-1"),
        _event("user_activity", "add_to_cart", T0 + timedelta(minutes=5), sessionId="S-1", userId="U-1",
               productId="P-1"),
        _event("user_activity", "purchase", T0 + timedelta(minutes=10), sessionId="S-1", userId="U-1",
               productId="P-1", value=59.99),
        _event("user_activity", "page_view", T0, sessionId="S-2", userId="U-2"),
        _event("user_activity", "search", T0 + timedelta(minutes=1), sessionId="S-2", userId="U-2"),
        _event("user_activity", "page_view", T0 + timedelta(minutes=30), sessionId="S-3", userId="U-1"),
        _event("order", "created", T0, orderId="ORD-1"),
    ]


def test_user_journeys_per_session():
    journeys = {j.session_id: j for j in analytics.user_journeys(_journey_events())}

    assert list(journeys) == ["S-1", "S-2", "S-3"]
    assert journeys["S-1"].duration_minutes == 10.0
    assert journeys["S-1"].converted is True
    assert journeys["S-1"].furthest_step == "purchase"
    assert journeys["S-1"].purchase_value == 59.99
    assert journeys["S-2"].furthest_step == "page_view"
    assert journeys["S-3"].duration_minutes == 0.0

    rows = dict(analytics.journey_rows(list(journeys.values())))
    assert rows["S-2"] == [
        "S-2", "U-2", T0.isoformat(), (T0 + timedelta(minutes=1)).isoformat(), 1.0,
        1, 0, 1, 0, 0, 0, 0.0, "page_view", "no",
    ]
    assert rows["S-1"][-3:] == [59.99, "purchase", "yes"]


def test_journey_summary():
    summary = analytics.journey_summary(analytics.user_journeys(_journey_events()))

    assert summary == {
        "sessions": 3,
        "users": 2,
        "converted_sessions": 1,
        "conversion_rate": 0.3333,
        "average_duration_minutes": 3.7,
        "purchase_value": 59.99,
        "average_purchase_value": 59.99,
    }
    assert analytics.journey_summary_rows(summary, "2024-01-15T10:00") == [
        ("2024-01-15T10:00", ["2024-01-15T10:00", 3, 2, 1, 0.3333, 3.7, 59.99, 59.99]),
    ]


def test_journey_summary_of_nothing():
    summary = analytics.journey_summary([])

    assert summary["sessions"] == 0
    assert summary["conversion_rate"] == 0.0
    assert summary["average_duration_minutes"] == 0.0
    assert summary["average_purchase_value"] == 0.0


def test_category_analysis():
    events = [
        _event("support", "ticket_created", T0, ticketId="T-1", category="billing", priority="urgent"),
        _event("support", "ticket_updated", T0 + timedelta(hours=2), ticketId="T-1", status="resolved"),
        _event("support", "satisfaction_score", T0 + timedelta(hours=3), ticketId="T-1", score=4),
        _event("support", "ticket_created", T0, ticketId="T-2", category="billing", priority="low"),
        _event("support", "ticket_created", T0 + timedelta(minutes=1), ticketId="T-2", category="billing",
               priority="low"),
        _event("support", "ticket_created", T0, ticketId="T-3", priority="high"),
    ]

    stats = analytics.category_analysis(events)

    assert list(stats) == ["billing", "uncategorized"]
    billing = stats["billing"]
    assert (billing.tickets_created, billing.tickets_resolved) == (2, 1)
    assert billing.average_resolution_hours == 2.0
    assert billing.average_satisfaction == 4.0
    assert billing.escalation_rate == 0.5
    assert stats["uncategorized"].escalation_rate == 1.0

    rows = dict(analytics.category_rows(stats, "2024-01-15"))
    assert rows["2024-01-15:uncategorized"] == [
        "2024-01-15:uncategorized", "2024-01-15", "uncategorized", 1, 0, "", "", 1.0,
    ]


def test_support_daily_metrics():
    day = T0.date()
    events = [
        _event("support", "ticket_created", T0 - timedelta(days=2), ticketId="T-0", priority="low"),
        _event("support", "ticket_updated", T0, ticketId="T-0", status="resolved"),
        _event("support", "satisfaction_score", T0 - timedelta(days=1), ticketId="T-0", score=3),
        _event("support", "ticket_created", T0, ticketId="T-1", priority="urgent"),
        _event("support", "ticket_updated", T0 + timedelta(minutes=30), ticketId="T-1", status="in_progress"),
        _event("support", "ticket_updated", T0 + timedelta(hours=4), ticketId="T-1", status="resolved"),
        _event("support", "satisfaction_score", T0 + timedelta(hours=5), ticketId="T-1", score=5),
        _event("support", "ticket_created", T0 + timedelta(hours=1), ticketId="T-2", priority="low"),
    ]

    metrics = analytics.support_daily_metrics(events, day)

    assert metrics == {
        "tickets_created": 2,
        "tickets_resolved": 2,
        "tickets_pending": 1,
        "average_response_hours": 0.5,
        "average_resolution_hours": 26.0,
        "average_satisfaction": 5.0,
        "sla_compliance": 0.5,
        "escalation_rate": 0.5,
    }


def test_support_metric_rows_leave_missing_averages_blank():
    rows = analytics.support_metric_rows(analytics.support_daily_metrics([], T0.date()), T0.date())

    assert rows == [("2024-01-15", ["2024-01-15", 0, 0, 0, "", "", "", 0.0, 0.0])]


def test_product_performance_uses_latest_catalog_details():
    events = [
        _event("inventory", "product_updated", T0 - timedelta(days=3), productId="P-1", sku="SKU-1", name="Old Mug"),
        _event("inventory", "product_updated", T0 - timedelta(days=1), productId="P-1", sku="SKU-1", name="Mug"),
        _event("user_activity", "product_view", T0, sessionId="S-9", productId="P-9"),
        _event("user_activity", "page_view", T0, sessionId="S-1"),
    ]
    for n in range(4):
        events.append(_event("user_activity", "product_view", T0, sessionId=f"S-{n}", productId="P-1"))
    for n in range(2):
        events.append(_event("user_activity", "add_to_cart", T0, sessionId=f"S-{n}", productId="P-1"))
    events.append(_event("user_activity", "purchase", T0, sessionId="S-0", productId="P-1", value=12.5))

    products = analytics.product_performance(events)

    assert [p.product_id for p in products] == ["P-1", "P-9"]
    assert products[1].name == ""
    assert products[1].conversion_rate == 0.0

    rows = dict(analytics.product_rows(products, "2024-01-16"))
    assert rows["P-1"] == ["P-1", "Mug", "SKU-1", 4, 2, 1, 12.5, 0.25, 3.125, "2024-01-16"]


def test_kpi_dashboard():
    events = [
        _event("order", "created", T0, orderId="ORD-1", customerId="C-1", amount=100.0),
        _event("order", "updated", T0 + timedelta(hours=1), orderId="ORD-1", customerId="C-1", amount=110.0),
        _event("order", "created", T0, orderId="ORD-2", customerId="C-2", amount=50.0),
        _event("payment", "refund_processed", T0, paymentId="P-1", orderId="ORD-1", amount=10.0),
        _event("support", "satisfaction_score", T0, ticketId="T-1", score=4),
        _event("support", "satisfaction_score", T0, ticketId="T-2", score=5),
        _event("user_activity", "sign_up", T0, sessionId="S-4", userId="U-3"),
    ]
    for session, user, steps in (
        ("S-1", "U-1", ["page_view", "add_to_cart", "purchase"]),
        ("S-2", "U-2", ["page_view", "add_to_cart"]),
        ("S-3", "U-2", ["page_view"]),
    ):
        for step in steps:
            events.append(_event("user_activity", step, T0, sessionId=session, userId=user))

    kpis = analytics.kpi_dashboard(events)

    assert kpis == {
        "revenue": 160.0,
        "orders": 2,
        "average_order_value": 80.0,
        "customers": 2,
        "visitors": 3,
        "sign_ups": 1,
        "conversion_rate": 0.25,
        "cart_abandonment_rate": 0.5,
        "refund_rate": 0.5,
        "customer_satisfaction": 4.5,
    }


def test_kpi_rows_of_an_empty_day():
    rows = analytics.kpi_rows(analytics.kpi_dashboard([]), date(2024, 1, 14))

    assert rows == [("2024-01-14", ["2024-01-14", 0.0, 0, 0.0, 0, 0, 0, 0.0, 0.0, 0.0, ""])]
