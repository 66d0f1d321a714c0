"""
Aggregate computations behind the scheduled tiers.

All functions are pure: they take canonical events and return rows ready
for the analytics store, with the row key in the first column.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from schemas.events import CanonicalEvent

FUNNEL_STEPS = ("page_view", "product_view", "add_to_cart", "checkout_started", "purchase")
ORDER_KINDS = (("order", "created"), ("order", "updated"), ("commerce", "order_snapshot"))
PRODUCT_KINDS = (("inventory", "product_updated"), ("commerce", "product_snapshot"))
ESCALATED_PRIORITIES = ("high", "urgent")
RESOLVED_STATUSES = ("resolved", "closed")

Row = Tuple[str, List[Any]]


def _ratio(numerator: float, denominator: float) -> float:
    return round(numerator / denominator, 4) if denominator else 0.0


def _mean(values: Sequence[float], digits: int = 2) -> Optional[float]:
    return round(sum(values) / len(values), digits) if values else None


def _blank(value: Optional[float]) -> Any:
    return "" if value is None else value


def _hours(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


def _of_type(events: Iterable[CanonicalEvent], source_system: str, *event_types: str) -> List[CanonicalEvent]:
    return [
        e for e in events
        if e.source_system == source_system and (not event_types or e.event_type in event_types)
    ]


def latest_versions(
    events: Iterable[CanonicalEvent],
    kinds: Iterable[Tuple[str, str]],
    key_field: str
) -> Dict[str, CanonicalEvent]:
    """
    Latest event per ``key_field`` value among the given kinds.

    Every version of a record is a separate event; aggregates count the
    record once, as it currently stands. Events without the key field are
    kept individually under their event id.
    """
    wanted = set(kinds)
    latest: Dict[str, CanonicalEvent] = {}
    for event in events:
        if (event.source_system, event.event_type) not in wanted:
            continue
        key = event.payload.get(key_field) or event.event_id
        if key not in latest or event.occurred_at >= latest[key].occurred_at:
            latest[key] = event
    return latest


def placed_orders(events: Sequence[CanonicalEvent]) -> List[CanonicalEvent]:
    """Orders created among ``events``, each in its latest known version"""
    versions = latest_versions(events, ORDER_KINDS, "orderId")
    placed = {e.payload.get("orderId") or e.event_id for e in _of_type(events, "order", "created")}
    return [versions[key] for key in sorted(placed)]


# ============================================================================
# Hourly
# ============================================================================

@dataclass
class FunnelStep:
    step: str
    sessions: int
    step_conversion: float
    overall_conversion: float


def funnel_metrics(events: Sequence[CanonicalEvent]) -> List[FunnelStep]:
    """
    Unique sessions reaching each funnel step, with step-to-step and
    overall conversion.
    """
    sessions: Dict[str, set] = {step: set() for step in FUNNEL_STEPS}
    for event in _of_type(events, "user_activity", *FUNNEL_STEPS):
        sessions[event.event_type].add(event.payload.get("sessionId"))

    steps = []
    first = len(sessions[FUNNEL_STEPS[0]])
    previous = first
    for step in FUNNEL_STEPS:
        count = len(sessions[step])
        steps.append(FunnelStep(
            step=step,
            sessions=count,
            step_conversion=_ratio(count, previous),
            overall_conversion=_ratio(count, first),
        ))
        previous = count
    return steps


def funnel_rows(events: Sequence[CanonicalEvent], period: str) -> List[Row]:
    return [
        (f"{period}:{s.step}", [f"{period}:{s.step}", period, s.step, s.sessions, s.step_conversion, s.overall_conversion])
        for s in funnel_metrics(events)
    ]


@dataclass
class AgentStats:
    agent: str
    tickets_assigned: int = 0
    tickets_resolved: int = 0
    ratings: int = 0
    rating_total: int = 0

    @property
    def average_rating(self) -> Optional[float]:
        return round(self.rating_total / self.ratings, 2) if self.ratings else None

    @property
    def resolution_rate(self) -> float:
        return _ratio(self.tickets_resolved, self.tickets_assigned)


def agent_performance(events: Sequence[CanonicalEvent]) -> Dict[str, AgentStats]:
    """
    Per-agent ticket counts and satisfaction.

    A ticket belongs to the agent it was last assigned to; satisfaction
    scores are credited to that agent.
    """
    ordered = sorted(_of_type(events, "support"), key=lambda e: e.occurred_at)
    owner: Dict[str, str] = {}
    assigned: Dict[str, set] = defaultdict(set)
    resolved: Dict[str, set] = defaultdict(set)
    scores: List[Tuple[str, int]] = []

    for event in ordered:
        ticket = event.payload.get("ticketId")
        if event.event_type == "ticket_updated":
            agent = event.payload.get("assignedTo") or owner.get(ticket)
            if not agent:
                continue
            owner[ticket] = agent
            assigned[agent].add(ticket)
            if event.payload.get("status") in ("resolved", "closed"):
                resolved[agent].add(ticket)
        elif event.event_type == "satisfaction_score":
            scores.append((ticket, int(event.payload.get("score", 0))))

    stats: Dict[str, AgentStats] = {}
    for agent, tickets in assigned.items():
        stats[agent] = AgentStats(agent=agent, tickets_assigned=len(tickets), tickets_resolved=len(resolved[agent]))
    for ticket, score in scores:
        agent = owner.get(ticket)
        if agent in stats:
            stats[agent].ratings += 1
            stats[agent].rating_total += score
    return stats


def agent_rows(events: Sequence[CanonicalEvent], period: str) -> List[Row]:
    rows = []
    for agent, s in sorted(agent_performance(events).items()):
        key = f"{period}:{agent}"
        rows.append((key, [
            key, period, agent, s.tickets_assigned, s.tickets_resolved,
            s.resolution_rate, s.average_rating if s.average_rating is not None else "",
        ]))
    return rows


@dataclass
class UserJourney:
    session_id: str
    user_id: str
    started_at: datetime
    ended_at: datetime
    steps: Dict[str, int]
    purchase_value: float = 0.0

    @property
    def duration_minutes(self) -> float:
        return round((self.ended_at - self.started_at).total_seconds() / 60, 1)

    @property
    def converted(self) -> bool:
        return self.steps.get("purchase", 0) > 0

    @property
    def furthest_step(self) -> str:
        reached = [step for step in FUNNEL_STEPS if self.steps.get(step)]
        return reached[-1] if reached else ""


def user_journeys(events: Sequence[CanonicalEvent]) -> List[UserJourney]:
    """One journey per session: its time span, activity counts and purchases"""
    journeys: Dict[str, UserJourney] = {}
    for event in sorted(_of_type(events, "user_activity"), key=lambda e: e.occurred_at):
        session_id = event.payload.get("sessionId")
        journey = journeys.get(session_id)
        if journey is None:
            journey = journeys[session_id] = UserJourney(
                session_id=session_id,
                user_id=event.payload.get("userId"),
                started_at=event.occurred_at,
                ended_at=event.occurred_at,
                steps=defaultdict(int),
            )
        journey.ended_at = event.occurred_at
        journey.steps[event.event_type] += 1
        if event.event_type == "purchase":
            journey.purchase_value += float(event.payload.get("value") or 0)
    return [journeys[key] for key in sorted(journeys)]


def journey_rows(journeys: Sequence[UserJourney]) -> List[Row]:
    rows = []
    for j in journeys:
        rows.append((j.session_id, [
            j.session_id, j.user_id, j.started_at.isoformat(), j.ended_at.isoformat(), j.duration_minutes,
            j.steps.get("page_view", 0), j.steps.get("product_view", 0), j.steps.get("search", 0),
            j.steps.get("add_to_cart", 0), j.steps.get("checkout_started", 0), j.steps.get("purchase", 0),
            round(j.purchase_value, 2), j.furthest_step, "yes" if j.converted else "no",
        ]))
    return rows


def journey_summary(journeys: Sequence[UserJourney]) -> Dict[str, Any]:
    converted = [j for j in journeys if j.converted]
    revenue = sum(j.purchase_value for j in converted)
    return {
        "sessions": len(journeys),
        "users": len({j.user_id for j in journeys}),
        "converted_sessions": len(converted),
        "conversion_rate": _ratio(len(converted), len(journeys)),
        "average_duration_minutes": _mean([j.duration_minutes for j in journeys], 1) or 0.0,
        "purchase_value": round(revenue, 2),
        "average_purchase_value": round(revenue / len(converted), 2) if converted else 0.0,
    }


def journey_summary_rows(summary: Dict[str, Any], period: str) -> List[Row]:
    return [(period, [period, *summary.values()])]


def _ticket_lifecycle(events: Sequence[CanonicalEvent]):
    """Tickets by id (latest creation event), first-update and resolution times"""
    tickets = latest_versions(events, [("support", "ticket_created")], "ticketId")
    first_update: Dict[str, datetime] = {}
    resolved_at: Dict[str, datetime] = {}
    scores: Dict[str, List[int]] = defaultdict(list)
    for event in sorted(_of_type(events, "support"), key=lambda e: e.occurred_at):
        ticket = event.payload.get("ticketId")
        if event.event_type == "ticket_updated":
            first_update.setdefault(ticket, event.occurred_at)
            if event.payload.get("status") in RESOLVED_STATUSES:
                resolved_at.setdefault(ticket, event.occurred_at)
        elif event.event_type == "satisfaction_score":
            scores[ticket].append(int(event.payload.get("score", 0)))
    return tickets, first_update, resolved_at, scores


@dataclass
class CategoryStats:
    category: str
    tickets_created: int
    tickets_resolved: int
    average_resolution_hours: Optional[float]
    average_satisfaction: Optional[float]
    escalation_rate: float


def category_analysis(events: Sequence[CanonicalEvent]) -> Dict[str, CategoryStats]:
    """
    Ticket volume, resolution time, satisfaction and escalation per category.

    Tickets without a category are grouped as ``uncategorized``; urgent and
    high priority tickets count as escalated.
    """
    tickets, _, resolved_at, scores = _ticket_lifecycle(events)
    by_category: Dict[str, List[CanonicalEvent]] = defaultdict(list)
    for event in tickets.values():
        by_category[event.payload.get("category") or "uncategorized"].append(event)

    stats = {}
    for category, created in sorted(by_category.items()):
        ids = [e.payload.get("ticketId") for e in created]
        resolution = [
            _hours(e.occurred_at, resolved_at[e.payload.get("ticketId")])
            for e in created if e.payload.get("ticketId") in resolved_at
        ]
        ratings = [score for ticket in ids for score in scores.get(ticket, [])]
        escalated = [e for e in created if e.payload.get("priority") in ESCALATED_PRIORITIES]
        stats[category] = CategoryStats(
            category=category,
            tickets_created=len(created),
            tickets_resolved=len(resolution),
            average_resolution_hours=_mean(resolution),
            average_satisfaction=_mean(ratings),
            escalation_rate=_ratio(len(escalated), len(created)),
        )
    return stats


def category_rows(stats: Dict[str, CategoryStats], period: str) -> List[Row]:
    rows = []
    for category, s in stats.items():
        key = f"{period}:{category}"
        rows.append((key, [
            key, period, category, s.tickets_created, s.tickets_resolved,
            _blank(s.average_resolution_hours), _blank(s.average_satisfaction), s.escalation_rate,
        ]))
    return rows


# ============================================================================
# Daily
# ============================================================================

def daily_summary(events: Sequence[CanonicalEvent]) -> Dict[str, Any]:
    """Headline numbers for one day of events"""
    by_type: Dict[str, int] = defaultdict(int)
    for event in events:
        by_type[f"{event.source_system}.{event.event_type}"] += 1

    new_orders = placed_orders(events)
    revenue = sum(float(e.payload.get("amount") or 0) for e in new_orders)
    payments_failed = len(_of_type(events, "payment", "payment_failed"))
    refunds = _of_type(events, "payment", "refund_processed")
    tickets = list(latest_versions(events, [("support", "ticket_created")], "ticketId").values())
    urgent = [t for t in tickets if t.payload.get("priority") == "urgent"]
    low_stock = _of_type(events, "inventory", "low_stock_alert")
    delays = [
        e for e in _of_type(events, "shipping")
        if e.payload.get("status") == "exception" or (e.payload.get("delayDays") or 0) > 0
    ]

    return {
        "total_events": len(events),
        "orders": len(new_orders),
        "revenue": round(revenue, 2),
        "average_order_value": round(revenue / len(new_orders), 2) if new_orders else 0.0,
        "payments_failed": payments_failed,
        "refunds": len(refunds),
        "refunded_amount": round(sum(float(e.payload.get("amount") or 0) for e in refunds), 2),
        "tickets_opened": len(tickets),
        "urgent_tickets": len(urgent),
        "low_stock_alerts": len(low_stock),
        "shipping_delays": len(delays),
        "events_by_type": dict(sorted(by_type.items())),
    }


@dataclass
class StockForecast:
    product_id: str
    sku: str
    name: str
    current_stock: int
    daily_outflow: float
    days_remaining: Optional[float]
    reorder: bool


def inventory_forecast(
    events: Sequence[CanonicalEvent],
    lookback_days: int = 30,
    lead_time_days: int = 14,
    as_of: Optional[datetime] = None
) -> List[StockForecast]:
    """
    Days of stock left per product from average daily outflow.

    Stock levels come from the latest product update or snapshot; outflow
    from outbound stock movements inside the lookback window.
    """
    as_of = as_of or datetime.utcnow()
    since = as_of - timedelta(days=lookback_days)

    latest = latest_versions(events, PRODUCT_KINDS, "productId")

    outflow: Dict[str, int] = defaultdict(int)
    for event in _of_type(events, "inventory", "stock_movement"):
        if event.occurred_at >= since and event.payload.get("movementType") == "out":
            outflow[event.payload.get("productId")] += abs(int(event.payload.get("quantity") or 0))

    forecasts = []
    for product_id, event in sorted(latest.items()):
        stock = int(event.payload.get("currentStock") or 0)
        daily = round(outflow.get(product_id, 0) / lookback_days, 2)
        days_remaining = round(stock / daily, 1) if daily else None
        threshold = int(event.payload.get("lowStockThreshold") or 0)
        reorder = stock <= threshold or (days_remaining is not None and days_remaining <= lead_time_days)
        forecasts.append(StockForecast(
            product_id=product_id,
            sku=event.payload.get("sku", ""),
            name=event.payload.get("name", ""),
            current_stock=stock,
            daily_outflow=daily,
            days_remaining=days_remaining,
            reorder=reorder,
        ))
    return forecasts


def forecast_rows(forecasts: Sequence[StockForecast], period: str) -> List[Row]:
    return [
        (f.product_id, [
            f.product_id, f.sku, f.name, f.current_stock, f.daily_outflow,
            f.days_remaining if f.days_remaining is not None else "", "yes" if f.reorder else "no", period,
        ])
        for f in forecasts
    ]


def support_daily_metrics(events: Sequence[CanonicalEvent], day: date, sla_hours: float = 24.0) -> Dict[str, Any]:
    """
    Support headline numbers for ``day``.

    ``events`` may reach back before ``day`` so that tickets opened earlier
    and resolved on ``day`` get a resolution time.
    """
    tickets, first_update, resolved_at, scores = _ticket_lifecycle(events)
    opened = [e for e in tickets.values() if e.occurred_at.date() == day]
    resolved_today = [ticket for ticket, at in resolved_at.items() if at.date() == day]

    response = [
        _hours(e.occurred_at, first_update[e.payload.get("ticketId")])
        for e in opened if e.payload.get("ticketId") in first_update
    ]
    resolution = [
        _hours(tickets[ticket].occurred_at, resolved_at[ticket])
        for ticket in resolved_today if ticket in tickets
    ]
    ratings = [
        int(e.payload.get("score", 0))
        for e in _of_type(events, "support", "satisfaction_score") if e.occurred_at.date() == day
    ]
    escalated = [e for e in opened if e.payload.get("priority") in ESCALATED_PRIORITIES]

    return {
        "tickets_created": len(opened),
        "tickets_resolved": len(resolved_today),
        "tickets_pending": len([e for e in opened if e.payload.get("ticketId") not in resolved_at]),
        "average_response_hours": _mean(response),
        "average_resolution_hours": _mean(resolution),
        "average_satisfaction": _mean(ratings),
        "sla_compliance": _ratio(len([h for h in resolution if h <= sla_hours]), len(resolution)),
        "escalation_rate": _ratio(len(escalated), len(opened)),
    }


def support_metric_rows(metrics: Dict[str, Any], day: date) -> List[Row]:
    key = day.isoformat()
    return [(key, [key, *(_blank(value) for value in metrics.values())])]


@dataclass
class ProductPerformance:
    product_id: str
    sku: str
    name: str
    views: int = 0
    add_to_cart: int = 0
    purchases: int = 0
    revenue: float = 0.0

    @property
    def conversion_rate(self) -> float:
        return _ratio(self.purchases, self.views)

    @property
    def revenue_per_view(self) -> float:
        return _ratio(self.revenue, self.views)


def product_performance(events: Sequence[CanonicalEvent]) -> List[ProductPerformance]:
    """
    Views, cart adds, purchases and revenue per product from user activity,
    labelled with the catalog's latest product details.
    """
    catalog = latest_versions(events, PRODUCT_KINDS, "productId")
    products: Dict[str, ProductPerformance] = {}
    for event in _of_type(events, "user_activity", "product_view", "add_to_cart", "purchase"):
        product_id = event.payload.get("productId")
        if not product_id:
            continue
        stats = products.get(product_id)
        if stats is None:
            details = catalog[product_id].payload if product_id in catalog else {}
            stats = products[product_id] = ProductPerformance(
                product_id=product_id, sku=details.get("sku", ""), name=details.get("name", "")
            )
        if event.event_type == "product_view":
            stats.views += 1
        elif event.event_type == "add_to_cart":
            stats.add_to_cart += 1
        else:
            stats.purchases += 1
            stats.revenue += float(event.payload.get("value") or 0)
    return [products[key] for key in sorted(products)]


def product_rows(products: Sequence[ProductPerformance], period: str) -> List[Row]:
    return [
        (p.product_id, [
            p.product_id, p.name, p.sku, p.views, p.add_to_cart, p.purchases,
            round(p.revenue, 2), p.conversion_rate, p.revenue_per_view, period,
        ])
        for p in products
    ]


def kpi_dashboard(events: Sequence[CanonicalEvent]) -> Dict[str, Any]:
    """Business KPIs for one day of events"""
    orders = placed_orders(events)
    revenue = sum(float(e.payload.get("amount") or 0) for e in orders)
    refunds = _of_type(events, "payment", "refund_processed")

    activity = _of_type(events, "user_activity")
    sessions = {e.payload.get("sessionId") for e in activity}
    purchasing = {e.payload.get("sessionId") for e in activity if e.event_type == "purchase"}
    carting = {e.payload.get("sessionId") for e in activity if e.event_type == "add_to_cart"}
    ratings = [int(e.payload.get("score", 0)) for e in _of_type(events, "support", "satisfaction_score")]

    return {
        "revenue": round(revenue, 2),
        "orders": len(orders),
        "average_order_value": round(revenue / len(orders), 2) if orders else 0.0,
        "customers": len({e.payload.get("customerId") for e in orders}),
        "visitors": len({e.payload.get("userId") for e in activity}),
        "sign_ups": len(_of_type(events, "user_activity", "sign_up")),
        "conversion_rate": _ratio(len(purchasing), len(sessions)),
        "cart_abandonment_rate": _ratio(len(carting - purchasing), len(carting)),
        "refund_rate": _ratio(len(refunds), len(orders)),
        "customer_satisfaction": _mean(ratings),
    }


def kpi_rows(kpis: Dict[str, Any], day: date) -> List[Row]:
    key = day.isoformat()
    return [(key, [key, *(_blank(value) for value in kpis.values())])]


# ============================================================================
# Weekly
# ============================================================================

def week_start(value: datetime) -> date:
    day = value.date()
    return day - timedelta(days=day.weekday())


def cohort_retention(
    events: Sequence[CanonicalEvent],
    periods: int = 12,
    as_of: Optional[datetime] = None
) -> Dict[date, List[float]]:
    """
    Weekly cohort retention over the trailing ``periods`` weeks.

    A customer's cohort is the week of their first order; retention at
    offset n is the share of the cohort ordering again in week cohort+n.
    """
    as_of = as_of or datetime.utcnow()
    current = week_start(as_of)
    earliest = current - timedelta(weeks=periods - 1)

    # One placement per order, at its earliest creation
    placements: Dict[str, CanonicalEvent] = {}
    for event in _of_type(events, "order", "created"):
        key = event.payload.get("orderId") or event.event_id
        if key not in placements or event.occurred_at < placements[key].occurred_at:
            placements[key] = event

    weeks_by_customer: Dict[str, set] = defaultdict(set)
    for event in placements.values():
        customer = event.payload.get("customerId")
        if customer:
            weeks_by_customer[customer].add(week_start(event.occurred_at))

    cohorts: Dict[date, List[set]] = {}
    for customer, weeks in weeks_by_customer.items():
        first = min(weeks)
        if first < earliest or first > current:
            continue
        span = (current - first).days // 7 + 1
        buckets = cohorts.setdefault(first, [set() for _ in range(span)])
        for week in weeks:
            offset = (week - first).days // 7
            if 0 <= offset < span:
                buckets[offset].add(customer)

    retention = {}
    for cohort, buckets in sorted(cohorts.items()):
        size = len(buckets[0])
        retention[cohort] = [_ratio(len(b), size) for b in buckets]
    return retention


def cohort_rows(retention: Dict[date, List[float]], periods: int = 12) -> List[Row]:
    rows = []
    for cohort, rates in retention.items():
        key = cohort.isoformat()
        padded = list(rates) + [""] * (periods - len(rates))
        rows.append((key, [key, *padded[:periods]]))
    return rows


# ============================================================================
# Monthly
# ============================================================================

@dataclass
class CustomerSegment:
    customer_id: str
    orders: int
    total_spend: float
    last_order_at: datetime
    recency_days: int
    segment: str


def customer_segments(events: Sequence[CanonicalEvent], as_of: Optional[datetime] = None) -> List[CustomerSegment]:
    """
    Recency / frequency / monetary segmentation of customers.

    Orders are deduplicated by orderId, keeping the latest version.
    """
    as_of = as_of or datetime.utcnow()
    orders = latest_versions(events, ORDER_KINDS, "orderId")

    per_customer: Dict[str, List[CanonicalEvent]] = defaultdict(list)
    for event in orders.values():
        if event.payload.get("status") in ("cancelled", "refunded"):
            continue
        per_customer[event.payload.get("customerId")].append(event)

    segments = []
    for customer, placed in sorted(per_customer.items()):
        spend = round(sum(float(e.payload.get("amount") or 0) for e in placed), 2)
        last = max(e.occurred_at for e in placed)
        recency = (as_of - last).days
        count = len(placed)
        if recency <= 30 and count >= 3:
            segment = "champion"
        elif count >= 3:
            segment = "loyal"
        elif recency > 90:
            segment = "at_risk"
        elif count == 1 and recency <= 30:
            segment = "new"
        else:
            segment = "regular"
        segments.append(CustomerSegment(customer, count, spend, last, recency, segment))
    return segments


def segment_rows(segments: Sequence[CustomerSegment], period: str) -> List[Row]:
    return [
        (s.customer_id, [s.customer_id, s.segment, s.orders, s.total_spend, s.last_order_at.isoformat(), s.recency_days, period])
        for s in segments
    ]


def supplier_rollup(events: Sequence[CanonicalEvent]) -> Dict[str, Dict[str, Any]]:
    """Inbound volume, cost and stock health per supplier"""
    rollup: Dict[str, Dict[str, Any]] = defaultdict(lambda: {
        "products": set(), "inbound_units": 0, "inbound_cost": 0.0, "low_stock_products": set(),
    })
    product_supplier: Dict[str, str] = {}

    for event in sorted(events, key=lambda e: e.occurred_at):
        payload = event.payload
        supplier = payload.get("supplier")
        product_id = payload.get("productId")
        if supplier and product_id:
            product_supplier[product_id] = supplier
            rollup[supplier]["products"].add(product_id)
        if (event.source_system, event.event_type) == ("inventory", "stock_movement"):
            if payload.get("movementType") == "in" and supplier:
                rollup[supplier]["inbound_units"] += abs(int(payload.get("quantity") or 0))
                rollup[supplier]["inbound_cost"] += float(payload.get("costImpact") or 0)
        elif (event.source_system, event.event_type) == ("inventory", "low_stock_alert"):
            owner = product_supplier.get(product_id)
            if owner:
                rollup[owner]["low_stock_products"].add(product_id)

    return {
        supplier: {
            "products": len(data["products"]),
            "inbound_units": data["inbound_units"],
            "inbound_cost": round(data["inbound_cost"], 2),
            "low_stock_products": len(data["low_stock_products"]),
        }
        for supplier, data in sorted(rollup.items())
    }


def supplier_rows(rollup: Dict[str, Dict[str, Any]], period: str) -> List[Row]:
    rows = []
    for supplier, data in rollup.items():
        key = f"{period}:{supplier}"
        rows.append((key, [
            key, period, supplier, data["products"], data["inbound_units"],
            data["inbound_cost"], data["low_stock_products"],
        ]))
    return rows
