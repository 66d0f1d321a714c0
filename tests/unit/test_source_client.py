import pytest
import httpx

from conftest import COMMERCE_URL, RecordingChannel
from core.exceptions import SourceAuthenticationError, SourceNetworkError, SourceSyncError
from tracking.notifications.channels import ChannelDispatcher
from tracking.reports import ReportSender, render_report
from tracking.source_client import CommerceClient, order_snapshot, product_snapshot


class Recorder:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(handler, sleeps, **kwargs):
    async def sleep(seconds):
        sleeps.append(seconds)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CommerceClient(COMMERCE_URL, "commerce-token", page_size=2, http_client=http, sleep=sleep, **kwargs)


def _page(items, page, page_count):
    return httpx.Response(200, json={
        "data": items,
        "meta": {"pagination": {"page": page, "pageSize": 2, "pageCount": page_count}},
    })


@pytest.mark.asyncio
async def test_fetch_follows_pages_and_flattens():
    handler = Recorder([
        _page([{"id": 1, "attributes": {"orderNumber": "ORD-1", "updatedAt": "2024-01-15T10:00:00Z"}},
               {"id": 2, "attributes": {"orderNumber": "ORD-2", "updatedAt": "2024-01-15T10:01:00Z"}}], 1, 2),
        _page([{"id": 3, "orderNumber": "ORD-3", "updatedAt": "2024-01-15T10:02:00Z"}], 2, 2),
    ])
    client = _client(handler, [])

    records = await client.fetch_updated("orders", since="2024-01-15T09:00:00Z")

    assert [r["orderNumber"] for r in records] == ["ORD-1", "ORD-2", "ORD-3"]
    assert records[0]["id"] == 1
    first = handler.requests[0]
    assert first.url.path == "/api/orders"
    assert first.url.params["filters[updatedAt][$gt]"] == "2024-01-15T09:00:00Z"
    assert first.url.params["sort"] == "updatedAt:asc"
    assert first.headers["Authorization"] == "Bearer commerce-token"
    assert handler.requests[1].url.params["pagination[page]"] == "2"


@pytest.mark.asyncio
async def test_empty_result_stops_after_one_page():
    handler = Recorder([_page([], 1, 0)])
    client = _client(handler, [])

    assert await client.fetch_updated("products") == []
    assert "filters[updatedAt][$gt]" not in handler.requests[0].url.params


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff():
    handler = Recorder([
        httpx.Response(503),
        httpx.ConnectError("refused"),
        _page([{"id": 1, "updatedAt": "2024-01-15T10:00:00Z"}], 1, 1),
    ])
    sleeps = []
    client = _client(handler, sleeps)

    records = await client.fetch_updated("orders")

    assert len(records) == 1
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after():
    handler = Recorder([
        httpx.Response(429, headers={"Retry-After": "9"}),
        _page([], 1, 0),
    ])
    sleeps = []
    client = _client(handler, sleeps)

    await client.fetch_updated("orders")

    assert sleeps == [9.0]


@pytest.mark.asyncio
async def test_retries_exhausted_raise_network_error():
    handler = Recorder([httpx.Response(500)] * 3)
    client = _client(handler, [])

    with pytest.raises(SourceNetworkError) as exc_info:
        await client.fetch_updated("orders")

    assert exc_info.value.context["status_code"] == 500
    assert len(handler.requests) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 403])
async def test_auth_failure_is_not_retried(status_code):
    handler = Recorder([httpx.Response(status_code)])
    client = _client(handler, [])

    with pytest.raises(SourceAuthenticationError):
        await client.fetch_updated("orders")
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_client_error_raises_sync_error():
    handler = Recorder([httpx.Response(404)])
    client = _client(handler, [])

    with pytest.raises(SourceSyncError) as exc_info:
        await client.fetch_updated("orders")
    assert not isinstance(exc_info.value, SourceNetworkError)


@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_failures():
    handler = Recorder([httpx.Response(401)] * 5)
    client = _client(handler, [])

    for _ in range(5):
        with pytest.raises(SourceAuthenticationError):
            await client.fetch_updated("orders")

    with pytest.raises(SourceSyncError, match="Circuit breaker is open"):
        await client.fetch_updated("orders")
    assert len(handler.requests) == 5


@pytest.mark.asyncio
async def test_unconfigured_client_refuses_to_fetch():
    client = CommerceClient(None)

    assert client.is_configured is False
    with pytest.raises(SourceSyncError):
        await client.fetch_updated("orders")


def test_order_snapshot_mapping():
    payload = order_snapshot({
        "id": 7,
        "orderNumber": "ORD-7",
        "customer": {"data": {"id": 42, "attributes": {"email": "a@example.com"}}},
        "status": "processing",
        "total": 59.5,
        "items": [{"sku": "A"}, {"sku": "B"}],
        "updatedAt": "2024-01-15T10:00:00.000Z",
    })

    assert payload["eventId"] == "order-7-2024-01-15T10:00:00.000Z"
    assert payload["orderId"] == "ORD-7"
    assert payload["customerId"] == "42"
    assert payload["amount"] == 59.5
    assert payload["itemCount"] == 2
    assert payload["currency"] == "USD"


def test_product_snapshot_mapping():
    payload = product_snapshot({
        "id": 3,
        "sku": "SKU-3",
        "title": "Teapot",
        "inventory": 12,
        "supplier": {"data": {"id": 1, "attributes": {"name": "Acme"}}},
        "updatedAt": "2024-01-15T10:00:00Z",
    })

    assert payload["productId"] == "3"
    assert payload["name"] == "Teapot"
    assert payload["currentStock"] == 12
    assert payload["lowStockThreshold"] == 10
    assert payload["supplier"] == "Acme"


def test_render_report_nests_sections():
    notification = render_report("Daily summary", "2024-01-14", {
        "Overview": {"total_events": 3, "revenue": 10.5},
        "Reorder suggested": {},
    })

    assert notification.subject == "Daily summary: 2024-01-14"
    assert "  Total events: 3" in notification.body
    assert "Reorder suggested\n  (no data)" in notification.body


@pytest.mark.asyncio
async def test_failed_report_is_returned_not_raised():
    email = RecordingChannel("email", fail=True)
    sender = ReportSender(ChannelDispatcher({"email": email}), ["email"])

    results = await sender.send("Weekly report", "2024-W02", {"Overview": {"orders": 1}})

    assert [(r.channel, r.success) for r in results] == [("email", False)]
