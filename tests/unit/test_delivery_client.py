import pytest
import httpx

from conftest import SHEETS_URL, SPREADSHEET_IDS, FakeClock, FakeSheets
from core.exceptions import PermanentDeliveryError, QuotaExceeded, TransientDeliveryError
from tracking.delivery.client import DeliveryClient
from tracking.delivery.rate_limiter import QuotaLimiter
from tracking.delivery.sheets_client import SheetsClient, parse_updated_rows


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def store():
    return FakeSheets()


def _client(store, clock, capacity=60, batch_size=100, rate_limit_retries=5):
    http = httpx.AsyncClient(transport=httpx.MockTransport(store.handler))
    sheets = SheetsClient(SHEETS_URL, "token", http_client=http)
    limiter = QuotaLimiter(capacity, clock=clock.monotonic, sleep=clock.sleep)
    return DeliveryClient(
        sheets, SPREADSHEET_IDS, limiter,
        batch_size=batch_size, rate_limit_retries=rate_limit_retries, sleep=clock.sleep
    )


@pytest.mark.parametrize("updated_range,expected", [
    ("'Orders'!A5:L7", [5, 6, 7]),
    ("Orders!A3", [3]),
    ("'Order Status'!A10:H10", [10]),
    ("", []),
    ("garbage", []),
])
def test_parse_updated_rows(updated_range, expected):
    assert parse_updated_rows(updated_range) == expected


@pytest.mark.asyncio
async def test_new_rows_are_appended_then_updated_in_place(store, fake_clock):
    client = _client(store, fake_clock)

    first = await client.append_or_update("orders/Orders", [("ORD-1", ["ORD-1", "pending"])])
    second = await client.append_or_update("orders/Orders", [("ORD-1", ["ORD-1", "shipped"])])

    assert (first.appended, first.updated) == (1, 0)
    assert (second.appended, second.updated) == (0, 1)
    assert store.rows("sheet-orders", "Orders") == [["ORD-1", "shipped"]]


@pytest.mark.asyncio
async def test_redelivery_never_duplicates_rows(store, fake_clock):
    client = _client(store, fake_clock)
    rows = [("evt-1", ["evt-1", 10]), ("evt-2", ["evt-2", 20])]

    await client.append_or_update("orders/Payments", rows)
    client.invalidate()
    await client.append_or_update("orders/Payments", rows)

    assert len(store.rows("sheet-orders", "Payments")) == 2


@pytest.mark.asyncio
async def test_duplicate_keys_in_one_call_collapse_to_last_value(store, fake_clock):
    client = _client(store, fake_clock)

    result = await client.append_or_update(
        "orders/Orders",
        [("ORD-1", ["ORD-1", "pending"]), ("ORD-2", ["ORD-2", "pending"]), ("ORD-1", ["ORD-1", "confirmed"])]
    )

    assert result.written == 2
    assert store.row_for("sheet-orders", "Orders", "ORD-1") == ["ORD-1", "confirmed"]


@pytest.mark.asyncio
async def test_existing_sheet_rows_are_found_by_key_column(store, fake_clock):
    store.sheets[("sheet-orders", "Orders")] = [["ORD-9", "old"], ["ORD-1", "old"]]
    client = _client(store, fake_clock)

    result = await client.append_or_update("orders/Orders", [("ORD-1", ["ORD-1", "new"])])

    assert result.updated == 1
    assert store.rows("sheet-orders", "Orders") == [["ORD-9", "old"], ["ORD-1", "new"]]


@pytest.mark.asyncio
async def test_rows_are_written_in_batches(store, fake_clock):
    client = _client(store, fake_clock, batch_size=2)
    rows = [(f"K{n}", [f"K{n}"]) for n in range(5)]

    await client.append_or_update("analytics/User Activity", rows)

    appends = [r for r in store.requests if r.url.path.endswith(":append")]
    assert len(appends) == 3
    assert len(store.rows("sheet-analytics", "User Activity")) == 5


@pytest.mark.asyncio
async def test_rate_limit_is_retried_with_growing_delay(store, fake_clock):
    client = _client(store, fake_clock)
    store.fail_next(429, times=3)

    result = await client.append_or_update("orders/Orders", [("ORD-1", ["ORD-1"])])

    assert result.appended == 1
    assert fake_clock.sleeps == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_retry_after_header_is_honoured(store, fake_clock):
    client = _client(store, fake_clock)
    store.fail_next(429, headers={"Retry-After": "7"})

    await client.append_or_update("orders/Orders", [("ORD-1", ["ORD-1"])])

    assert fake_clock.sleeps == [7.0]


@pytest.mark.asyncio
async def test_rate_limit_retries_exhausted_raises_quota_exceeded(store, fake_clock):
    client = _client(store, fake_clock, rate_limit_retries=2)
    store.fail_next(429, times=3)

    with pytest.raises(QuotaExceeded):
        await client.append_or_update("orders/Orders", [("ORD-1", ["ORD-1"])])


@pytest.mark.asyncio
async def test_pause_empties_shared_quota(store, fake_clock):
    client = _client(store, fake_clock)

    client.limiter.pause(30)
    assert client.get_remaining_quota() == 0

    fake_clock.advance(30)
    assert client.get_remaining_quota() == 60


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [400, 401, 403, 404])
async def test_client_errors_are_permanent(store, fake_clock, status_code):
    client = _client(store, fake_clock)
    store.fail_next(status_code)

    with pytest.raises(PermanentDeliveryError):
        await client.append_or_update("orders/Orders", [("ORD-1", ["ORD-1"])])


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [500, 502, 503])
async def test_server_errors_are_transient(store, fake_clock, status_code):
    client = _client(store, fake_clock)
    store.fail_next(status_code)

    with pytest.raises(TransientDeliveryError):
        await client.append_or_update("orders/Orders", [("ORD-1", ["ORD-1"])])


@pytest.mark.asyncio
async def test_connection_errors_are_transient(fake_clock):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    limiter = QuotaLimiter(60, clock=fake_clock.monotonic, sleep=fake_clock.sleep)
    client = DeliveryClient(SheetsClient(SHEETS_URL, "token", http_client=http), SPREADSHEET_IDS, limiter)

    with pytest.raises(TransientDeliveryError):
        await client.append_or_update("orders/Orders", [("ORD-1", ["ORD-1"])])
    with pytest.raises(TransientDeliveryError):
        await client.ping()


@pytest.mark.asyncio
async def test_failed_append_forces_key_column_reload(store, fake_clock):
    client = _client(store, fake_clock)
    await client.append_or_update("orders/Orders", [("ORD-1", ["ORD-1", "a"])])

    store.fail_next(503)
    with pytest.raises(TransientDeliveryError):
        await client.append_or_update("orders/Orders", [("ORD-2", ["ORD-2", "a"])])

    reads_before = sum(1 for r in store.requests if r.method == "GET")
    await client.append_or_update("orders/Orders", [("ORD-2", ["ORD-2", "b"])])
    reads_after = sum(1 for r in store.requests if r.method == "GET")

    assert reads_after == reads_before + 1
    assert store.row_for("sheet-orders", "Orders", "ORD-2") == ["ORD-2", "b"]


@pytest.mark.asyncio
async def test_unknown_spreadsheet_alias_is_permanent(store, fake_clock):
    client = _client(store, fake_clock)

    with pytest.raises(PermanentDeliveryError):
        await client.append_or_update("warehouse/Bins", [("B1", ["B1"])])
    with pytest.raises(PermanentDeliveryError):
        client.resolve("no-sheet-name")


@pytest.mark.asyncio
async def test_ping_checks_one_spreadsheet_without_spending_quota(store, fake_clock):
    client = _client(store, fake_clock)

    for _ in range(3):
        assert await client.ping() is True

    reads = [r for r in store.requests if r.method == "GET"]
    assert len(reads) == 3
    assert {r.url.path for r in reads} == {"/v4/spreadsheets/sheet-orders"}
    assert client.get_remaining_quota() == 60


@pytest.mark.asyncio
async def test_ping_answers_while_quota_is_exhausted(store, fake_clock):
    client = _client(store, fake_clock, capacity=2)
    await client.append_or_update("orders/Orders", [("ORD-1", ["ORD-1"])])
    assert client.get_remaining_quota() == 0

    assert await client.ping() is True
    assert fake_clock.sleeps == []


@pytest.mark.asyncio
async def test_limiter_waits_when_window_is_full(fake_clock):
    limiter = QuotaLimiter(2, window=60.0, clock=fake_clock.monotonic, sleep=fake_clock.sleep)

    await limiter.acquire()
    fake_clock.advance(10)
    await limiter.acquire()
    assert limiter.remaining() == 0

    await limiter.acquire()

    assert fake_clock.sleeps == [50.0]
    assert limiter.remaining() == 0


def test_limiter_rejects_zero_capacity():
    with pytest.raises(ValueError):
        QuotaLimiter(0)
