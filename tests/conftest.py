"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
import httpx
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from core.config import Settings
from core.database import build_engine, build_session_factory, create_tables
from core.exceptions import NotificationError
from tracking.delivery.rate_limiter import QuotaLimiter
from tracking.notifications.channels import Notification, NotificationChannel
from tracking.services import TrackingServices
from tracking.verifier import compute_signature

TEST_SECRET = "test-webhook-secret"
SHEETS_URL = "https://sheets.test/v4/spreadsheets"
COMMERCE_URL = "https://commerce.test"

SPREADSHEET_IDS = {
    "orders": "sheet-orders",
    "support": "sheet-support",
    "inventory": "sheet-inventory",
    "analytics": "sheet-analytics",
    "business": "sheet-business",
}


class FakeClock:
    """Controllable wall clock; ``sleep`` advances time instead of waiting"""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 12, 0, 0)):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return (self.now - datetime(2024, 1, 1)).total_seconds()

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.advance(seconds)


class FakeSheets:
    """
    In-memory Google Sheets values API served through httpx.MockTransport.

    ``fail_next`` queues error responses returned before the store
    behaves normally again.
    """

    def __init__(self):
        self.sheets: Dict[Tuple[str, str], List[List[Any]]] = {}
        self.requests: List[httpx.Request] = []
        self._failures: List[Tuple[int, Dict[str, str]]] = []

    def fail_next(self, status_code: int, times: int = 1, headers: Optional[Dict[str, str]] = None):
        self._failures.extend([(status_code, headers or {})] * times)

    def rows(self, spreadsheet_id: str, sheet: str) -> List[List[Any]]:
        return self.sheets.get((spreadsheet_id, sheet), [])

    def row_for(self, spreadsheet_id: str, sheet: str, key: str) -> Optional[List[Any]]:
        for row in self.rows(spreadsheet_id, sheet):
            if row and str(row[0]) == key:
                return row
        return None

    @property
    def write_count(self) -> int:
        return sum(1 for r in self.requests if r.method == "POST")

    @staticmethod
    def _sheet_name(range_: str) -> str:
        name = range_.rsplit("!", 1)[0]
        if name.startswith("'") and name.endswith("'"):
            name = name[1:-1].replace("''", "'")
        return name

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._failures:
            status_code, headers = self._failures.pop(0)
            return httpx.Response(status_code, headers=headers, json={"error": {"code": status_code}})

        path = request.url.path
        prefix = "/v4/spreadsheets/"
        spreadsheet_id, _, tail = path[len(prefix):].partition("/")

        if spreadsheet_id not in SPREADSHEET_IDS.values():
            return httpx.Response(404, json={"error": {"code": 404}})

        if request.method == "GET" and not tail:
            return httpx.Response(200, json={"spreadsheetId": spreadsheet_id, "properties": {"title": "test"}})

        if tail == "values:batchUpdate":
            body = json.loads(request.content)
            for item in body["data"]:
                sheet = self._sheet_name(item["range"])
                row_number = int(item["range"].rsplit("!A", 1)[1])
                rows = self.sheets.setdefault((spreadsheet_id, sheet), [])
                while len(rows) < row_number:
                    rows.append([])
                rows[row_number - 1] = list(item["values"][0])
            return httpx.Response(200, json={"totalUpdatedRows": len(body["data"])})

        range_ = tail[len("values/"):]
        if request.method == "POST" and range_.endswith(":append"):
            sheet = self._sheet_name(range_[:-len(":append")])
            rows = self.sheets.setdefault((spreadsheet_id, sheet), [])
            new_rows = json.loads(request.content)["values"]
            first = len(rows) + 1
            rows.extend(list(r) for r in new_rows)
            updated = f"'{sheet}'!A{first}:Z{len(rows)}"
            return httpx.Response(200, json={"updates": {"updatedRange": updated, "updatedRows": len(new_rows)}})

        if request.method == "GET":
            sheet = self._sheet_name(range_)
            column = [[row[0]] if row else [] for row in self.rows(spreadsheet_id, sheet)]
            return httpx.Response(200, json={"values": column})

        return httpx.Response(400, json={"error": {"code": 400}})


class RecordingChannel(NotificationChannel):
    """Notification channel that remembers what it was asked to send"""

    def __init__(self, name: str, fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent: List[Notification] = []

    @property
    def is_configured(self) -> bool:
        return True

    async def send(self, notification: Notification) -> None:
        if self.fail:
            raise NotificationError(f"{self.name} is down", context={"channel": self.name})
        self.sent.append(notification)

    async def check(self) -> bool:
        return not self.fail


def sign(body: bytes, secret: str = TEST_SECRET) -> str:
    return f"sha256={compute_signature(body, secret)}"


def encode(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


def order_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "action": "created",
        "eventId": "evt-ord-1",
        "orderId": "ORD-1",
        "customerId": "CUST-1",
        "status": "pending",
        "amount": 109.97,
        "currency": "USD",
        "occurredAt": "2024-01-15T10:00:00Z",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sheets():
    return FakeSheets()


@pytest.fixture
def channels():
    return {"email": RecordingChannel("email"), "pager": RecordingChannel("pager")}


@pytest.fixture
def commerce_routes():
    """Path -> list of JSON bodies returned page by page"""
    return {}


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'tracking_test.db'}",
        WEBHOOK_SECRET=TEST_SECRET,
        SHEETS_API_URL=SHEETS_URL,
        SHEETS_ACCESS_TOKEN="test-token",
        SPREADSHEET_IDS=SPREADSHEET_IDS,
        SHEETS_QUOTA_PER_MINUTE=60,
        RETRY_JITTER=0.0,
        MAX_DELIVERY_ATTEMPTS=3,
        SUSTAINED_FAILURE_THRESHOLD=3,
        NOTIFICATION_WINDOW_SECONDS=300,
        SCHEDULER_ENABLED=False,
        COMMERCE_API_URL=None,
    )


@pytest_asyncio.fixture(scope="function")
async def test_engine(test_settings):
    """Create test database engine"""
    engine = build_engine(test_settings)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


def _commerce_handler(routes: Dict[str, List[Dict[str, Any]]]):
    def handler(request: httpx.Request) -> httpx.Response:
        pages = routes.get(request.url.path)
        if pages is None:
            return httpx.Response(404, json={"error": "not found"})
        page = int(request.url.params.get("pagination[page]", "1"))
        if page > len(pages):
            return httpx.Response(200, json={"data": [], "meta": {"pagination": {"page": page, "pageCount": len(pages)}}})
        return httpx.Response(200, json=pages[page - 1])
    return handler


@pytest_asyncio.fixture(scope="function")
async def services(test_settings, test_engine, session_factory, fake_sheets, channels, clock, commerce_routes):
    """Fully wired services on SQLite, fake Sheets and recording channels"""
    sheets_http = httpx.AsyncClient(transport=httpx.MockTransport(fake_sheets.handler))
    commerce_http = httpx.AsyncClient(transport=httpx.MockTransport(_commerce_handler(commerce_routes)))
    limiter = QuotaLimiter(test_settings.SHEETS_QUOTA_PER_MINUTE, clock=clock.monotonic, sleep=clock.sleep)

    container = TrackingServices(
        config=test_settings,
        engine=test_engine,
        session_factory=session_factory,
        sheets_http=sheets_http,
        commerce_http=commerce_http,
        channels=channels,
        limiter=limiter,
        sleep=clock.sleep,
        clock=clock
    )
    yield container
    await container.stop()
    await commerce_http.aclose()
