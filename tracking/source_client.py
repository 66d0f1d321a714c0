"""
Commerce backend client used for periodic reconciliation.

Fetches orders and products changed since a watermark from the Strapi REST
API, with:
- Exponential backoff retry for transient failures
- Circuit breaker to stop hammering a failing backend
- Rate limit handling (Retry-After)
- Page-based pagination
"""

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import logging

import httpx

from core.exceptions import SourceAuthenticationError, SourceNetworkError, SourceSyncError

logger = logging.getLogger(__name__)

RESOURCES = ("orders", "products")


def _flatten(record: Dict[str, Any]) -> Dict[str, Any]:
    """Strapi v4 wraps fields in ``attributes``; lift them next to ``id``"""
    attributes = record.get("attributes")
    if isinstance(attributes, dict):
        flat = dict(attributes)
        flat.setdefault("id", record.get("id"))
        return flat
    return dict(record)


def order_snapshot(record: Dict[str, Any]) -> Dict[str, Any]:
    """Map a commerce order record onto the order_snapshot payload"""
    customer = record.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("data", customer)
        customer = _flatten(customer) if isinstance(customer, dict) else customer
    customer_id = record.get("customerId") or (customer.get("id") if isinstance(customer, dict) else customer)
    items = record.get("items") or []
    return {
        "eventId": f"order-{record.get('id')}-{record.get('updatedAt')}",
        "orderId": record.get("orderNumber") or record.get("orderId") or str(record.get("id")),
        "customerId": str(customer_id) if customer_id is not None else "",
        "status": record.get("status"),
        "amount": record.get("total", record.get("amount")),
        "currency": record.get("currency", "USD"),
        "customerEmail": record.get("customerEmail"),
        "itemCount": len(items) if isinstance(items, list) else None,
        "updatedAt": record.get("updatedAt"),
    }


def product_snapshot(record: Dict[str, Any]) -> Dict[str, Any]:
    """Map a commerce product record onto the product_snapshot payload"""
    supplier = record.get("supplier")
    if isinstance(supplier, dict):
        supplier = _flatten(supplier.get("data") or supplier).get("name")
    return {
        "eventId": f"product-{record.get('id')}-{record.get('updatedAt')}",
        "productId": str(record.get("productId") or record.get("id")),
        "sku": record.get("sku"),
        "name": record.get("name") or record.get("title"),
        "currentStock": record.get("inventory", record.get("stock")),
        "lowStockThreshold": record.get("lowStockThreshold", 10),
        "supplier": supplier,
        "updatedAt": record.get("updatedAt"),
    }


SNAPSHOTS: Dict[str, tuple] = {
    "orders": ("order_snapshot", order_snapshot),
    "products": ("product_snapshot", product_snapshot),
}


class CommerceClient:
    """
    Read-only client for the commerce backend.

    Attributes:
        max_retries: Maximum number of attempts per request (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: 30.0)
        circuit_breaker_threshold: Failures before circuit opens (default: 5)
        circuit_breaker_timeout: Seconds before circuit reset (default: 60)
    """

    def __init__(
        self,
        base_url: Optional[str],
        api_token: Optional[str] = None,
        page_size: int = 100,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_token = api_token
        self.page_size = page_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._client = http_client
        self._sleep = sleep

        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = 5
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = 60

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _is_circuit_open(self) -> bool:
        if self._circuit_breaker_open_until is None:
            return False
        if datetime.utcnow() >= self._circuit_breaker_open_until:
            logger.info("Circuit breaker reset for commerce backend")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False
        return True

    def _record_failure(self):
        self._circuit_breaker_failures += 1
        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.utcnow() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for commerce backend. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_success(self):
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _get(self, client: httpx.AsyncClient, url: str, params: Dict[str, Any]) -> httpx.Response:
        """
        GET with retry and exponential backoff.

        Raises:
            SourceAuthenticationError: 401/403
            SourceNetworkError: Transient failure after max retries
            SourceSyncError: Circuit open or other non-retryable status
        """
        if self._is_circuit_open():
            raise SourceSyncError(
                "Circuit breaker is open for commerce backend",
                context={"url": url, "open_until": self._circuit_breaker_open_until.isoformat()}
            )

        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            delay = self.retry_delay * (2 ** attempt)
            try:
                response = await client.get(url, headers=self._headers(), params=params, timeout=self.timeout)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                if not last_attempt:
                    logger.warning(f"Commerce request failed ({type(e).__name__}). Retrying in {delay} seconds")
                    await self._sleep(delay)
                    continue
                self._record_failure()
                raise SourceNetworkError(
                    f"Commerce backend unreachable after {self.max_retries} retries",
                    context={"url": url, "retry_count": attempt + 1},
                    original_exception=e
                )

            if response.status_code in (401, 403):
                self._record_failure()
                raise SourceAuthenticationError(
                    f"Authentication failed for {url}",
                    context={"status_code": response.status_code, "url": url}
                )

            if response.status_code == 429 or response.status_code >= 500:
                if not last_attempt:
                    if response.status_code == 429:
                        try:
                            delay = float(response.headers.get("Retry-After", delay))
                        except ValueError:
                            pass
                    logger.warning(
                        f"Commerce backend returned {response.status_code}. "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await self._sleep(delay)
                    continue
                self._record_failure()
                raise SourceNetworkError(
                    f"Commerce backend error {response.status_code} after {self.max_retries} retries",
                    context={"status_code": response.status_code, "url": url, "response_body": response.text[:500]}
                )

            if response.status_code >= 400:
                self._record_failure()
                raise SourceSyncError(
                    f"Commerce backend rejected request with {response.status_code}",
                    context={"status_code": response.status_code, "url": url}
                )

            self._record_success()
            return response

        raise SourceSyncError("Max retries exceeded", context={"url": url})

    async def fetch_updated(self, resource: str, since: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Fetch every record of ``resource`` updated after ``since``.

        Args:
            resource: "orders" or "products"
            since: ISO timestamp watermark (exclusive)

        Returns:
            Flattened records ordered by updatedAt
        """
        if not self.is_configured:
            raise SourceSyncError("COMMERCE_API_URL is not configured", context={"resource": resource})

        url = f"{self.base_url}/api/{resource}"
        params: Dict[str, Any] = {
            "sort": "updatedAt:asc",
            "pagination[pageSize]": self.page_size,
            "populate": "*",
        }
        if since:
            params["filters[updatedAt][$gt]"] = since

        records: List[Dict[str, Any]] = []
        page = 1
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            while True:
                params["pagination[page]"] = page
                logger.info(f"Fetching {resource} page {page} from commerce backend")
                response = await self._get(client, url, params)
                try:
                    body = response.json()
                except ValueError as e:
                    raise SourceSyncError(
                        "Failed to parse JSON response",
                        context={"url": url, "page": page, "response_body": response.text[:500]},
                        original_exception=e
                    )

                data = body.get("data", []) if isinstance(body, dict) else body
                records.extend(_flatten(item) for item in data or [])

                pagination = body.get("meta", {}).get("pagination", {}) if isinstance(body, dict) else {}
                page_count = pagination.get("pageCount")
                if not data or page_count is None or page >= page_count:
                    break
                page += 1
        finally:
            if self._client is None:
                await client.aclose()

        logger.info(f"Fetched {len(records)} updated {resource} ({page} pages)")
        return records
