"""
Google Sheets v4 REST adapter.

Thin wrapper over the values endpoints used by delivery. Every HTTP
failure is mapped onto the delivery error taxonomy:

- timeout, connection failure, 5xx -> TransientDeliveryError
- 429 -> QuotaExceeded (with Retry-After when present)
- 400, 401, 403, 404 and other 4xx -> PermanentDeliveryError
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote
import logging
import re

import httpx

from core.exceptions import PermanentDeliveryError, QuotaExceeded, TransientDeliveryError

logger = logging.getLogger(__name__)

_RANGE_ROW = re.compile(r"![A-Z]+(\d+)(?::[A-Z]+(\d+))?$")


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def parse_updated_rows(updated_range: str) -> List[int]:
    """
    Row numbers covered by an A1 range such as ``'Orders'!A5:L7``.

    Returns an empty list when the range cannot be parsed.
    """
    match = _RANGE_ROW.search(updated_range or "")
    if not match:
        return []
    first = int(match.group(1))
    last = int(match.group(2) or first)
    return list(range(first, last + 1))


def _quote_sheet(sheet: str) -> str:
    return "'" + sheet.replace("'", "''") + "'"


class SheetsClient:
    """
    Async client for one Sheets API endpoint and access token.

    The httpx client is injectable so tests can use ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str],
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self):
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        context = {"method": method, "url": url}
        try:
            response = await self._client.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            raise TransientDeliveryError("Analytics store request timed out", context=context, original_exception=e)
        except httpx.TransportError as e:
            raise TransientDeliveryError("Analytics store unreachable", context=context, original_exception=e)

        status = response.status_code
        if status == 429:
            raise QuotaExceeded(
                "Analytics store quota exceeded",
                context={**context, "status_code": status},
                retry_after=_retry_after(response)
            )
        if status >= 500:
            raise TransientDeliveryError(
                f"Analytics store server error {status}",
                context={**context, "status_code": status, "response_body": response.text[:500]}
            )
        if status >= 400:
            raise PermanentDeliveryError(
                f"Analytics store rejected request with {status}",
                context={**context, "status_code": status, "response_body": response.text[:500]}
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise TransientDeliveryError(
                "Analytics store returned invalid JSON",
                context={**context, "response_body": response.text[:500]},
                original_exception=e
            )

    async def get_spreadsheet(self, spreadsheet_id: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"{self.base_url}/{spreadsheet_id}",
            params={"fields": "spreadsheetId,properties.title"}
        )

    async def get_values(self, spreadsheet_id: str, range_: str) -> List[List[Any]]:
        data = await self._request(
            "GET", f"{self.base_url}/{spreadsheet_id}/values/{quote(range_, safe='!:')}"
        )
        return data.get("values", [])

    async def read_column(self, spreadsheet_id: str, sheet: str) -> List[str]:
        """First-column values of ``sheet``; index 0 is row 1"""
        rows = await self.get_values(spreadsheet_id, f"{_quote_sheet(sheet)}!A:A")
        return [str(row[0]) if row else "" for row in rows]

    async def batch_update(self, spreadsheet_id: str, updates: Dict[int, List[Any]], sheet: str) -> int:
        """
        Overwrite whole rows in place.

        Args:
            updates: row number -> row values
        """
        data = [
            {"range": f"{_quote_sheet(sheet)}!A{row_number}", "values": [values]}
            for row_number, values in sorted(updates.items())
        ]
        result = await self._request(
            "POST",
            f"{self.base_url}/{spreadsheet_id}/values:batchUpdate",
            json={"valueInputOption": "USER_ENTERED", "data": data}
        )
        return int(result.get("totalUpdatedRows", len(data)))

    async def append(self, spreadsheet_id: str, sheet: str, rows: List[List[Any]]) -> List[int]:
        """
        Append rows below the last row of ``sheet``.

        Returns:
            Row numbers assigned by the store, in input order
        """
        range_ = quote(f"{_quote_sheet(sheet)}!A:A", safe="!:")
        result = await self._request(
            "POST",
            f"{self.base_url}/{spreadsheet_id}/values/{range_}:append",
            params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            json={"values": rows}
        )
        return parse_updated_rows(result.get("updates", {}).get("updatedRange", ""))
