"""Async HTTP client for Google Drive v3 and Sheets v4.

One client is built per tool call from the user's OAuth access token.
Timeouts, connection errors and 5xx responses are retried with
exponential backoff; 4xx responses are raised immediately so the tool
layer can tell "not found" from "access denied".
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import httpx

from agent_workspace.config import GOOGLE_DRIVE_BASE_URL, GOOGLE_SHEETS_BASE_URL
from agent_workspace.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 30.0

FILE_LIST_FIELDS = "files(id,name,mimeType,createdTime,modifiedTime)"


class GoogleAPIError(Exception):
    """Raised when a Google API call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or str(error)
    return str(body)[:300]


class GoogleWorkspaceClient:
    """Thin async wrapper over the Drive and Sheets REST endpoints."""

    def __init__(
        self,
        access_token: str,
        *,
        drive_base_url: str | None = None,
        sheets_base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        backoff_seconds: float = INITIAL_BACKOFF_SECONDS,
    ):
        self._drive_base_url = (drive_base_url or GOOGLE_DRIVE_BASE_URL).rstrip("/")
        self._sheets_base_url = (sheets_base_url or GOOGLE_SHEETS_BASE_URL).rstrip("/")
        self._backoff_seconds = backoff_seconds
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self) -> GoogleWorkspaceClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retries."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                with metrics.track("google", operation):
                    response = await self._client.request(method, url, params=params, json=json_body)
                    if response.status_code >= 400:
                        raise GoogleAPIError(
                            f"Google API error {response.status_code}: {_error_message(response)}",
                            status_code=response.status_code,
                        )
                return response

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Google API attempt %d/%d failed (%s)",
                    attempt, MAX_RETRIES, type(exc).__name__,
                )
            except GoogleAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Google API server error %d on attempt %d/%d",
                        exc.status_code, attempt, MAX_RETRIES,
                    )
                else:
                    raise

            if attempt < MAX_RETRIES:
                await asyncio.sleep(self._backoff_seconds * (2 ** (attempt - 1)))

        status = getattr(last_error, "status_code", None)
        raise GoogleAPIError(
            f"Google API request failed after {MAX_RETRIES} attempts: {last_error}",
            status_code=status,
        )

    # ── Drive ────────────────────────────────────────────────────────

    async def list_files(self, page_size: int = 10) -> list[dict[str, Any]]:
        """Most recently modified files first."""
        response = await self._request(
            "GET",
            f"{self._drive_base_url}/files",
            operation="drive.list_files",
            params={
                "pageSize": page_size,
                "fields": FILE_LIST_FIELDS,
                "orderBy": "modifiedTime desc",
            },
        )
        return response.json().get("files", [])

    async def get_file_metadata(self, file_id: str) -> dict[str, Any]:
        response = await self._request(
            "GET",
            f"{self._drive_base_url}/files/{quote(file_id, safe='')}",
            operation="drive.get_file",
            params={"fields": "id,name,mimeType,size"},
        )
        return response.json()

    async def export_file(self, file_id: str, mime_type: str) -> str:
        response = await self._request(
            "GET",
            f"{self._drive_base_url}/files/{quote(file_id, safe='')}/export",
            operation="drive.export_file",
            params={"mimeType": mime_type},
        )
        return response.text

    async def download_file(self, file_id: str) -> bytes:
        response = await self._request(
            "GET",
            f"{self._drive_base_url}/files/{quote(file_id, safe='')}",
            operation="drive.download_file",
            params={"alt": "media"},
        )
        return response.content

    # ── Sheets ───────────────────────────────────────────────────────

    def _values_url(self, spreadsheet_id: str, cell_range: str) -> str:
        return (
            f"{self._sheets_base_url}/spreadsheets/{quote(spreadsheet_id, safe='')}"
            f"/values/{quote(cell_range, safe='')}"
        )

    async def get_values(self, spreadsheet_id: str, cell_range: str) -> dict[str, Any]:
        response = await self._request(
            "GET", self._values_url(spreadsheet_id, cell_range), operation="sheets.get_values",
        )
        return response.json()

    async def update_values(
        self, spreadsheet_id: str, cell_range: str, values: list[list[Any]],
    ) -> dict[str, Any]:
        """Overwrite ``cell_range`` with ``values`` (no append)."""
        response = await self._request(
            "PUT",
            self._values_url(spreadsheet_id, cell_range),
            operation="sheets.update_values",
            params={"valueInputOption": "RAW"},
            json_body={"range": cell_range, "majorDimension": "ROWS", "values": values},
        )
        return response.json()
