"""Google Calendar API v3 client over a shared httpx.AsyncClient.

Features
- calendarList paging, events paging (one page in memory at a time), get/insert/update/delete.
- Every request goes through one asyncio.Semaphore so at most `max_concurrent_requests`
  calls are in flight across all sync workers and mutations.
- HTTP failures are classified into the remote error taxonomy; this client does not retry.
  Callers wrap calls with utils.retry.retry_async.
- A 401 triggers a single forced token refresh and replay of the request.

Refs:
- https://developers.google.com/calendar/api/v3/reference/events/list
- https://developers.google.com/calendar/api/guides/errors
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any
from urllib.parse import quote

import httpx

from ..errors import (
    RemoteConflict,
    RemoteError,
    RemoteFatal,
    RemoteNotFound,
    RemoteRateLimited,
    RemoteTransient,
)
from ..remote import RemoteCalendar, RemoteEvent, TimeWindow
from ..utils.retry import create_client
from .auth import TokenProvider

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_BASE_URL",
    "GoogleCalendarClient",
    "classify_response",
]

DEFAULT_BASE_URL = "https://www.googleapis.com/calendar/v3"

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}
_MINIMAL_FIELDS = "items(id,status,updated),nextPageToken"


def _error_payload(response: httpx.Response) -> tuple[str, str | None]:
    """Return (message, first reason) from a Google error body, tolerating non-JSON."""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    message = response.text.strip()[:200] or "unknown error"
    reason: str | None = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        err = payload["error"]
        if isinstance(err.get("message"), str) and err["message"].strip():
            message = " ".join(err["message"].split())[:200]
        errors = err.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            reason = errors[0].get("reason")
    return message, reason


def classify_response(response: httpx.Response) -> RemoteError:
    code = response.status_code
    message, reason = _error_payload(response)
    text = f"Google Calendar API {response.request.method} failed ({code}): {message}"
    if code == 429 or (code == 403 and reason in _RATE_LIMIT_REASONS):
        return RemoteRateLimited(text, status_code=code)
    if code in (404, 410):
        return RemoteNotFound(text, status_code=code)
    if code == 409:
        return RemoteConflict(text, status_code=code)
    if code == 408 or code >= 500:
        return RemoteTransient(text, status_code=code)
    return RemoteFatal(text, status_code=code)


class GoogleCalendarClient:
    """RemoteCalendarClient implementation for Google Calendar."""

    def __init__(
        self,
        tokens: TokenProvider,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = DEFAULT_BASE_URL,
        max_concurrent_requests: int = 8,
        page_size: int = 250,
        minimal_listing: bool = False,
        timeout: float = 30.0,
    ) -> None:
        self._tokens = tokens
        self._owns_http = http_client is None
        self._http = http_client or create_client(
            timeout=timeout, max_connections=max_concurrent_requests
        )
        self._base_url = base_url.rstrip("/")
        self._sem = asyncio.Semaphore(max_concurrent_requests)
        self.page_size = page_size
        self.minimal_listing = minimal_listing

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # -------------
    # Transport
    # -------------

    def _events_path(self, gcal_id: str, event_id: str | None = None) -> str:
        path = f"{self._base_url}/calendars/{quote(gcal_id, safe='')}/events"
        if event_id is not None:
            path += f"/{quote(event_id, safe='')}"
        return path

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, str] | None,
        json: Mapping[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        token = await self._tokens.get_access_token(force_refresh=force_refresh)
        async with self._sem:
            try:
                return await self._http.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                )
            except httpx.TransportError as exc:
                raise RemoteTransient(f"Google Calendar API {method} {url}: {exc}") from exc

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        json: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        response = await self._send(method, url, params=params, json=json, force_refresh=False)
        if response.status_code == 401:
            logger.info("google-token-rejected; refreshing once")
            response = await self._send(method, url, params=params, json=json, force_refresh=True)
        if response.status_code < 200 or response.status_code >= 300:
            raise classify_response(response)
        if response.status_code == 204 or not response.content:
            return None
        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteTransient(f"Google Calendar API returned invalid JSON for {url}") from exc
        return data if isinstance(data, dict) else {}

    # -------------
    # Calendars
    # -------------

    async def list_calendars(self) -> list[RemoteCalendar]:
        out: list[RemoteCalendar] = []
        page_token: str | None = None
        while True:
            params = {"showDeleted": "true", "showHidden": "true", "maxResults": "250"}
            if page_token:
                params["pageToken"] = page_token
            page = await self._request(
                "GET", f"{self._base_url}/users/me/calendarList", params=params
            ) or {}
            for entry in page.get("items") or []:
                if entry.get("id"):
                    out.append(RemoteCalendar.from_gcal(entry))
            page_token = page.get("nextPageToken")
            if not page_token:
                return out

    # -------------
    # Events
    # -------------

    async def iter_events(self, gcal_id: str, window: TimeWindow) -> AsyncIterator[RemoteEvent]:
        """Yield events overlapping `window`, fetching one page at a time.

        Recurring series are expanded into instances (singleEvents) so every cached row
        has a concrete start and end.
        """
        page_token: str | None = None
        while True:
            params = {
                **window.as_params(),
                "singleEvents": "true",
                "showDeleted": "false",
                "maxResults": str(self.page_size),
            }
            if self.minimal_listing:
                params["fields"] = _MINIMAL_FIELDS
            if page_token:
                params["pageToken"] = page_token
            page = await self._request("GET", self._events_path(gcal_id), params=params) or {}
            for item in page.get("items") or []:
                if not item.get("id"):
                    continue
                yield RemoteEvent.from_gcal(item, partial=self.minimal_listing)
            page_token = page.get("nextPageToken")
            if not page_token:
                return

    async def get_event(self, gcal_id: str, event_id: str) -> RemoteEvent:
        data = await self._request("GET", self._events_path(gcal_id, event_id)) or {}
        return RemoteEvent.from_gcal(data)

    async def create_event(self, gcal_id: str, body: Mapping[str, Any]) -> RemoteEvent:
        data = await self._request("POST", self._events_path(gcal_id), json=body) or {}
        return RemoteEvent.from_gcal(data)

    async def update_event(
        self, gcal_id: str, event_id: str, body: Mapping[str, Any]
    ) -> RemoteEvent:
        data = await self._request("PUT", self._events_path(gcal_id, event_id), json=body) or {}
        return RemoteEvent.from_gcal(data)

    async def delete_event(self, gcal_id: str, event_id: str) -> None:
        await self._request("DELETE", self._events_path(gcal_id, event_id))
