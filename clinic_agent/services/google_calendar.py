"""HTTP client for the Google Calendar API v3 with retry logic, timeout
handling and OAuth2 access-token refresh.

Google Calendar API docs: https://developers.google.com/calendar/api/v3/reference
Access tokens are minted from a long-lived refresh token (OAuth2
``refresh_token`` grant) and reused until shortly before they expire.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx

from clinic_agent.config import (
    GOOGLE_CALENDAR_BASE_URL,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REFRESH_TOKEN,
    GOOGLE_TOKEN_URL,
    TIMEZONE,
)
from clinic_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0

# Refresh the access token this many seconds before Google says it expires.
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class CalendarAPIError(Exception):
    """Raised when a Google Calendar call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


BusyInterval = tuple[datetime, datetime]


class GoogleCalendarClient:
    """Thin wrapper around the Google Calendar REST API with automatic
    retries for timeouts and 5xx responses.

    Only the four operations the booking flow needs are exposed:
    ``free_busy``, ``create_event``, ``update_event`` and ``delete_event``.
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        refresh_token: str | None = None,
        *,
        base_url: str | None = None,
        timezone: str = TIMEZONE,
    ):
        self._client_id = client_id or GOOGLE_CLIENT_ID
        self._client_secret = client_secret or GOOGLE_CLIENT_SECRET
        self._refresh_token = refresh_token or GOOGLE_REFRESH_TOKEN
        self._timezone = timezone
        self._client = httpx.Client(
            base_url=base_url or GOOGLE_CALENDAR_BASE_URL,
            headers={"Content-Type": "application/json"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._access_token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # ── Auth ─────────────────────────────────────────────────────────

    def _get_access_token(self) -> str:
        """Return a valid access token, refreshing it when close to expiry."""
        with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            if not (self._client_id and self._client_secret and self._refresh_token):
                raise CalendarAPIError(
                    "Google Calendar credentials are not configured "
                    "(GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET / GOOGLE_REFRESH_TOKEN)."
                )

            try:
                response = self._client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                        "refresh_token": self._refresh_token,
                        "grant_type": "refresh_token",
                    },
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            except httpx.HTTPError as exc:
                raise CalendarAPIError(f"Token refresh failed: {exc}") from exc

            if response.status_code >= 400:
                raise CalendarAPIError(
                    f"Token refresh rejected {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            payload = response.json()
            self._access_token = payload["access_token"]
            expires_in = int(payload.get("expires_in", 3600))
            self._token_expires_at = time.monotonic() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS
            logger.debug("Google access token refreshed (expires in %ds)", expires_in)
            return self._access_token

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        operation = f"{method} {path.split('/')[1] if '/' in path else path}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                    headers={"Authorization": f"Bearer {self._get_access_token()}"},
                )
                if response.status_code >= 500:
                    raise CalendarAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise CalendarAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success(
                    "google_calendar", operation,
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                # DELETE returns 204 with an empty body
                return response.json() if response.content else {}

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure(
                    "google_calendar", operation, error_type=type(exc).__name__,
                )
                logger.warning(
                    "Calendar API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except CalendarAPIError as exc:
                metrics.record_failure(
                    "google_calendar", operation, error_type=f"http_{exc.status_code}",
                )
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Calendar API server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            backoff = INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))
            time.sleep(backoff)

        raise CalendarAPIError(
            f"Calendar API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    @staticmethod
    def _events_path(calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            path += f"/{quote(event_id, safe='')}"
        return path

    def _event_time(self, dt: datetime) -> dict[str, str]:
        # Wall-clock time plus an explicit zone so Google renders it in clinic time.
        local = dt.astimezone(ZoneInfo(self._timezone)).replace(tzinfo=None)
        return {"dateTime": local.isoformat(timespec="seconds"), "timeZone": self._timezone}

    # ── Public API methods ───────────────────────────────────────────

    def free_busy(
        self, calendar_id: str, time_min: datetime, time_max: datetime,
    ) -> list[BusyInterval]:
        """Return the busy intervals of *calendar_id* inside the window.

        **Not cached** — busy time changes in real-time and must always be
        fetched fresh.  Per-calendar errors reported inside a 200 response
        are raised as ``CalendarAPIError`` so they are never mistaken for an
        empty calendar.
        """
        data = self._request(
            "POST",
            "/freeBusy",
            json_body={
                "timeMin": time_min.isoformat(),
                "timeMax": time_max.isoformat(),
                "timeZone": self._timezone,
                "items": [{"id": calendar_id}],
            },
        )
        calendar = data.get("calendars", {}).get(calendar_id, {})
        if calendar.get("errors"):
            reasons = ", ".join(e.get("reason", "unknown") for e in calendar["errors"])
            raise CalendarAPIError(f"Free/busy query failed for {calendar_id}: {reasons}")

        intervals: list[BusyInterval] = []
        for busy in calendar.get("busy", []):
            start = datetime.fromisoformat(busy["start"].replace("Z", "+00:00"))
            end = datetime.fromisoformat(busy["end"].replace("Z", "+00:00"))
            intervals.append((start, end))
        return intervals

    def create_event(
        self,
        calendar_id: str,
        *,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
    ) -> str:
        """Insert an event and return its id."""
        data = self._request(
            "POST",
            self._events_path(calendar_id),
            json_body={
                "summary": summary,
                "description": description,
                "start": self._event_time(start),
                "end": self._event_time(end),
                "reminders": {
                    "useDefault": False,
                    "overrides": [
                        {"method": "popup", "minutes": 30},
                        {"method": "email", "minutes": 60},
                    ],
                },
            },
        )
        return data["id"]

    def update_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        start: datetime,
        end: datetime,
        summary: str | None = None,
        description: str | None = None,
    ) -> None:
        """Patch the time window (and optionally the texts) of an event."""
        body: dict[str, Any] = {"start": self._event_time(start), "end": self._event_time(end)}
        if summary:
            body["summary"] = summary
        if description:
            body["description"] = description
        self._request("PATCH", self._events_path(calendar_id, event_id), json_body=body)

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event.  An event that is already gone counts as deleted."""
        try:
            self._request("DELETE", self._events_path(calendar_id, event_id))
        except CalendarAPIError as exc:
            if exc.status_code in (404, 410):
                logger.info("Calendar event %s already deleted", event_id)
                return
            raise


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: GoogleCalendarClient | None = None
_client_lock = threading.Lock()


def get_calendar_client() -> GoogleCalendarClient:
    """Return a module-level GoogleCalendarClient singleton.

    Uses double-checked locking so that the lock is only acquired during
    the first initialisation, not on every subsequent call.
    """
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = GoogleCalendarClient()
    return _client
