"""Google Calendar sync adapter, outbound half.

Mirrors single reservations to the complex's Google calendar over the REST
API with httpx. Every call builds its own bound client from the complex's
stored credentials; nothing is shared between complexes or requests.

Sync is best effort. Local state is authoritative: the outbound helpers
never raise to their callers, they log and return None/False instead.
Transient failures (network errors, timeouts, 429, 5xx, 403 rate limits) are
retried with exponential backoff. Authorization failures are never retried
and drop the stored credentials so the complex has to reconnect.
"""

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote, urlencode

import httpx
from cryptography.fernet import InvalidToken
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.database import async_session_factory
from app.core.errors import PreconditionFailed, UpstreamUnavailable
from app.models.calendar import CalendarChannel, CalendarLink
from app.models.reservation import Reservation, ReservationStatus

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
CALENDAR_SCOPES = ("https://www.googleapis.com/auth/calendar.events", "https://www.googleapis.com/auth/calendar.readonly")

# Private extended property linking an event back to its reservation
RESERVATION_TAG = "agendaCertaReservationId"

RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})
AUTH_ERROR_CODES = frozenset({"invalid_grant", "invalid_client", "unauthorized_client"})


# ---------------------------------------------------------------------------
# Errors and retry policy
# ---------------------------------------------------------------------------


class CalendarSyncError(Exception):
    """A Google Calendar call failed (after retries, when retryable)."""

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False, attempts: int = 1):
        self.status_code = status_code
        self.retryable = retryable
        self.attempts = attempts
        super().__init__(message)


class CalendarAuthError(CalendarSyncError):
    """Credentials were rejected (revoked grant, bad client). Never retried."""


class SyncTokenExpired(CalendarSyncError):
    """Google answered 410: the incremental sync token must be rebuilt."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.sync_max_attempts),
            base_delay=settings.sync_base_delay_seconds,
            multiplier=settings.sync_backoff_multiplier,
            max_delay=settings.sync_max_delay_seconds,
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failed try (1-based)."""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.google_http_timeout_seconds)


def _error_reason(response: httpx.Response) -> tuple[str, str]:
    """(machine reason, message) from a Google error body, whatever its shape."""
    try:
        payload = response.json()
    except ValueError:
        return "", response.text[:200]

    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, str):
        # OAuth token endpoint: {"error": "invalid_grant", "error_description": "..."}
        return error, payload.get("error_description", error)
    if isinstance(error, dict):
        reasons = [e.get("reason", "") for e in error.get("errors", []) if isinstance(e, dict)]
        return (reasons[0] if reasons else error.get("status", "")), error.get("message", "")
    return "", response.text[:200]


def classify_response(op: str, response: httpx.Response, attempts: int) -> CalendarSyncError:
    """Turn a failed response into the matching error, flagging whether it may be retried."""
    code = response.status_code
    reason, message = _error_reason(response)
    text = f"{op}: HTTP {code} {reason} {message}".strip()

    if code == 401 or reason in AUTH_ERROR_CODES:
        return CalendarAuthError(text, status_code=code, attempts=attempts)
    if code == 410:
        return SyncTokenExpired(text, status_code=code, attempts=attempts)
    if code == 429 or code >= 500 or (code == 403 and reason in RATE_LIMIT_REASONS):
        return CalendarSyncError(text, status_code=code, retryable=True, attempts=attempts)
    return CalendarSyncError(text, status_code=code, attempts=attempts)


async def send_with_retry(
    op: str,
    method: str,
    url: str,
    *,
    policy: RetryPolicy | None = None,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    json: dict[str, Any] | None = None,
    data: dict[str, str] | None = None,
    accept: frozenset[int] = frozenset(),
) -> httpx.Response:
    """Send one logical request, retrying transient failures with exponential backoff.

    Statuses in ``accept`` are returned as-is alongside 2xx. Raises
    CalendarAuthError immediately, CalendarSyncError once attempts run out.
    """
    policy = policy or RetryPolicy.from_settings()
    attempt = 0
    while True:
        attempt += 1
        try:
            async with _http_client() as http:
                response = await http.request(method, url, headers=headers, params=params, json=json, data=data)
        except httpx.TransportError as exc:
            error = CalendarSyncError(f"{op}: {type(exc).__name__} {exc}", retryable=True, attempts=attempt)
        else:
            if response.is_success or response.status_code in accept:
                return response
            error = classify_response(op, response, attempt)

        if not error.retryable or attempt >= policy.max_attempts:
            logger.error(
                "Calendar %s failed after %d attempt(s) (status=%s): %s", op, attempt, error.status_code, error
            )
            raise error

        delay = policy.delay(attempt)
        logger.warning(
            "Calendar %s attempt %d/%d failed (status=%s), retrying in %.2fs",
            op,
            attempt,
            policy.max_attempts,
            error.status_code,
            delay,
        )
        await asyncio.sleep(delay)


# ---------------------------------------------------------------------------
# Bound API client
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    """Calendar API calls bound to one access token. Build a fresh one per operation."""

    def __init__(self, access_token: str, calendar_id: str | None = None, policy: RetryPolicy | None = None):
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self.calendar_id = calendar_id or settings.google_calendar_id
        self.policy = policy or RetryPolicy.from_settings()

    @property
    def _events_url(self) -> str:
        return f"{GOOGLE_CALENDAR_API}/calendars/{quote(self.calendar_id, safe='')}/events"

    async def _call(self, op: str, method: str, url: str, **kwargs) -> httpx.Response:
        return await send_with_retry(op, method, url, policy=self.policy, headers=self._headers, **kwargs)

    async def insert_event(self, body: dict) -> dict:
        response = await self._call("insert_event", "POST", self._events_url, json=body)
        return response.json()

    async def update_event(self, event_id: str, body: dict) -> dict:
        response = await self._call("update_event", "PUT", f"{self._events_url}/{quote(event_id, safe='')}", json=body)
        return response.json()

    async def delete_event(self, event_id: str) -> None:
        # Already gone counts as deleted
        await self._call(
            "delete_event", "DELETE", f"{self._events_url}/{quote(event_id, safe='')}", accept=frozenset({404, 410})
        )

    async def get_event(self, event_id: str) -> dict:
        response = await self._call("get_event", "GET", f"{self._events_url}/{quote(event_id, safe='')}")
        return response.json()

    async def list_changes(self, sync_token: str | None) -> tuple[list[dict], str | None]:
        """Events changed since ``sync_token`` (every event when None) and the next sync token.

        Raises SyncTokenExpired when Google has invalidated ``sync_token``.
        """
        items: list[dict] = []
        params: dict[str, Any] = {"showDeleted": "true", "maxResults": 250}
        if sync_token:
            params["syncToken"] = sync_token
        while True:
            response = await self._call("list_changes", "GET", self._events_url, params=params)
            page = response.json()
            items.extend(page.get("items", []))
            if page.get("nextPageToken"):
                params["pageToken"] = page["nextPageToken"]
                continue
            return items, page.get("nextSyncToken")

    async def watch(self, channel_id: str, token: str, address: str) -> dict:
        body = {"id": channel_id, "type": "web_hook", "address": address, "token": token}
        response = await self._call("watch", "POST", f"{self._events_url}/watch", json=body)
        return response.json()

    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        await self._call(
            "stop_channel",
            "POST",
            f"{GOOGLE_CALENDAR_API}/channels/stop",
            json={"id": channel_id, "resourceId": resource_id},
            accept=frozenset({404}),
        )

    async def get_calendar(self) -> dict:
        url = f"{GOOGLE_CALENDAR_API}/calendars/{quote(self.calendar_id, safe='')}"
        response = await self._call("get_calendar", "GET", url)
        return response.json()


# ---------------------------------------------------------------------------
# OAuth and stored credentials
# ---------------------------------------------------------------------------


def build_auth_url(state: str) -> str:
    params = {
        "client_id": settings.google_client_id,
        "redirect_uri": settings.google_redirect_uri,
        "response_type": "code",
        "scope": " ".join(CALENDAR_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code(code: str) -> dict:
    data = {
        "code": code,
        "client_id": settings.google_client_id,
        "client_secret": settings.google_client_secret,
        "redirect_uri": settings.google_redirect_uri,
        "grant_type": "authorization_code",
    }
    response = await send_with_retry("exchange_code", "POST", GOOGLE_TOKEN_URL, data=data)
    return response.json()


async def refresh_access_token(refresh_token: str) -> dict:
    data = {
        "client_id": settings.google_client_id,
        "client_secret": settings.google_client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }
    response = await send_with_retry("refresh_token", "POST", GOOGLE_TOKEN_URL, data=data)
    return response.json()


async def get_link(db: AsyncSession, complex_id: int) -> CalendarLink | None:
    result = await db.execute(select(CalendarLink).where(CalendarLink.complex_id == complex_id))
    return result.scalar_one_or_none()


async def store_credentials(db: AsyncSession, complex_id: int, tokens: dict) -> CalendarLink:
    """Upsert the complex's link from a token response.

    Google only sends a refresh token on first consent; a re-consent without
    one keeps the stored refresh token.
    """
    link = await get_link(db, complex_id)
    refresh_token = tokens.get("refresh_token")
    if link is None:
        if not refresh_token:
            raise PreconditionFailed("Google did not return a refresh token", code="missing_refresh_token")
        link = CalendarLink(complex_id=complex_id)
        db.add(link)
    if refresh_token:
        link.refresh_token = refresh_token

    link.access_token = tokens["access_token"]
    link.expires_at = datetime.now(UTC) + timedelta(seconds=int(tokens.get("expires_in", 3600)))
    link.token_type = tokens.get("token_type")
    link.scope = tokens.get("scope")
    await db.commit()
    logger.info("Stored Google Calendar credentials for complex %s", complex_id)
    return link


async def invalidate_credentials(db: AsyncSession, complex_id: int) -> None:
    """Forget the complex's link and channels so calls fail fast until it reconnects."""
    await db.execute(delete(CalendarChannel).where(CalendarChannel.complex_id == complex_id))
    await db.execute(delete(CalendarLink).where(CalendarLink.complex_id == complex_id))
    await db.commit()
    logger.warning("Google Calendar credentials removed for complex %s", complex_id)


async def get_client(db: AsyncSession, complex_id: int) -> GoogleCalendarClient | None:
    """A client bound to the complex's current access token, refreshing it when needed.

    Returns None when the complex is not connected, when its credentials were
    rejected (they are deleted) or when the refresh failed transiently.
    """
    link = await get_link(db, complex_id)
    if link is None:
        return None

    now = datetime.now(UTC)
    try:
        if not link.is_expired(now + timedelta(seconds=settings.google_token_refresh_skew_seconds)):
            return GoogleCalendarClient(link.access_token)

        tokens = await refresh_access_token(link.refresh_token)
    except (CalendarAuthError, InvalidToken):
        logger.warning("Google Calendar token refresh rejected for complex %s", complex_id)
        await invalidate_credentials(db, complex_id)
        return None
    except CalendarSyncError:
        logger.warning("Google Calendar token refresh failed for complex %s, skipping sync", complex_id)
        return None

    link.access_token = tokens["access_token"]
    link.expires_at = now + timedelta(seconds=int(tokens.get("expires_in", 3600)))
    if tokens.get("refresh_token"):
        link.refresh_token = tokens["refresh_token"]
    await db.commit()
    logger.info("Refreshed Google Calendar token for complex %s", complex_id)
    return GoogleCalendarClient(tokens["access_token"])


# ---------------------------------------------------------------------------
# Outbound mirroring
# ---------------------------------------------------------------------------


def build_event_body(reservation: Reservation) -> dict:
    """Event payload for a reservation. Needs ``resource`` and ``client`` loaded."""
    client_name = reservation.client.full_name
    tz = settings.google_event_timezone
    return {
        "summary": f"Reservation: {client_name}",
        "description": (
            f"Client: {client_name}\nResource: {reservation.resource.name}\nStatus: {reservation.status.value}"
        ),
        "location": reservation.resource.name,
        "start": {"dateTime": reservation.start_time.isoformat(), "timeZone": tz},
        "end": {"dateTime": reservation.end_time.isoformat(), "timeZone": tz},
        "extendedProperties": {"private": {RESERVATION_TAG: str(reservation.id)}},
    }


async def create_event(db: AsyncSession, complex_id: int, reservation: Reservation) -> str | None:
    """Mirror a reservation. Returns the new event id, or None when sync did not happen."""
    client = await get_client(db, complex_id)
    if client is None:
        return None
    try:
        event = await client.insert_event(build_event_body(reservation))
    except CalendarAuthError:
        await invalidate_credentials(db, complex_id)
        return None
    except CalendarSyncError:
        return None
    logger.info("Reservation %s mirrored as event %s", reservation.id, event.get("id"))
    return event.get("id")


async def update_event(db: AsyncSession, complex_id: int, reservation: Reservation) -> bool:
    if not reservation.external_event_id:
        return False
    client = await get_client(db, complex_id)
    if client is None:
        return False
    try:
        await client.update_event(reservation.external_event_id, build_event_body(reservation))
    except CalendarAuthError:
        await invalidate_credentials(db, complex_id)
        return False
    except CalendarSyncError:
        return False
    return True


async def delete_event(db: AsyncSession, complex_id: int, external_event_id: str | None) -> bool:
    if not external_event_id:
        return False
    client = await get_client(db, complex_id)
    if client is None:
        return False
    try:
        await client.delete_event(external_event_id)
    except CalendarAuthError:
        await invalidate_credentials(db, complex_id)
        return False
    except CalendarSyncError:
        return False
    return True


async def load_reservation(db: AsyncSession, reservation_id: int) -> Reservation | None:
    result = await db.execute(
        select(Reservation)
        .options(selectinload(Reservation.resource), selectinload(Reservation.client))
        .where(Reservation.id == reservation_id)
    )
    return result.scalar_one_or_none()


# Background entry points. They run after the response has been sent, in their
# own session, and only ever log failures.


async def mirror_created(complex_id: int, reservation_id: int) -> None:
    try:
        async with async_session_factory() as db:
            reservation = await load_reservation(db, reservation_id)
            if reservation is None or reservation.status == ReservationStatus.CANCELLED:
                return
            if reservation.is_recurring or reservation.external_event_id:
                return
            event_id = await create_event(db, complex_id, reservation)
            if event_id:
                reservation.external_event_id = event_id
                await db.commit()
    except Exception:
        logger.exception("Mirroring new reservation %s failed", reservation_id)


async def mirror_updated(complex_id: int, reservation_id: int) -> None:
    try:
        async with async_session_factory() as db:
            reservation = await load_reservation(db, reservation_id)
            if reservation is not None:
                await update_event(db, complex_id, reservation)
    except Exception:
        logger.exception("Mirroring update of reservation %s failed", reservation_id)


async def mirror_deleted(complex_id: int, external_event_id: str) -> None:
    try:
        async with async_session_factory() as db:
            await delete_event(db, complex_id, external_event_id)
    except Exception:
        logger.exception("Deleting mirrored event %s failed", external_event_id)


# ---------------------------------------------------------------------------
# Health, push channels and disconnect
# ---------------------------------------------------------------------------


async def check_health(db: AsyncSession, complex_id: int) -> dict:
    """connected / disconnected / error. Reads only: a refreshed token is not stored."""
    link = await get_link(db, complex_id)
    if link is None:
        return {"status": "disconnected", "detail": "Google Calendar is not connected"}

    policy = RetryPolicy(max_attempts=1)
    try:
        access_token = link.access_token
        if link.is_expired():
            access_token = (await refresh_access_token(link.refresh_token))["access_token"]
        await GoogleCalendarClient(access_token, policy=policy).get_calendar()
    except CalendarAuthError:
        return {"status": "error", "detail": "Google rejected the stored credentials"}
    except InvalidToken:
        return {"status": "error", "detail": "Stored credentials cannot be decrypted"}
    except CalendarSyncError as exc:
        return {"status": "error", "detail": f"Google Calendar unreachable (status={exc.status_code})"}
    return {"status": "connected", "detail": None}


async def stop_channels(db: AsyncSession, complex_id: int, client: GoogleCalendarClient | None) -> None:
    """Stop and forget every push channel of the complex. Stopping is best effort."""
    result = await db.execute(select(CalendarChannel).where(CalendarChannel.complex_id == complex_id))
    for channel in result.scalars().all():
        if client is not None and channel.google_resource_id:
            try:
                await client.stop_channel(channel.channel_id, channel.google_resource_id)
            except CalendarSyncError:
                logger.warning("Could not stop channel %s", channel.channel_id)
        await db.delete(channel)
    await db.flush()


async def start_watch(db: AsyncSession, complex_id: int) -> CalendarChannel:
    """Register a push channel for the complex's calendar and prime its sync token."""
    client = await get_client(db, complex_id)
    if client is None:
        raise PreconditionFailed("Google Calendar is not connected", code="calendar_not_connected")

    await stop_channels(db, complex_id, client)
    channel = CalendarChannel(
        complex_id=complex_id,
        channel_id=uuid.uuid4().hex,
        channel_token=secrets.token_urlsafe(32),
    )
    try:
        registered = await client.watch(channel.channel_id, channel.channel_token, settings.google_webhook_url)
        _, channel.sync_token = await client.list_changes(None)
    except CalendarAuthError:
        await invalidate_credentials(db, complex_id)
        raise PreconditionFailed("Google Calendar authorization was revoked", code="calendar_not_connected") from None
    except CalendarSyncError as exc:
        raise UpstreamUnavailable("Could not register the calendar channel", status=exc.status_code) from None

    channel.google_resource_id = registered.get("resourceId")
    if registered.get("expiration"):
        channel.expires_at = datetime.fromtimestamp(int(registered["expiration"]) / 1000, tz=UTC)
    db.add(channel)
    await db.commit()
    logger.info("Watching calendar of complex %s on channel %s", complex_id, channel.channel_id)
    return channel


async def disconnect(db: AsyncSession, complex_id: int) -> bool:
    """Stop channels and delete the complex's credentials. False when it was not connected."""
    link = await get_link(db, complex_id)
    if link is None:
        return False
    client = await get_client(db, complex_id)
    await stop_channels(db, complex_id, client)
    await invalidate_credentials(db, complex_id)
    return True
