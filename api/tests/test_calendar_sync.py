"""Google Calendar sync tests: retry policy, credentials, mirroring, inbound reconciliation."""

import json
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import select

from app.core.auth import create_oauth_state
from app.core.database import async_session_factory
from app.models import CalendarChannel, CalendarLink, Reservation, ReservationStatus
from app.services import google_calendar
from app.services.google_calendar import (
    CalendarAuthError,
    CalendarSyncError,
    GoogleCalendarClient,
    RetryPolicy,
    SyncTokenExpired,
    classify_response,
)
from app.services.inbound_sync import Outcome, process_notification, reconcile_event, reconcile_inbound
from conftest import future

API = "/api/v1"
NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)


class FakeGoogle:
    """Stands in for Google's OAuth and Calendar endpoints.

    ``on(method, path_suffix, *replies)`` registers replies consumed in order;
    the last one repeats. A reply is ``(status, json)`` or an exception to raise.
    """

    def __init__(self):
        self.rules: list[tuple[str, str, list]] = []
        self.requests: list[httpx.Request] = []

    def on(self, method: str, suffix: str, *replies) -> None:
        self.rules.append((method, suffix, list(replies)))

    def calls(self, method: str | None = None, suffix: str = "") -> list[httpx.Request]:
        return [r for r in self.requests if (method is None or r.method == method) and r.url.path.endswith(suffix)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, suffix, replies in self.rules:
            if request.method == method and request.url.path.endswith(suffix):
                reply = replies.pop(0) if len(replies) > 1 else replies[0]
                if isinstance(reply, Exception):
                    raise reply
                status_code, payload = reply
                return httpx.Response(status_code, json=payload)
        return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})


@pytest.fixture
def google(monkeypatch):
    fake = FakeGoogle()
    monkeypatch.setattr(google_calendar, "_http_client", lambda: httpx.AsyncClient(transport=httpx.MockTransport(fake)))
    return fake


async def _link(complex_id: int, expires_in: timedelta = timedelta(hours=1)) -> None:
    async with async_session_factory() as session:
        link = CalendarLink(complex_id=complex_id, expires_at=datetime.now(UTC) + expires_in)
        link.access_token = "access-1"
        link.refresh_token = "refresh-1"
        session.add(link)
        await session.commit()


async def _get_link(complex_id: int) -> CalendarLink | None:
    async with async_session_factory() as session:
        return await google_calendar.get_link(session, complex_id)


async def _fetch(reservation_id: int) -> Reservation:
    async with async_session_factory() as session:
        return await session.get(Reservation, reservation_id)


@pytest.fixture
async def linked(tenant):
    await _link(tenant.complex_id)
    return tenant


def _event(event_id: str, start: datetime, hours: float = 1, reservation_id: int | None = None, **extra) -> dict:
    event = {
        "id": event_id,
        "status": "confirmed",
        "start": {"dateTime": start.isoformat(), "timeZone": "America/Sao_Paulo"},
        "end": {"dateTime": (start + timedelta(hours=hours)).isoformat(), "timeZone": "America/Sao_Paulo"},
    }
    if reservation_id is not None:
        event["extendedProperties"] = {"private": {google_calendar.RESERVATION_TAG: str(reservation_id)}}
    event.update(extra)
    return event


# ---------------------------------------------------------------------------
# Retry policy and error classification
# ---------------------------------------------------------------------------


def test_backoff_grows_and_caps():
    policy = RetryPolicy(max_attempts=6, base_delay=0.5, multiplier=2, max_delay=8)
    assert [policy.delay(n) for n in range(1, 7)] == [0.5, 1, 2, 4, 8, 8]


@pytest.mark.parametrize(
    ("status_code", "payload", "error_type", "retryable"),
    [
        (429, {}, CalendarSyncError, True),
        (500, {}, CalendarSyncError, True),
        (503, {}, CalendarSyncError, True),
        (403, {"error": {"errors": [{"reason": "rateLimitExceeded"}], "message": "slow down"}}, CalendarSyncError, True),
        (403, {"error": {"errors": [{"reason": "forbidden"}], "message": "no"}}, CalendarSyncError, False),
        (400, {"error": {"errors": [{"reason": "badRequest"}], "message": "bad"}}, CalendarSyncError, False),
        (401, {"error": {"errors": [{"reason": "authError"}]}}, CalendarAuthError, False),
        (400, {"error": "invalid_grant", "error_description": "Token has been revoked."}, CalendarAuthError, False),
        (410, {"error": {"errors": [{"reason": "fullSyncRequired"}]}}, SyncTokenExpired, False),
    ],
)
def test_classify_response(status_code, payload, error_type, retryable):
    error = classify_response("op", httpx.Response(status_code, json=payload), attempts=1)
    assert type(error) is error_type
    assert error.retryable is retryable
    assert error.status_code == status_code


@pytest.mark.asyncio
async def test_transient_failures_are_retried(google):
    google.on("GET", "/calendars/primary", (503, {}), (429, {}), (200, {"id": "primary"}))
    result = await GoogleCalendarClient("tok", policy=NO_WAIT).get_calendar()
    assert result == {"id": "primary"}
    assert len(google.requests) == 3
    assert google.requests[0].headers["Authorization"] == "Bearer tok"


@pytest.mark.asyncio
async def test_network_errors_are_retried(google):
    google.on("GET", "/calendars/primary", httpx.ConnectError("connection reset"), (200, {"id": "primary"}))
    assert await GoogleCalendarClient("tok", policy=NO_WAIT).get_calendar() == {"id": "primary"}
    assert len(google.requests) == 2


@pytest.mark.asyncio
async def test_retries_are_bounded(google):
    google.on("GET", "/calendars/primary", (500, {}))
    with pytest.raises(CalendarSyncError) as exc_info:
        await GoogleCalendarClient("tok", policy=NO_WAIT).get_calendar()
    assert exc_info.value.attempts == 3
    assert exc_info.value.status_code == 500
    assert len(google.requests) == 3


@pytest.mark.asyncio
async def test_auth_errors_are_not_retried(google):
    google.on("GET", "/calendars/primary", (401, {"error": {"message": "Invalid Credentials"}}))
    with pytest.raises(CalendarAuthError):
        await GoogleCalendarClient("tok", policy=NO_WAIT).get_calendar()
    assert len(google.requests) == 1


@pytest.mark.asyncio
async def test_delete_of_missing_event_counts_as_done(google):
    google.on("DELETE", "/events/gone", (410, {"error": {"message": "Resource has been deleted"}}))
    await GoogleCalendarClient("tok", policy=NO_WAIT).delete_event("gone")
    assert len(google.requests) == 1


@pytest.mark.asyncio
async def test_list_changes_follows_pages(google):
    google.on(
        "GET",
        "/events",
        (200, {"items": [{"id": "a"}], "nextPageToken": "p2"}),
        (200, {"items": [{"id": "b"}], "nextSyncToken": "s2"}),
    )
    items, token = await GoogleCalendarClient("tok", policy=NO_WAIT).list_changes("s1")
    assert [i["id"] for i in items] == ["a", "b"]
    assert token == "s2"
    assert google.requests[0].url.params["syncToken"] == "s1"
    assert google.requests[1].url.params["pageToken"] == "p2"


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_expired_token_is_refreshed(tenant, google, db):
    await _link(tenant.complex_id, expires_in=timedelta(seconds=-5))
    google.on("POST", "/token", (200, {"access_token": "access-2", "expires_in": 3600}))

    client = await google_calendar.get_client(db, tenant.complex_id)
    assert client is not None

    link = await _get_link(tenant.complex_id)
    assert link.access_token == "access-2"
    assert link.refresh_token == "refresh-1"
    assert link.expires_at > datetime.now(UTC) + timedelta(minutes=30)
    assert link.encrypted_access_token != "access-2"


@pytest.mark.asyncio
async def test_revoked_refresh_token_drops_credentials(tenant, google, db):
    await _link(tenant.complex_id, expires_in=timedelta(seconds=-5))
    google.on("POST", "/token", (400, {"error": "invalid_grant", "error_description": "Token has been revoked."}))

    assert await google_calendar.get_client(db, tenant.complex_id) is None
    assert await _get_link(tenant.complex_id) is None
    assert len(google.requests) == 1


@pytest.mark.asyncio
async def test_transient_refresh_failure_keeps_credentials(tenant, google, db):
    await _link(tenant.complex_id, expires_in=timedelta(seconds=-5))
    google.on("POST", "/token", (503, {}))

    assert await google_calendar.get_client(db, tenant.complex_id) is None
    assert await _get_link(tenant.complex_id) is not None
    assert len(google.requests) == RetryPolicy.from_settings().max_attempts


@pytest.mark.asyncio
async def test_health_reports_without_mutating(client, linked, google):
    google.on("GET", "/calendars/primary", (200, {"id": "primary"}))
    resp = await client.get(f"{API}/calendar/health", headers=linked.headers)
    assert resp.json()["status"] == "connected"

    google.rules.clear()
    google.on("GET", "/calendars/primary", (401, {"error": {"message": "Invalid Credentials"}}))
    resp = await client.get(f"{API}/calendar/health", headers=linked.headers)
    assert resp.json()["status"] == "error"
    assert await _get_link(linked.complex_id) is not None


# ---------------------------------------------------------------------------
# OAuth flow, watch and disconnect
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_auth_url_carries_signed_state(client, tenant):
    resp = await client.get(f"{API}/calendar/auth-url", headers=tenant.headers)
    assert resp.status_code == 200
    query = parse_qs(urlparse(resp.json()["auth_url"]).query)
    assert query["access_type"] == ["offline"]
    assert query["state"][0]

    resp = await client.get(f"{API}/calendar/auth-url", headers=tenant.staff_headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_oauth_callback_stores_credentials(client, tenant, google):
    google.on(
        "POST",
        "/token",
        (200, {"access_token": "a-1", "refresh_token": "r-1", "expires_in": 3600, "token_type": "Bearer"}),
    )
    state = create_oauth_state(tenant.complex_id)
    resp = await client.get(f"{API}/calendar/oauth2callback", params={"code": "abc", "state": state})
    assert resp.status_code == 302
    assert "calendar=connected" in resp.headers["location"]

    link = await _get_link(tenant.complex_id)
    assert link.access_token == "a-1"
    assert link.refresh_token == "r-1"

    # Re-consent without a refresh token keeps the stored one
    google.rules.clear()
    google.on("POST", "/token", (200, {"access_token": "a-2", "expires_in": 3600}))
    await client.get(f"{API}/calendar/oauth2callback", params={"code": "def", "state": state})
    link = await _get_link(tenant.complex_id)
    assert (link.access_token, link.refresh_token) == ("a-2", "r-1")

    resp = await client.get(f"{API}/calendar/status", headers=tenant.headers)
    assert resp.json()["status"] == "integrated"


@pytest.mark.asyncio
async def test_oauth_callback_rejects_bad_state(client, tenant, google):
    resp = await client.get(f"{API}/calendar/oauth2callback", params={"code": "abc", "state": "forged"})
    assert resp.status_code == 302
    assert "invalid_state" in resp.headers["location"]
    assert google.requests == []


@pytest.mark.asyncio
async def test_watch_and_disconnect(client, linked, google):
    google.on("POST", "/events/watch", (200, {"resourceId": "res-1", "expiration": "1893456000000"}))
    google.on("GET", "/events", (200, {"items": [{"id": "old"}], "nextSyncToken": "base"}))
    google.on("POST", "/channels/stop", (204, None))

    resp = await client.post(f"{API}/calendar/watch", headers=linked.headers)
    assert resp.status_code == 201
    channel_id = resp.json()["channel_id"]

    async with async_session_factory() as session:
        channel = (await session.execute(select(CalendarChannel))).scalar_one()
    assert channel.channel_id == channel_id
    assert channel.sync_token == "base"
    assert channel.google_resource_id == "res-1"
    watch_body = json.loads(google.calls("POST", "/events/watch")[0].content)
    assert watch_body["token"] == channel.channel_token

    resp = await client.delete(f"{API}/calendar", headers=linked.headers)
    assert resp.status_code == 200
    assert len(google.calls("POST", "/channels/stop")) == 1
    assert await _get_link(linked.complex_id) is None
    async with async_session_factory() as session:
        assert (await session.execute(select(CalendarChannel))).first() is None


# ---------------------------------------------------------------------------
# Outbound mirroring
# ---------------------------------------------------------------------------


def _booking(tenant, start: datetime, hours: float = 1) -> dict:
    return {
        "resource_id": tenant.court_id,
        "client_id": tenant.client_id,
        "start_time": start.isoformat(),
        "duration_hours": hours,
    }


@pytest.mark.asyncio
async def test_booking_is_mirrored_and_cancel_deletes_event(client, linked, google):
    google.on("POST", "/events", (200, {"id": "evt-new"}))
    google.on("DELETE", "/events/evt-new", (204, None))

    resp = await client.post(f"{API}/reservations", json=_booking(linked, future(), 2), headers=linked.headers)
    assert resp.status_code == 201
    reservation_id = resp.json()["id"]
    assert (await _fetch(reservation_id)).external_event_id == "evt-new"

    body = json.loads(google.calls("POST", "/events")[0].content)
    assert body["extendedProperties"]["private"][google_calendar.RESERVATION_TAG] == str(reservation_id)
    assert body["summary"] == "Reservation: Jane"
    assert body["location"] == "Court 1"
    assert "Court 1" in body["description"]

    resp = await client.delete(f"{API}/reservations/{reservation_id}", headers=linked.headers)
    assert resp.status_code == 200
    assert len(google.calls("DELETE", "/events/evt-new")) == 1


@pytest.mark.asyncio
async def test_sync_failure_never_fails_the_booking(client, linked, google):
    google.on("POST", "/events", (500, {}))
    resp = await client.post(f"{API}/reservations", json=_booking(linked, future()), headers=linked.headers)
    assert resp.status_code == 201
    assert (await _fetch(resp.json()["id"])).external_event_id is None
    assert len(google.calls("POST", "/events")) == RetryPolicy.from_settings().max_attempts


@pytest.mark.asyncio
async def test_revoked_access_drops_credentials_and_keeps_booking(client, linked, google):
    google.on("POST", "/events", (401, {"error": {"message": "Invalid Credentials"}}))
    resp = await client.post(f"{API}/reservations", json=_booking(linked, future()), headers=linked.headers)
    assert resp.status_code == 201
    assert await _get_link(linked.complex_id) is None


@pytest.mark.asyncio
async def test_recurring_bookings_are_not_mirrored(client, linked, google):
    start = future()
    payload = {
        **_booking(linked, start),
        "is_recurring": True,
        "frequency": "WEEKLY",
        "end_date": (start + timedelta(weeks=2)).date().isoformat(),
    }
    resp = await client.post(f"{API}/reservations", json=payload, headers=linked.headers)
    assert resp.status_code == 201
    assert google.requests == []


@pytest.mark.asyncio
async def test_edit_pushes_update(client, linked, google, make_reservation):
    reservation_id = await make_reservation(linked.court_id, linked.client_id, future(), external_event_id="evt-1")
    google.on("PUT", "/events/evt-1", (200, {"id": "evt-1"}))

    resp = await client.put(f"{API}/reservations/{reservation_id}", json={"duration_hours": 2}, headers=linked.headers)
    assert resp.status_code == 200
    body = json.loads(google.calls("PUT", "/events/evt-1")[0].content)
    assert datetime.fromisoformat(body["end"]["dateTime"]) == future() + timedelta(hours=2)


# ---------------------------------------------------------------------------
# Inbound reconciliation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_external_cancellation_cancels_reservation(tenant, make_reservation, db):
    reservation_id = await make_reservation(tenant.court_id, tenant.client_id, future(), external_event_id="evt-1")

    outcome = await reconcile_event(db, tenant.complex_id, {"id": "evt-1", "status": "cancelled"})
    assert outcome == Outcome.CANCELLED
    stored = await _fetch(reservation_id)
    assert stored.status == ReservationStatus.CANCELLED
    assert stored.external_event_id is None


@pytest.mark.asyncio
async def test_untagged_events_are_ignored(tenant, make_reservation, db):
    await make_reservation(tenant.court_id, tenant.client_id, future(), external_event_id="evt-1")
    outcome = await reconcile_event(db, tenant.complex_id, _event("someone-elses", future(days=3)))
    assert outcome == Outcome.IGNORED


@pytest.mark.asyncio
async def test_events_of_another_complex_are_ignored(tenant, other_tenant, make_reservation, db):
    reservation_id = await make_reservation(other_tenant.court_id, other_tenant.client_id, future())
    event = _event("evt-x", future(days=2), reservation_id=reservation_id)
    assert await reconcile_event(db, tenant.complex_id, event) == Outcome.IGNORED
    assert (await _fetch(reservation_id)).start_time == future()


@pytest.mark.asyncio
async def test_external_move_reschedules(tenant, make_reservation, db):
    reservation_id = await make_reservation(tenant.court_id, tenant.client_id, future(), external_event_id="evt-1")
    new_start = future(hour=15)

    outcome = await reconcile_event(db, tenant.complex_id, _event("evt-1", new_start, 2, reservation_id=reservation_id))
    assert outcome == Outcome.RESCHEDULED
    stored = await _fetch(reservation_id)
    assert (stored.start_time, stored.end_time) == (new_start, new_start + timedelta(hours=2))
    assert stored.client_id == tenant.client_id

    outcome = await reconcile_event(db, tenant.complex_id, _event("evt-1", new_start, 2, reservation_id=reservation_id))
    assert outcome == Outcome.UNCHANGED


@pytest.mark.asyncio
async def test_conflicting_external_move_is_pushed_back(linked, make_reservation, google, db):
    moved = await make_reservation(linked.court_id, linked.client_id, future(hour=10), external_event_id="evt-1")
    await make_reservation(linked.court_id, linked.client_id, future(hour=12))
    google.on("PUT", "/events/evt-1", (200, {"id": "evt-1"}))

    event = _event("evt-1", future(hour=12) + timedelta(minutes=30), reservation_id=moved)
    assert await reconcile_event(db, linked.complex_id, event) == Outcome.REJECTED

    assert (await _fetch(moved)).start_time == future(hour=10)
    pushed = json.loads(google.calls("PUT", "/events/evt-1")[0].content)
    assert datetime.fromisoformat(pushed["start"]["dateTime"]) == future(hour=10)


@pytest.mark.asyncio
async def test_move_of_cancelled_reservation_deletes_event(linked, make_reservation, google, db):
    reservation_id = await make_reservation(
        linked.court_id, linked.client_id, future(), status=ReservationStatus.CANCELLED, external_event_id="evt-1"
    )
    google.on("DELETE", "/events/evt-1", (204, None))

    event = _event("evt-1", future(hour=14), reservation_id=reservation_id)
    assert await reconcile_event(db, linked.complex_id, event) == Outcome.REJECTED
    assert (await _fetch(reservation_id)).status == ReservationStatus.CANCELLED
    assert len(google.calls("DELETE", "/events/evt-1")) == 1


async def _channel(complex_id: int, sync_token: str | None = "s1") -> None:
    async with async_session_factory() as session:
        session.add(
            CalendarChannel(complex_id=complex_id, channel_id="ch-1", channel_token="secret", sync_token=sync_token)
        )
        await session.commit()


async def _sync_token() -> str | None:
    async with async_session_factory() as session:
        channel = (await session.execute(select(CalendarChannel))).scalar_one()
        return channel.sync_token


@pytest.mark.asyncio
async def test_notification_runs_incremental_sync(linked, make_reservation, google):
    reservation_id = await make_reservation(linked.court_id, linked.client_id, future(), external_event_id="evt-1")
    await _channel(linked.complex_id)
    google.on(
        "GET",
        "/events",
        (200, {"items": [_event("evt-1", future(hour=16), reservation_id=reservation_id)], "nextSyncToken": "s2"}),
    )

    await process_notification("ch-1", "secret", "exists")

    assert google.requests[0].url.params["syncToken"] == "s1"
    assert (await _fetch(reservation_id)).start_time == future(hour=16)
    assert await _sync_token() == "s2"


@pytest.mark.asyncio
async def test_notification_with_bad_token_is_ignored(linked, google):
    await _channel(linked.complex_id)
    await process_notification("ch-1", "wrong", "exists")
    await process_notification("ch-1", "secret", "sync")
    assert google.requests == []
    assert await _sync_token() == "s1"


@pytest.mark.asyncio
async def test_expired_sync_token_takes_new_baseline(linked, make_reservation, google):
    reservation_id = await make_reservation(linked.court_id, linked.client_id, future(), external_event_id="evt-1")
    await _channel(linked.complex_id)
    google.on(
        "GET",
        "/events",
        (410, {"error": {"errors": [{"reason": "fullSyncRequired"}]}}),
        (200, {"items": [_event("evt-1", future(hour=16), reservation_id=reservation_id)], "nextSyncToken": "s3"}),
    )

    await process_notification("ch-1", "secret", "exists")

    assert len(google.calls("GET", "/events")) == 2
    assert "syncToken" not in google.requests[1].url.params
    assert (await _fetch(reservation_id)).start_time == future()
    assert await _sync_token() == "s3"


@pytest.mark.asyncio
async def test_webhook_route_hands_off_to_sync(client, linked, make_reservation, google):
    reservation_id = await make_reservation(linked.court_id, linked.client_id, future(), external_event_id="evt-1")
    await _channel(linked.complex_id)
    google.on("GET", "/events", (200, {"items": [{"id": "evt-1", "status": "cancelled"}], "nextSyncToken": "s2"}))

    resp = await client.post(
        f"{API}/calendar/webhook",
        headers={"X-Goog-Channel-ID": "ch-1", "X-Goog-Channel-Token": "secret", "X-Goog-Resource-State": "exists"},
    )
    assert resp.status_code == 200
    assert (await _fetch(reservation_id)).status == ReservationStatus.CANCELLED


@pytest.mark.asyncio
async def test_reconcile_single_event_by_id(linked, make_reservation, google, db):
    moved = await make_reservation(linked.court_id, linked.client_id, future(), external_event_id="evt-1")
    purged = await make_reservation(linked.court2_id, linked.client_id, future(), external_event_id="evt-2")
    google.on("GET", "/events/evt-1", (200, _event("evt-1", future(hour=17), reservation_id=moved)))
    google.on("GET", "/events/evt-2", (404, {"error": {"code": 404, "message": "Not Found"}}))

    assert await reconcile_inbound(db, linked.complex_id, "evt-1") == Outcome.RESCHEDULED
    assert await reconcile_inbound(db, linked.complex_id, "evt-2") == Outcome.CANCELLED
    assert (await _fetch(moved)).start_time == future(hour=17)
    assert (await _fetch(purged)).status == ReservationStatus.CANCELLED


@pytest.mark.asyncio
async def test_reconcile_single_event_without_link_is_ignored(tenant, make_reservation, google, db):
    await make_reservation(tenant.court_id, tenant.client_id, future(), external_event_id="evt-1")
    assert await reconcile_inbound(db, tenant.complex_id, "evt-1") == Outcome.IGNORED
    assert google.requests == []
