"""Google Calendar connection, health and push-notification routes."""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, status
from fastapi.responses import RedirectResponse
from jose import JWTError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import create_oauth_state, verify_oauth_state
from app.core.config import settings
from app.core.database import get_db
from app.core.dependencies import require_permission
from app.core.errors import PreconditionFailed
from app.models.calendar import CalendarChannel
from app.models.complex import User
from app.schemas import AuthUrlOut, CalendarHealthOut, CalendarStatusOut, CalendarWatchOut, MessageOut
from app.services import google_calendar
from app.services.inbound_sync import process_notification

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar", tags=["calendar"])


def _frontend_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(
        f"{settings.frontend_url}/settings/calendar?{urlencode(params)}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/auth-url", response_model=AuthUrlOut)
async def get_auth_url(user: User = Depends(require_permission("settings", "edit"))):
    return AuthUrlOut(auth_url=google_calendar.build_auth_url(create_oauth_state(user.complex_id)))


@router.get("/oauth2callback")
async def oauth2_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Google redirects the browser here after consent. Always answers with a redirect."""
    if error or not code or not state:
        return _frontend_redirect(calendar="error", reason=error or "missing_code")

    try:
        complex_id = verify_oauth_state(state)
    except (JWTError, KeyError, ValueError):
        return _frontend_redirect(calendar="error", reason="invalid_state")

    try:
        tokens = await google_calendar.exchange_code(code)
        await google_calendar.store_credentials(db, complex_id, tokens)
    except google_calendar.CalendarSyncError:
        return _frontend_redirect(calendar="error", reason="exchange_failed")
    except PreconditionFailed as exc:
        return _frontend_redirect(calendar="error", reason=exc.code)
    except (KeyError, ValueError):
        logger.warning("Unexpected token response for complex %s", complex_id)
        return _frontend_redirect(calendar="error", reason="exchange_failed")

    return _frontend_redirect(calendar="connected")


@router.get("/status", response_model=CalendarStatusOut)
async def get_status(
    user: User = Depends(require_permission("settings", "view")),
    db: AsyncSession = Depends(get_db),
):
    link = await google_calendar.get_link(db, user.complex_id)
    if link is None:
        return CalendarStatusOut(status="not_integrated")

    channels = await db.execute(
        select(func.count(CalendarChannel.id)).where(CalendarChannel.complex_id == user.complex_id)
    )
    return CalendarStatusOut(status="integrated", expires_at=link.expires_at, watching=channels.scalar_one() > 0)


@router.get("/health", response_model=CalendarHealthOut)
async def get_health(
    user: User = Depends(require_permission("settings", "view")),
    db: AsyncSession = Depends(get_db),
):
    return await google_calendar.check_health(db, user.complex_id)


@router.post("/watch", response_model=CalendarWatchOut, status_code=status.HTTP_201_CREATED)
async def watch_calendar(
    user: User = Depends(require_permission("settings", "edit")),
    db: AsyncSession = Depends(get_db),
):
    channel = await google_calendar.start_watch(db, user.complex_id)
    return CalendarWatchOut(channel_id=channel.channel_id, expires_at=channel.expires_at)


@router.delete("", response_model=MessageOut)
async def disconnect_calendar(
    user: User = Depends(require_permission("settings", "edit")),
    db: AsyncSession = Depends(get_db),
):
    disconnected = await google_calendar.disconnect(db, user.complex_id)
    return MessageOut(message="Google Calendar disconnected" if disconnected else "Google Calendar was not connected")


@router.post("/webhook", status_code=status.HTTP_200_OK)
async def calendar_webhook(
    background_tasks: BackgroundTasks,
    channel_id: str | None = Header(None, alias="X-Goog-Channel-ID"),
    channel_token: str | None = Header(None, alias="X-Goog-Channel-Token"),
    resource_state: str | None = Header(None, alias="X-Goog-Resource-State"),
):
    """Push notification from Google. Acknowledged right away, processed in the background.

    The body is empty; the complex is resolved from the stored channel.
    """
    if channel_id:
        background_tasks.add_task(process_notification, channel_id, channel_token, resource_state)
    else:
        logger.warning("Calendar notification without a channel id ignored")
    return {"received": True}
