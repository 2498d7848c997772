"""Google Calendar integration state, one link per complex.

CalendarLink = OAuth credentials (Fernet-encrypted) for the complex's calendar.
CalendarChannel = a push-notification channel registered with Google. Webhook
deliveries are resolved to a complex through this table, and the incremental
sync token lives here too.
"""

from datetime import UTC, datetime

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.crypto import decrypt, encrypt
from app.models.base import Base, TimestampMixin, UTCDateTime


class CalendarLink(TimestampMixin, Base):
    __tablename__ = "calendar_links"

    id: Mapped[int] = mapped_column(primary_key=True)
    complex_id: Mapped[int] = mapped_column(ForeignKey("complexes.id"), unique=True, nullable=False)

    # Encrypted at rest; use the access_token / refresh_token properties
    encrypted_access_token: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    token_type: Mapped[str | None] = mapped_column(String(50))
    scope: Mapped[str | None] = mapped_column(Text)

    @property
    def access_token(self) -> str:
        return decrypt(self.encrypted_access_token)

    @access_token.setter
    def access_token(self, value: str) -> None:
        self.encrypted_access_token = encrypt(value)

    @property
    def refresh_token(self) -> str:
        return decrypt(self.encrypted_refresh_token)

    @refresh_token.setter
    def refresh_token(self, value: str) -> None:
        self.encrypted_refresh_token = encrypt(value)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at

    def __repr__(self) -> str:
        return f"<CalendarLink complex={self.complex_id} expires={self.expires_at}>"


class CalendarChannel(TimestampMixin, Base):
    __tablename__ = "calendar_channels"

    id: Mapped[int] = mapped_column(primary_key=True)
    complex_id: Mapped[int] = mapped_column(ForeignKey("complexes.id"), nullable=False, index=True)
    channel_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    channel_token: Mapped[str] = mapped_column(String(128), nullable=False)
    google_resource_id: Mapped[str | None] = mapped_column(String(255))
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    sync_token: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<CalendarChannel {self.channel_id} complex={self.complex_id}>"
