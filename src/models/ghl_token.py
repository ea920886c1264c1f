"""
GHLToken - persisted OAuth credential for one GoHighLevel company.

GHL refresh tokens are single-use: every refresh returns a new one that MUST
replace the stored value. Token columns hold Fernet ciphertext when
ENCRYPTION_KEY is configured (see src.utils.encryption).
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class GHLToken(Base):
    __tablename__ = "ghl_tokens"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)  # company key
    company_id: Mapped[Optional[str]] = mapped_column(String(64))
    refresh_token: Mapped[Optional[str]] = mapped_column(Text)
    access_token: Mapped[Optional[str]] = mapped_column(Text)
    access_token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Set when GHL rejects the refresh token; cleared only by the OAuth callback
    needs_reauth: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    needs_reauth_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<GHLToken {self.id} needs_reauth={self.needs_reauth}>"
