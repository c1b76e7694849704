from sqlalchemy import Column, Integer, String, Text, DateTime

from app.core.utils import utcnow
from app.database import Base


class MarketplaceAccount(Base):
    """
    OAuth credentials for one local user's connected marketplace seller account.

    Created on a successful OAuth callback, overwritten on every token refresh,
    deleted on disconnect. At most one row per local user.
    """

    __tablename__ = "marketplace_accounts"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, unique=True, index=True)

    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    scope = Column(String(512), nullable=True)

    seller_id = Column(String(64), nullable=True, index=True)
    nickname = Column(String(255), nullable=True)

    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    last_refresh_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<MarketplaceAccount(id={self.id}, user_id={self.user_id}, seller_id={self.seller_id})>"
