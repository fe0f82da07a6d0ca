"""PushToken model - stores device push tokens and notification preferences per user."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint

from ..database import Base


class PushToken(Base):
    """Registered device for push notifications, keyed by (user_id, push_token)."""

    __tablename__ = "push_tokens"
    __table_args__ = (
        UniqueConstraint("user_id", "push_token", name="uq_push_tokens_user_token"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    push_token = Column(String, nullable=False, index=True)
    platform = Column(String, default="ios")  # ios, android, web
    device_name = Column(String, default="Unknown Device")
    preferences = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
