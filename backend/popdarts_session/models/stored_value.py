"""StoredValue model - device-local key/value storage."""
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime

from ..database import Base


class StoredValue(Base):
    """Durable local value stored under a string key."""

    __tablename__ = "local_storage"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Keys owned by the session core
GUEST_MODE_KEY = "guest_mode"
GUEST_NAME_KEY = "guest_name"
SESSION_KEY = "supabase_session"
