"""Device token and notification preference schemas."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from ..const import NotificationCategory


class NotificationPreferences(BaseModel):
    """Per-device notification preferences.

    Stored with camelCase keys (``pushNotificationsEnabled``, ``storeUpdates``,
    ...). Everything is off until explicitly enabled.
    """
    push_notifications_enabled: bool = False  # Master toggle
    store_updates: bool = False
    flash_sales: bool = False
    leagues_nearby: bool = False
    tournament_turns: bool = False
    match_reminders: bool = False
    club_announcements: bool = False

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "forbid"

    @classmethod
    def field_for_key(cls, key: str) -> str:
        """Resolve a snake_case or camelCase key to a field name.

        Raises:
            ValueError: If the key is not a known preference
        """
        if key in cls.model_fields:
            return key
        for name, info in cls.model_fields.items():
            if info.alias == key:
                return name
        raise ValueError(f"Unknown notification preference: {key}")

    @classmethod
    def normalize_patch(cls, patch: Mapping[str, Any]) -> Dict[str, bool]:
        """Validate a partial update and return it keyed by field name."""
        normalized = {}
        for key, value in patch.items():
            if not isinstance(value, bool):
                raise ValueError(f"Preference {key} must be a boolean")
            normalized[cls.field_for_key(key)] = value
        return normalized

    @classmethod
    def from_storage(cls, raw: Optional[Mapping[str, Any]]) -> "NotificationPreferences":
        """Load stored preferences, ignoring keys this version doesn't know."""
        known = {}
        for key, value in (raw or {}).items():
            try:
                known[cls.field_for_key(key)] = bool(value)
            except ValueError:
                continue
        return cls(**known)

    def merged(self, patch: Mapping[str, Any]) -> "NotificationPreferences":
        """Return a copy with ``patch`` applied."""
        data = self.model_dump()
        data.update(self.normalize_patch(patch))
        return NotificationPreferences(**data)

    def to_storage(self) -> Dict[str, bool]:
        return self.model_dump(by_alias=True)

    def allows(self, category: NotificationCategory) -> bool:
        """Whether a notification of this category may be delivered."""
        return self.push_notifications_enabled and getattr(self, category.preference_field)


@dataclass
class DeviceToken:
    """A stored (user, device token) registration."""
    user_id: str
    token: str
    platform: str = "ios"
    device_name: str = "Unknown Device"
    preferences: NotificationPreferences = field(default_factory=NotificationPreferences)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "DeviceToken":
        return cls(
            user_id=row.user_id,
            token=row.push_token,
            platform=row.platform,
            device_name=row.device_name,
            preferences=NotificationPreferences.from_storage(row.preferences),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @property
    def short_token(self) -> str:
        """Token prefix safe for log lines."""
        return f"{self.token[:16]}..."
