"""Notification categories and Android channel configuration."""
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Tuple


class NotificationCategory(str, Enum):
    """Category carried in notification payloads."""
    STORE_UPDATE = "store_update"
    FLASH_SALE = "flash_sale"
    LEAGUE_NEARBY = "league_nearby"
    TOURNAMENT_TURN = "tournament_turn"
    MATCH_REMINDER = "match_reminder"
    CLUB_ANNOUNCEMENT = "club_announcement"

    @property
    def preference_field(self) -> str:
        """NotificationPreferences field gating this category."""
        return CATEGORY_PREFERENCE_FIELDS[self]


CATEGORY_PREFERENCE_FIELDS = {
    NotificationCategory.STORE_UPDATE: "store_updates",
    NotificationCategory.FLASH_SALE: "flash_sales",
    NotificationCategory.LEAGUE_NEARBY: "leagues_nearby",
    NotificationCategory.TOURNAMENT_TURN: "tournament_turns",
    NotificationCategory.MATCH_REMINDER: "match_reminders",
    NotificationCategory.CLUB_ANNOUNCEMENT: "club_announcements",
}


class AndroidImportance(IntEnum):
    """Android notification channel importance levels."""
    MIN = 1
    LOW = 2
    DEFAULT = 3
    HIGH = 4
    MAX = 5


@dataclass(frozen=True)
class NotificationChannel:
    """Android notification channel definition."""
    id: str
    name: str
    importance: AndroidImportance
    vibration_pattern: Tuple[int, ...]
    light_color: str


NOTIFICATION_CHANNELS = (
    NotificationChannel("default", "default", AndroidImportance.MAX, (0, 250, 250, 250), "#2196F3"),
    NotificationChannel("store", "Store Updates", AndroidImportance.DEFAULT, (0, 250, 250, 250), "#4CAF50"),
    NotificationChannel("tournament", "Tournament Notifications", AndroidImportance.HIGH, (0, 500, 250, 500), "#FF9800"),
    NotificationChannel("league", "League Updates", AndroidImportance.DEFAULT, (0, 250, 250, 250), "#2196F3"),
)

PLATFORMS = ("ios", "android", "web")

DEFAULT_DEVICE_NAME = "Unknown Device"
