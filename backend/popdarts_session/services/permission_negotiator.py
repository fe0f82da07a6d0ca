"""Notification permission negotiation and device token issuance."""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from ..const import NOTIFICATION_CHANNELS, NotificationChannel

logger = logging.getLogger(__name__)


class PermissionStatus(str, Enum):
    """OS notification permission as reported by the platform."""
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"


class NotificationPlatform(Protocol):
    """Boundary to the OS notification platform."""

    @property
    def is_device(self) -> bool: ...

    @property
    def os(self) -> str: ...

    @property
    def device_name(self) -> Optional[str]: ...

    async def get_permission_status(self) -> PermissionStatus: ...

    async def request_permission(self) -> PermissionStatus: ...

    async def get_device_token(self, project_id: Optional[str]) -> str: ...

    async def set_notification_channel(self, channel: NotificationChannel) -> None: ...


class TokenStatus(str, Enum):
    """Outcome of asking the platform for a device token."""
    GRANTED = "granted"
    DENIED = "denied"
    NO_DEVICE = "no_device"
    FAILED = "failed"


@dataclass
class TokenOutcome:
    status: TokenStatus
    token: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.status == TokenStatus.GRANTED and self.token is not None


class PermissionNegotiator:
    """Asks for notification permission at most once per process.

    An explicit denial is remembered: later calls report DENIED without
    prompting again, unless the platform reports the permission as granted
    (the user changed it in system settings). Concurrent callers are
    serialized so only one system prompt is ever shown at a time.
    """

    def __init__(self, platform: NotificationPlatform, project_id: Optional[str] = None):
        self._platform = platform
        self._project_id = project_id
        self._denied = False
        self._channels_configured = False
        self._lock = asyncio.Lock()

    @property
    def platform_os(self) -> str:
        return self._platform.os

    @property
    def device_name(self) -> Optional[str]:
        return self._platform.device_name

    async def ensure_permission(self) -> TokenStatus:
        """Make sure notifications are permitted, prompting if needed."""
        if not self._platform.is_device:
            return TokenStatus.NO_DEVICE
        async with self._lock:
            return await self._negotiate()

    async def obtain_token(self) -> TokenOutcome:
        """Negotiate permission and fetch the device push token.

        Returns:
            TokenOutcome with GRANTED and the token, or the reason there is none
        """
        if not self._platform.is_device:
            logger.info("Push notifications require a physical device")
            return TokenOutcome(TokenStatus.NO_DEVICE)

        async with self._lock:
            try:
                status = await self._negotiate()
                if status != TokenStatus.GRANTED:
                    return TokenOutcome(status)

                if not self._project_id:
                    logger.warning("No EAS project ID configured. Push notifications may not work.")
                token = await self._platform.get_device_token(self._project_id)
                logger.info(f"Push token obtained: {token[:16]}...")

                if self._platform.os == "android":
                    await self._configure_channels()
            except Exception as e:
                logger.error(f"Error registering for push notifications: {e}")
                return TokenOutcome(TokenStatus.FAILED, error=e)

        return TokenOutcome(TokenStatus.GRANTED, token=token)

    async def _negotiate(self) -> TokenStatus:
        existing = await self._platform.get_permission_status()
        if existing == PermissionStatus.GRANTED:
            self._denied = False
            return TokenStatus.GRANTED

        if self._denied:
            logger.debug("Notification permission already declined in this session, not prompting")
            return TokenStatus.DENIED

        status = await self._platform.request_permission()
        if status == PermissionStatus.GRANTED:
            return TokenStatus.GRANTED
        if status == PermissionStatus.DENIED:
            self._denied = True
            logger.info("Push notification permission not granted")
        else:
            # Prompt dismissed or never answered; ask again next time
            logger.info("Push notification permission prompt went unanswered")
        return TokenStatus.DENIED

    async def _configure_channels(self):
        if self._channels_configured:
            return
        for channel in NOTIFICATION_CHANNELS:
            await self._platform.set_notification_channel(channel)
        self._channels_configured = True
        logger.debug(f"Configured {len(NOTIFICATION_CHANNELS)} Android notification channels")
