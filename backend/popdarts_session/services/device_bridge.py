"""Device bridge - notification platform backed by the native app shell.

The shell owns the OS APIs. It reports device facts, permission state and
the issued push token over HTTP; when the session core needs a system
prompt or a token it asks the shell over the WebSocket stream and waits
for the answer.
"""
import asyncio
import logging
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..const import NotificationChannel
from ..exceptions import NotificationError
from .permission_negotiator import PermissionStatus

logger = logging.getLogger(__name__)

Publisher = Callable[[Dict[str, Any]], Awaitable[None]]


async def _no_publisher(message: Dict[str, Any]):
    logger.debug(f"No shell connected for {message.get('type')}")


class DeviceBridge:
    """NotificationPlatform implementation driven by the native shell."""

    def __init__(
        self,
        is_device: bool = False,
        os: str = "web",
        device_name: Optional[str] = None,
        publish: Optional[Publisher] = None,
        prompt_timeout_seconds: float = 120.0,
    ):
        self._is_device = is_device
        self._os = os
        self._device_name = device_name
        self._publish = publish or _no_publisher
        self._prompt_timeout = prompt_timeout_seconds
        self._status = PermissionStatus.UNDETERMINED
        self._token: Optional[str] = None
        self._permission_waiters: List[asyncio.Future] = []
        self._token_waiters: List[asyncio.Future] = []

    @property
    def is_device(self) -> bool:
        return self._is_device

    @property
    def os(self) -> str:
        return self._os

    @property
    def device_name(self) -> Optional[str]:
        return self._device_name

    @property
    def reported_token(self) -> Optional[str]:
        """Push token last reported by the shell for this device."""
        return self._token

    # Reports from the shell

    def report_device(self, is_device: bool, os: str, device_name: Optional[str] = None):
        self._is_device = is_device
        self._os = os
        self._device_name = device_name
        logger.info(f"Device reported: os={os}, physical={is_device}")

    def report_permission(self, status: PermissionStatus):
        self._status = status
        waiters, self._permission_waiters = self._permission_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(status)

    def report_token(self, token: str):
        self._token = token
        waiters, self._token_waiters = self._token_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(token)

    # NotificationPlatform

    async def get_permission_status(self) -> PermissionStatus:
        return self._status

    async def request_permission(self) -> PermissionStatus:
        """Ask the shell to show the system prompt and wait for the answer.

        No answer within the prompt timeout counts as the current status.
        """
        waiter = asyncio.get_running_loop().create_future()
        self._permission_waiters.append(waiter)
        try:
            await self._publish({"type": "permission_request"})
            return await asyncio.wait_for(waiter, timeout=self._prompt_timeout)
        except asyncio.TimeoutError:
            logger.warning("Permission prompt was not answered in time")
            return self._status
        finally:
            if waiter in self._permission_waiters:
                self._permission_waiters.remove(waiter)

    async def get_device_token(self, project_id: Optional[str]) -> str:
        if self._token:
            return self._token
        waiter = asyncio.get_running_loop().create_future()
        self._token_waiters.append(waiter)
        try:
            await self._publish({"type": "token_request", "project_id": project_id})
            return await asyncio.wait_for(waiter, timeout=self._prompt_timeout)
        except asyncio.TimeoutError:
            raise NotificationError("Native shell did not provide a push token")
        finally:
            if waiter in self._token_waiters:
                self._token_waiters.remove(waiter)

    async def set_notification_channel(self, channel: NotificationChannel) -> None:
        payload = asdict(channel)
        payload["importance"] = int(channel.importance)
        payload["vibration_pattern"] = list(channel.vibration_pattern)
        await self._publish({"type": "notification_channel", "channel": payload})
