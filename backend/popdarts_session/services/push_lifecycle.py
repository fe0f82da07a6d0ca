"""Push token lifecycle - binds device registrations to signed-in users.

Every public method reports failure through its result object. Nothing here
raises into the authentication flow: notifications are an optional
enhancement and must never stop a sign-in or sign-out from completing.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..const import DEFAULT_DEVICE_NAME, PLATFORMS
from ..exceptions import StoreError
from ..schemas.device import DeviceToken, NotificationPreferences
from .permission_negotiator import PermissionNegotiator, TokenStatus
from .token_store import TokenStore

logger = logging.getLogger(__name__)


class RegistrationStatus(str, Enum):
    REGISTERED = "registered"
    SKIPPED = "skipped"  # no device or permission denied
    FAILED = "failed"


@dataclass
class RegistrationResult:
    status: RegistrationStatus
    token: Optional[str] = None
    reason: Optional[TokenStatus] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.status != RegistrationStatus.FAILED


@dataclass
class OperationResult:
    ok: bool
    error: Optional[Exception] = None


@dataclass
class PreferencesResult:
    """Outcome of a preference change.

    On failure ``preferences`` holds the last confirmed stored value (if
    known) so callers can roll back an optimistic update.
    """
    ok: bool
    preferences: Optional[NotificationPreferences] = None
    message: str = ""
    error: Optional[Exception] = None
    permission_status: Optional[TokenStatus] = None


class PushTokenLifecycle:
    """Registers, updates and removes this device's push token for a user."""

    def __init__(
        self,
        negotiator: PermissionNegotiator,
        store: TokenStore,
        default_preferences: Optional[Mapping[str, bool]] = None,
    ):
        self._negotiator = negotiator
        self._store = store
        # Validate once so a bad default fails at startup, not at sign-in
        self._defaults = NotificationPreferences().merged(default_preferences or {})
        self._active_tokens: Dict[str, str] = {}

    def active_token(self, user_id: str) -> Optional[str]:
        """Token this process registered for the user, if any."""
        return self._active_tokens.get(user_id)

    async def register(self, user_id: str) -> RegistrationResult:
        """Register this device for a user.

        Denied permission or a non-physical device is a successful no-op.
        Re-registering the same token only refreshes its updated_at.
        """
        outcome = await self._negotiator.obtain_token()
        if outcome.status in (TokenStatus.DENIED, TokenStatus.NO_DEVICE):
            logger.info(f"Skipping push registration for user {user_id}: {outcome.status.value}")
            return RegistrationResult(RegistrationStatus.SKIPPED, reason=outcome.status)
        if not outcome.ok:
            return RegistrationResult(RegistrationStatus.FAILED, reason=outcome.status, error=outcome.error)

        platform = self._negotiator.platform_os
        device = DeviceToken(
            user_id=user_id,
            token=outcome.token,
            platform=platform if platform in PLATFORMS else "web",
            device_name=self._negotiator.device_name or DEFAULT_DEVICE_NAME,
            preferences=self._defaults,
        )
        try:
            stored = await self._store.upsert(device)
        except StoreError as e:
            logger.error(f"Error saving push token to database: {e}")
            return RegistrationResult(RegistrationStatus.FAILED, token=outcome.token, error=e)

        self._active_tokens[user_id] = stored.token
        return RegistrationResult(RegistrationStatus.REGISTERED, token=stored.token)

    async def unregister(self, user_id: str, token: str) -> OperationResult:
        """Remove a (user, token) registration. Missing rows are not an error."""
        try:
            await self._store.delete(user_id, token)
        except StoreError as e:
            logger.error(f"Error removing push token: {e}")
            return OperationResult(ok=False, error=e)

        if self._active_tokens.get(user_id) == token:
            del self._active_tokens[user_id]
        return OperationResult(ok=True)

    async def list_devices(self, user_id: str) -> List[DeviceToken]:
        """All registrations of a user. Raises StoreError."""
        return await self._store.get_by_user(user_id)

    async def get_preferences(self, user_id: str) -> Optional[NotificationPreferences]:
        """Stored preferences for the user's active device, or None."""
        try:
            device = await self._resolve_device(user_id)
        except StoreError as e:
            logger.error(f"Error fetching notification preferences: {e}")
            return None
        return device.preferences if device else None

    async def update_preferences(self, user_id: str, patch: Mapping[str, Any]) -> PreferencesResult:
        """Merge ``patch`` into the active device's stored preferences."""
        try:
            NotificationPreferences.normalize_patch(patch)
        except ValueError as e:
            return PreferencesResult(ok=False, message=str(e), error=e)

        try:
            device = await self._resolve_device(user_id)
        except StoreError as e:
            logger.error(f"Error updating notification preferences: {e}")
            return PreferencesResult(ok=False, message="Failed to load notification preferences", error=e)
        if device is None:
            return PreferencesResult(ok=False, message="No registered device for notifications")

        merged = device.preferences.merged(patch)
        try:
            updated = await self._store.update_preferences(user_id, device.token, merged)
        except StoreError as e:
            logger.error(f"Error updating notification preferences: {e}")
            return PreferencesResult(
                ok=False,
                preferences=device.preferences,
                message="Failed to update notification preferences",
                error=e,
            )
        if updated is None:
            # Row vanished between read and write (sign-out race)
            self._active_tokens.pop(user_id, None)
            return PreferencesResult(ok=False, message="No registered device for notifications")

        logger.info(f"Notification preferences updated for user {user_id}")
        return PreferencesResult(ok=True, preferences=updated.preferences)

    async def set_push_enabled(self, user_id: str, enabled: bool) -> PreferencesResult:
        """Toggle the master notification flag, asking for permission when enabling."""
        if enabled:
            try:
                status = await self._negotiator.ensure_permission()
            except Exception as e:
                logger.error(f"Error requesting notification permission: {e}")
                return PreferencesResult(
                    ok=False,
                    message=f"Error: {e}",
                    error=e,
                    permission_status=TokenStatus.FAILED,
                )
            if status == TokenStatus.NO_DEVICE:
                return PreferencesResult(
                    ok=False,
                    message="Push notifications are only available on physical devices",
                    permission_status=status,
                )
            if status != TokenStatus.GRANTED:
                return PreferencesResult(
                    ok=False,
                    message="Push notification permissions were denied",
                    permission_status=status,
                )

        result = await self.update_preferences(user_id, {"push_notifications_enabled": enabled})
        if result.ok:
            result.message = "Push notifications enabled" if enabled else "Push notifications disabled"
            if enabled:
                result.permission_status = TokenStatus.GRANTED
        elif not result.message:
            result.message = f"Failed to {'enable' if enabled else 'disable'} push notifications"
        return result

    async def _resolve_device(self, user_id: str) -> Optional[DeviceToken]:
        token = self._active_tokens.get(user_id)
        if token:
            device = await self._store.get(user_id, token)
            if device:
                return device
            self._active_tokens.pop(user_id, None)

        # Fall back to the most recently updated registration for the user
        devices = await self._store.get_by_user(user_id)
        return devices[0] if devices else None
