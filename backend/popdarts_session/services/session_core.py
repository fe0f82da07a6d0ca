"""Assembly of the session core from settings."""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import Settings
from ..schemas.session import PlatformCapabilities
from .auth_manager import AuthSessionManager
from .device_bridge import DeviceBridge
from .identity_client import GoTrueIdentityClient
from .local_storage import KeyValueStore
from .oauth_callback import BrowserLocation
from .permission_negotiator import PermissionNegotiator
from .push_lifecycle import PushTokenLifecycle
from .session_refresher import SessionRefresher
from .token_store import TokenStore
from .websocket_manager import ConnectionManager

logger = logging.getLogger(__name__)


@dataclass
class SessionCore:
    """Everything the HTTP layer needs, wired together."""
    manager: AuthSessionManager
    push: PushTokenLifecycle
    bridge: DeviceBridge
    identity: GoTrueIdentityClient
    refresher: SessionRefresher
    connections: ConnectionManager
    location: BrowserLocation

    async def start(self, initial_url: Optional[str] = None):
        self.refresher.start()
        await self.manager.start(initial_url)

    async def stop(self):
        await self.manager.stop()
        self.refresher.stop()
        await self.identity.aclose()


def build_core(
    config: Settings,
    local_session: async_sessionmaker,
    remote_session: async_sessionmaker,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SessionCore:
    """Build the session core.

    Args:
        config: Application settings
        local_session: Session factory for device-local storage
        remote_session: Session factory for the push token store
        transport: Optional httpx transport for the identity provider
    """
    connections = ConnectionManager()
    storage = KeyValueStore(local_session)

    identity = GoTrueIdentityClient(
        config.supabase_url,
        config.supabase_anon_key,
        storage,
        timeout=config.identity_timeout_seconds,
        transport=transport,
    )

    bridge = DeviceBridge(
        is_device=config.is_physical_device,
        os=config.device_platform,
        device_name=config.device_name,
        publish=connections.broadcast,
        prompt_timeout_seconds=config.permission_prompt_timeout_seconds,
    )
    negotiator = PermissionNegotiator(bridge, project_id=config.eas_project_id)
    push = PushTokenLifecycle(negotiator, TokenStore(remote_session))

    capabilities = PlatformCapabilities(
        has_redirect_url=config.has_redirect_url,
        redirect_url=config.redirect_url,
    )
    location = BrowserLocation()
    manager = AuthSessionManager(
        identity,
        storage,
        push,
        capabilities=capabilities,
        location=location,
        oauth_timeout_seconds=config.oauth_timeout_seconds,
        registration_grace_seconds=config.sign_out_registration_grace_seconds,
    )

    refresher = SessionRefresher(identity, margin_seconds=config.session_refresh_margin_seconds)
    manager.subscribe(refresher.on_snapshot)
    manager.subscribe(connections.publish_snapshot)

    logger.info(
        f"Session core configured (platform={config.device_platform}, "
        f"redirect_url={'yes' if capabilities.has_redirect_url else 'no'})"
    )
    return SessionCore(
        manager=manager,
        push=push,
        bridge=bridge,
        identity=identity,
        refresher=refresher,
        connections=connections,
        location=location,
    )
