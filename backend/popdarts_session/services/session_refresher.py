"""Session refresher - renews the access token shortly before it expires.

A successful refresh reaches the auth manager as a TOKEN_REFRESHED event
from the identity client; a rejected refresh token becomes SIGNED_OUT.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from ..exceptions import ProviderError
from ..schemas.session import AuthSnapshot, AuthState, Session
from .identity_client import IdentityClient

logger = logging.getLogger(__name__)

JOB_ID = "refresh_session"

# Retry a failed (non-auth) refresh after this many seconds
RETRY_SECONDS = 30


class SessionRefresher:
    """Keeps one scheduled refresh job in step with the current session."""

    def __init__(self, identity: IdentityClient, margin_seconds: int = 60):
        self._identity = identity
        self._margin = margin_seconds
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._scheduled_token: Optional[str] = None

    def start(self):
        """Start the scheduler."""
        if self._running:
            return
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.scheduler.start()
        self._running = True
        logger.info(f"Session refresher started (margin={self._margin}s)")

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler and self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            self._scheduled_token = None
            logger.info("Session refresher stopped")

    def on_snapshot(self, snapshot: AuthSnapshot):
        """Auth manager listener: follow the current session."""
        if snapshot.state == AuthState.AUTHENTICATED and snapshot.session is not None:
            if snapshot.session.access_token != self._scheduled_token:
                self.schedule(snapshot.session)
        elif snapshot.state != AuthState.AUTHENTICATING:
            self.cancel()

    def refresh_time(self, session: Session) -> datetime:
        """When to refresh a session (naive UTC, never in the past)."""
        run_at = session.expires_at - timedelta(seconds=self._margin)
        return max(run_at, datetime.utcnow())

    def schedule(self, session: Session, run_at: Optional[datetime] = None):
        if not self._running:
            return
        run_at = run_at or self.refresh_time(session)
        self.scheduler.add_job(
            self._refresh,
            trigger=DateTrigger(run_date=run_at.replace(tzinfo=timezone.utc)),
            id=JOB_ID,
            replace_existing=True,
            misfire_grace_time=self._margin or None,
        )
        self._scheduled_token = session.access_token
        logger.debug(f"Session refresh scheduled for {run_at.isoformat()}Z")

    def cancel(self):
        if not self._running or self._scheduled_token is None:
            return
        try:
            self.scheduler.remove_job(JOB_ID)
        except JobLookupError:
            pass
        self._scheduled_token = None

    async def _refresh(self):
        try:
            await self._identity.refresh_session()
            logger.info("Session refreshed")
        except ProviderError as e:
            if e.is_auth_failure:
                # The identity client already signed the user out
                logger.warning(f"Session refresh rejected: {e}")
                return
            logger.error(f"Session refresh failed, retrying in {RETRY_SECONDS}s: {e}")
            session = await self._identity.get_session()
            if session is not None:
                self.schedule(session, datetime.utcnow() + timedelta(seconds=RETRY_SECONDS))
