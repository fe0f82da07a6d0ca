"""Push token store - persists device tokens keyed by (user_id, push_token)."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, delete, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import StoreError
from ..models.push_token import PushToken
from ..schemas.device import DeviceToken, NotificationPreferences
from ..utils.db_utils import retry_on_lock

logger = logging.getLogger(__name__)

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class TokenStore:
    """Thin persistence layer over the push_tokens table.

    Uniqueness is enforced by the database on (user_id, push_token); upserts
    rely on its ON CONFLICT resolution. Every database failure surfaces as
    StoreError.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, action: str):
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Push token store failed to {action}: {e}")
            raise StoreError(f"Failed to {action}: {e}") from e

    @staticmethod
    def _insert_for(session: AsyncSession):
        dialect = session.get_bind().dialect.name
        try:
            return _INSERTS[dialect]
        except KeyError:
            raise StoreError(f"Unsupported database dialect for upsert: {dialect}")

    async def upsert(self, device: DeviceToken, overwrite_preferences: bool = False) -> DeviceToken:
        """Insert a registration or refresh an existing one.

        An existing (user_id, push_token) row only gets its updated_at
        refreshed, unless ``overwrite_preferences`` is set.

        Returns:
            The stored registration
        """
        now = datetime.utcnow()
        async with self._session("upsert push token") as session:
            insert = self._insert_for(session)
            stmt = insert(PushToken).values(
                user_id=device.user_id,
                push_token=device.token,
                platform=device.platform,
                device_name=device.device_name,
                preferences=device.preferences.to_storage(),
                created_at=now,
                updated_at=now,
            )
            changes = {"updated_at": now}
            if overwrite_preferences:
                changes["preferences"] = stmt.excluded.preferences
            stmt = stmt.on_conflict_do_update(
                index_elements=[PushToken.user_id, PushToken.push_token],
                set_=changes,
            )
            await session.execute(stmt)
            await retry_on_lock(session.commit)

            row = await self._fetch_row(session, device.user_id, device.token)

        if row is None:
            raise StoreError(f"Push token for user {device.user_id} missing after upsert")
        stored = DeviceToken.from_row(row)
        logger.info(f"Push token stored for user {device.user_id}: {stored.short_token}")
        return stored

    async def delete(self, user_id: str, token: str) -> bool:
        """Delete a registration. Returns False when no row existed."""
        async with self._session("delete push token") as session:
            result = await session.execute(
                delete(PushToken).where(
                    PushToken.user_id == user_id,
                    PushToken.push_token == token,
                )
            )
            await retry_on_lock(session.commit)

        removed = (result.rowcount or 0) > 0
        if removed:
            logger.info(f"Push token removed for user {user_id}: {token[:16]}...")
        else:
            logger.debug(f"No push token to remove for user {user_id}: {token[:16]}...")
        return removed

    async def get(self, user_id: str, token: str) -> Optional[DeviceToken]:
        async with self._session("fetch push token") as session:
            row = await self._fetch_row(session, user_id, token)
        return DeviceToken.from_row(row) if row else None

    async def get_by_user(self, user_id: str) -> List[DeviceToken]:
        """All registrations for a user, most recently updated first."""
        async with self._session("list push tokens") as session:
            result = await session.execute(
                select(PushToken)
                .where(PushToken.user_id == user_id)
                .order_by(PushToken.updated_at.desc(), PushToken.id.desc())
            )
            rows = result.scalars().all()
        return [DeviceToken.from_row(row) for row in rows]

    async def update_preferences(
        self,
        user_id: str,
        token: str,
        preferences: NotificationPreferences,
    ) -> Optional[DeviceToken]:
        """Replace the preferences of one registration.

        Returns:
            The updated registration, or None if the row does not exist
        """
        async with self._session("update notification preferences") as session:
            result = await session.execute(
                update(PushToken)
                .where(
                    PushToken.user_id == user_id,
                    PushToken.push_token == token,
                )
                .values(preferences=preferences.to_storage(), updated_at=datetime.utcnow())
            )
            await retry_on_lock(session.commit)
            if not result.rowcount:
                return None
            row = await self._fetch_row(session, user_id, token)

        return DeviceToken.from_row(row) if row else None

    async def _fetch_row(self, session: AsyncSession, user_id: str, token: str) -> Optional[PushToken]:
        result = await session.execute(
            select(PushToken).where(
                PushToken.user_id == user_id,
                PushToken.push_token == token,
            )
        )
        return result.scalar_one_or_none()
