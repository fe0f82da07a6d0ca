"""Device-local key/value storage backed by the local_storage table."""
import logging
from typing import Dict, Iterable, Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..exceptions import StoreError
from ..models.stored_value import StoredValue, GUEST_MODE_KEY, GUEST_NAME_KEY
from ..schemas.session import GuestProfile, NO_GUEST
from ..utils.db_utils import retry_on_lock

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Durable string key/value store for this device."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get_item(self, key: str) -> Optional[str]:
        values = await self.multi_get([key])
        return values.get(key)

    async def multi_get(self, keys: Iterable[str]) -> Dict[str, str]:
        """Fetch several keys at once; missing keys are absent from the result."""
        keys = list(keys)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(StoredValue).where(StoredValue.key.in_(keys))
                )
                return {item.key: item.value for item in result.scalars().all()}
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read local storage: {e}") from e

    async def set_item(self, key: str, value: str):
        await self.multi_set({key: value})

    async def multi_set(self, items: Dict[str, str]):
        try:
            async with self._session_factory() as session:
                for key, value in items.items():
                    await session.merge(StoredValue(key=key, value=value))
                await retry_on_lock(session.commit)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to write local storage: {e}") from e

    async def remove_items(self, *keys: str):
        """Remove keys. Missing keys are ignored."""
        try:
            async with self._session_factory() as session:
                await session.execute(delete(StoredValue).where(StoredValue.key.in_(keys)))
                await retry_on_lock(session.commit)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to write local storage: {e}") from e

    # Guest profile helpers

    async def load_guest(self) -> GuestProfile:
        values = await self.multi_get([GUEST_MODE_KEY, GUEST_NAME_KEY])
        if values.get(GUEST_MODE_KEY) != "true":
            return NO_GUEST
        return GuestProfile(is_guest=True, display_name=values.get(GUEST_NAME_KEY, ""))

    async def save_guest(self, display_name: str) -> GuestProfile:
        await self.multi_set({GUEST_MODE_KEY: "true", GUEST_NAME_KEY: display_name})
        return GuestProfile(is_guest=True, display_name=display_name)

    async def clear_guest(self):
        await self.remove_items(GUEST_MODE_KEY, GUEST_NAME_KEY)
        logger.debug("Guest profile cleared")
