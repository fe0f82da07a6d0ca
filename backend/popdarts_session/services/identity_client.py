"""Identity provider client - Supabase Auth (GoTrue) over HTTP.

The client keeps the current session in local storage and announces every
change as an AuthEvent on a single ordered queue, read through ``events()``.
"""
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Protocol

import httpx

from ..exceptions import ProviderError, StoreError
from ..models.stored_value import SESSION_KEY
from ..schemas.session import AuthEvent, AuthEventType, Session
from .local_storage import KeyValueStore

logger = logging.getLogger(__name__)


class IdentityClient(Protocol):
    """Boundary to the identity provider.

    Every operation that changes the session emits exactly one matching
    event: SIGNED_IN for sign-in/sign-up/set_session, TOKEN_REFRESHED for a
    refresh, SIGNED_OUT for ``sign_out`` (even when revocation fails).
    """

    async def get_session(self) -> Optional[Session]: ...

    async def sign_up(self, email: str, password: str, metadata: Dict[str, Any]) -> Optional[Session]: ...

    async def sign_in_with_password(self, email: str, password: str) -> Session: ...

    async def sign_in_with_oauth(self, provider: str, redirect_to: Optional[str] = None) -> str: ...

    async def set_session(self, access_token: str, refresh_token: str, expires_in: Optional[int] = None) -> Session: ...

    async def refresh_session(self) -> Session: ...

    async def sign_out(self) -> None: ...

    def events(self) -> AsyncIterator[AuthEvent]: ...


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("msg", "error_description", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


def _session_from(data: Dict[str, Any]) -> Session:
    try:
        return Session.from_token_response(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ProviderError(f"Malformed token response: {e!r}") from e


class GoTrueIdentityClient:
    """Supabase Auth REST client implementing IdentityClient."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        storage: KeyValueStore,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._auth_url = f"{base_url.rstrip('/')}/auth/v1"
        self._storage = storage
        self._client = httpx.AsyncClient(
            base_url=self._auth_url,
            headers={"apikey": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self._session: Optional[Session] = None
        self._loaded = False
        self._queue: "asyncio.Queue[AuthEvent]" = asyncio.Queue()

    async def aclose(self):
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        try:
            response = await self._client.request(method, path, json=payload, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"Identity provider unreachable: {e}") from e

        if response.status_code >= 400:
            body_code = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    body_code = body.get("error_code") or body.get("error")
            except ValueError:
                pass
            raise ProviderError(_error_message(response), status_code=response.status_code, error_code=body_code)

        if not response.content:
            return {}
        return response.json()

    # Session persistence

    async def get_session(self) -> Optional[Session]:
        """Current session, restored from storage on first call.

        An expired stored session is refreshed; if that fails it is dropped.
        """
        if not self._loaded:
            self._loaded = True
            self._session = await self._load_stored_session()

        if self._session and self._session.is_expired():
            try:
                return await self.refresh_session()
            except ProviderError as e:
                logger.warning(f"Stored session could not be refreshed: {e}")
                return None
        return self._session

    async def _load_stored_session(self) -> Optional[Session]:
        raw = await self._storage.get_item(SESSION_KEY)
        if not raw:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable stored session: {e}")
            return None

    async def _store_session(self, session: Optional[Session], event_type: AuthEventType):
        self._session = session
        self._loaded = True
        try:
            if session is None:
                await self._storage.remove_items(SESSION_KEY)
            else:
                await self._storage.set_item(SESSION_KEY, json.dumps(session.to_dict()))
        except StoreError as e:
            # The in-memory session is still valid for this process
            logger.warning(f"Failed to persist session: {e}")
        await self._queue.put(AuthEvent(event_type, session))

    # Provider operations

    async def sign_up(self, email: str, password: str, metadata: Dict[str, Any]) -> Optional[Session]:
        """Create an account.

        Returns:
            The new session, or None when the provider requires email confirmation
        """
        data = await self._request("POST", "/signup", {"email": email, "password": password, "data": metadata})
        if not data.get("access_token"):
            logger.info(f"Sign-up for {email} awaiting email confirmation")
            return None
        session = _session_from(data)
        await self._store_session(session, AuthEventType.SIGNED_IN)
        return session

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        data = await self._request(
            "POST", "/token", {"email": email, "password": password}, params={"grant_type": "password"}
        )
        session = _session_from(data)
        await self._store_session(session, AuthEventType.SIGNED_IN)
        return session

    async def sign_in_with_oauth(self, provider: str, redirect_to: Optional[str] = None) -> str:
        """Build the provider authorize URL the user agent should open."""
        params = {"provider": provider}
        if redirect_to:
            params["redirect_to"] = redirect_to
        return str(httpx.URL(f"{self._auth_url}/authorize", params=params))

    async def set_session(self, access_token: str, refresh_token: str, expires_in: Optional[int] = None) -> Session:
        """Adopt a token pair received out of band (OAuth callback)."""
        try:
            user = await self._request("GET", "/user", access_token=access_token)
        except ProviderError as e:
            if e.status_code != 401:
                raise
            # Access token already expired; the refresh token can still vouch for it
            data = await self._request(
                "POST", "/token", {"refresh_token": refresh_token}, params={"grant_type": "refresh_token"}
            )
            session = _session_from(data)
        else:
            session = _session_from({
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expires_in": expires_in,
                "user": user,
            })
        await self._store_session(session, AuthEventType.SIGNED_IN)
        return session

    async def refresh_session(self) -> Session:
        """Exchange the refresh token for a new session.

        An auth failure means the session is gone: it is cleared and
        SIGNED_OUT is emitted before the error is raised. If the session was
        signed out or replaced while the request was in flight, the refreshed
        tokens are dropped.
        """
        current = self._session
        if current is None:
            raise ProviderError("No session to refresh")
        try:
            data = await self._request(
                "POST", "/token", {"refresh_token": current.refresh_token}, params={"grant_type": "refresh_token"}
            )
        except ProviderError as e:
            if e.is_auth_failure and self._session is current:
                logger.warning(f"Refresh token rejected, signing out: {e}")
                await self._store_session(None, AuthEventType.SIGNED_OUT)
            raise
        session = _session_from(data)
        if self._session is not current:
            logger.info("Session changed during refresh, dropping refreshed tokens")
            if self._session is None:
                raise ProviderError("Signed out during refresh")
            return self._session
        await self._store_session(session, AuthEventType.TOKEN_REFRESHED)
        return session

    async def sign_out(self) -> None:
        """Revoke the session remotely and clear it locally.

        The local session is cleared even if revocation fails; the error is
        raised afterwards.
        """
        current = self._session
        error = None
        if current is not None:
            try:
                await self._request("POST", "/logout", access_token=current.access_token)
            except ProviderError as e:
                # 401/404: the session was already gone server-side
                if e.status_code not in (401, 403, 404):
                    error = e
        await self._store_session(None, AuthEventType.SIGNED_OUT)
        if error is not None:
            raise error

    async def events(self) -> AsyncIterator[AuthEvent]:
        """Auth events in emission order."""
        while True:
            yield await self._queue.get()
