"""Authentication state machine.

States: unauthenticated, guest, authenticating, authenticated, signing_out.

Entering ``authenticated`` registers this device for push notifications in a
background task; signing out removes the registration before the session is
revoked. Notification failures are reported through the error handlers and
the log, never through the AuthResult of the auth operation.

Provider events arrive on one ordered stream consumed by a single task.
Echoes of operations this manager already applied (the SIGNED_IN that
follows a password sign-in, the SIGNED_OUT that follows a sign-out) are
recognised and skipped.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple, TypeVar

from ..exceptions import InvalidTransition, ParseError, ProviderError, SessionCoreError, StoreError
from ..schemas.device import DeviceToken, NotificationPreferences
from ..schemas.session import (
    AuthEvent,
    AuthEventType,
    AuthResult,
    AuthSnapshot,
    AuthState,
    GuestProfile,
    NO_GUEST,
    PlatformCapabilities,
    Session,
)
from .identity_client import IdentityClient
from .local_storage import KeyValueStore
from .oauth_callback import UrlLocation, parse_callback_fragment, strip_fragment
from .push_lifecycle import PreferencesResult, PushTokenLifecycle, RegistrationResult, RegistrationStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[AuthSnapshot], None]
ErrorHandler = Callable[[Exception], None]

_ENTRY_STATES = (AuthState.UNAUTHENTICATED, AuthState.GUEST)

# Access tokens remembered to recognise provider echoes
_APPLIED_TOKEN_HISTORY = 32


class AuthSessionManager:
    """Owns the current Session, the guest profile and the device binding."""

    def __init__(
        self,
        identity: IdentityClient,
        storage: KeyValueStore,
        push: PushTokenLifecycle,
        capabilities: PlatformCapabilities = PlatformCapabilities(),
        location: Optional[UrlLocation] = None,
        oauth_timeout_seconds: float = 300.0,
        registration_grace_seconds: float = 10.0,
    ):
        self._identity = identity
        self._storage = storage
        self._push = push
        self._capabilities = capabilities
        self._location = location
        self._oauth_timeout = oauth_timeout_seconds
        self._registration_grace = registration_grace_seconds

        self._state = AuthState.UNAUTHENTICATED
        self._session: Optional[Session] = None
        self._guest: GuestProfile = NO_GUEST
        self._preferences: Optional[NotificationPreferences] = None

        self._listeners: List[Listener] = []
        self._error_handlers: List[ErrorHandler] = []

        self._consumer: Optional[asyncio.Task] = None
        self._oauth_timer: Optional[asyncio.TimerHandle] = None
        self._registrations: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._applied_tokens: deque = deque(maxlen=_APPLIED_TOKEN_HISTORY)
        self._discarded_tokens: deque = deque(maxlen=_APPLIED_TOKEN_HISTORY)
        self._pending_sign_out_echoes = 0
        # Bumped by every sign-out; authentications started earlier are void
        self._generation = 0

    # Read-only view

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def guest(self) -> GuestProfile:
        return self._guest

    @property
    def preferences(self) -> Optional[NotificationPreferences]:
        return self._preferences

    @property
    def oauth_pending(self) -> bool:
        return self._oauth_timer is not None

    def snapshot(self) -> AuthSnapshot:
        return AuthSnapshot(
            state=self._state,
            session=self._session,
            guest=self._guest,
            preferences=self._preferences,
        )

    # Subscribers and error channel

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with a snapshot after every change.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def add_error_handler(self, handler: ErrorHandler) -> Callable[[], None]:
        """Receive notification-path failures (registration, unregistration)."""
        self._error_handlers.append(handler)

        def remove():
            if handler in self._error_handlers:
                self._error_handlers.remove(handler)

        return remove

    def _notify(self):
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Auth state listener failed: {e}")

    def _report(self, error: Exception, context: str):
        logger.error(f"{context}: {error}")
        for handler in list(self._error_handlers):
            try:
                handler(error)
            except Exception as e:
                logger.error(f"Error handler failed: {e}")

    # Lifecycle

    async def start(self, initial_url: Optional[str] = None):
        """Restore the previous session or guest profile and start consuming events."""
        if self._consumer is not None:
            return
        logger.info("Initializing auth session")
        self._state = AuthState.AUTHENTICATING
        self._notify()
        generation = self._generation

        session, guest = await asyncio.gather(self._restore_session(), self._restore_guest())
        self._consumer = asyncio.create_task(self._consume_events())
        if generation != self._generation:
            logger.info("Signed out during startup, not restoring the session")
            return
        self._guest = guest

        if self._capabilities.has_redirect_url:
            result = await self.handle_oauth_callback(initial_url)
            if result.session is not None or generation != self._generation:
                return

        if session is not None:
            logger.info("Session restored: authenticated")
            await self._enter_authenticated(session)
        else:
            logger.info("Session restored: guest" if guest.is_guest else "Session restored: no session")
            self._resolve_resting()

    async def stop(self):
        """Stop consuming events and wait for background notification work."""
        self._cancel_oauth_timer()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        pending = list(self._registrations.values()) + list(self._background)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def wait_idle(self):
        """Wait until no registration or cleanup task is running."""
        while True:
            pending = [t for t in list(self._registrations.values()) + list(self._background) if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _restore_session(self) -> Optional[Session]:
        try:
            return await self._identity.get_session()
        except (ProviderError, StoreError) as e:
            logger.error(f"Error loading session: {e}")
            return None

    async def _restore_guest(self) -> GuestProfile:
        try:
            guest = await self._storage.load_guest()
        except StoreError as e:
            logger.error(f"Error checking guest mode: {e}")
            return NO_GUEST
        if guest.is_guest:
            logger.info("Guest mode detected")
        return guest

    # State transitions

    def _resting_state(self) -> AuthState:
        return AuthState.GUEST if self._guest.is_guest else AuthState.UNAUTHENTICATED

    def _begin(self, operation: str, allowed: Tuple[AuthState, ...]) -> Optional[InvalidTransition]:
        """Enter authenticating, or explain why the operation is not allowed."""
        pending_redirect = self._state == AuthState.AUTHENTICATING and self.oauth_pending
        if self._state not in allowed and not pending_redirect:
            return InvalidTransition(operation, self._state.value)
        self._cancel_oauth_timer()
        self._state = AuthState.AUTHENTICATING
        self._notify()
        return None

    def _resolve_resting(self):
        """Leave authenticating for guest or unauthenticated."""
        if self._state != AuthState.AUTHENTICATING:
            return
        self._cancel_oauth_timer()
        self._session = None
        self._preferences = None
        self._state = self._resting_state()
        self._notify()

    async def _call_provider(self, operation: str, call: Callable[[], Awaitable[T]]) -> Tuple[Optional[T], Optional[SessionCoreError]]:
        """Run a provider call made while authenticating.

        Any failure resolves the pending authentication before it is
        returned (ProviderError) or re-raised (anything else). A result that
        arrives after a sign-out started is discarded and reported as an
        InvalidTransition.
        """
        generation = self._generation
        try:
            result = await call()
        except ProviderError as e:
            logger.error(f"{operation} error: {e}")
            if generation == self._generation:
                self._resolve_resting()
            return None, e
        except BaseException:
            if generation == self._generation:
                self._resolve_resting()
            raise

        if generation != self._generation:
            await self._discard_session(operation, result if isinstance(result, Session) else None)
            return None, InvalidTransition(operation.lower(), AuthState.SIGNING_OUT.value)
        return result, None

    async def _discard_session(self, operation: str, session: Optional[Session]):
        """Revoke a session the provider issued after a sign-out started."""
        logger.warning(f"{operation} completed after sign out, discarding the session")
        if session is None:
            return
        self._discarded_tokens.append(session.access_token)
        self._pending_sign_out_echoes += 1
        try:
            await self._identity.sign_out()
        except ProviderError as e:
            logger.error(f"Error revoking discarded session: {e}")

    async def _enter_authenticated(self, session: Session):
        """Adopt a session; register the device when the user changes."""
        previous_user = self._session.user_id if self._state == AuthState.AUTHENTICATED and self._session else None
        self._cancel_oauth_timer()
        self._applied_tokens.append(session.access_token)
        self._session = session
        self._state = AuthState.AUTHENTICATED
        user_changed = previous_user != session.user_id
        if user_changed:
            self._preferences = None
        self._notify()

        if self._guest.is_guest:
            await self._clear_guest()
        if user_changed:
            self._schedule_registration(session.user_id)

    def _replace_session(self, session: Session):
        self._applied_tokens.append(session.access_token)
        self._session = session
        self._notify()

    async def _clear_guest(self):
        try:
            await self._storage.clear_guest()
        except StoreError as e:
            logger.error(f"Error clearing guest mode: {e}")
        if self._guest.is_guest:
            self._guest = NO_GUEST
            self._notify()

    # OAuth redirect

    def _arm_oauth_timer(self):
        self._cancel_oauth_timer()
        loop = asyncio.get_running_loop()
        self._oauth_timer = loop.call_later(self._oauth_timeout, self._oauth_expired)

    def _cancel_oauth_timer(self):
        if self._oauth_timer is not None:
            self._oauth_timer.cancel()
            self._oauth_timer = None

    def _oauth_expired(self):
        self._oauth_timer = None
        if self._state == AuthState.AUTHENTICATING:
            logger.warning("OAuth redirect was not completed in time")
            self._resolve_resting()

    def _replace_location(self, url: str):
        if self._location is None:
            return
        clean = strip_fragment(url)
        self._location.replace_url(clean)

    # Public operations

    async def sign_up(self, email: str, password: str, display_name: str) -> AuthResult:
        """Create an account and sign in to it."""
        error = self._begin("sign up", _ENTRY_STATES)
        if error:
            return AuthResult(error=error)
        return await self._sign_up(email, password, display_name, converting=False)

    async def _sign_up(self, email: str, password: str, display_name: str, converting: bool) -> AuthResult:
        operation = "Convert guest" if converting else "Sign up"
        session, error = await self._call_provider(
            operation,
            lambda: self._identity.sign_up(email, password, {"display_name": display_name}),
        )
        if error:
            return AuthResult(error=error)

        if session is None:
            # Account created; provider wants the email confirmed first
            if converting:
                await self._clear_guest()
            self._resolve_resting()
            return AuthResult(confirmation_required=True)

        await self._enter_authenticated(session)
        return AuthResult(session=session)

    async def sign_in(self, email: str, password: str) -> AuthResult:
        """Sign in with email and password."""
        error = self._begin("sign in", _ENTRY_STATES)
        if error:
            return AuthResult(error=error)

        session, error = await self._call_provider(
            "Sign in",
            lambda: self._identity.sign_in_with_password(email, password),
        )
        if error:
            return AuthResult(error=error)

        await self._enter_authenticated(session)
        return AuthResult(session=session)

    async def sign_in_with_oauth(self, provider: str) -> AuthResult:
        """Start an OAuth redirect sign-in.

        Returns the authorize URL to open. The state stays authenticating
        until the callback is handled, the provider reports a sign-in, or the
        redirect times out.
        """
        error = self._begin("sign in with OAuth", _ENTRY_STATES)
        if error:
            return AuthResult(error=error)

        redirect_to = self._capabilities.redirect_url if self._capabilities.has_redirect_url else None
        url, error = await self._call_provider(
            "OAuth sign in",
            lambda: self._identity.sign_in_with_oauth(provider, redirect_to),
        )
        if error:
            return AuthResult(error=error)

        self._arm_oauth_timer()
        return AuthResult(url=url)

    async def handle_oauth_callback(self, url: Optional[str] = None) -> AuthResult:
        """Exchange an OAuth callback fragment for a session.

        ``url`` defaults to the visible location. A URL without a callback,
        or with a malformed one, is a no-op. The fragment is removed from the
        visible location once it has been used, whatever the outcome.
        """
        if url is None and self._location is not None:
            url = self._location.current_url()
        if not url:
            return AuthResult()

        try:
            callback = parse_callback_fragment(url)
        except ParseError as e:
            logger.warning(f"Ignoring OAuth callback: {e}")
            return AuthResult()
        if callback is None:
            return AuthResult()

        if self._state == AuthState.SIGNING_OUT:
            return AuthResult(error=InvalidTransition("complete OAuth sign in", self._state.value))

        if callback.error:
            self._replace_location(url)
            error = ProviderError(callback.error_description or callback.error, error_code=callback.error)
            logger.error(f"OAuth provider returned an error: {error}")
            self._resolve_resting()
            return AuthResult(error=error)

        self._cancel_oauth_timer()
        # An already signed-in user keeps their session if the exchange fails
        if self._state not in (AuthState.AUTHENTICATING, AuthState.AUTHENTICATED):
            self._state = AuthState.AUTHENTICATING
            self._notify()

        try:
            session, error = await self._call_provider(
                "OAuth callback",
                lambda: self._identity.set_session(
                    callback.access_token, callback.refresh_token, callback.expires_in
                ),
            )
        finally:
            self._replace_location(url)
        if error:
            return AuthResult(error=error)

        logger.info("OAuth callback exchanged for a session")
        await self._enter_authenticated(session)
        return AuthResult(session=session)

    async def enable_guest_mode(self, name: str) -> AuthResult:
        """Use the app without an account under a display name."""
        if self._state not in _ENTRY_STATES:
            return AuthResult(error=InvalidTransition("enable guest mode", self._state.value))
        name = (name or "").strip()
        if not name:
            return AuthResult(error=SessionCoreError("Please enter your name"))

        try:
            self._guest = await self._storage.save_guest(name)
        except StoreError as e:
            logger.error(f"Guest mode error: {e}")
            return AuthResult(error=e)

        self._state = AuthState.GUEST
        self._notify()
        return AuthResult()

    async def convert_guest_to_account(
        self,
        email: str,
        password: str,
        display_name: Optional[str] = None,
    ) -> AuthResult:
        """Turn the guest profile into a real account.

        The guest's name is the default display name. Guest state is only
        cleared once sign-up has succeeded.
        """
        if self._state != AuthState.GUEST:
            return AuthResult(error=InvalidTransition("convert guest to account", self._state.value))
        name = display_name or self._guest.display_name
        self._begin("convert guest to account", (AuthState.GUEST,))
        return await self._sign_up(email, password, name, converting=True)

    async def sign_out(self) -> AuthResult:
        """Sign out from any state.

        The device registration is removed first; failing to remove it does
        not stop the sign-out. Guest data is always cleared. A revocation
        error is returned, but local state is cleared regardless.
        """
        if self._state == AuthState.SIGNING_OUT:
            return AuthResult(error=InvalidTransition("sign out", self._state.value))

        self._generation += 1
        self._cancel_oauth_timer()
        session = self._session
        self._state = AuthState.SIGNING_OUT
        self._notify()

        error = None
        try:
            if session is not None:
                await self._release_device(session.user_id)

            self._pending_sign_out_echoes += 1
            try:
                await self._identity.sign_out()
            except ProviderError as e:
                logger.error(f"Sign out error: {e}")
                error = e
        finally:
            await self._clear_guest()
            self._session = None
            self._preferences = None
            self._state = AuthState.UNAUTHENTICATED
            self._notify()

        return AuthResult(error=error)

    # Notification preferences

    async def get_notification_preferences(self) -> Optional[NotificationPreferences]:
        """Load the stored preferences for the signed-in user's device."""
        if self._state != AuthState.AUTHENTICATED:
            return None
        user_id = self._session.user_id
        preferences = await self._push.get_preferences(user_id)
        if self._is_current_user(user_id) and preferences != self._preferences:
            self._preferences = preferences
            self._notify()
        return preferences

    async def update_notification_preferences(self, patch: Mapping[str, Any]) -> PreferencesResult:
        """Apply a preference change optimistically and confirm it with the store.

        The local view is reverted if the store rejects the change.
        """
        return await self._change_preferences(
            patch,
            lambda user_id: self._push.update_preferences(user_id, patch),
        )

    async def set_push_notifications_enabled(self, enabled: bool) -> PreferencesResult:
        """Toggle the master notification flag (prompts for permission when enabling)."""
        return await self._change_preferences(
            {"push_notifications_enabled": enabled},
            lambda user_id: self._push.set_push_enabled(user_id, enabled),
        )

    async def _change_preferences(
        self,
        patch: Mapping[str, Any],
        change: Callable[[str], Awaitable[PreferencesResult]],
    ) -> PreferencesResult:
        if self._state != AuthState.AUTHENTICATED:
            error = InvalidTransition("update notification preferences", self._state.value)
            return PreferencesResult(ok=False, message=str(error), error=error)

        user_id = self._session.user_id
        previous = self._preferences
        if previous is None:
            previous = await self._push.get_preferences(user_id)
        try:
            optimistic = (previous or NotificationPreferences()).merged(patch)
        except ValueError as e:
            return PreferencesResult(ok=False, message=str(e), error=e)

        if self._is_current_user(user_id):
            self._preferences = optimistic
            self._notify()

        result = await change(user_id)

        if self._is_current_user(user_id):
            if result.ok:
                self._preferences = result.preferences
            else:
                logger.warning(f"Reverting notification preferences: {result.message}")
                self._preferences = result.preferences or previous
            self._notify()
        return result

    async def list_devices(self) -> List[DeviceToken]:
        """Registered devices of the signed-in user. Raises StoreError."""
        if self._state != AuthState.AUTHENTICATED:
            return []
        return await self._push.list_devices(self._session.user_id)

    def active_device_token(self) -> Optional[str]:
        if self._state != AuthState.AUTHENTICATED:
            return None
        return self._push.active_token(self._session.user_id)

    def _is_current_user(self, user_id: str) -> bool:
        return (
            self._state == AuthState.AUTHENTICATED
            and self._session is not None
            and self._session.user_id == user_id
        )

    # Device registration

    def _track(self, task: asyncio.Task):
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _schedule_registration(self, user_id: str):
        task = asyncio.create_task(self._register_device(user_id))
        self._registrations[user_id] = task

        def finished(done: asyncio.Task):
            if self._registrations.get(user_id) is done:
                del self._registrations[user_id]

        task.add_done_callback(finished)

    async def _register_device(self, user_id: str) -> Optional[RegistrationResult]:
        try:
            result = await self._push.register(user_id)
        except Exception as e:
            self._report(e, f"Push registration crashed for user {user_id}")
            return None

        if not result.ok:
            self._report(result.error or StoreError("Push registration failed"), f"Push registration failed for user {user_id}")
            return result

        if result.status == RegistrationStatus.REGISTERED and self._is_current_user(user_id):
            preferences = await self._push.get_preferences(user_id)
            if self._is_current_user(user_id):
                self._preferences = preferences
                self._notify()
        return result

    async def _release_device(self, user_id: str):
        """Remove this device's registration for a user.

        A registration still running is given a grace period; if it is
        still running after that, removal happens once it completes.
        """
        pending = self._registrations.get(user_id)
        if pending is not None and not pending.done():
            done, _ = await asyncio.wait({pending}, timeout=self._registration_grace)
            if not done:
                logger.warning(f"Push registration for user {user_id} still pending, deferring cleanup")
                self._track(asyncio.create_task(self._unregister_after(pending, user_id)))
                return

        token = self._push.active_token(user_id)
        if token is None:
            return
        result = await self._push.unregister(user_id, token)
        if not result.ok:
            self._report(result.error, f"Failed to remove push token for user {user_id}")

    async def _unregister_after(self, registration: asyncio.Task, user_id: str):
        try:
            result = await registration
        except asyncio.CancelledError:
            return
        if result is None or result.token is None:
            return
        if self._is_current_user(user_id):
            # Signed back in meanwhile; the registration belongs to the new session
            return
        outcome = await self._push.unregister(user_id, result.token)
        if not outcome.ok:
            self._report(outcome.error, f"Failed to remove push token for user {user_id}")

    # Provider events

    async def _consume_events(self):
        async for event in self._identity.events():
            try:
                await self._handle_event(event)
            except Exception as e:
                logger.error(f"Failed to handle auth event {event.type.value}: {e}")

    async def _handle_event(self, event: AuthEvent):
        logger.debug(f"Auth state changed: {event.type.value}")

        if event.type == AuthEventType.SIGNED_OUT:
            if self._pending_sign_out_echoes > 0:
                self._pending_sign_out_echoes -= 1
                return
            if self._state == AuthState.AUTHENTICATED:
                user_id = self._session.user_id
                logger.info(f"Provider signed out user {user_id}")
                self._session = None
                self._preferences = None
                self._state = AuthState.UNAUTHENTICATED
                self._notify()
                self._track(asyncio.create_task(self._release_device(user_id)))
            return

        session = event.session
        if session is None:
            return
        if session.access_token in self._applied_tokens or session.access_token in self._discarded_tokens:
            return
        if self._state == AuthState.SIGNING_OUT:
            logger.debug(f"Ignoring {event.type.value} during sign out")
            return
        if event.type == AuthEventType.TOKEN_REFRESHED and not self._is_current_user(session.user_id):
            # A refresh that started before the user signed out or switched
            logger.debug(f"Ignoring refresh for user {session.user_id}")
            return

        if self._state == AuthState.AUTHENTICATED and self._session.user_id == session.user_id:
            self._replace_session(session)
        else:
            await self._enter_authenticated(session)
