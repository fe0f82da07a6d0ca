import asyncio

import pytest

from conftest import DEVICE_TOKEN, eventually, make_session, settle
from popdarts_session.exceptions import InvalidTransition, NotificationError, ProviderError, StoreError
from popdarts_session.models.stored_value import GUEST_MODE_KEY, GUEST_NAME_KEY
from popdarts_session.schemas.session import AuthEvent, AuthEventType, AuthState, PlatformCapabilities
from popdarts_session.services.auth_manager import AuthSessionManager
from popdarts_session.services.oauth_callback import BrowserLocation
from popdarts_session.services.permission_negotiator import PermissionStatus

CALLBACK_URL = "https://app.example/#access_token=T1&refresh_token=T2&expires_in=3600"


class Recorder:
    """Collects snapshots and checks the session/state invariant on each one."""

    def __init__(self):
        self.snapshots = []

    def __call__(self, snapshot):
        if snapshot.state == AuthState.UNAUTHENTICATED:
            assert snapshot.session is None
        if snapshot.state == AuthState.AUTHENTICATED:
            assert snapshot.session is not None
        self.snapshots.append(snapshot)

    @property
    def states(self):
        states = []
        for snapshot in self.snapshots:
            if not states or states[-1] != snapshot.state.value:
                states.append(snapshot.state.value)
        return states


@pytest.fixture
def recorder(manager):
    recorder = Recorder()
    manager.subscribe(recorder)
    return recorder


async def _guest_keys(storage):
    return await storage.multi_get([GUEST_MODE_KEY, GUEST_NAME_KEY])


# Startup


@pytest.mark.asyncio
async def test_start_without_session(manager, recorder):
    await manager.start()

    assert manager.state == AuthState.UNAUTHENTICATED
    assert recorder.states == ["authenticating", "unauthenticated"]


@pytest.mark.asyncio
async def test_start_restores_guest(manager, storage):
    await storage.save_guest("Alex")

    await manager.start()

    assert manager.state == AuthState.GUEST
    assert manager.guest.display_name == "Alex"


@pytest.mark.asyncio
async def test_start_restores_session_and_registers(manager, identity, token_store):
    identity.stored_session = make_session(user_id="u1")

    await manager.start()
    await settle(manager, identity)

    assert manager.state == AuthState.AUTHENTICATED
    assert manager.session.user_id == "u1"
    assert await token_store.get("u1", DEVICE_TOKEN) is not None
    assert manager.preferences is not None


@pytest.mark.asyncio
async def test_start_with_provider_error(manager, identity):
    identity.failures["get_session"] = ProviderError("offline")

    await manager.start()

    assert manager.state == AuthState.UNAUTHENTICATED


# Email and password


@pytest.mark.asyncio
async def test_sign_in_registers_device(manager, identity, recorder, token_store, platform):
    await manager.start()

    result = await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)

    assert result.ok
    assert recorder.states == ["authenticating", "unauthenticated", "authenticating", "authenticated"]
    rows = await token_store.get_by_user("user-a@b.com")
    assert [row.token for row in rows] == [DEVICE_TOKEN]
    # The provider's own SIGNED_IN did not trigger a second registration
    assert platform.token_requests == 1


@pytest.mark.asyncio
async def test_sign_in_failure_returns_to_resting_state(manager, identity, storage):
    await storage.save_guest("Alex")
    await manager.start()
    identity.failures["sign_in_with_password"] = ProviderError("Invalid login credentials", status_code=400)

    result = await manager.sign_in("a@b.com", "wrong")

    assert isinstance(result.error, ProviderError)
    assert manager.state == AuthState.GUEST
    assert manager.session is None


@pytest.mark.asyncio
async def test_unexpected_error_still_resolves(manager, identity):
    await manager.start()
    identity.failures["sign_in_with_password"] = RuntimeError("bug")

    with pytest.raises(RuntimeError):
        await manager.sign_in("a@b.com", "secret123")

    assert manager.state == AuthState.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_sign_in_while_authenticated_is_rejected(manager, identity):
    await manager.start()
    await manager.sign_in("a@b.com", "secret123")

    result = await manager.sign_in("c@d.com", "secret123")

    assert isinstance(result.error, InvalidTransition)
    assert manager.session.user_id == "user-a@b.com"
    await settle(manager, identity)


@pytest.mark.asyncio
async def test_sign_up_signs_in(manager, identity):
    await manager.start()

    result = await manager.sign_up("new@b.com", "secret123", "Newbie")
    await settle(manager, identity)

    assert result.ok
    assert manager.state == AuthState.AUTHENTICATED
    assert manager.session.display_name == "Newbie"


@pytest.mark.asyncio
async def test_sign_up_awaiting_confirmation(manager, identity):
    identity.confirm_email = True
    await manager.start()

    result = await manager.sign_up("new@b.com", "secret123", "Newbie")

    assert result.ok
    assert result.confirmation_required
    assert manager.state == AuthState.UNAUTHENTICATED


# Guest mode


@pytest.mark.asyncio
async def test_enable_guest_mode(manager, storage):
    await manager.start()

    result = await manager.enable_guest_mode("  Alex ")

    assert result.ok
    assert manager.state == AuthState.GUEST
    assert await _guest_keys(storage) == {GUEST_MODE_KEY: "true", GUEST_NAME_KEY: "Alex"}


@pytest.mark.asyncio
async def test_enable_guest_mode_requires_name(manager):
    await manager.start()

    result = await manager.enable_guest_mode("   ")

    assert not result.ok
    assert manager.state == AuthState.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_convert_guest_to_account(manager, identity, storage, recorder):
    await manager.start()
    await manager.enable_guest_mode("Alex")

    result = await manager.convert_guest_to_account("alex@b.com", "secret123")
    await settle(manager, identity)

    assert result.ok
    assert manager.state == AuthState.AUTHENTICATED
    assert manager.session.display_name == "Alex"
    assert manager.guest.is_guest is False
    assert await _guest_keys(storage) == {}
    assert recorder.snapshots[-1].guest.is_guest is False


@pytest.mark.asyncio
async def test_failed_conversion_keeps_guest(manager, identity, storage):
    await manager.start()
    await manager.enable_guest_mode("Alex")
    identity.failures["sign_up"] = ProviderError("User already registered", status_code=422)

    result = await manager.convert_guest_to_account("alex@b.com", "secret123")

    assert isinstance(result.error, ProviderError)
    assert manager.state == AuthState.GUEST
    assert (await _guest_keys(storage))[GUEST_NAME_KEY] == "Alex"


@pytest.mark.asyncio
async def test_conversion_awaiting_confirmation(manager, identity, storage):
    identity.confirm_email = True
    await manager.start()
    await manager.enable_guest_mode("Alex")

    result = await manager.convert_guest_to_account("alex@b.com", "secret123")

    assert result.confirmation_required
    assert manager.state == AuthState.UNAUTHENTICATED
    assert await _guest_keys(storage) == {}


@pytest.mark.asyncio
async def test_convert_requires_guest(manager):
    await manager.start()

    result = await manager.convert_guest_to_account("alex@b.com", "secret123")

    assert isinstance(result.error, InvalidTransition)


# Sign out


@pytest.mark.asyncio
async def test_sign_out_removes_registration(manager, identity, token_store, recorder):
    await manager.start()
    await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)

    result = await manager.sign_out()
    await settle(manager, identity)

    assert result.ok
    assert manager.state == AuthState.UNAUTHENTICATED
    assert manager.session is None
    assert recorder.states[-2:] == ["signing_out", "unauthenticated"]
    assert await token_store.get_by_user("user-a@b.com") == []


@pytest.mark.asyncio
async def test_sign_out_from_guest_clears_guest(manager, storage):
    await manager.start()
    await manager.enable_guest_mode("Alex")

    await manager.sign_out()

    assert manager.state == AuthState.UNAUTHENTICATED
    assert await _guest_keys(storage) == {}


@pytest.mark.asyncio
async def test_sign_out_without_guest_data(manager, storage):
    await manager.start()

    result = await manager.sign_out()

    assert result.ok
    assert await _guest_keys(storage) == {}


@pytest.mark.asyncio
async def test_sign_out_revocation_error_still_clears(manager, identity):
    await manager.start()
    await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)
    identity.failures["sign_out"] = ProviderError("server error", status_code=500)

    result = await manager.sign_out()
    await settle(manager, identity)

    assert isinstance(result.error, ProviderError)
    assert manager.state == AuthState.UNAUTHENTICATED
    assert manager.session is None


@pytest.mark.asyncio
async def test_sign_out_while_registration_pending(manager, identity, platform, token_store):
    platform.token_gate = asyncio.Event()
    await manager.start()
    await manager.sign_in("a@b.com", "secret123")
    await eventually(lambda: platform.token_requests == 1)

    await manager.sign_out()
    assert manager.state == AuthState.UNAUTHENTICATED

    platform.token_gate.set()
    await settle(manager, identity)

    assert await token_store.get_by_user("user-a@b.com") == []


@pytest.mark.asyncio
async def test_unregister_failure_does_not_block_sign_out(manager, identity, token_store, monkeypatch):
    errors = []
    manager.add_error_handler(errors.append)
    await manager.start()
    await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)

    async def broken_delete(user_id, token):
        raise StoreError("database unavailable")

    monkeypatch.setattr(token_store, "delete", broken_delete)

    result = await manager.sign_out()

    assert result.ok
    assert manager.state == AuthState.UNAUTHENTICATED
    assert isinstance(errors[0], StoreError)


@pytest.mark.asyncio
async def test_sign_out_during_sign_in_discards_session(manager, identity, platform, token_store, recorder):
    gate = identity.gates["sign_in_with_password"] = asyncio.Event()
    await manager.start()
    sign_in = asyncio.create_task(manager.sign_in("a@b.com", "secret123"))
    await eventually(lambda: "sign_in_with_password" in identity.calls)

    sign_out = await manager.sign_out()
    gate.set()
    result = await sign_in
    await settle(manager, identity)

    assert sign_out.ok
    assert isinstance(result.error, InvalidTransition)
    assert manager.state == AuthState.UNAUTHENTICATED
    assert manager.session is None
    assert identity.session is None
    assert identity.calls.count("sign_out") == 2
    assert "authenticated" not in recorder.states
    assert platform.token_requests == 0
    assert await token_store.get_by_user("user-a@b.com") == []


@pytest.mark.asyncio
async def test_sign_out_during_sign_up_discards_session(manager, identity, token_store):
    gate = identity.gates["sign_up"] = asyncio.Event()
    await manager.start()
    sign_up = asyncio.create_task(manager.sign_up("a@b.com", "secret123", "Alex"))
    await eventually(lambda: "sign_up" in identity.calls)

    await manager.sign_out()
    gate.set()
    result = await sign_up
    await settle(manager, identity)

    assert isinstance(result.error, InvalidTransition)
    assert manager.state == AuthState.UNAUTHENTICATED
    assert identity.session is None
    assert await token_store.get_by_user("user-a@b.com") == []


@pytest.mark.asyncio
async def test_sign_out_during_oauth_callback_discards_session(manager, identity, token_store):
    gate = identity.gates["set_session"] = asyncio.Event()
    await manager.start()
    callback = asyncio.create_task(manager.handle_oauth_callback(CALLBACK_URL))
    await eventually(lambda: "set_session" in identity.calls)

    await manager.sign_out()
    gate.set()
    result = await callback
    await settle(manager, identity)

    assert isinstance(result.error, InvalidTransition)
    assert manager.state == AuthState.UNAUTHENTICATED
    assert identity.session is None
    assert await token_store.get_by_user("user-oauth") == []


@pytest.mark.asyncio
async def test_sign_out_during_startup_skips_restore(manager, identity, platform):
    identity.stored_session = make_session(user_id="u1")
    gate = identity.gates["get_session"] = asyncio.Event()
    start = asyncio.create_task(manager.start())
    await eventually(lambda: "get_session" in identity.calls)

    await manager.sign_out()
    gate.set()
    await start
    await settle(manager, identity)

    assert manager.state == AuthState.UNAUTHENTICATED
    assert manager.session is None
    assert platform.token_requests == 0


@pytest.mark.asyncio
async def test_refresh_after_sign_out_is_ignored(manager, identity, token_store):
    await manager.start()
    await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)
    await manager.sign_out()
    await settle(manager, identity)

    await identity.queue.put(AuthEvent(AuthEventType.TOKEN_REFRESHED, make_session(user_id="user-a@b.com")))
    await settle(manager, identity)

    assert manager.state == AuthState.UNAUTHENTICATED
    assert manager.session is None
    assert await token_store.get_by_user("user-a@b.com") == []


# Provider events


@pytest.mark.asyncio
async def test_provider_sign_out_event(manager, identity, token_store):
    await manager.start()
    await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)

    await identity.emit(AuthEventType.SIGNED_OUT)
    await settle(manager, identity)

    assert manager.state == AuthState.UNAUTHENTICATED
    assert manager.session is None
    assert await token_store.get_by_user("user-a@b.com") == []


@pytest.mark.asyncio
async def test_token_refresh_replaces_session(manager, identity, platform):
    await manager.start()
    await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)
    first = manager.session

    refreshed = await identity.refresh_session()
    await settle(manager, identity)

    assert manager.session == refreshed
    assert manager.session.access_token != first.access_token
    assert platform.token_requests == 1


@pytest.mark.asyncio
async def test_provider_sign_in_event_is_adopted(manager, identity, token_store):
    await manager.start()

    await identity.emit(AuthEventType.SIGNED_IN, make_session(user_id="u7"))
    await settle(manager, identity)

    assert manager.state == AuthState.AUTHENTICATED
    assert manager.session.user_id == "u7"
    assert await token_store.get("u7", DEVICE_TOKEN) is not None


# OAuth


@pytest.mark.asyncio
async def test_oauth_redirect_and_callback(identity, storage, push):
    location = BrowserLocation()
    manager = AuthSessionManager(
        identity,
        storage,
        push,
        capabilities=PlatformCapabilities(has_redirect_url=True, redirect_url="https://app.example/"),
        location=location,
    )
    try:
        await manager.start()

        result = await manager.sign_in_with_oauth("google")
        assert result.url.startswith("https://auth.example/authorize")
        assert manager.state == AuthState.AUTHENTICATING
        assert manager.oauth_pending

        location.replace_url(CALLBACK_URL)
        result = await manager.handle_oauth_callback()
        await settle(manager, identity)

        assert result.ok
        assert manager.state == AuthState.AUTHENTICATED
        assert manager.session.access_token == "T1"
        assert manager.session.refresh_token == "T2"
        assert not manager.oauth_pending
        assert location.current_url() == "https://app.example/"
    finally:
        await manager.stop()


@pytest.mark.asyncio
async def test_callback_on_startup(identity, storage, push):
    location = BrowserLocation(CALLBACK_URL)
    manager = AuthSessionManager(
        identity,
        storage,
        push,
        capabilities=PlatformCapabilities(has_redirect_url=True),
        location=location,
    )
    try:
        await manager.start()
        await settle(manager, identity)

        assert manager.state == AuthState.AUTHENTICATED
        assert manager.session.access_token == "T1"
        assert location.current_url() == "https://app.example/"
    finally:
        await manager.stop()


@pytest.mark.asyncio
async def test_callback_error_fragment(manager, storage):
    await storage.save_guest("Alex")
    await manager.start()
    await manager.sign_in_with_oauth("google")

    result = await manager.handle_oauth_callback(
        "https://app.example/#error=access_denied&error_description=Cancelled"
    )

    assert isinstance(result.error, ProviderError)
    assert manager.state == AuthState.GUEST


@pytest.mark.asyncio
async def test_callback_exchange_failure(manager, identity):
    await manager.start()
    identity.failures["set_session"] = ProviderError("invalid JWT", status_code=401)

    result = await manager.handle_oauth_callback(CALLBACK_URL)

    assert isinstance(result.error, ProviderError)
    assert manager.state == AuthState.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_url_without_callback_is_ignored(manager, identity):
    await manager.start()

    result = await manager.handle_oauth_callback("https://app.example/leagues")

    assert result.ok
    assert result.session is None
    assert "set_session" not in identity.calls


@pytest.mark.asyncio
async def test_abandoned_oauth_redirect_times_out(identity, storage, push):
    manager = AuthSessionManager(identity, storage, push, oauth_timeout_seconds=0.1)
    try:
        await manager.start()
        await manager.sign_in_with_oauth("google")
        assert manager.state == AuthState.AUTHENTICATING

        await eventually(lambda: manager.state == AuthState.UNAUTHENTICATED)
        assert not manager.oauth_pending
    finally:
        await manager.stop()


@pytest.mark.asyncio
async def test_password_sign_in_during_pending_redirect(manager, identity):
    await manager.start()
    await manager.sign_in_with_oauth("google")

    result = await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)

    assert result.ok
    assert manager.state == AuthState.AUTHENTICATED
    assert not manager.oauth_pending


# Notification preferences


@pytest.mark.asyncio
async def test_update_preferences(manager, identity, recorder):
    await manager.start()
    await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)

    result = await manager.update_notification_preferences({"flashSales": True})

    assert result.ok
    assert manager.preferences.flash_sales is True
    assert (await manager.get_notification_preferences()).flash_sales is True


@pytest.mark.asyncio
async def test_failed_preference_update_is_reverted(manager, identity, token_store, recorder, monkeypatch):
    await manager.start()
    await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)

    async def broken_update(user_id, token, preferences):
        raise StoreError("database unavailable")

    monkeypatch.setattr(token_store, "update_preferences", broken_update)

    result = await manager.update_notification_preferences({"flashSales": True})

    assert not result.ok
    assert manager.preferences.flash_sales is False
    assert any(s.preferences and s.preferences.flash_sales for s in recorder.snapshots)


@pytest.mark.asyncio
async def test_preferences_require_sign_in(manager):
    await manager.start()

    result = await manager.update_notification_preferences({"flashSales": True})

    assert isinstance(result.error, InvalidTransition)
    assert await manager.get_notification_preferences() is None


@pytest.mark.asyncio
async def test_enable_push_notifications(manager, identity):
    await manager.start()
    await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)

    result = await manager.set_push_notifications_enabled(True)

    assert result.ok
    assert manager.preferences.push_notifications_enabled is True


# Notification failures never fail authentication


@pytest.mark.asyncio
async def test_registration_failure_is_reported(manager, identity, platform):
    errors = []
    manager.add_error_handler(errors.append)
    platform.token_error = NotificationError("token service down")
    await manager.start()

    result = await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)

    assert result.ok
    assert manager.state == AuthState.AUTHENTICATED
    assert isinstance(errors[0], NotificationError)


@pytest.mark.asyncio
async def test_permission_denied_still_signs_in(manager, identity, platform, token_store):
    platform.answer = PermissionStatus.DENIED
    await manager.start()

    result = await manager.sign_in("a@b.com", "secret123")
    await settle(manager, identity)

    assert result.ok
    assert manager.state == AuthState.AUTHENTICATED
    assert await token_store.get_by_user("user-a@b.com") == []


@pytest.mark.asyncio
async def test_unsubscribe(manager):
    recorder = Recorder()
    unsubscribe = manager.subscribe(recorder)
    unsubscribe()

    await manager.start()

    assert recorder.snapshots == []
