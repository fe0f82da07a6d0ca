import asyncio
import itertools
import os
import tempfile
from datetime import datetime, timedelta

import httpx
import pytest
import pytest_asyncio

# Keep the module-level engines away from /data
os.environ.setdefault("DATA_PATH", tempfile.mkdtemp(prefix="popdarts-session-"))

from popdarts_session.database import create_engine_for_url, create_schema, create_session_factory
from popdarts_session.schemas.session import AuthEvent, AuthEventType, Session
from popdarts_session.services.auth_manager import AuthSessionManager
from popdarts_session.services.local_storage import KeyValueStore
from popdarts_session.services.permission_negotiator import PermissionNegotiator, PermissionStatus
from popdarts_session.services.push_lifecycle import PushTokenLifecycle
from popdarts_session.services.token_store import TokenStore

DEVICE_TOKEN = "ExponentPushToken[test-device-0001]"

_token_counter = itertools.count(1)


def make_session(user_id="user-1", email="a@b.com", display_name="Player", expires_in=3600):
    n = next(_token_counter)
    return Session(
        user_id=user_id,
        access_token=f"access-{n}",
        refresh_token=f"refresh-{n}",
        expires_at=datetime.utcnow() + timedelta(seconds=expires_in),
        email=email,
        user_metadata={"display_name": display_name} if display_name else {},
    )


def token_response(access="access-1", refresh="refresh-1", user_id="u1", email="a@b.com"):
    return {
        "access_token": access,
        "refresh_token": refresh,
        "token_type": "bearer",
        "expires_in": 3600,
        "user": {"id": user_id, "email": email, "user_metadata": {"display_name": "Dart Player"}},
    }


class Provider:
    """GoTrue stand-in for httpx.MockTransport: per-endpoint handlers, recorded requests."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, method, path, handler):
        self.routes[(method, path)] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"msg": "not found"})
        return handler(request)


class FakeIdentity:
    """In-memory identity provider emitting events like the GoTrue client."""

    def __init__(self):
        self.queue = asyncio.Queue()
        self.session = None
        self.stored_session = None
        self.confirm_email = False
        self.failures = {}
        self.gates = {}
        self.calls = []

    async def _enter(self, op):
        self.calls.append(op)
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        error = self.failures.get(op)
        if error is not None:
            raise error

    async def emit(self, event_type, session=None):
        self.session = session
        await self.queue.put(AuthEvent(event_type, session))

    async def get_session(self):
        await self._enter("get_session")
        self.session = self.stored_session
        return self.stored_session

    async def sign_up(self, email, password, metadata):
        await self._enter("sign_up")
        if self.confirm_email:
            return None
        session = make_session(user_id=f"user-{email}", email=email, display_name=metadata.get("display_name"))
        await self.emit(AuthEventType.SIGNED_IN, session)
        return session

    async def sign_in_with_password(self, email, password):
        await self._enter("sign_in_with_password")
        session = make_session(user_id=f"user-{email}", email=email)
        await self.emit(AuthEventType.SIGNED_IN, session)
        return session

    async def sign_in_with_oauth(self, provider, redirect_to=None):
        await self._enter("sign_in_with_oauth")
        return f"https://auth.example/authorize?provider={provider}"

    async def set_session(self, access_token, refresh_token, expires_in=None):
        await self._enter("set_session")
        session = Session(
            user_id="user-oauth",
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.utcnow() + timedelta(seconds=expires_in or 3600),
            email="oauth@example.com",
        )
        await self.emit(AuthEventType.SIGNED_IN, session)
        return session

    async def refresh_session(self):
        await self._enter("refresh_session")
        session = make_session(user_id=self.session.user_id, email=self.session.email)
        await self.emit(AuthEventType.TOKEN_REFRESHED, session)
        return session

    async def sign_out(self):
        self.calls.append("sign_out")
        error = self.failures.get("sign_out")
        await self.emit(AuthEventType.SIGNED_OUT)
        if error is not None:
            raise error

    async def events(self):
        while True:
            yield await self.queue.get()


class FakePlatform:
    """Notification platform with scripted answers."""

    def __init__(self, is_device=True, os="ios", status=PermissionStatus.UNDETERMINED,
                 answer=PermissionStatus.GRANTED, token=DEVICE_TOKEN, device_name="Test Phone"):
        self.is_device = is_device
        self.os = os
        self.device_name = device_name
        self.status = status
        self.answer = answer
        self.token = token
        self.token_error = None
        self.token_gate = None
        self.prompts = 0
        self.token_requests = 0
        self.channels = []

    async def get_permission_status(self):
        return self.status

    async def request_permission(self):
        self.prompts += 1
        self.status = self.answer
        return self.answer

    async def get_device_token(self, project_id):
        self.token_requests += 1
        if self.token_gate is not None:
            await self.token_gate.wait()
        if self.token_error is not None:
            raise self.token_error
        return self.token

    async def set_notification_channel(self, channel):
        self.channels.append(channel)


async def eventually(predicate, timeout=2.0):
    """Poll until ``predicate()`` is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def settle(manager, identity):
    """Let queued provider events and background registrations finish."""
    await eventually(identity.queue.empty)
    await asyncio.sleep(0.05)
    await manager.wait_idle()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_schema(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def token_store(session_factory):
    return TokenStore(session_factory)


@pytest.fixture
def storage(session_factory):
    return KeyValueStore(session_factory)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def negotiator(platform):
    return PermissionNegotiator(platform, project_id="test-project")


@pytest.fixture
def push(negotiator, token_store):
    return PushTokenLifecycle(negotiator, token_store)


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest_asyncio.fixture
async def manager(identity, storage, push):
    manager = AuthSessionManager(
        identity,
        storage,
        push,
        oauth_timeout_seconds=5.0,
        registration_grace_seconds=0.2,
    )
    yield manager
    await manager.stop()
