import os
import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from redis.exceptions import ConnectionError as RedisConnectionError
from unittest.mock import AsyncMock

# Load the test environment FIRST, before any iqflow imports, so the settings
# module picks it up when it is first imported.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "..", ".env.test"))

from iqflow.services.action_service import ActionDispatcher  # noqa: E402
from iqflow.services.onboarding_actions import ONBOARDING_ACTIONS  # noqa: E402
from iqflow.services.platform_client import PlatformClient  # noqa: E402
from iqflow.services.snapshot_store import SnapshotStore  # noqa: E402
from iqflow.workflows.definitions import FLOWS  # noqa: E402
from iqflow.workflows.engine import FlowDriver  # noqa: E402
from iqflow.workflows.session import OnboardingSession, SessionRegistry  # noqa: E402
from iqflow.workflows.triggers import default_trigger_table  # noqa: E402


class FakeRedis:
    """Dict-backed stand-in for the redis.asyncio client calls the store makes."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def get(self, key):
        self._check()
        value = self.data.get(key)
        return value.encode("utf-8") if isinstance(value, str) else value

    async def setex(self, key, ttl, value):
        self._check()
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys):
        self._check()
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        pass


PLATFORM_RESPONSES = {
    "create_session": {"sessionId": "srv_session_1", "chatId": "chat_srv_session_1", "expiresAt": "2026-10-20T12:00:00+00:00"},
    "transfer_session": {"success": True, "newSessionId": "auth_session_1", "chatId": "chat_auth_session_1"},
    "register": {"success": True, "userId": "user_1"},
    "verify_otp": {"success": True, "profileKey": "profile_abc"},
    "create_profile": {"success": True, "profileKey": "profile_new"},
    "login": {"success": True, "userId": "user_1"},
    "send_password_reset": {"success": True},
    "spawn_device": {
        "success": True,
        "deviceId": "dev_123",
        "topic": "device/dev_123/telemetry",
        "brokerEndpoint": "mqtt.industrialiq.ai",
        "brokerPort": 8883,
        "username": "dev_123_user",
        "password": "secret",
        "sampleSchema": {"temperature": 21.5},
        "status": "starting",
    },
    "validate_schema": {"valid": True},
    "invite_users": {"success": True, "count": 2},
    "get_current_user": {"id": "user_1", "email": "ada@factory.io"},
    "subscribe_notifications": {"status": "subscribed", "channel": "email"},
    "generate_sample_ticket": {"ticketId": "T-4242"},
    "list_tickets": [
        {"related": "T-1044", "summary": "Coolant temperature drift detected", "status": "Diagnosing"},
        {"related": "T-0968", "summary": "MQTT heartbeat loss", "status": "In Progress"},
    ],
    "update_ticket": {"related": "T-1044", "owner": "Alice"},
    "get_collaborators": [{"name": "Jane Cooper", "email": "jcooper@industrialiq.ai", "role": "Manager"}],
    "switch_channel": {"success": True},
    "query_metrics": {"summary": "Temperature is stable."},
    "compute_correlation": {"correlation": 0.82},
    "forecast_maintenance": {"predictedInDays": 12, "date": "2026-10-31"},
    "explain_health_drivers": {"drivers": [{"name": "Vibration"}, {"name": "Temperature"}]},
    "compare_devices": {"summary": "Line A vibrates 12% more than line B."},
}


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return SnapshotStore(fake_redis, prefix="test", ttl=3600)


@pytest.fixture
def platform():
    """A PlatformClient whose endpoint methods are AsyncMocks with happy-path bodies."""
    client = AsyncMock(spec=PlatformClient)
    for name, body in PLATFORM_RESPONSES.items():
        getattr(client, name).return_value = body
    return client


@pytest.fixture
def dispatcher(platform):
    return ActionDispatcher(platform, ONBOARDING_ACTIONS)


@pytest.fixture
def make_session(dispatcher, store):
    """Builds a session over the real flows and trigger table, or over custom `flows` without triggers."""
    def _make(flows=None, session_key="browser-1", max_steps=10, triggers=True, session_dispatcher=None):
        flows = flows or FLOWS
        return OnboardingSession(
            "session-1",
            FlowDriver(flows),
            session_dispatcher or dispatcher,
            store=store,
            triggers=default_trigger_table(flows) if triggers and flows is FLOWS else None,
            session_key=session_key,
            max_auto_advance_steps=max_steps,
        )
    return _make


@pytest.fixture(scope="function")
def test_client(mocker, fake_redis, platform):
    """
    Provides a TestClient for API integration tests. The lifespan runs for
    real, with Redis and the platform API swapped for in-memory doubles.
    """
    mocker.patch("iqflow.utils.lifecycle.SnapshotStore.from_url", return_value=SnapshotStore(fake_redis, prefix="api"))
    mocker.patch("iqflow.utils.lifecycle.PlatformClient", return_value=platform)

    from iqflow.main import app

    with TestClient(app) as client:
        yield client


@pytest.fixture
def registry(dispatcher, store):
    return SessionRegistry(FLOWS, dispatcher, store=store, triggers=default_trigger_table(FLOWS))
