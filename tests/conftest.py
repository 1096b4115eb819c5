"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks Redis, the gateway and the registry.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DISPATCH_BACKOFF_BASE_SECONDS", "0")
os.environ.setdefault("DISPATCH_BACKOFF_MAX_SECONDS", "0")

import asyncio
import json
import time
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool

from textgate.database import Base
import textgate.models  # noqa: F401  (registers tables)
from textgate.services.content_policy import ContentPolicy
from textgate.services.gateway import GatewayClient
from textgate.services.messaging import MessagingService
from textgate.services.rate_governor import RateGovernor
from textgate.services.registry import BrandTier, CampaignInfo, InMemoryCampaignRegistry
from textgate.services.time_window import TimeWindowEvaluator
from textgate.utils.backoff import BackoffPolicy
from textgate.utils.webhook_signatures import compute_signature

SIGNING_SECRET = "test-signing-secret"
SENDER = "+12125550100"       # assigned to CMP_MIXED
RECIPIENT = "+12125559876"    # New York (America/New_York)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


class SerializedSessionFactory:
    """
    Session factory over one shared in-memory SQLite connection.
    Sessions take turns so concurrent tasks never interleave transactions.
    """

    def __init__(self, factory: async_sessionmaker) -> None:
        self._factory = factory
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def __call__(self):
        async with self._lock:
            async with self._factory() as session:
                yield session


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return SerializedSessionFactory(
        async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    )


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - alert cooldowns and heartbeats never hit a server."""
    with patch("textgate.utils.redis_client.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def registry():
    return InMemoryCampaignRegistry(
        campaigns=[
            CampaignInfo(campaign_id="CMP_MIXED", status="approved", use_case="mixed", brand_id="BRAND_A"),
            CampaignInfo(campaign_id="CMP_PROMO", status="approved", use_case="promotional", brand_id="BRAND_A"),
            CampaignInfo(campaign_id="CMP_AUTH", status="approved", use_case="authentication", brand_id="BRAND_B"),
            CampaignInfo(campaign_id="CMP_PENDING", status="pending", use_case="mixed", brand_id="BRAND_A"),
        ],
        tiers={
            "BRAND_A": BrandTier(rate_capacity=5, refill_rate=1.0),
            "BRAND_B": BrandTier(rate_capacity=2, refill_rate=0.5),
        },
        numbers={SENDER: "CMP_MIXED"},
    )


@pytest.fixture
def open_window():
    """Time window that never blocks (00:00-24:00)."""
    return TimeWindowEvaluator(window_start_hour=0, window_end_hour=24)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class FakeGateway:
    """
    httpx MockTransport handler for POST /messages.
    Queue responses with push(); default is 200 with a fresh message id.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._queue: list = []
        self._counter = 0

    def push(self, *responses) -> None:
        self._queue.extend(responses)

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._queue:
            item = self._queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        self._counter += 1
        return httpx.Response(200, json={"data": {"id": f"gw-msg-{self._counter}"}})


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
async def gateway_client(fake_gateway):
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(fake_gateway),
        base_url="https://gateway.test/v2",
    )
    client = GatewayClient(api_key="test-key", http_client=http_client)
    yield client
    await http_client.aclose()


@pytest.fixture
def webhook_policy():
    return BackoffPolicy(base_seconds=30.0, max_seconds=3600.0, max_retries=5, rand=lambda: 0.0)


@pytest.fixture
def messaging(session_factory, registry, gateway_client, open_window, clock, webhook_policy):
    return MessagingService.build(
        session_factory=session_factory,
        registry=registry,
        gateway=gateway_client,
        content_policy=ContentPolicy(),
        time_window=open_window,
        rate_governor=RateGovernor(registry, clock=clock),
        signing_secret=SIGNING_SECRET,
        tolerance_seconds=300,
        policy=webhook_policy,
        allow_unsigned=False,
    )


@pytest.fixture
def sign():
    """Returns headers signing body with the test secret."""
    def _sign(body: bytes, secret: str = SIGNING_SECRET, timestamp: int = None) -> dict:
        ts = str(int(time.time()) if timestamp is None else timestamp)
        return {
            "X-Gateway-Signature": compute_signature(secret, ts, body),
            "X-Gateway-Timestamp": ts,
        }
    return _sign


@pytest.fixture
def webhook_body():
    """Builds a raw gateway webhook body."""
    def _body(event_id: str, event_type: str, resource_id: str = None, **fields) -> bytes:
        payload = {"event_id": event_id, "event_type": event_type}
        if resource_id is not None:
            payload["resource_id"] = resource_id
        payload.update(fields)
        return json.dumps(payload).encode("utf-8")
    return _body
