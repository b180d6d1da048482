import os

# Settings are read at import time; point them at throwaway values first
os.environ.setdefault("APP_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("APP_PUSH_VIA_WORKER", "false")
os.environ.setdefault("APP_LOCK_BACKEND", "memory")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from collab.core.deps import get_db
from collab.core.rate_limit import limiter
from collab.db.base import Base
from collab.main import app
from collab.models.user import User
from collab.realtime.hub import hub
from collab.realtime.push import dispatcher
from collab.services import payment as payment_svc
from collab.services.flow_engine import capture_payment, express_interest, perform_action
from collab.services.gateway.client import set_gateway
from helpers import FakeGateway


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'collab.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Process-wide singletons
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def fresh_hub():
    hub.__init__()
    yield hub
    hub.__init__()


@pytest.fixture(autouse=True)
def pushes(monkeypatch) -> list[dict]:
    """Capture scheduled pushes instead of delivering them."""
    sent: list[dict] = []

    def _record(user_id: int, title: str, body: str, data: dict) -> None:
        sent.append({"user_id": user_id, "title": title, "body": body, "data": data})

    monkeypatch.setattr(dispatcher, "_schedule", _record)
    return sent


@pytest.fixture(autouse=True)
def gateway() -> FakeGateway:
    fake = FakeGateway()
    set_gateway(fake)
    yield fake
    set_gateway(None)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(session_factory):
    """Users live in their own session so a rollback in ``db`` never expires them."""

    async def _make(name: str, role: str) -> User:
        async with session_factory() as session:
            user = User(name=name, role=role, email=f"{name.lower()}@example.com")
            session.add(user)
            await session.commit()
            await session.refresh(user)
        return user

    return _make


@pytest.fixture
async def brand_owner(make_user) -> User:
    return await make_user("Acme", "brand_owner")


@pytest.fixture
async def influencer(make_user) -> User:
    return await make_user("Priya", "influencer")


@pytest.fixture
async def admin(make_user) -> User:
    return await make_user("Ops", "admin")


@pytest.fixture
async def outsider(make_user) -> User:
    return await make_user("Mallory", "influencer")


# ---------------------------------------------------------------------------
# Flow driver
# ---------------------------------------------------------------------------


class FlowDriver:
    """Walks a conversation through the collaboration flow."""

    def __init__(self, db: AsyncSession, brand_owner: User, influencer: User, gateway: FakeGateway):
        self.db = db
        self.brand_owner = brand_owner
        self.influencer = influencer
        self.gateway = gateway

    async def open(self, amount: int = 5000, **kwargs) -> int:
        conversation, _ = await express_interest(
            self.db, self.brand_owner, self.influencer.id, amount, **kwargs,
        )
        return conversation.id

    async def act(self, user: User, conversation_id: int, action: str, data: dict | None = None) -> dict:
        return await perform_action(self.db, conversation_id, user, action, data)

    async def to_payment_pending(self, amount: int = 5000, **kwargs) -> int:
        cid = await self.open(amount, **kwargs)
        await self.act(self.influencer, cid, "accept_connection")
        await self.act(self.brand_owner, cid, "send_project_details", {"text": "Two reels and a story"})
        await self.act(self.influencer, cid, "accept_price")
        return cid

    async def checkout(self, conversation_id: int):
        return await payment_svc.create_checkout(self.db, conversation_id, self.brand_owner)

    async def pay(self, conversation_id: int, via: str = "webhook"):
        order = await self.checkout(conversation_id)
        payment = self.gateway.pay(order.external_order_id)
        order, _ = await capture_payment(
            self.db, order.external_order_id, payment["id"], via=via, amount_paise=payment["amount"],
        )
        return order, payment

    async def to_work(self, amount: int = 5000, **kwargs) -> int:
        cid = await self.to_payment_pending(amount, **kwargs)
        await self.pay(cid)
        return cid

    async def submit(self, conversation_id: int, action: str = "submit_work") -> dict:
        return await self.act(
            self.influencer, conversation_id, action, {"link": "https://example.com/reel"},
        )


@pytest.fixture
def flow(db, brand_owner, influencer, gateway) -> FlowDriver:
    return FlowDriver(db, brand_owner, influencer, gateway)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client wired to the FastAPI app (no real server)."""

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()
