import os
import secrets
import sys
from datetime import datetime, timezone
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'app' package resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.main import app  # type: ignore
from app.database import Base  # type: ignore
from app.api import deps  # type: ignore
"""Pytest fixtures, fakes and factories.

Important: SQLAlchemy relationship configuration requires all model modules to be imported
before Base.metadata.create_all(), otherwise back_populates targets might not exist yet.
"""
from app.models.db import (
    User, Subscription, Store, ListingJob, WebhookConfig, Order, Payment,
)
from app.models.db.enums import UserRole
from app.services.ledger_client import LedgerClientRegistry, LedgerPage
from app.services.webhook_client import DispatchResult
from app.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER
from app.utils.ratelimiter import rate_limiter

# File-based SQLite so the request thread and direct session fixtures see the same data
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_listflow.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Background worker and health checks open sessions through app.database.SessionLocal
import app.database as _app_database  # noqa: E402
_app_database.SessionLocal = TestingSessionLocal  # type: ignore

@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_listflow.db")
    except OSError:
        pass

@pytest.fixture(autouse=True)
def _isolate_test_state(create_test_db):  # type: ignore[unused-argument]
    """Every test starts from empty tables and fresh in-process counters.

    The scheduler tick scans all subscriptions, so rows left by one test would
    leak into the next test's summary.
    """
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    GLOBAL_CIRCUIT_BREAKER.reset()
    rate_limiter.reset()
    app.dependency_overrides.pop(deps.get_ledger_registry, None)
    yield
    GLOBAL_CIRCUIT_BREAKER.reset()

@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

app.dependency_overrides[deps.get_db] = _override_get_db

@pytest.fixture()
def client():
    return TestClient(app)

# ---------- Fakes ----------

class FakeSender:
    """Stands in for dispatch_webhook; records every call."""

    def __init__(self, ok: bool = True, status: int = 200, body: str = "ok"):
        self.ok = ok
        self.status = status
        self.body = body
        self.calls: list[dict] = []

    async def __call__(self, url, method="POST", headers=None, payload=None, idempotency_key=None, triggered_at=None, timeout=None):
        self.calls.append({
            "url": url,
            "method": method,
            "headers": dict(headers or {}),
            "payload": dict(payload or {}),
            "idempotency_key": idempotency_key,
            "triggered_at": triggered_at,
        })
        return DispatchResult(ok=self.ok, status=self.status, body=self.body, url=url, method=method, duration_ms=3)

@pytest.fixture()
def fake_sender():
    return FakeSender()

class FakeLedgerClient:
    """In-memory ledger paging through plain dicts like the Stripe adapter returns."""

    def __init__(self, mode: str, sessions=None, invoices=None, error: Exception | None = None):
        self.mode = mode
        self.sessions = list(sessions or [])
        self.invoices = list(invoices or [])
        self.error = error
        self.calls: list[dict] = []

    def _page(self, items, created_gte, starting_after, limit):
        if self.error is not None:
            raise self.error
        self.calls.append({"created_gte": created_gte, "starting_after": starting_after, "limit": limit})
        visible = [i for i in items if (i.get("created") or 0) >= created_gte]
        start = 0
        if starting_after:
            ids = [i.get("id") for i in visible]
            start = ids.index(starting_after) + 1
        chunk = visible[start:start + limit]
        return LedgerPage(items=chunk, has_more=start + limit < len(visible))

    def list_checkout_sessions(self, *, created_gte, starting_after=None, limit=100):
        return self._page(self.sessions, created_gte, starting_after, limit)

    def list_paid_invoices(self, *, created_gte, starting_after=None, limit=100):
        return self._page(self.invoices, created_gte, starting_after, limit)

@pytest.fixture()
def ledger_registry():
    """Build a registry from {mode: FakeLedgerClient}; a missing mode raises like a missing key."""
    from app.services.ledger_client import LedgerConfigurationError

    def _build(clients: dict) -> LedgerClientRegistry:
        def factory(mode):
            if mode not in clients:
                raise LedgerConfigurationError(f"Missing required Stripe secret key for mode={mode}")
            return clients[mode]
        return LedgerClientRegistry(factory=factory)
    return _build

def checkout_session(session_id: str, order_id: str | None, *, payment_status="paid", mode="payment", amount=2990, created=None, user_id=None):
    metadata = {}
    if order_id:
        metadata["orderId"] = order_id
    if user_id:
        metadata["userId"] = user_id
    return {
        "id": session_id,
        "mode": mode,
        "payment_status": payment_status,
        "status": "complete",
        "amount_total": amount,
        "currency": "usd",
        "created": created if created is not None else int(datetime.now(timezone.utc).timestamp()) - 60,
        "metadata": metadata,
    }

# ---------- Data factory helpers ----------

@pytest.fixture()
def user_factory(db_session):
    def _create(role: UserRole = UserRole.USER, name: str | None = None):
        name = name or f"User {secrets.token_hex(3)}"
        user = User(
            name=name,
            email=f"{secrets.token_hex(4)}@example.com",
            api_key=f"lf_{secrets.token_hex(12)}",
            role=role,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _create

@pytest.fixture()
def store_factory(db_session):
    def _create(user, *, product_id: str | None = None, active_webhook_config_id: str | None = None):
        store = Store(
            user_id=user.id,
            store_name=f"Store {secrets.token_hex(2)}",
            product_id=product_id,
            active_webhook_config_id=active_webhook_config_id,
        )
        db_session.add(store)
        db_session.commit()
        db_session.refresh(store)
        return store
    return _create

@pytest.fixture()
def subscription_factory(db_session):
    def _create(user, store=None, *, plan: str = "standard", status: str = "active", current_period_end=None):
        sub = Subscription(
            user_id=user.id,
            store_id=store.id if store is not None else None,
            plan=plan,
            status=status,
            current_period_end=current_period_end,
        )
        db_session.add(sub)
        db_session.commit()
        db_session.refresh(sub)
        return sub
    return _create

@pytest.fixture()
def webhook_config_factory(db_session):
    def _create(*, product_id: str | None = None, scope: str = "automation", enabled: bool = True, target_url: str = "https://n8n.example.com/webhook/listing", name: str | None = None, method: str = "POST"):
        config = WebhookConfig(
            name=name or f"Automation {secrets.token_hex(2)}",
            target_url=target_url,
            method=method,
            headers={"X-Api-Key": "secret-value"},
            enabled=enabled,
            scope=scope,
            product_id=product_id,
        )
        db_session.add(config)
        db_session.commit()
        db_session.refresh(config)
        return config
    return _create

@pytest.fixture()
def listing_job_factory(db_session):
    def _create(user, store=None, *, status: str = "queued", claimed_at=None, claimed_by_worker_id=None, created_at=None):
        job = ListingJob(
            user_id=user.id,
            store_id=store.id if store is not None else None,
            status=status,
            payload={"title": "Mug"},
            claimed_at=claimed_at,
            claimed_by_worker_id=claimed_by_worker_id,
        )
        if created_at is not None:
            job.created_at = created_at
        db_session.add(job)
        db_session.commit()
        db_session.refresh(job)
        return job
    return _create

@pytest.fixture()
def order_factory(db_session):
    def _create(user=None, *, payment_status: str = "pending", total_cents: int = 2990):
        order = Order(user_id=user.id if user is not None else None, payment_status=payment_status, total_cents=total_cents)
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order
    return _create

@pytest.fixture()
def payment_factory(db_session):
    def _create(**fields):
        payment = Payment(**fields)
        db_session.add(payment)
        db_session.commit()
        db_session.refresh(payment)
        return payment
    return _create

@pytest.fixture()
def bound_subscription(user_factory, store_factory, subscription_factory, webhook_config_factory):
    """Active standard subscription on a store bound to one enabled automation webhook."""
    user = user_factory()
    config = webhook_config_factory()
    store = store_factory(user, active_webhook_config_id=config.id)
    subscription = subscription_factory(user, store)
    return user, store, subscription, config

@pytest.fixture()
def auth_header(user_factory):
    user = user_factory()
    return {"Authorization": f"Bearer {user.api_key}"}, user

@pytest.fixture()
def admin_header(user_factory):
    admin = user_factory(role=UserRole.ADMIN)
    return {"Authorization": f"Bearer {admin.api_key}"}, admin
