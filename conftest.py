from datetime import datetime
from typing import List, Optional
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio

import models  # noqa: F401  (registers tables on Base)
from config import Settings
from db import Base, make_engine, make_session_factory
from key_store import generate_api_key
from main import create_app
from models import APIKey, Customer, Transaction
from timing import utcnow

LOOPBACK_CLIENT = ("127.0.0.1", 50000)
REMOTE_CLIENT = ("203.0.113.7", 50000)


# =========================
# Stores
# =========================

@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'gateway.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def redis():
    mock = MagicMock()
    mock.smembers.return_value = set()
    return mock


def insert_key(
    session_factory,
    *,
    purpose: str = "Audit",
    data_classification: Optional[List[str]] = None,
    expiration_date: Optional[datetime] = None,
    allowed_ips: Optional[List[str]] = None,
    usages: int = 0,
    last_used: Optional[datetime] = None,
) -> str:
    token = generate_api_key()
    now = utcnow()
    with session_factory() as session:
        session.add(
            APIKey(
                key=token,
                description=f"{purpose} key",
                purpose=purpose,
                data_classification=data_classification or ["Public", "Internal"],
                created_by="127.0.0.1",
                created_at=now,
                updated_at=now,
                expiration_date=expiration_date,
                last_used=last_used,
                usages=usages,
                allowed_ips=allowed_ips or [],
                rate_limit=0,
            )
        )
        session.commit()
    return token


def get_key_row(session_factory, token: str) -> APIKey:
    with session_factory() as session:
        return session.query(APIKey).filter_by(key=token).one()


@pytest.fixture
def seeded(session_factory):
    """Two customers and four transactions across classifications."""
    with session_factory() as session:
        session.add_all([
            Customer(customer_id=1, first_name="Ana", last_name="Silva", email="ana@example.com",
                     country="PT", consent_marketing=True, data_classification="Internal"),
            Customer(customer_id=2, first_name="Rui", last_name="Costa", email="rui@example.com",
                     country="PT", consent_marketing=False, data_classification="Confidential"),
        ])
        session.flush()
        session.add_all([
            Transaction(transaction_id=10, customer_id=1, transaction_date=datetime(2024, 5, 1, 10, 0),
                        amount=120, currency="EUR", status="completed", data_classification="Internal"),
            Transaction(transaction_id=11, customer_id=1, transaction_date=datetime(2024, 5, 2, 9, 30),
                        amount=40, currency="EUR", status="pending", data_classification="Public"),
            Transaction(transaction_id=12, customer_id=2, transaction_date=datetime(2024, 5, 2, 11, 0),
                        amount=900, currency="EUR", status="completed", data_classification="Confidential"),
            Transaction(transaction_id=13, customer_id=2, transaction_date=datetime(2024, 5, 3, 8, 0),
                        amount=15, currency="EUR", status="failed", data_classification="Restricted"),
        ])
        session.commit()


# =========================
# App
# =========================

@pytest.fixture
def app_settings():
    # Hour-long interval so no timer flush fires during a test
    return Settings(
        ACCESS_LOG_FLUSH_INTERVAL_MS=3_600_000,
        ACCESS_LOG_MAX_BUFFER_SIZE=5_000,
        CREATE_TABLES_ON_STARTUP=False,
    )


@pytest.fixture
def app(app_settings, session_factory, redis):
    return create_app(app_settings=app_settings, session_factory=session_factory, redis=redis)


@pytest_asyncio.fixture
async def client(app):
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app, client=LOOPBACK_CLIENT)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
            yield c


@pytest_asyncio.fixture
async def remote_client(app, client):
    """Same app as `client`, seen from a non-loopback address."""
    transport = httpx.ASGITransport(app=app, client=REMOTE_CLIENT)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
