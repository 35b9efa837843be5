"""
Configure settings through the environment before any payment_api import, then hand out a
disposable SQLite database per test.
"""
import os
import sys
import tempfile
import uuid
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_DB_DIR = tempfile.mkdtemp(prefix="payment_api_tests_")
os.environ["DB_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["CUSTOM_PAYMENT_SECRET"] = "custom-test-secret"
os.environ["MP_WEBHOOK_SECRET"] = "mp-test-secret"
os.environ["MP_ACCESS_TOKEN"] = "mp-test-token"
os.environ["BEARER_TOKEN"] = "testtoken"
os.environ["ENABLE_SIGNATURE_HELPER"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from payment_api import database, models


class FakeProviderClient:
    """Stands in for the provider API: serves canned payments, or raises ``error``."""

    def __init__(self):
        self.payments = {}
        self.calls = []
        self.error = None

    async def fetch_payment(self, payment_id: str) -> dict:
        self.calls.append(payment_id)
        if self.error is not None:
            raise self.error
        return self.payments[payment_id]


@pytest.fixture(autouse=True)
def reset_db():
    models.Base.metadata.drop_all(bind=database.engine)
    models.Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture
def db():
    with database.SessionLocal() as session:
        yield session


@pytest.fixture
def make_player():
    def _make(username: str = "Player123", balance: str = "25.00") -> str:
        player_uuid = str(uuid.uuid4())
        with database.SessionLocal() as session:
            session.add(models.Player(uuid=player_uuid, username=username, balance=Decimal(balance)))
            session.commit()
        return player_uuid

    return _make


@pytest.fixture
def balance_of():
    def _balance(username: str = "Player123") -> Decimal:
        with database.SessionLocal() as session:
            return session.execute(
                select(models.Player.balance).where(models.Player.username == username)
            ).scalar_one()

    return _balance


@pytest.fixture
def stored_transactions():
    def _rows() -> list[dict]:
        with database.SessionLocal() as session:
            rows = session.execute(select(models.Transaction).order_by(models.Transaction.id)).scalars().all()
            return [
                {
                    "id": row.id,
                    "external_id": row.external_id,
                    "status": row.status,
                    "amount": row.amount,
                    "payment_method": row.payment_method,
                    "balance_applied": row.balance_applied,
                    "metadata": row.extra_metadata,
                }
                for row in rows
            ]

    return _rows


@pytest.fixture
def provider():
    return FakeProviderClient()


@pytest.fixture
def client(provider):
    from payment_api.main import app
    from payment_api.provider_client import get_provider_client

    app.dependency_overrides[get_provider_client] = lambda: provider
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
