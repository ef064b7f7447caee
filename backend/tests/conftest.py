import os
import sys
from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import settings
from core.security import create_access_token
from models.payment_record import Base, get_db
from models.ptp import PTP, ManualPTP
import models.account_activity  # noqa: F401
from main import app

ADMIN_ID = "11111111-1111-4111-8111-111111111111"
AGENT_ID = "22222222-2222-4222-8222-222222222222"


@pytest.fixture(autouse=True)
def quiet_settings(monkeypatch):
    """No Telegram traffic and the default allocation mode unless a test asks otherwise"""
    monkeypatch.setattr(settings, "TELEGRAM_BOT_TOKEN", None)
    monkeypatch.setattr(settings, "TELEGRAM_CHAT_ID", None)
    monkeypatch.setattr(settings, "PTP_ALLOCATION_MODE", "cover")
    monkeypatch.setattr(settings, "CRON_SECRET", None)
    monkeypatch.setattr(settings, "ENVIRONMENT", "development")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_ptp(db):
    """Inserts a PTP (or ManualPTP with manual=True) row"""
    def _make(debtor_id="D1", amount=500, on="2025-01-10", status="pending",
              manual=False, tenant_id=None, updated_at=None, created_by=None, created_at=None):
        model = ManualPTP if manual else PTP
        ptp = model(
            debtor_id=debtor_id,
            tenant_id=tenant_id,
            amount=Decimal(str(amount)),
            date=date.fromisoformat(on),
            status=status,
            payment_method="cash" if manual else None,
            notes="",
            created_by=created_by,
        )
        if created_at is not None:
            ptp.created_at = created_at
        if updated_at is not None:
            ptp.updated_at = updated_at
        db.add(ptp)
        db.commit()
        db.refresh(ptp)
        return ptp
    return _make


def auth_headers(user_id=ADMIN_ID, role="admin", tenant_id=None, name="Test User"):
    token = create_access_token(user_id, role=role, tenant_id=tenant_id, full_name=name)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers():
    return auth_headers()


@pytest.fixture
def agent_headers():
    return auth_headers(user_id=AGENT_ID, role="agent", tenant_id="T1", name="Agent Smith")
