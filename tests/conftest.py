import pytest
import os
from datetime import datetime, timezone
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("BUSINESS_TIMEZONE", "UTC")

import stockledger.models  # noqa: F401
from stockledger.core.clock import FixedClock
from stockledger.core.deps import get_clock, get_db
from stockledger.core.scope import StockScope
from stockledger.db.base import Base
from stockledger.main import app

NOW = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)


def _make_scope(location_id: str = "loc-main", variation_id: str = "var-1") -> StockScope:
    return StockScope(
        business_id="biz-1",
        product_id="prod-1",
        variation_id=variation_id,
        location_id=location_id,
    )


@pytest.fixture()
def scope():
    return _make_scope()


@pytest.fixture()
def scope_at():
    return _make_scope


@pytest.fixture()
def clock():
    return FixedClock(NOW)


@pytest.fixture()
def session_local():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db(session_local):
    session = session_local()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture()
def file_session_local(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture()
def test_context(session_local, clock):
    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
