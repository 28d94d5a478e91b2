"""Shared test fixtures."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient
from datetime import date, timedelta
from decimal import Decimal
import uuid

from spendsense.database import Base, enable_sqlite_savepoints
from spendsense.dependencies import get_db
from spendsense.main import app
from spendsense.models.account import Account
from spendsense.models.merchant import MerchantGroup
from spendsense.models.transaction import Transaction


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database for each test using in-memory SQLite."""
    # Use StaticPool to ensure all connections use the same in-memory database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)

    # Create all tables
    Base.metadata.create_all(bind=engine)

    # Create session
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def client(db_session):
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def sample_account(db_session):
    """Create a sample account."""
    account = Account(id=str(uuid.uuid4()), name="Test Checking")
    account.is_active = True

    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture
def other_account(db_session):
    """A second account, for scoping tests."""
    account = Account(id=str(uuid.uuid4()), name="Joint Savings")
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture
def add_transaction(db_session, sample_account):
    """Factory that inserts one transaction for the sample account."""
    def _add(description, amount, txn_date, merchant_group_id=None, account_id=None):
        txn = Transaction(
            id=str(uuid.uuid4()),
            account_id=account_id or sample_account.id,
            date=txn_date,
            amount=Decimal(str(amount)),
            description=description,
            merchant_group_id=merchant_group_id,
        )
        db_session.add(txn)
        db_session.commit()
        return txn
    return _add


@pytest.fixture
def netflix_group(db_session, sample_account):
    """Create an automatic Netflix merchant group."""
    group = MerchantGroup(
        id=str(uuid.uuid4()),
        account_id=sample_account.id,
        display_name="Netflix",
        canonical_pattern="netflix",
        is_automatic=True,
    )
    db_session.add(group)
    db_session.commit()
    db_session.refresh(group)
    return group


@pytest.fixture
def monthly_netflix(add_transaction, netflix_group):
    """Six monthly Netflix charges of $15.49 +/- $0.50, linked to the group."""
    amounts = ["-15.49", "-14.99", "-15.99", "-15.49", "-15.29", "-15.69"]
    start = date(2024, 1, 5)
    return [
        add_transaction("NETFLIX.COM 8882099918", amount, start + timedelta(days=30 * i), netflix_group.id)
        for i, amount in enumerate(amounts)
    ]
