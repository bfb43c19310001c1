"""Shared test fixtures."""

import tempfile
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from fintrack.config import (
    Config,
    DatabaseConfig,
    DuplicatesConfig,
    LoggingConfig,
    ParserConfig,
    RulesConfig,
)
from fintrack.db.models import Account, Transaction, TransactionType
from fintrack.db.repository import Repository
from fintrack.duplicates import DuplicateDetector
from fintrack.ledger import BalanceLedger
from fintrack.services import TransactionService


def make_transaction(
    id: str | None = None,
    account_id: str = "acc-1",
    type: TransactionType = TransactionType.EXPENSE,
    amount: Decimal = Decimal("50000"),
    description: str = "Almuerzo restaurante",
    txn_date: date = date(2024, 1, 15),
    **kwargs,
) -> Transaction:
    """Helper to create test transactions."""
    return Transaction(
        id=id,
        account_id=account_id,
        type=type,
        amount=amount,
        date=txn_date,
        description=description,
        **kwargs,
    )


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db_path(temp_dir):
    """Create a temporary database path."""
    return temp_dir / "test.db"


@pytest.fixture
def database_config(temp_db_path):
    """Create a test database config."""
    return DatabaseConfig(path=temp_db_path)


@pytest.fixture
def config(database_config):
    """Create a test config."""
    return Config(
        database=database_config,
        rules=RulesConfig(),
        duplicates=DuplicatesConfig(),
        parser=ParserConfig(url="http://parser.test", api_key="test-key"),
        logging=LoggingConfig(),
    )


@pytest.fixture
async def repository(temp_db_path):
    """Create a repository with a temporary database."""
    repo = Repository(temp_db_path)
    await repo.connect()
    yield repo
    await repo.close()


@pytest.fixture
async def account_a(repository):
    """Create an account holding 1,000,000."""
    return await repository.save_account(Account(id=None, name="Savings", balance=Decimal("1000000")))


@pytest.fixture
async def account_b(repository):
    """Create an account holding 200,000."""
    return await repository.save_account(Account(id=None, name="Wallet", balance=Decimal("200000")))


@pytest.fixture
def ledger(repository):
    """Create a balance ledger over the test repository."""
    return BalanceLedger(repository)


@pytest.fixture
def detector(repository):
    """Create a duplicate detector with a same-day window."""
    return DuplicateDetector(repository)


@pytest.fixture
def service(repository, ledger, detector):
    """Create a transaction service."""
    return TransactionService(repository, ledger, detector)
