"""Shared pytest fixtures for Cinegen tests."""

import os
import shutil
import tempfile
from typing import Generator, List

import pytest

from cinegen.core.ledger import TokenLedger
from cinegen.core.pricing import PlanTier
from cinegen.core.session import Session
from cinegen.storage.repository import AccountRepository, initialize_schema


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def db_path() -> Generator[str, None, None]:
    """Path to a freshly initialized SQLite database."""
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "test.db")
    initialize_schema(path)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def repository(db_path) -> AccountRepository:
    return AccountRepository(db_path)


@pytest.fixture
def ledger(repository) -> TokenLedger:
    return TokenLedger(repository)


@pytest.fixture
def session(repository) -> Session:
    """Session for a pro_standard user holding 12 tokens."""
    repository.create_wallet("user_123", PlanTier.PRO_STANDARD, 12, email="user@example.com")
    return Session(user_id="user_123", email="user@example.com")


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
