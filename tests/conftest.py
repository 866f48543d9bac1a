import os

os.environ.setdefault("DEV_AUTH_ALLOW", "1")
os.environ.setdefault("DATA_BACKEND", "sql")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")

import pytest

from src.backend.app.conversations import ConversationHistoryService
from src.backend.app.db import make_engine
from src.backend.app.store import SqlStore


@pytest.fixture
def store():
    # fresh in-memory database per test
    return SqlStore(make_engine("sqlite://", create_tables=True))


@pytest.fixture
def service(store):
    return ConversationHistoryService(store)
