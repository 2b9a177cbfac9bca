"""
Shared fixtures for the bridge test suite.

Every test gets its own SQLite store under tmp_path. ``make_record`` builds
normalized records with small integer timestamps (seconds since epoch) so
orderings are easy to read in assertions.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from wabridge.ingestion import IngestionEngine
from wabridge.models import MessageRecord
from wabridge.queries import QueryEngine
from wabridge.store import MessageStore


def ts(seconds: int) -> datetime:
    """Epoch seconds -> aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def make_record(
    chat_jid: str,
    message_id,
    seconds: int,
    content: str = "",
    sender: str = "",
    is_from_me: bool = False,
    media_type=None,
    chat_name=None,
) -> MessageRecord:
    return MessageRecord(
        chat_jid=chat_jid,
        id=str(message_id),
        sender=sender,
        timestamp=ts(seconds),
        content=content,
        is_from_me=is_from_me,
        media_type=media_type,
        chat_name=chat_name,
    )


@pytest.fixture
def store(tmp_path):
    """An empty, migrated store."""
    s = MessageStore(tmp_path / "store" / "messages.db")
    s.initialize()
    return s


@pytest.fixture
def writer(store):
    w = store.open_writer()
    yield w
    w.close()


@pytest.fixture
def engine(writer):
    return IngestionEngine(writer)


@pytest.fixture
def queries(store):
    return QueryEngine(store, retry_delay_s=0.0)


@pytest.fixture
def ingest(engine):
    """Ingest records given as make_record() kwargs tuples."""
    def _ingest(*records):
        for record in records:
            engine.ingest_message(record)
    return _ingest
