"""Pytest configuration and fixtures for crm-dedup-engine tests."""

import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dedup_engine import metrics
from dedup_engine.config import Config
from dedup_engine.engine import DuplicateDetectionEngine
from dedup_engine.events import EventBus
from dedup_engine.matching.rules import FieldMatchingConfig, MatchingRule, Thresholds
from dedup_engine.sources import InMemoryRecordSource
from dedup_engine.store import MemoryStoreBackend, RecordStore


@pytest.fixture(autouse=True)
def disable_statsd():
    """Keep DogStatsD off for every test."""
    metrics.configure(Config(_env_file=None, statsd_enabled=False))
    yield
    metrics.reset()


@pytest.fixture
def config():
    """Engine configuration isolated from the environment's .env file."""
    return Config(
        _env_file=None,
        store_backend="memory",
        seed_default_rules=True,
        metrics_auto_start=False,
        statsd_enabled=False,
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def store():
    """Initialized record store on a memory backend."""
    record_store = RecordStore(backend=MemoryStoreBackend())
    await record_store.initialize()
    yield record_store
    await record_store.close()


@pytest.fixture
def events():
    return EventBus(default_maxsize=100)


@pytest.fixture
def sample_contacts():
    """Contacts from one CRM: c1/c2 are the same person, c3 is unrelated."""
    return [
        {
            "id": "c1",
            "email": "john.smith@acme.com",
            "firstName": "John",
            "lastName": "Smith",
            "phone": "+1 (555) 123-4567",
            "updated_at": "2025-01-01T10:00:00",
        },
        {
            "id": "c2",
            "email": "john.smith@acme.com",
            "firstName": "Jon",
            "lastName": "Smith",
            "phone": "555-123-4567",
            "updated_at": "2025-03-01T10:00:00",
        },
        {
            "id": "c3",
            "email": "maria.garcia@globex.com",
            "firstName": "Maria",
            "lastName": "Garcia",
            "phone": "555-987-6543",
            "updated_at": "2025-02-01T10:00:00",
        },
    ]


@pytest_asyncio.fixture
async def record_source(sample_contacts):
    source = InMemoryRecordSource()
    await source.add_records("contact", sample_contacts, "hubspot")
    return source


@pytest_asyncio.fixture
async def engine(config, record_source):
    """Initialized engine on a memory store with the default rules seeded."""
    detection_engine = DuplicateDetectionEngine(
        config=config,
        store=RecordStore(config, backend=MemoryStoreBackend()),
        record_source=record_source,
    )
    await detection_engine.initialize()
    yield detection_engine
    await detection_engine.close()


@pytest.fixture
def name_rule():
    """Single-field Levenshtein rule with thresholds 90/70/50."""
    return MatchingRule(
        id="name_rule",
        record_type="person",
        fields=[FieldMatchingConfig(field_name="name", weight=1, algorithms=["levenshtein"])],
        thresholds=Thresholds(auto_merge=90, human_review=70, ignore=50),
    )


@pytest.fixture
def weighted_rule():
    """Two exact-match fields weighted 9:1 with thresholds 90/70/50."""
    return MatchingRule(
        id="weighted_rule",
        record_type="person",
        fields=[
            FieldMatchingConfig(field_name="a", weight=9, algorithms=["exact"]),
            FieldMatchingConfig(field_name="b", weight=1, algorithms=["exact"]),
        ],
        thresholds=Thresholds(auto_merge=90, human_review=70, ignore=50),
    )
