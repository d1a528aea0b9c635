"""GSD Knowledge test configuration."""
import math
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure gsd_knowledge is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

EMBEDDING_DIM = 512


class FakeClock:
    """Controllable UTC clock injected into StoreManager."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def unit_vector(axis=0, dim=EMBEDDING_DIM):
    vec = [0.0] * dim
    vec[axis] = 1.0
    return vec


def vector_at_similarity(similarity, dim=EMBEDDING_DIM):
    """Unit vector whose cosine similarity to unit_vector(0) is exactly *similarity*."""
    vec = [0.0] * dim
    vec[0] = similarity
    vec[1] = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return vec


@pytest.fixture
def tmp_knowledge_dirs(tmp_path):
    """Temporary global home and project directory."""
    home = tmp_path / "home"
    project = tmp_path / "project"
    home.mkdir()
    project.mkdir()
    old_home = os.environ.get("GSD_KNOWLEDGE_HOME")
    os.environ["GSD_KNOWLEDGE_HOME"] = str(home)
    yield home, project
    if old_home is not None:
        os.environ["GSD_KNOWLEDGE_HOME"] = old_home
    else:
        os.environ.pop("GSD_KNOWLEDGE_HOME", None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_knowledge_dirs):
    from gsd_knowledge.config import Settings
    home, project = tmp_knowledge_dirs
    return Settings(
        home=home,
        project_dir=project,
        busy_timeout_ms=200,
        retry_attempts=2,
        retry_delay=0.0,
        embedding_dim=EMBEDDING_DIM,
    )


@pytest.fixture
def manager(settings, clock):
    """Create a fresh StoreManager for testing."""
    from gsd_knowledge.connection import StoreManager
    mgr = StoreManager(settings=settings, clock=clock)
    yield mgr
    mgr.close_all()


@pytest.fixture
def db(manager):
    return manager.open("project")


@pytest.fixture
def vec_db(db):
    """An open store with sqlite-vec loaded; skips when the extension is unavailable."""
    if not db.vector_enabled:
        pytest.skip("sqlite-vec extension not loadable")
    return db


@pytest.fixture
def records(db):
    from gsd_knowledge.records import RecordStore
    return RecordStore(db)


@pytest.fixture
def lifecycle(db):
    from gsd_knowledge.lifecycle import LifecycleManager
    return LifecycleManager(db)


@pytest.fixture
def search(db, records, lifecycle):
    from gsd_knowledge.search import SearchEngine
    return SearchEngine(db, records=records, lifecycle=lifecycle)


@pytest.fixture
def dedup(records, search):
    from gsd_knowledge.dedup import DedupEvolution
    return DedupEvolution(records, search=search)


@pytest.fixture
def bridge(manager):
    from gsd_knowledge.bridge import KnowledgeBridge
    b = KnowledgeBridge(manager)
    yield b
    b.close()
