"""
Shared fixtures for tiermeta tests.

SQLite fixtures use a file database in a temporary directory so that pooled
connections see one database. PostgreSQL fixtures connect to a server given by
environment variables and skip when none is reachable.
"""

import os
import tempfile
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text

from tiermeta import MetaStoreHandle, create_metastore_config
from tiermeta.metastore import create_metastore_engine
from tiermeta.models import AccessCountTable
from tiermeta.schema import metadata


# ==================== Environment Configuration ====================

def get_postgres_url() -> str:
    """Get PostgreSQL connection URL from environment."""
    user = os.getenv("POSTGRES_USER", "tiermeta")
    password = os.getenv("POSTGRES_PASSWORD", "tiermeta_dev_password")
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("POSTGRES_DB", "tiermeta_test")
    return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{db}"


# ==================== SQLite Fixtures ====================

@pytest.fixture
def temp_dir():
    """Temporary directory removed after the test."""
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def config(temp_dir):
    """Metastore configuration pointing at a fresh SQLite file."""
    return create_metastore_config(f"sqlite:///{temp_dir / 'meta.db'}", pool_size=5)


@pytest.fixture
def engine(config):
    """Pooled engine with the metastore schema created."""
    engine = create_metastore_engine(config.database)
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine, config):
    """Metastore handle over the fixture engine."""
    handle = MetaStoreHandle(engine=engine, config=config)
    yield handle
    handle.close()


@pytest.fixture
def shards(store):
    """Two adjacent access-count shards.

    acc_0_100 holds {1: 5, 2: 3}; acc_100_200 holds {1: 2}.
    """
    first = AccessCountTable("acc_0_100", 0, 100)
    second = AccessCountTable("acc_100_200", 100, 200)
    store.create_access_count_table(first, {1: 5, 2: 3})
    store.create_access_count_table(second, {1: 2})
    return first, second


# ==================== PostgreSQL Fixtures ====================

@pytest.fixture(scope="session")
def postgres_engine():
    """Engine for a PostgreSQL server, skipping when unavailable."""
    pytest.importorskip("psycopg")
    engine = create_engine(get_postgres_url())
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        engine.dispose()
        pytest.skip("PostgreSQL not available")
    yield engine
    engine.dispose()
