import importlib
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


# Wednesday; day, ISO week 2024-W11 and month 2024-03 all contain it
NOW = datetime(2024, 3, 13, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("SAMPLEREC_DB", str(db_path))
    import samplerec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Point the database module at a temp DB, create the schema and cleanly
    close the pool after use.

    The path is patched rather than the module reloaded so exception classes
    stay identical across the modules that import them.
    """
    import samplerec.database as database

    database.close_pool()
    monkeypatch.setattr(database, "DB_PATH", tmp_path / "test.db")
    database.init_db()

    yield database
    database.close_pool()


@pytest.fixture
def seed_samples(fresh_db):
    """
    Register owners and samples.

    Usage: seed_samples({"s1": ("alice", ["jazz"]), ...})
    """
    def _seed(samples: dict, users=()):
        for user_id in users:
            fresh_db.add_user(user_id)
        for sample_id, (owner_id, tags) in samples.items():
            fresh_db.add_user(owner_id)
            fresh_db.add_sample(sample_id, owner_id, tags=tags, title=sample_id.upper())
    return _seed


def set_scores(database, sample_id: str, **scores):
    """Write popularity columns directly (e.g. weekly=10, allTime=4)."""
    with database.get_db() as conn:
        for period, value in scores.items():
            column = database.SCORE_COLUMNS[period]
            conn.execute(f"UPDATE samples SET {column} = ? WHERE id = ?", (value, sample_id))
