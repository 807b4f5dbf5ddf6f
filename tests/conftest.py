"""Shared fixtures: a throwaway Voice Memos store and isolated config."""

from __future__ import annotations

import sqlite3
from contextlib import closing
from pathlib import Path

import pytest

from memoscribe import config

SCHEMA = """
CREATE TABLE ZCLOUDRECORDING (
    Z_PK INTEGER PRIMARY KEY,
    Z_ENT INTEGER,
    ZDURATION FLOAT,
    ZDATE TIMESTAMP,
    ZCUSTOMLABEL VARCHAR,
    ZENCRYPTEDTITLE VARCHAR,
    ZPATH VARCHAR
)
"""


def write_store(path: Path, rows) -> Path:
    """Create a store holding ``rows`` of (pk, duration, date, label, title, path)."""

    with closing(sqlite3.connect(path)) as conn:
        conn.execute(SCHEMA)
        conn.executemany(
            "INSERT INTO ZCLOUDRECORDING (Z_PK, ZDURATION, ZDATE, ZCUSTOMLABEL, ZENCRYPTEDTITLE, ZPATH) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            rows,
        )
        conn.commit()
    return path


@pytest.fixture
def store_factory(tmp_path):
    def _factory(rows, name: str = "CloudRecordings.db") -> Path:
        return write_store(tmp_path / name, rows)

    return _factory


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    cfg_path = tmp_path / "settings" / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", cfg_path)
    return cfg_path
