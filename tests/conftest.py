"""
Shared fixtures: an in-memory SQLite engine, a recording stand-in for the ORM
client, and a helper that writes definition modules into a temp directory.
"""
from __future__ import annotations

import textwrap
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool


class RecordingClient:
    """
    Client double: records every call in order and returns a simple handle
    per model. `db_ready` is an AsyncMock so tests can make it fail.
    """

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.db_ready = AsyncMock(side_effect=self._ready)
        self.installed = False

    async def _ready(self) -> None:
        self.calls.append(("db_ready",))

    def create_model(self, model_id, schema, options):
        self.calls.append(("create_model", model_id))
        return Handle(model_id, schema, options)

    def install(self) -> None:
        self.installed = True


class Handle:
    def __init__(self, name, schema, options) -> None:
        self.name = name
        self.schema = schema
        self.options = options
        self.links: list[str] = []

    def link(self, other: "Handle") -> None:
        self.links.append(other.name)


@pytest.fixture
def client() -> RecordingClient:
    return RecordingClient()


@pytest.fixture
def engine():
    # StaticPool: the readiness probe runs in a worker thread and must see the same DB.
    eng = sa.create_engine(
        "sqlite+pysqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield eng
    eng.dispose()


@pytest.fixture
def write_model(tmp_path):
    """Write `<tmp_path>/models/<name>.py` and return the models directory."""
    models_dir = tmp_path / "models"
    models_dir.mkdir()

    def _write(name: str, source: str) -> Path:
        (models_dir / name).write_text(textwrap.dedent(source).lstrip(), encoding="utf-8")
        return models_dir

    _write.dir = models_dir
    return _write
