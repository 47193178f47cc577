import importlib.util
import warnings
from pathlib import Path

import pytest
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from structlog.dev import ConsoleRenderer

from media_request_service.app.db import Base, sync_database_url
from media_request_service.app.logging_setup import _renderers

VERSIONS = Path(__file__).resolve().parents[1] / "media_request_service" / "alembic" / "versions"


def load_migration(name: str):
    loader_spec = importlib.util.spec_from_file_location(f"migration_{name}", VERSIONS / f"{name}.py")
    module = importlib.util.module_from_spec(loader_spec)
    loader_spec.loader.exec_module(module)
    return module


@pytest.fixture
def migrated():
    engine = sa.create_engine("sqlite://")
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            load_migration("0001_init").upgrade()
        yield sa.inspect(conn)
    engine.dispose()


@pytest.mark.parametrize("table", sorted(Base.metadata.tables))
def test_migration_matches_models(migrated, table):
    model = Base.metadata.tables[table]
    columns = {c["name"]: c for c in migrated.get_columns(table)}

    assert set(columns) == set(model.columns.keys())
    for column in model.columns:
        if column.primary_key:
            continue
        assert columns[column.name]["nullable"] == column.nullable, column.name


def test_timestamps_are_not_nullable(migrated):
    columns = {c["name"]: c for c in migrated.get_columns("requests")}
    assert columns["created_at"]["nullable"] is False
    assert columns["updated_at"]["nullable"] is False


@pytest.mark.parametrize(
    "url, expected",
    [
        ("postgresql+asyncpg://app:secret@db:5432/media", "postgresql://app:secret@db:5432/media"),
        ("sqlite+aiosqlite:///./media.db", "sqlite:///./media.db"),
        ("postgresql://app@db/media", "postgresql://app@db/media"),
    ],
)
def test_sync_database_url(url, expected):
    assert sync_database_url(url) == expected


def test_local_renderer_without_deprecation_warnings():
    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        renderers = _renderers("local")
    assert isinstance(renderers[0], ConsoleRenderer)


def test_json_renderer_outside_local():
    renderers = _renderers("production")
    assert not any(isinstance(r, ConsoleRenderer) for r in renderers)
