from __future__ import annotations

import importlib.util
from pathlib import Path

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

from tierflow.db import models  # noqa: F401
from tierflow.db.session import Base

ROOT = Path(__file__).resolve().parents[2]
MIGRATION = ROOT / "src/tierflow/db/migrations/versions/0001_base_schema.py"


def _load_migration():
    spec = importlib.util.spec_from_file_location("tierflow_0001_base_schema", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _run(engine, fn) -> None:
    with engine.begin() as conn:
        ctx = MigrationContext.configure(conn)
        with Operations.context(ctx):
            fn()


def test_base_migration_matches_models(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'migrated.db'}")
    migration = _load_migration()

    _run(engine, migration.upgrade)
    inspector = inspect(engine)
    assert set(inspector.get_table_names()) == set(Base.metadata.tables)
    for table in Base.metadata.tables.values():
        migrated = {c["name"] for c in inspector.get_columns(table.name)}
        assert migrated == {c.name for c in table.columns}, table.name

    _run(engine, migration.downgrade)
    assert inspect(engine).get_table_names() == []
