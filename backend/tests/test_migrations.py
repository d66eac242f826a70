"""
Inkwell Backend: Migration Tests
================================

What:  Runs the initial migration against a scratch SQLite database and
       checks it produces the same table the ORM model declares.
"""

import importlib.util
from pathlib import Path

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

from inkwell.models.asset import Asset

MIGRATION = Path(__file__).resolve().parent.parent / "alembic" / "versions" / "001_create_assets_table.py"


def _load_migration():
    spec = importlib.util.spec_from_file_location("migration_001", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestInitialMigration:

    def setup_method(self):
        self.migration = _load_migration()

    def _upgrade(self, engine):
        with engine.begin() as conn:
            ctx = MigrationContext.configure(conn)
            with Operations.context(ctx):
                self.migration.upgrade()

    def test_upgrade_matches_model(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'migrated.db'}")
        self._upgrade(engine)

        inspector = inspect(engine)
        columns = {c["name"] for c in inspector.get_columns("assets")}
        assert columns == {c.name for c in Asset.__table__.columns}

        indexes = {i["name"] for i in inspector.get_indexes("assets")}
        assert {i.name for i in Asset.__table__.indexes} <= indexes

        unique = inspector.get_unique_constraints("assets")
        assert any(u["column_names"] == ["storage_key"] for u in unique)
        engine.dispose()

    def test_downgrade_drops_table(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'migrated.db'}")
        self._upgrade(engine)

        with engine.begin() as conn:
            ctx = MigrationContext.configure(conn)
            with Operations.context(ctx):
                self.migration.downgrade()

        assert "assets" not in inspect(engine).get_table_names()
        engine.dispose()
