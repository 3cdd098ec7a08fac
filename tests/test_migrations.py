"""
Tests for the initial schema migration.
"""
import importlib.util
from pathlib import Path

import pytest
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

import fulfillment
from fulfillment.database.models import Base

MIGRATION = (
    Path(fulfillment.__file__).parent
    / "database"
    / "migrations"
    / "versions"
    / "001_initial_schema.py"
)


@pytest.fixture
def migration():
    spec = importlib.util.spec_from_file_location("initial_schema", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def sync_engine(tmp_path):
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'migration.db'}")
    yield engine
    engine.dispose()


class TestInitialSchema:
    """Test suite for the alembic revision."""

    @pytest.mark.unit
    def test_upgrade_matches_models(self, migration, sync_engine) -> None:
        with sync_engine.begin() as conn:
            with Operations.context(MigrationContext.configure(conn)):
                migration.upgrade()

            inspector = sa.inspect(conn)
            assert set(inspector.get_table_names()) == set(Base.metadata.tables)

            for table in Base.metadata.tables.values():
                columns = {c["name"] for c in inspector.get_columns(table.name)}
                assert columns == {c.name for c in table.columns}, table.name

            index_names = {i["name"] for i in inspector.get_indexes("stock_reservations")}
            assert "idx_reservations_status_expires" in index_names

    @pytest.mark.unit
    def test_downgrade_drops_everything(self, migration, sync_engine) -> None:
        with sync_engine.begin() as conn:
            with Operations.context(MigrationContext.configure(conn)):
                migration.upgrade()
                migration.downgrade()

            assert sa.inspect(conn).get_table_names() == []
