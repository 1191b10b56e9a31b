"""
Tests for duration-scaled proportion views.
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import inspect
from sqlalchemy.dialects import mysql, postgresql, sqlite

from tiermeta.error_handling import (
    InvalidTimeWindowError,
    MetaStoreResourceError,
    UnknownAccessCountTableError,
)
from tiermeta.gateway import ResourceGateway
from tiermeta.models import AccessCountTable
from tiermeta.proportion import ProportionViewBuilder


def view_rows(store, name):
    rows = store.gateway.query(f"SELECT fid, count FROM {name} ORDER BY fid")
    return {fid: count for fid, count in rows}


class TestProportionView:
    """Views scaling a shard to a shorter window."""

    def test_half_window_floors_counts(self, store):
        source = AccessCountTable("src_0_100", 0, 100)
        store.create_access_count_table(source, {1: 7, 2: 1, 3: 10})

        store.create_proportion_view(AccessCountTable("half_0_50", 0, 50), source)

        assert view_rows(store, "half_0_50") == {1: 3, 2: 0, 3: 5}

    def test_view_reflects_later_source_changes(self, store):
        """The view is not a snapshot."""
        source = AccessCountTable("src_0_100", 0, 100)
        store.create_access_count_table(source, {1: 4})
        store.create_proportion_view(AccessCountTable("quarter", 0, 25), source)

        store.execute("UPDATE src_0_100 SET count = 40 WHERE fid = 1")

        assert view_rows(store, "quarter") == {1: 10}

    def test_unregistered_by_default(self, store):
        source = AccessCountTable("src_0_100", 0, 100)
        store.create_access_count_table(source, {1: 10})
        store.create_proportion_view(AccessCountTable("half_0_50", 0, 50), source)

        assert store.registry.get_table("half_0_50") is None
        assert store.get_access_count(0, 100) == {1: 10}

    def test_register_makes_view_visible_to_aggregation(self, store):
        source = AccessCountTable("src_0_100", 0, 100)
        store.create_access_count_table(source, {1: 10})
        dest = AccessCountTable("half_100_150", 100, 150)

        store.create_proportion_view(dest, source, register=True)

        assert store.registry.get_table("half_100_150") == dest
        assert store.get_access_count(100, 150) == {1: 5}

    def test_zero_length_source_window_fails(self):
        # AccessCountTable rejects empty windows itself; bypass it to reach the builder
        source = object.__new__(AccessCountTable)
        object.__setattr__(source, "table_name", "src")
        object.__setattr__(source, "start_time", 10)
        object.__setattr__(source, "end_time", 10)

        with pytest.raises(InvalidTimeWindowError):
            ProportionViewBuilder.scale_for(AccessCountTable("dest", 0, 5), source)

    def test_missing_source_rejected(self, store):
        with pytest.raises(UnknownAccessCountTableError):
            store.create_proportion_view(
                AccessCountTable("half", 0, 50), AccessCountTable("absent", 0, 100)
            )

        assert "half" not in inspect(store.gateway.engine).get_view_names()

    def test_unregistered_table_rejected(self, store):
        """A table shaped like a shard is not a source unless it is registered."""
        store.execute("CREATE TABLE not_a_shard (fid INTEGER, count INTEGER)")
        store.execute("INSERT INTO not_a_shard VALUES (1, 10)")

        with pytest.raises(UnknownAccessCountTableError):
            store.create_proportion_view(AccessCountTable("half", 0, 50), "not_a_shard")

    def test_scale_uses_registered_window(self, store):
        store.create_access_count_table(AccessCountTable("src_0_100", 0, 100), {1: 8})

        # Caller claims a 50 ms source window; the registry says 100 ms
        store.create_proportion_view(
            AccessCountTable("quarter", 0, 25), AccessCountTable("src_0_100", 0, 50)
        )

        assert view_rows(store, "quarter") == {1: 2}

    def test_source_by_name(self, store):
        store.create_access_count_table(AccessCountTable("src_0_100", 0, 100), {1: 9})

        store.create_proportion_view(AccessCountTable("third", 0, 33), "src_0_100")

        assert view_rows(store, "third") == {1: 2}

    def test_drop_proportion_view(self, store):
        source = AccessCountTable("src_0_100", 0, 100)
        store.create_access_count_table(source, {1: 10})
        store.create_proportion_view(AccessCountTable("half", 0, 50), source)

        store.drop_table("half")

        with pytest.raises(MetaStoreResourceError):
            store.gateway.query("SELECT * FROM half")

    def test_statement_uses_scale_literal(self, store):
        builder = store.proportions
        ddl = builder.build_statement(
            AccessCountTable("dest", 0, 25), AccessCountTable("src", 0, 100)
        )

        assert ddl.startswith("CREATE VIEW dest AS SELECT")
        assert "0.25" in ddl
        assert "FROM src" in ddl


class TestProportionDialects:
    """Counts are floored, not rounded, on every supported database."""

    @staticmethod
    def builder_for(dialect):
        gateway = ResourceGateway(connection=MagicMock(dialect=dialect))
        return ProportionViewBuilder(gateway, registry=None)

    @pytest.mark.parametrize("dialect", [postgresql.dialect(), mysql.dialect()])
    def test_server_dialects_floor_before_cast(self, dialect):
        ddl = self.builder_for(dialect).build_statement(
            AccessCountTable("dest", 0, 50), AccessCountTable("src", 0, 100)
        )

        assert "CAST(floor(src.count * 0.5) AS" in ddl
        assert ddl.startswith("CREATE VIEW dest AS SELECT src.fid,")

    def test_sqlite_truncates(self):
        ddl = self.builder_for(sqlite.dialect()).build_statement(
            AccessCountTable("dest", 0, 50), AccessCountTable("src", 0, 100)
        )

        assert "CAST(src.count * 0.5 AS INTEGER)" in ddl
        assert "floor" not in ddl.lower()
