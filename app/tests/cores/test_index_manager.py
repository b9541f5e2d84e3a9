# python -m pytest app/tests/cores/test_index_manager.py -v

import asyncio

import asyncpg
import pytest

from app.core.index_manager import (
    BLOCKING_WARNING,
    IndexHandle,
    IndexManager,
    IndexOperationError,
    UnsupportedIndexMethodError,
    derive_index_name,
)
from app.core.sql_exec import SQLExecutor
from app.tests.fake_db import FakeConnection


def _manager(concurrently=True) -> IndexManager:
    return IndexManager(SQLExecutor(timeout=5), concurrently=concurrently, timeout=5)


class TestIndexNames:
    def test_single_column(self):
        assert derive_index_name("users_large", "age") == "idx_users_large_age"

    def test_composite(self):
        handle = IndexHandle.for_columns("orders", ("status", "created_at"))

        assert handle.name == "idx_orders_status_created_at"
        assert handle.columns == ("status", "created_at")


class TestIndexManager:
    def test_create_is_concurrent_and_idempotent_by_name(self):
        conn = FakeConnection()

        result = asyncio.run(_manager().create_index(conn, "users_large", "age", "btree"))

        ddl = conn.statements("execute")
        assert ddl == [
            "CREATE INDEX CONCURRENTLY IF NOT EXISTS idx_users_large_age ON users_large USING btree (age)"
        ]
        assert result.success
        assert result.index_name == "idx_users_large_age"
        assert not result.blocking

    def test_drop_is_idempotent(self):
        conn = FakeConnection()

        result = asyncio.run(_manager().drop_index(conn, "users_large", "age"))

        assert conn.statements("execute") == ["DROP INDEX CONCURRENTLY IF EXISTS idx_users_large_age"]
        assert result.to_dict()["success"] is True

    def test_invalid_leftover_is_dropped_before_create(self):
        conn = FakeConnection()
        conn.on("fetchval", "indisvalid", False)

        asyncio.run(_manager().create_index(conn, "users_large", "age"))

        assert [sql.split(" ")[0] for sql in conn.statements("execute")] == ["DROP", "CREATE"]

    def test_blocking_mode_warns_caller(self):
        conn = FakeConnection()

        result = asyncio.run(_manager(concurrently=False).create_index(conn, "users_large", "age", "hash"))

        assert "CONCURRENTLY" not in conn.statements("execute")[0]
        assert "USING hash" in conn.statements("execute")[0]
        assert result.blocking
        assert BLOCKING_WARNING in result.message

    def test_unsupported_method_is_rejected_before_any_sql(self):
        conn = FakeConnection()

        with pytest.raises(UnsupportedIndexMethodError):
            asyncio.run(_manager().create_index(conn, "users_large", "age", "fulltext"))

        assert conn.calls == []

    def test_database_failure_becomes_index_error(self):
        exc = asyncpg.exceptions.UndefinedTableError('relation "missing" does not exist')
        exc.message = 'relation "missing" does not exist'
        conn = FakeConnection()
        conn.on("execute", "CREATE INDEX", exc)

        with pytest.raises(IndexOperationError) as excinfo:
            asyncio.run(_manager().create_index(conn, "missing", "age"))

        assert "does not exist" in excinfo.value.message

    def test_list_indexes_filters_by_prefix(self):
        conn = FakeConnection()
        conn.on(
            "fetch",
            "pg_index",
            [{"index_name": "idx_orders_status"}, {"index_name": "orders_legacy_idx"}],
        )

        names = asyncio.run(_manager().list_indexes(conn, "orders", prefix="idx_orders_"))

        assert names == ["idx_orders_status"]
