# python -m pytest app/tests/cores/test_query_executor.py -v

"""Tests for the end-to-end query path (guard, cache, execute, explain)."""

import asyncio

import asyncpg
import pytest

from app.core.plan_parser import ScanKind
from app.core.query_cache import CacheGateway, CacheUnavailableError, InMemoryCacheStore
from app.core.query_executor import (
    MODIFICATION_NOTE,
    PLANNER_ONLY_NOTE,
    SOURCE_CACHE,
    SOURCE_DATABASE,
    QueryError,
    QueryExecutor,
    QueryResult,
)
from app.core.sql_exec import SQLExecutionError, SQLExecutor
from app.tests.fake_db import FakeConnection, explain_json, plan_node

SELECT_SQL = "SELECT * FROM users_small WHERE age = 30"
ROWS = [{"id": 1, "age": 30}, {"id": 2, "age": 30}]


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class DownStore:
    async def get(self, key):
        raise CacheUnavailableError("redis down")

    async def set(self, key, value, ttl_seconds):
        raise CacheUnavailableError("redis down")


def _select_conn() -> FakeConnection:
    conn = FakeConnection()
    conn.on("fetch", SELECT_SQL, ROWS)
    conn.on(
        "fetchval",
        "EXPLAIN (FORMAT JSON, ANALYZE)",
        explain_json(plan_node("Seq Scan", relation="users_small", rows=2, removed=998, time=3.2)),
    )
    return conn


def _executor(cache=None, **kwargs) -> QueryExecutor:
    return QueryExecutor(cache, executor=SQLExecutor(timeout=5, explain_timeout=5, **kwargs))


class TestSafety:
    def test_rejected_statement_never_reaches_database(self):
        conn = FakeConnection()

        outcome = asyncio.run(_executor().execute(conn, "DROP TABLE users_small"))

        assert isinstance(outcome, QueryError)
        assert outcome.kind == "rejected"
        assert outcome.to_dict()["error"] is True
        assert conn.calls == []


class TestSelect:
    def test_select_runs_query_then_explain(self):
        conn = _select_conn()

        result = asyncio.run(_executor().execute(conn, SELECT_SQL))

        assert isinstance(result, QueryResult)
        assert result.source == SOURCE_DATABASE
        assert result.rows == ROWS
        assert result.row_count == 2
        assert result.scan.kind == ScanKind.SEQUENTIAL_SCAN
        assert result.top_cost_nodes == [{"type": "Seq Scan", "time": 3.2, "rows": 2}]
        assert result.server_duration_ms >= result.db_duration_ms
        assert [m for m, _, _ in conn.calls] == ["fetch", "fetchval"]

    def test_explain_failure_keeps_rows(self):
        conn = FakeConnection()
        conn.on("fetch", SELECT_SQL, ROWS)
        conn.on("fetchval", "EXPLAIN", "{broken json")

        result = asyncio.run(_executor().execute(conn, SELECT_SQL))

        assert isinstance(result, QueryResult)
        assert result.rows == ROWS
        assert result.scan.kind == ScanKind.EXPLAIN_FAILED

    def test_row_cap_truncates_preview(self):
        conn = FakeConnection()
        conn.on("fetch", "SELECT", [{"id": i} for i in range(10)])

        result = asyncio.run(_executor(max_rows=3).execute(conn, "SELECT id FROM users_large"))

        assert result.row_count == 10
        assert len(result.rows) == 3
        assert result.truncated
        assert result.max_rows_cap == 3


class TestCache:
    def test_miss_then_hit_then_expiry(self):
        clock = FakeClock()
        gateway = CacheGateway(InMemoryCacheStore(clock=clock), ttl_seconds=60)
        executor = _executor(gateway)
        conn = _select_conn()

        async def _run():
            first = await executor.execute(conn, SELECT_SQL, cache_enabled=True)
            second = await executor.execute(conn, SELECT_SQL, cache_enabled=True)
            clock.now += 61
            third = await executor.execute(conn, SELECT_SQL, cache_enabled=True)
            return first, second, third

        first, second, third = asyncio.run(_run())

        assert first.source == SOURCE_DATABASE
        assert second.source == SOURCE_CACHE
        assert second.rows == ROWS
        assert second.db_duration_ms == 0
        assert second.scan.kind == ScanKind.NOT_APPLICABLE
        assert third.source == SOURCE_DATABASE
        # the cache hit issued no database call
        assert len(conn.statements("fetch")) == 2

    def test_truncated_result_keeps_full_count_on_hit(self):
        gateway = CacheGateway(InMemoryCacheStore(clock=FakeClock()), ttl_seconds=60)
        executor = _executor(gateway, max_rows=5)
        conn = FakeConnection()
        conn.on("fetch", "SELECT", [{"id": i} for i in range(7)])

        async def _run():
            first = await executor.execute(conn, "SELECT id FROM users_large", cache_enabled=True)
            second = await executor.execute(conn, "SELECT id FROM users_large", cache_enabled=True)
            return first, second

        first, second = asyncio.run(_run())

        assert first.source == SOURCE_DATABASE
        assert second.source == SOURCE_CACHE
        assert (second.row_count, second.truncated, second.max_rows_cap) == (7, True, 5)
        assert (first.row_count, first.truncated, first.max_rows_cap) == (7, True, 5)
        assert second.rows == first.rows
        assert len(second.rows) == 5

    def test_whitespace_variant_is_a_different_key(self):
        gateway = CacheGateway(InMemoryCacheStore(clock=FakeClock()), ttl_seconds=60)
        executor = _executor(gateway)
        conn = FakeConnection()
        conn.on("fetch", "SELECT", ROWS)

        async def _run():
            await executor.execute(conn, SELECT_SQL, cache_enabled=True)
            return await executor.execute(conn, SELECT_SQL + " ", cache_enabled=True)

        assert asyncio.run(_run()).source == SOURCE_DATABASE

    def test_cache_disabled_skips_store(self):
        store = InMemoryCacheStore(clock=FakeClock())
        executor = _executor(CacheGateway(store, ttl_seconds=60))

        asyncio.run(executor.execute(_select_conn(), SELECT_SQL, cache_enabled=False))

        assert store.get_stats()["size"] == 0

    def test_cache_outage_falls_through_to_database(self):
        executor = _executor(CacheGateway(DownStore(), ttl_seconds=60))

        result = asyncio.run(executor.execute(_select_conn(), SELECT_SQL, cache_enabled=True))

        assert isinstance(result, QueryResult)
        assert result.source == SOURCE_DATABASE
        assert result.rows == ROWS

    def test_non_select_is_never_cached(self):
        store = InMemoryCacheStore(clock=FakeClock())
        executor = _executor(CacheGateway(store, ttl_seconds=60))

        asyncio.run(executor.execute(FakeConnection(), "VACUUM users_small", cache_enabled=True))

        assert store.get_stats()["size"] == 0


class TestOtherStatementKinds:
    def test_user_explain_runs_as_written_with_planner_only_classification(self):
        conn = FakeConnection()
        conn.on("fetch", "EXPLAIN SELECT", [{"QUERY PLAN": "Seq Scan on users_small"}])
        conn.on("fetchval", "EXPLAIN (FORMAT JSON) SELECT", explain_json(plan_node("Seq Scan", rows=1000)))

        result = asyncio.run(_executor().execute(conn, "EXPLAIN SELECT * FROM users_small"))

        assert result.rows == [{"QUERY PLAN": "Seq Scan on users_small"}]
        assert result.scan.kind == ScanKind.SEQUENTIAL_SCAN
        assert PLANNER_ONLY_NOTE in result.notes
        # planner-only: no ANALYZE for the classification pass
        assert "ANALYZE" not in conn.statements("fetchval")[0]

    def test_explain_insert_takes_row_count_and_timing_from_plan(self):
        conn = FakeConnection()
        plan = plan_node("ModifyTable", [plan_node("Function Scan", rows=500, time=4.0)], rows=0, time=9.0)
        conn.on("fetchval", "EXPLAIN (FORMAT JSON, ANALYZE) INSERT", explain_json(plan, execution_time=9.5))

        sql = "EXPLAIN ANALYZE INSERT INTO users_small (age) SELECT 1 FROM generate_series(1, 500)"
        result = asyncio.run(_executor().execute(conn, sql))

        assert result.statement_kind == "modify"
        assert result.rows == []
        assert result.row_count == 500
        assert result.db_duration_ms == 9.5
        assert MODIFICATION_NOTE in result.notes
        assert conn.statements("fetch") == []

    def test_utility_command(self):
        conn = FakeConnection()
        conn.on("execute", "CREATE INDEX", "CREATE INDEX")

        result = asyncio.run(_executor().execute(conn, "CREATE INDEX idx_users_small_age ON users_small (age)"))

        assert result.scan.kind == ScanKind.UTILITY_COMMAND
        assert result.rows == []
        assert result.command_status == "CREATE INDEX"


class TestErrors:
    def test_syntax_error_carries_position(self):
        exc = asyncpg.exceptions.PostgresSyntaxError('syntax error at or near "FORM"')
        exc.message = 'syntax error at or near "FORM"'
        exc.position = "10"
        exc.detail = None
        exc.hint = None
        conn = FakeConnection()
        conn.on("fetch", "SELECT", exc)

        outcome = asyncio.run(_executor().execute(conn, "SELECT * FORM users_small"))

        assert isinstance(outcome, QueryError)
        assert outcome.kind == "query_error"
        body = outcome.to_dict()
        assert body["error"] is True
        assert body["message"] == 'syntax error at or near "FORM"'
        assert body["position"] == 10
        assert body["detail"]
        assert body["retryable"] is False

    def test_timeout_is_retryable(self):
        async def slow(sql, *args):
            await asyncio.sleep(1)
            return []

        conn = FakeConnection()
        conn.on("fetch", "SELECT", slow)
        executor = QueryExecutor(executor=SQLExecutor(timeout=0.01, explain_timeout=0.01))

        outcome = asyncio.run(executor.execute(conn, SELECT_SQL))

        assert isinstance(outcome, QueryError)
        assert outcome.kind == "timeout"
        assert outcome.retryable


class TestLookup:
    def test_value_is_bound_and_cast_to_column_type(self):
        conn = FakeConnection()
        conn.on("fetchval", "format_type", "integer")
        conn.on("fetch", "SELECT * FROM users_large", [{"id": 42, "age": 30}])

        result = asyncio.run(_executor().lookup(conn, "users_large", "id", 42))

        method, sql, args = conn.calls[-1]
        assert sql == "SELECT * FROM users_large WHERE id = $1::text::integer"
        assert args == ("42",)
        assert result.rows == [{"id": 42, "age": 30}]
        assert result.scan.kind == ScanKind.NOT_APPLICABLE

    def test_unknown_column_raises(self):
        conn = FakeConnection()

        with pytest.raises(SQLExecutionError) as excinfo:
            asyncio.run(_executor().lookup(conn, "users_large", "nope", 1))

        assert excinfo.value.sqlstate == "42703"
