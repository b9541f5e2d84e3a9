"""Scripted stand-ins for asyncpg connections/pools used across the tests."""

import inspect
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

_DEFAULTS = {"fetch": [], "fetchval": None, "execute": ""}


class FakeConnection:
    """
    Answers fetch/fetchval/execute from rules registered with `on()`.

    A rule matches when its method is the same and its needle occurs in the
    SQL text; the most recently added matching rule wins. A response may be a
    value, an exception instance (raised) or a callable `(sql, *args)` whose
    result may be awaitable.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self._rules: List[tuple] = []

    def on(self, method: str, needle: str, response: Any) -> "FakeConnection":
        self._rules.append((method, needle, response))
        return self

    async def _respond(self, method: str, sql: str, args: tuple) -> Any:
        self.calls.append((method, sql, args))
        for rule_method, needle, response in reversed(self._rules):
            if rule_method != method or needle not in sql:
                continue
            if isinstance(response, BaseException):
                raise response
            if callable(response):
                result = response(sql, *args)
                if inspect.isawaitable(result):
                    result = await result
                return result
            return response
        return _DEFAULTS[method]

    async def fetch(self, sql: str, *args: Any):
        return await self._respond("fetch", sql, args)

    async def fetchval(self, sql: str, *args: Any):
        return await self._respond("fetchval", sql, args)

    async def execute(self, sql: str, *args: Any):
        return await self._respond("execute", sql, args)

    def statements(self, method: Optional[str] = None) -> List[str]:
        return [sql for m, sql, _ in self.calls if method is None or m == method]


class FakePool:
    """Pool whose acquire() always hands out the same FakeConnection"""

    def __init__(self, conn: Optional[FakeConnection] = None):
        self.conn = conn or FakeConnection()
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        yield self.conn

    # asyncpg.Pool runs single statements on a borrowed connection
    async def fetch(self, sql: str, *args: Any):
        return await self.conn.fetch(sql, *args)

    async def fetchval(self, sql: str, *args: Any):
        return await self.conn.fetchval(sql, *args)

    async def execute(self, sql: str, *args: Any):
        return await self.conn.execute(sql, *args)


def plan_node(node_type: str, children: Optional[List[Dict[str, Any]]] = None, **fields: Any) -> Dict[str, Any]:
    """Build one EXPLAIN JSON node; keyword names map to PostgreSQL's keys."""
    keys = {
        "time": "Actual Total Time",
        "rows": "Actual Rows",
        "loops": "Actual Loops",
        "removed": "Rows Removed by Filter",
        "cost": "Total Cost",
        "index": "Index Name",
        "relation": "Relation Name",
    }
    node: Dict[str, Any] = {"Node Type": node_type}
    for key, value in fields.items():
        node[keys[key]] = value
    if children:
        node["Plans"] = children
    return node


def explain_json(root: Dict[str, Any], execution_time: Optional[float] = None) -> str:
    """EXPLAIN (FORMAT JSON) output as asyncpg's fetchval returns it (text)."""
    top: Dict[str, Any] = {"Plan": root, "Planning Time": 0.1}
    if execution_time is not None:
        top["Execution Time"] = execution_time
    return json.dumps([top])
