"""Index lifecycle: create/drop named indexes without blocking writers"""
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

from app.config import settings
from app.core.sql_exec import SQLExecutionError, SQLExecutor
from app.core.sql_guard import quote_identifier
from app.core.timing import Stopwatch, round_ms
from app.smart_logger import SmartLogger


SUPPORTED_METHODS = ("btree", "hash", "gist", "gin", "brin", "spgist")

BLOCKING_WARNING = (
    "Non-concurrent index change: the table is locked against writes until it finishes. "
    "Schedule it off the request path."
)

_INDEX_VALIDITY_SQL = """
SELECT i.indisvalid
FROM pg_index i
JOIN pg_class c ON c.oid = i.indexrelid
WHERE c.relname = $1
  AND pg_catalog.pg_table_is_visible(c.oid)
"""

_TABLE_INDEXES_SQL = """
SELECT c.relname AS index_name
FROM pg_index i
JOIN pg_class c ON c.oid = i.indexrelid
JOIN pg_class t ON t.oid = i.indrelid
WHERE t.relname = $1
  AND pg_catalog.pg_table_is_visible(t.oid)
  AND NOT i.indisprimary
ORDER BY c.relname
"""


class IndexOperationError(Exception):
    """Raised when an index cannot be created or dropped"""

    def __init__(self, message: str, *, detail: Optional[str] = None, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.retryable = retryable


class UnsupportedIndexMethodError(IndexOperationError):
    pass


ColumnSpec = Union[str, Sequence[str]]


def _as_columns(columns: ColumnSpec) -> Tuple[str, ...]:
    if isinstance(columns, str):
        return (columns,)
    cols = tuple(columns)
    if not cols:
        raise IndexOperationError("At least one column is required")
    return cols


def derive_index_name(table: str, columns: ColumnSpec) -> str:
    """`idx_<table>_<column>`; composite indexes join their columns with `_`."""
    return "_".join(["idx", table, *_as_columns(columns)])


@dataclass(frozen=True)
class IndexHandle:
    name: str
    table: str
    columns: Tuple[str, ...]
    method: str = "btree"

    @classmethod
    def for_columns(cls, table: str, columns: ColumnSpec, method: str = "btree") -> "IndexHandle":
        cols = _as_columns(columns)
        return cls(name=derive_index_name(table, cols), table=table, columns=cols, method=method)


@dataclass
class IndexOperationResult:
    action: str
    index_name: str
    success: bool
    message: str
    duration_ms: float
    blocking: bool = False

    def to_dict(self):
        return {
            "action": self.action,
            "indexName": self.index_name,
            "success": self.success,
            "message": self.message,
            "durationMs": self.duration_ms,
            "blocking": self.blocking,
        }


class IndexManager:
    """
    Creates and drops `idx_<table>_<column>` indexes.

    Both operations are idempotent by name: creating an existing index and
    dropping a missing one are no-ops. CONCURRENTLY is used unless disabled in
    settings, in which case results are flagged `blocking`.
    """

    def __init__(
        self,
        executor: Optional[SQLExecutor] = None,
        *,
        concurrently: Optional[bool] = None,
        timeout: Optional[float] = None,
    ):
        self.executor = executor or SQLExecutor()
        self.concurrently = settings.index_concurrently if concurrently is None else concurrently
        self.timeout = timeout if timeout is not None else settings.index_timeout_seconds

    @property
    def _concurrently_sql(self) -> str:
        return " CONCURRENTLY" if self.concurrently else ""

    def build_create_sql(self, handle: IndexHandle) -> str:
        column_list = ", ".join(quote_identifier(col) for col in handle.columns)
        return (
            f"CREATE INDEX{self._concurrently_sql} IF NOT EXISTS {quote_identifier(handle.name)} "
            f"ON {quote_identifier(handle.table)} USING {handle.method} ({column_list})"
        )

    def build_drop_sql(self, index_name: str) -> str:
        return f"DROP INDEX{self._concurrently_sql} IF EXISTS {quote_identifier(index_name)}"

    async def create_index(
        self,
        db: Any,
        table: str,
        columns: ColumnSpec,
        method: Optional[str] = "btree",
    ) -> IndexOperationResult:
        method = (method or "btree").strip().lower()
        if method not in SUPPORTED_METHODS:
            raise UnsupportedIndexMethodError(
                f"Unsupported index method '{method}'",
                detail=f"Supported methods: {', '.join(SUPPORTED_METHODS)}",
            )
        handle = IndexHandle.for_columns(table, columns, method)

        with Stopwatch() as sw:
            # An interrupted concurrent build leaves an INVALID index behind that
            # IF NOT EXISTS would silently keep.
            if await self._is_invalid(db, handle.name):
                await self._execute(db, self.build_drop_sql(handle.name), "drop", handle.name)
            await self._execute(db, self.build_create_sql(handle), "create", handle.name)

        return self._result("create", handle.name, sw.elapsed_ms)

    async def drop_index(self, db: Any, table: str, columns: ColumnSpec) -> IndexOperationResult:
        return await self.drop_index_by_name(db, derive_index_name(table, columns))

    async def drop_index_by_name(self, db: Any, index_name: str) -> IndexOperationResult:
        with Stopwatch() as sw:
            await self._execute(db, self.build_drop_sql(index_name), "drop", index_name)
        return self._result("drop", index_name, sw.elapsed_ms)

    async def list_indexes(self, db: Any, table: str, prefix: Optional[str] = None) -> List[str]:
        """Non-primary-key index names on a table, optionally filtered by prefix."""
        try:
            result = await self.executor.execute_query(db, _TABLE_INDEXES_SQL, table)
        except SQLExecutionError as exc:
            raise IndexOperationError(
                f"Could not list indexes on {table}: {exc.message}", retryable=exc.retryable
            ) from exc
        names = [row["index_name"] for row in result.rows]
        if prefix:
            names = [name for name in names if name.startswith(prefix)]
        return names

    async def _is_invalid(self, db: Any, index_name: str) -> bool:
        try:
            valid = await self.executor.fetch_value(db, _INDEX_VALIDITY_SQL, index_name)
        except SQLExecutionError as exc:
            raise IndexOperationError(exc.message, detail=exc.detail, retryable=exc.retryable) from exc
        return valid is False

    async def _execute(self, db: Any, sql: str, action: str, index_name: str) -> None:
        try:
            await self.executor.execute_command(db, sql, timeout=self.timeout)
        except SQLExecutionError as exc:
            SmartLogger.log(
                "ERROR",
                f"index_manager.{action}.failed",
                category="index_manager",
                params={"index": index_name, "sql": sql, "error": exc.message},
            )
            raise IndexOperationError(exc.message, detail=exc.detail, retryable=exc.retryable) from exc

    def _result(self, action: str, index_name: str, elapsed_ms: float) -> IndexOperationResult:
        message = f"Index {index_name} {action}d successfully."
        if not self.concurrently:
            message = f"{message} {BLOCKING_WARNING}"
        result = IndexOperationResult(
            action=action,
            index_name=index_name,
            success=True,
            message=message,
            duration_ms=round_ms(elapsed_ms),
            blocking=not self.concurrently,
        )
        SmartLogger.log(
            "INFO",
            f"index_manager.{action}.ok",
            category="index_manager",
            params={"index": index_name, "duration_ms": result.duration_ms, "blocking": result.blocking},
        )
        return result
