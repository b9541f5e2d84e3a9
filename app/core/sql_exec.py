"""SQL execution with timeouts and structured errors"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

from app.config import settings
from app.core.timing import Stopwatch, round_ms


class SQLExecutionError(Exception):
    """Raised when the database rejects or fails a statement"""

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[str] = None,
        position: Optional[int] = None,
        sqlstate: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.position = position
        self.sqlstate = sqlstate
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "message": self.message,
            "detail": self.detail,
            "position": self.position,
            "sqlstate": self.sqlstate,
            "retryable": self.retryable,
        }


class SQLTimeoutError(SQLExecutionError):
    """Statement exceeded its time budget; safe to retry"""

    def __init__(self, message: str):
        super().__init__(message, detail="Statement timed out", sqlstate="57014", retryable=True)


# connection exceptions, transaction rollbacks, admin shutdown
_RETRYABLE_SQLSTATE_PREFIXES = ("08", "40", "57P")


def _parse_position(raw: Any) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def error_from_postgres(exc: Exception) -> SQLExecutionError:
    """Carry the server's message/detail/position over to a SQLExecutionError."""
    message = getattr(exc, "message", None) or str(exc)
    sqlstate = getattr(exc, "sqlstate", None)
    return SQLExecutionError(
        message,
        detail=getattr(exc, "detail", None) or getattr(exc, "hint", None),
        position=_parse_position(getattr(exc, "position", None)),
        sqlstate=sqlstate,
        retryable=bool(sqlstate) and str(sqlstate).startswith(_RETRYABLE_SQLSTATE_PREFIXES),
    )


def parse_command_row_count(status: Optional[str]) -> int:
    """Row count from a command tag such as 'INSERT 0 100000' or 'DELETE 12'."""
    if not status:
        return 0
    last = status.strip().split(" ")[-1]
    return int(last) if last.isdigit() else 0


@dataclass
class QueryRows:
    rows: List[Dict[str, Any]]
    row_count: int
    duration_ms: float
    truncated: bool = False
    max_rows_cap: Optional[int] = None

    @property
    def returned_row_count(self) -> int:
        return len(self.rows)


@dataclass
class CommandStatus:
    status: str
    row_count: int
    duration_ms: float


@dataclass
class PlanPayload:
    payload: Any
    duration_ms: float
    explain_sql: str = ""
    options: List[str] = field(default_factory=list)


class SQLExecutor:
    """Execute SQL statements with timeout and error normalisation"""

    def __init__(
        self,
        timeout: Optional[float] = None,
        explain_timeout: Optional[float] = None,
        max_rows: Optional[int] = None,
    ):
        self.timeout = timeout if timeout is not None else settings.sql_timeout_seconds
        self.explain_timeout = explain_timeout if explain_timeout is not None else settings.explain_timeout_seconds
        self.max_rows = max_rows if max_rows is not None else settings.sql_max_rows

    async def _run(self, awaitable, timeout: float, what: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise SQLTimeoutError(f"{what} timed out after {timeout} seconds") from None
        except asyncpg.PostgresError as e:
            raise error_from_postgres(e) from e
        except (asyncpg.InterfaceError, OSError) as e:
            raise SQLExecutionError(f"Database connection error: {e}", retryable=True) from e

    async def execute_query(
        self,
        conn: Any,
        sql: str,
        *args: Any,
        timeout: Optional[float] = None,
    ) -> QueryRows:
        """
        Run a row-returning statement.

        Returns every row up to `max_rows`; `row_count` always reports the full
        count and `truncated` tells whether the preview was cut.
        """
        effective_timeout = timeout if timeout is not None else self.timeout
        with Stopwatch() as sw:
            records = await self._run(conn.fetch(sql, *args), effective_timeout, "Query")

        truncated = self.max_rows > 0 and len(records) > self.max_rows
        kept = records[: self.max_rows] if truncated else records
        return QueryRows(
            rows=self.jsonable_rows(kept),
            row_count=len(records),
            duration_ms=round_ms(sw.elapsed_ms),
            truncated=truncated,
            max_rows_cap=self.max_rows if truncated else None,
        )

    async def execute_command(
        self,
        conn: Any,
        sql: str,
        *args: Any,
        timeout: Optional[float] = None,
    ) -> CommandStatus:
        """Run a statement that returns no rows (DDL, utility, DML)."""
        effective_timeout = timeout if timeout is not None else self.timeout
        with Stopwatch() as sw:
            status = await self._run(conn.execute(sql, *args), effective_timeout, "Statement")
        return CommandStatus(
            status=str(status or ""),
            row_count=parse_command_row_count(status),
            duration_ms=round_ms(sw.elapsed_ms),
        )

    async def fetch_value(self, conn: Any, sql: str, *args: Any, timeout: Optional[float] = None) -> Any:
        effective_timeout = timeout if timeout is not None else self.timeout
        return await self._run(conn.fetchval(sql, *args), effective_timeout, "Query")

    async def fetch_plan(
        self,
        conn: Any,
        sql: str,
        *,
        analyze: bool = True,
        timeout: Optional[float] = None,
    ) -> PlanPayload:
        """EXPLAIN the statement in JSON form. With analyze=True it really executes."""
        effective_timeout = timeout if timeout is not None else self.explain_timeout
        explain_sql, options = self.build_explain_sql(sql, analyze=analyze)
        with Stopwatch() as sw:
            payload = await self._run(conn.fetchval(explain_sql), effective_timeout, "EXPLAIN")
        return PlanPayload(
            payload=payload,
            duration_ms=round_ms(sw.elapsed_ms),
            explain_sql=explain_sql,
            options=options,
        )

    @staticmethod
    def build_explain_sql(
        sql: str,
        *,
        analyze: bool,
        verbose: bool = False,
        buffers: bool = False,
        format: str = "JSON",
    ) -> Tuple[str, List[str]]:
        options = [f"FORMAT {format.upper()}"]
        if analyze:
            options.append("ANALYZE")
        if verbose:
            options.append("VERBOSE")
        if buffers:
            options.append("BUFFERS")
        statement = sql.strip().rstrip(";")
        return f"EXPLAIN ({', '.join(options)}) {statement}", options

    @staticmethod
    def jsonable_rows(records: List[Any]) -> List[Dict[str, Any]]:
        """Records to dicts; values that are not JSON scalars become strings."""
        formatted: List[Dict[str, Any]] = []
        for record in records:
            row: Dict[str, Any] = {}
            for key, value in dict(record).items():
                if value is None or isinstance(value, (str, int, float, bool)):
                    row[key] = value
                else:
                    row[key] = str(value)
            formatted.append(row)
        return formatted
