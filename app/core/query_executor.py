"""
Query executor
- classify -> (cache lookup) -> execute / explain -> (plan parse) -> (cache store)
- database errors come back as structured QueryError values, never raised
- explain failures degrade the scan classification instead of failing the query
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from app.core.plan_parser import PlanAnalysis, ScanClassification, parse_plan
from app.core.query_cache import CacheGateway, fingerprint
from app.core.sql_exec import QueryRows, SQLExecutionError, SQLExecutor, SQLTimeoutError
from app.core.sql_guard import SafetyVerdict, SQLGuard, StatementKind, quote_identifier
from app.core.timing import Stopwatch, round_ms
from app.smart_logger import SmartLogger
from app.utils.log_sanitize import sanitize_for_log


SOURCE_DATABASE = "database"
SOURCE_CACHE = "cache"

MODIFICATION_NOTE = (
    "EXPLAIN ANALYZE executed the statement, so its changes were applied. "
    "Timing and row count come from the plan; no row preview is available."
)
PLANNER_ONLY_NOTE = "Scan strategy comes from a planner-only EXPLAIN (estimates, no timings)."


class ExplainFailedError(Exception):
    """The plan could not be obtained or parsed"""
    pass


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]]
    row_count: int
    db_duration_ms: float
    source: str
    scan: ScanClassification
    statement_kind: str
    server_duration_ms: float = 0.0
    top_cost_nodes: List[Dict[str, Any]] = field(default_factory=list)
    truncated: bool = False
    max_rows_cap: Optional[int] = None
    command_status: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows": self.rows,
            "rowCount": self.row_count,
            "dbDurationMs": self.db_duration_ms,
            "serverDurationMs": self.server_duration_ms,
            "source": self.source,
            "scan": self.scan.to_dict(),
            "topCostNodes": self.top_cost_nodes,
            "statementKind": self.statement_kind,
            "truncated": self.truncated,
            "maxRowsCap": self.max_rows_cap,
            "commandStatus": self.command_status,
            "notes": self.notes,
        }


@dataclass
class QueryError:
    kind: str  # "rejected" | "query_error" | "timeout"
    message: str
    detail: Optional[str] = None
    position: Optional[int] = None
    retryable: bool = False
    server_duration_ms: float = 0.0

    @classmethod
    def rejected(cls, reason: str) -> "QueryError":
        return cls(kind="rejected", message=reason, detail="Rejected by the safety guard before execution")

    @classmethod
    def from_exception(cls, exc: SQLExecutionError) -> "QueryError":
        return cls(
            kind="timeout" if isinstance(exc, SQLTimeoutError) else "query_error",
            message=exc.message,
            detail=exc.detail or "Syntax error or missing table/column",
            position=exc.position,
            retryable=exc.retryable,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "kind": self.kind,
            "message": self.message,
            "detail": self.detail,
            "position": self.position,
            "retryable": self.retryable,
            "serverDurationMs": self.server_duration_ms,
        }


@dataclass
class ExplainOutcome:
    scan: ScanClassification
    analysis: Optional[PlanAnalysis] = None
    duration_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.analysis is not None

    def top_cost_summaries(self) -> List[Dict[str, Any]]:
        if self.analysis is None:
            return []
        return [node.summary() for node in self.analysis.top_cost_nodes]


class QueryExecutor:
    """Runs one submitted query end to end"""

    def __init__(
        self,
        cache: Optional[CacheGateway] = None,
        *,
        guard: Optional[SQLGuard] = None,
        executor: Optional[SQLExecutor] = None,
    ):
        self.cache = cache
        self.guard = guard or SQLGuard()
        self.executor = executor or SQLExecutor()

    async def execute(self, db: Any, sql: str, cache_enabled: bool = False) -> Union[QueryResult, QueryError]:
        """
        Args:
            db: asyncpg pool or connection (anything with fetch/fetchval/execute).
            sql: raw query text; it is executed exactly as given.
            cache_enabled: allow cache lookup/store (SELECT only).
        """
        sw = Stopwatch().start()
        verdict = self.guard.classify(sql)

        if not verdict.allowed:
            SmartLogger.log(
                "WARNING",
                "query_executor.rejected",
                category="query_executor.safety",
                params={"sql": sql[:200], "reason": verdict.reason},
            )
            error = QueryError.rejected(verdict.reason)
            error.server_duration_ms = round_ms(sw.stop())
            return error

        try:
            if verdict.kind == StatementKind.SELECT:
                result = await self._run_select(db, sql, cache_enabled)
            elif verdict.kind == StatementKind.EXPLAIN:
                result = await self._run_user_explain(db, sql, verdict)
            elif verdict.kind == StatementKind.MODIFY:
                result = await self._run_modification(db, verdict)
            else:
                result = await self._run_utility(db, sql)
        except SQLExecutionError as exc:
            error = QueryError.from_exception(exc)
            error.server_duration_ms = round_ms(sw.stop())
            SmartLogger.log(
                "ERROR",
                "query_executor.execution_error",
                category="query_executor.execution",
                params=sanitize_for_log({
                    "sql": sql[:200],
                    "kind": verdict.kind.value if verdict.kind else None,
                    "error": exc.message,
                    "sqlstate": exc.sqlstate,
                    "position": exc.position,
                }),
            )
            return error

        result.server_duration_ms = round_ms(sw.stop())
        SmartLogger.log(
            "INFO",
            "query_executor.success",
            category="query_executor.execution",
            params={
                "kind": result.statement_kind,
                "source": result.source,
                "row_count": result.row_count,
                "db_duration_ms": result.db_duration_ms,
                "server_duration_ms": result.server_duration_ms,
                "scan": result.scan.kind.value,
            },
        )
        return result

    async def _run_select(self, db: Any, sql: str, cache_enabled: bool) -> QueryResult:
        cache_key: Optional[str] = None

        if cache_enabled and self.cache is not None:
            cache_key = fingerprint(sql)
            lookup = await self.cache.lookup_rows(cache_key)
            if lookup.hit:
                SmartLogger.log(
                    "INFO",
                    "query_executor.cache.hit",
                    category="query_executor.cache",
                    params={"key": cache_key, "row_count": lookup.row_count, "truncated": lookup.truncated},
                )
                return QueryResult(
                    rows=lookup.rows,
                    row_count=lookup.row_count,
                    db_duration_ms=0.0,
                    source=SOURCE_CACHE,
                    scan=ScanClassification.not_applicable(note="Served from cache; no plan was produced"),
                    statement_kind=StatementKind.SELECT.value,
                    truncated=lookup.truncated,
                    max_rows_cap=lookup.max_rows_cap,
                )
            SmartLogger.log(
                "INFO",
                "query_executor.cache.miss",
                category="query_executor.cache",
                params={"key": cache_key, "cache_error": lookup.error},
            )

        query_rows: QueryRows = await self.executor.execute_query(db, sql)
        explain = await self.explain_best_effort(db, sql, analyze=True)

        if cache_key is not None:
            await self.cache.store_rows(
                cache_key,
                query_rows.rows,
                row_count=query_rows.row_count,
                truncated=query_rows.truncated,
                max_rows_cap=query_rows.max_rows_cap,
            )

        return QueryResult(
            rows=query_rows.rows,
            row_count=query_rows.row_count,
            db_duration_ms=query_rows.duration_ms,
            source=SOURCE_DATABASE,
            scan=explain.scan,
            statement_kind=StatementKind.SELECT.value,
            top_cost_nodes=explain.top_cost_summaries(),
            truncated=query_rows.truncated,
            max_rows_cap=query_rows.max_rows_cap,
        )

    async def _run_user_explain(self, db: Any, sql: str, verdict: SafetyVerdict) -> QueryResult:
        query_rows = await self.executor.execute_query(db, sql)
        explain = await self.explain_best_effort(db, verdict.inner_sql, analyze=False)
        return QueryResult(
            rows=query_rows.rows,
            row_count=query_rows.row_count,
            db_duration_ms=query_rows.duration_ms,
            source=SOURCE_DATABASE,
            scan=explain.scan,
            statement_kind=StatementKind.EXPLAIN.value,
            top_cost_nodes=explain.top_cost_summaries(),
            truncated=query_rows.truncated,
            max_rows_cap=query_rows.max_rows_cap,
            notes=[PLANNER_ONLY_NOTE] if explain.ok else [],
        )

    async def _run_modification(self, db: Any, verdict: SafetyVerdict) -> QueryResult:
        plan = await self.executor.fetch_plan(db, verdict.inner_sql, analyze=True)
        notes = [MODIFICATION_NOTE]
        try:
            analysis = parse_plan(plan.payload)
        except (ValueError, KeyError, TypeError) as exc:
            self._log_explain_failure(verdict.inner_sql, str(exc))
            notes.append("The statement ran but its plan could not be parsed.")
            return QueryResult(
                rows=[],
                row_count=0,
                db_duration_ms=plan.duration_ms,
                source=SOURCE_DATABASE,
                scan=ScanClassification.explain_failed(str(exc)),
                statement_kind=StatementKind.MODIFY.value,
                notes=notes,
            )

        return QueryResult(
            rows=[],
            row_count=modified_row_count(analysis),
            db_duration_ms=round_ms(analysis.duration_ms),
            source=SOURCE_DATABASE,
            scan=analysis.scan,
            statement_kind=StatementKind.MODIFY.value,
            top_cost_nodes=[node.summary() for node in analysis.top_cost_nodes],
            notes=notes,
        )

    async def _run_utility(self, db: Any, sql: str) -> QueryResult:
        status = await self.executor.execute_command(db, sql)
        return QueryResult(
            rows=[],
            row_count=status.row_count,
            db_duration_ms=status.duration_ms,
            source=SOURCE_DATABASE,
            scan=ScanClassification.utility_command(),
            statement_kind=StatementKind.UTILITY.value,
            command_status=status.status,
        )

    async def analyze_plan(self, db: Any, sql: str, *, analyze: bool = True) -> Tuple[PlanAnalysis, float]:
        """
        EXPLAIN the statement and parse the plan.

        Raises:
            SQLExecutionError: the EXPLAIN call itself failed.
            ExplainFailedError: the plan came back but could not be parsed.
        """
        plan = await self.executor.fetch_plan(db, sql, analyze=analyze)
        try:
            return parse_plan(plan.payload), plan.duration_ms
        except (ValueError, KeyError, TypeError) as exc:
            raise ExplainFailedError(f"Could not parse execution plan: {exc}") from exc

    async def explain_best_effort(self, db: Any, sql: str, *, analyze: bool = True) -> ExplainOutcome:
        """Like analyze_plan, but any failure becomes an ExplainFailed classification."""
        try:
            analysis, duration_ms = await self.analyze_plan(db, sql, analyze=analyze)
        except (SQLExecutionError, ExplainFailedError) as exc:
            reason = exc.message if isinstance(exc, SQLExecutionError) else str(exc)
            self._log_explain_failure(sql, reason)
            return ExplainOutcome(scan=ScanClassification.explain_failed(reason), error=reason)
        return ExplainOutcome(scan=analysis.scan, analysis=analysis, duration_ms=duration_ms)

    async def lookup(self, db: Any, table: str, column: str, value: Any) -> QueryResult:
        """
        Equality lookup `SELECT * FROM table WHERE column = value`.

        The value is bound as text and cast to the column's declared type, so an
        index on the column stays usable. No cache, no explain.
        """
        table_sql = quote_identifier(table)
        column_sql = quote_identifier(column)
        column_type = await self.executor.fetch_value(
            db,
            "SELECT format_type(a.atttypid, a.atttypmod) FROM pg_attribute a "
            "WHERE a.attrelid = $1::text::regclass AND a.attname = $2 AND NOT a.attisdropped",
            table,
            column,
        )
        if not column_type:
            raise SQLExecutionError(
                f'column "{column}" does not exist in table "{table}"',
                detail="Pick a column from the table's schema",
                sqlstate="42703",
            )

        sql = f"SELECT * FROM {table_sql} WHERE {column_sql} = $1::text::{column_type}"
        sw = Stopwatch().start()
        query_rows = await self.executor.execute_query(db, sql, None if value is None else str(value))
        result = QueryResult(
            rows=query_rows.rows,
            row_count=query_rows.row_count,
            db_duration_ms=query_rows.duration_ms,
            source=SOURCE_DATABASE,
            scan=ScanClassification.not_applicable(note="Lookups run without EXPLAIN"),
            statement_kind=StatementKind.SELECT.value,
            truncated=query_rows.truncated,
            max_rows_cap=query_rows.max_rows_cap,
        )
        result.server_duration_ms = round_ms(sw.stop())
        return result

    @staticmethod
    def _log_explain_failure(sql: str, reason: str) -> None:
        SmartLogger.log(
            "WARNING",
            "query_executor.explain.failed",
            category="query_executor.explain",
            params={"sql": sql[:200], "error": reason},
        )


def modified_row_count(analysis: PlanAnalysis) -> int:
    """Rows affected by an EXPLAIN ANALYZE'd INSERT/UPDATE/DELETE.

    ModifyTable reports 0 actual rows unless RETURNING is used, so the row count
    falls back to its input node.
    """
    root = analysis.root
    if root.actual_rows == 0 and root.node_type == "ModifyTable" and root.children:
        return root.children[0].actual_rows * max(1, root.children[0].actual_loops)
    return root.actual_rows
