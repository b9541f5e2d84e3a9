"""
Query routes
- POST /query: equality lookup on a lookup table
- POST /sql: raw SQL through the safety guard, cache, and plan parser
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from app.core.query_executor import QueryError, QueryExecutor, QueryResult
from app.core.sql_exec import SQLExecutionError
from app.core.timing import LatencyBreakdown
from app.deps import get_db_pool, get_query_executor
from app.smart_logger import SmartLogger


router = APIRouter(tags=["Query"])

IDENTIFIER_PATTERN = r"^[a-zA-Z_][a-zA-Z0-9_]*$"


class LookupRequest(BaseModel):
    table: str = Field(..., description="Table to search", pattern=IDENTIFIER_PATTERN)
    column: str = Field(..., description="Column compared with '='", pattern=IDENTIFIER_PATTERN)
    value: Any = Field(..., description="Value to match; cast to the column type by the database")


class LookupResponse(BaseModel):
    rows: List[Dict[str, Any]] = []
    rowCount: int = 0
    durationMs: float = 0
    source: str = "database"
    truncated: bool = False


class SqlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., description="SQL text, executed exactly as given")
    use_cache: bool = Field(default=False, alias="useCache", description="Use the result cache (SELECT only)")
    client_round_trip_ms: Optional[float] = Field(
        default=None,
        alias="clientRoundTripMs",
        ge=0,
        description="Round trip measured by the caller; adds a latency breakdown to the response",
    )


@router.post("/query", response_model=LookupResponse)
async def run_query(
    request: LookupRequest,
    db=Depends(get_db_pool),
    executor: QueryExecutor = Depends(get_query_executor),
) -> LookupResponse:
    """`SELECT * FROM <table> WHERE <column> = <value>`; no cache, no explain."""
    try:
        result = await executor.lookup(db, request.table, request.column, request.value)
    except SQLExecutionError as exc:
        SmartLogger.log(
            "ERROR",
            "query.lookup.error",
            category="routers.query",
            params={"table": request.table, "column": request.column, "error": exc.message},
        )
        raise HTTPException(status_code=500 if exc.retryable else 400, detail=exc.to_dict())

    return LookupResponse(
        rows=result.rows,
        rowCount=result.row_count,
        durationMs=result.server_duration_ms,
        source=result.source,
        truncated=result.truncated,
    )


@router.post("/sql")
async def run_sql(
    request: SqlRequest,
    db=Depends(get_db_pool),
    executor: QueryExecutor = Depends(get_query_executor),
) -> Dict[str, Any]:
    """
    Runs one statement and returns either a query result or
    `{error: true, message, detail, position}`. Always HTTP 200, so the caller
    can render syntax errors in place.
    """
    outcome: Union[QueryResult, QueryError] = await executor.execute(db, request.query, cache_enabled=request.use_cache)
    body = outcome.to_dict()

    if request.client_round_trip_ms is not None and not isinstance(outcome, QueryError):
        body["latency"] = LatencyBreakdown.from_timings(
            request.client_round_trip_ms,
            outcome.server_duration_ms,
            outcome.db_duration_ms,
        ).to_dict()
    return body
