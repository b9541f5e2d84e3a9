"""Index management route (create/drop `idx_<table>_<column>`)"""
from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from app.core.index_manager import IndexManager, IndexOperationError, UnsupportedIndexMethodError
from app.deps import get_db_pool, get_index_manager
from app.routers.query import IDENTIFIER_PATTERN
from app.smart_logger import SmartLogger


router = APIRouter(tags=["Indexes"])


class ManageIndexRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["create", "drop"]
    table: str = Field(..., pattern=IDENTIFIER_PATTERN)
    column: str = Field(..., pattern=IDENTIFIER_PATTERN)
    method: Optional[str] = Field(default="btree", alias="type", description="Index access method")


class ManageIndexResponse(BaseModel):
    success: bool
    message: str
    durationMs: float
    indexName: str
    blocking: bool = False


@router.post("/manage-index", response_model=ManageIndexResponse)
async def manage_index(
    request: ManageIndexRequest,
    db=Depends(get_db_pool),
    manager: IndexManager = Depends(get_index_manager),
) -> ManageIndexResponse:
    try:
        if request.action == "create":
            result = await manager.create_index(db, request.table, request.column, request.method)
        else:
            result = await manager.drop_index(db, request.table, request.column)
    except IndexOperationError as exc:
        SmartLogger.log(
            "ERROR",
            "manage_index.error",
            category="routers.indexes",
            params={"action": request.action, "table": request.table, "column": request.column, "error": exc.message},
        )
        status_code = 400 if isinstance(exc, UnsupportedIndexMethodError) else 500
        raise HTTPException(
            status_code=status_code,
            detail={"error": True, "message": exc.message, "detail": exc.detail, "retryable": exc.retryable},
        )

    return ManageIndexResponse(
        success=result.success,
        message=result.message,
        durationMs=result.duration_ms,
        indexName=result.index_name,
        blocking=result.blocking,
    )
