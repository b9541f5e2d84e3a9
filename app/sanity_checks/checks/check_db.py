from __future__ import annotations

import asyncio
import traceback
from typing import Any

from app.config import settings
from app.deps import db_pool, dedicated_connection
from app.sanity_checks.result import SanityCheckResult
from app.utils.log_sanitize import sanitize_for_log

# GENERATED ... AS IDENTITY columns (write-cost table)
MIN_SERVER_VERSION_NUM = 100000


async def check_target_db(pool=None, *, timeout_seconds: float = 10.0) -> SanityCheckResult:
    """
    Target DB connection + server version.

    Fail-fast conditions:
    - the database cannot be reached.
    - the server is older than PostgreSQL 10.
    """
    name = "target_db"
    database_url = sanitize_for_log(settings.database_url)

    async def _run_postgres() -> dict[str, Any]:
        async with dedicated_connection(pool or await db_pool.get_pool()) as conn:
            version = await conn.fetchval("SELECT version()")
            version_num = int(await conn.fetchval("SHOW server_version_num"))
            current_db = await conn.fetchval("SELECT current_database()")
            if version_num < MIN_SERVER_VERSION_NUM:
                raise RuntimeError(
                    f"PostgreSQL server_version_num {version_num} < required {MIN_SERVER_VERSION_NUM}"
                )
            return {
                "database_url": database_url,
                "current_db": current_db,
                "server_version_num": version_num,
                "version": (version.split(",")[0] if isinstance(version, str) else str(version)),
            }

    try:
        data = await asyncio.wait_for(_run_postgres(), timeout=timeout_seconds)
        return SanityCheckResult(name=name, ok=True, detail="OK", data=data)
    except Exception as exc:
        return SanityCheckResult(
            name=name,
            ok=False,
            detail="Target DB sanity check failed",
            data={"database_url": database_url},
            error=repr(exc) + "\n" + traceback.format_exc(),
        )
