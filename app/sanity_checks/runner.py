from __future__ import annotations

import traceback
from typing import List, Optional

from app.core.query_cache import CacheGateway
from app.smart_logger import SmartLogger
from app.sanity_checks.result import SanityCheckResult
from app.sanity_checks.checks.check_cache import check_result_cache
from app.sanity_checks.checks.check_db import check_target_db


async def run_startup_sanity_checks_or_raise(
    pool=None,
    cache: Optional[CacheGateway] = None,
) -> List[SanityCheckResult]:
    """
    Run startup sanity checks (fail-fast on required checks only).

    Raises:
        RuntimeError: if any required check fails.
    """
    checks = [check_target_db(pool)]
    if cache is not None:
        checks.append(check_result_cache(cache))

    results: List[SanityCheckResult] = []
    for coro in checks:
        try:
            results.append(await coro)
        except Exception as exc:
            # A check should return a failed result rather than raise.
            results.append(
                SanityCheckResult(
                    name="sanity_check_internal_error",
                    ok=False,
                    detail="A sanity check raised unexpectedly",
                    data=None,
                    error=repr(exc) + "\n" + traceback.format_exc(),
                )
            )

    for r in results:
        level = "INFO" if r.ok else ("ERROR" if r.required else "WARNING")
        SmartLogger.log(
            level,
            f"startup.sanity.{r.name}." + ("ok" if r.ok else "fail"),
            category="startup.sanity",
            params=r.to_log_params(),
            max_inline_chars=0,
        )

    failed = [r for r in results if not r.ok and r.required]
    if failed:
        SmartLogger.log(
            "CRITICAL",
            "startup.sanity.failed",
            category="startup.sanity",
            params={"failed": [f.name for f in failed]},
            max_inline_chars=0,
        )
        raise RuntimeError("Startup sanity checks failed. See logs for details.")

    SmartLogger.log("INFO", "startup.sanity.passed", category="startup.sanity", params=None, max_inline_chars=0)
    return results
