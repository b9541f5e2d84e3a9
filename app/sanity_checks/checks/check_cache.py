from __future__ import annotations

import asyncio

from app.config import settings
from app.core.query_cache import CacheGateway
from app.sanity_checks.result import SanityCheckResult
from app.utils.log_sanitize import sanitize_for_log


async def check_result_cache(gateway: CacheGateway, *, timeout_seconds: float = 5.0) -> SanityCheckResult:
    """
    Result cache reachability.

    Never fatal: an unreachable cache only means every lookup is a miss.
    """
    name = "result_cache"
    data = {"redis_url": sanitize_for_log(settings.redis_url), **gateway.get_stats()}
    try:
        ok, error = await asyncio.wait_for(gateway.ping(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        ok, error = False, f"ping timed out after {timeout_seconds}s"

    if ok:
        return SanityCheckResult(name=name, ok=True, detail="OK", data=data, required=False)
    return SanityCheckResult(
        name=name,
        ok=False,
        detail="Result cache unreachable; queries will run uncached",
        data=data,
        error=error,
        required=False,
    )
