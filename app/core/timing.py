"""Wall-clock measurement helpers"""
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from app.config import settings


class Stopwatch:
    """
    Scoped wall-time measurement.

    The duration is fixed on every exit path of the `with` block, including
    exceptions, so callers can read `elapsed_ms` from an error handler.

        with Stopwatch() as sw:
            rows = await conn.fetch(sql)
        sw.elapsed_ms
    """

    def __init__(self) -> None:
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def start(self) -> "Stopwatch":
        self._start = time.perf_counter()
        self._end = None
        return self

    def stop(self) -> float:
        if self._start is None:
            raise RuntimeError("Stopwatch was never started")
        if self._end is None:
            self._end = time.perf_counter()
        return self.elapsed_ms

    @property
    def running(self) -> bool:
        return self._start is not None and self._end is None

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds elapsed; live while running, frozen after stop."""
        if self._start is None:
            return 0.0
        end = self._end if self._end is not None else time.perf_counter()
        return (end - self._start) * 1000

    def __enter__(self) -> "Stopwatch":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.stop()
        return False


def round_ms(value: float) -> float:
    return round(float(value), 3)


@dataclass(frozen=True)
class LatencyBreakdown:
    """Three-way split of a client-observed round trip."""

    total_ms: float
    network_ms: float
    server_ms: float
    db_ms: float
    bottleneck: str  # "DB" | "Network" | "Server"

    @classmethod
    def from_timings(
        cls,
        total_ms: float,
        server_ms: float,
        db_ms: float,
        *,
        db_threshold_ms: Optional[float] = None,
        overhead_threshold_ms: Optional[float] = None,
    ) -> "LatencyBreakdown":
        """
        Args:
            total_ms: round trip measured by the caller.
            server_ms: `serverDurationMs` from the query result.
            db_ms: `dbDurationMs` from the query result.

        The database is the bottleneck unless its own time is tiny while the
        network or server share is large; a slow server wins over a slow network.
        """
        db_threshold = settings.bottleneck_db_threshold_ms if db_threshold_ms is None else db_threshold_ms
        overhead_threshold = (
            settings.bottleneck_overhead_threshold_ms if overhead_threshold_ms is None else overhead_threshold_ms
        )

        network_ms = max(0.0, total_ms - server_ms)

        bottleneck = "DB"
        if db_ms < db_threshold and network_ms > overhead_threshold:
            bottleneck = "Network"
        if db_ms < db_threshold and server_ms > overhead_threshold:
            bottleneck = "Server"

        return cls(
            total_ms=round_ms(total_ms),
            network_ms=round_ms(network_ms),
            server_ms=round_ms(server_ms),
            db_ms=round_ms(db_ms),
            bottleneck=bottleneck,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalMs": self.total_ms,
            "networkMs": self.network_ms,
            "serverMs": self.server_ms,
            "dbMs": self.db_ms,
            "bottleneck": self.bottleneck,
        }
