# python -m pytest app/tests/cores/test_timing.py -v

import pytest

from app.core.timing import LatencyBreakdown, Stopwatch, round_ms


class TestLatencyBreakdown:
    """Network / server / database split of a client round trip"""

    def test_slow_database_is_the_bottleneck(self):
        breakdown = LatencyBreakdown.from_timings(300.0, 250.0, 240.0)

        assert breakdown.bottleneck == "DB"
        assert breakdown.network_ms == 50.0

    def test_fast_database_with_slow_network(self):
        breakdown = LatencyBreakdown.from_timings(200.0, 20.0, 1.0)

        assert breakdown.network_ms == 180.0
        assert breakdown.bottleneck == "Network"

    def test_server_overhead_wins_over_network(self):
        breakdown = LatencyBreakdown.from_timings(400.0, 120.0, 2.0)

        assert breakdown.bottleneck == "Server"

    def test_network_time_is_clamped_at_zero(self):
        """A caller clock coarser than the server's can report total < server"""
        breakdown = LatencyBreakdown.from_timings(10.0, 12.0, 11.0)

        assert breakdown.network_ms == 0.0

    def test_thresholds_can_be_overridden(self):
        breakdown = LatencyBreakdown.from_timings(
            200.0, 20.0, 8.0, db_threshold_ms=10.0, overhead_threshold_ms=100.0
        )

        assert breakdown.bottleneck == "Network"

    def test_to_dict(self):
        data = LatencyBreakdown.from_timings(10.0, 5.0, 1.0).to_dict()

        assert set(data) == {"totalMs", "networkMs", "serverMs", "dbMs", "bottleneck"}


class TestStopwatch:
    def test_context_manager_stops(self):
        with Stopwatch() as sw:
            assert sw.running
        assert not sw.running
        assert sw.elapsed_ms >= 0

    def test_round_ms(self):
        assert round_ms(1.23456) == pytest.approx(1.235)
