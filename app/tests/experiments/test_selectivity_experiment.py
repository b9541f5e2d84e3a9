# python -m pytest app/tests/experiments/test_selectivity_experiment.py -v

import asyncio

import pytest

from app.core.plan_parser import ScanKind
from app.experiments.base import (
    ExperimentParameterError,
    ExperimentSession,
    ExperimentStepOutOfOrderError,
    UnknownExperimentError,
)
from app.experiments.registry import clear_experiment_cache, get_experiment, list_families
from app.experiments.selectivity import SelectivityExperiment
from app.tests.fake_db import FakeConnection, explain_json, plan_node


def _conn(row_count=200000, plan=None) -> FakeConnection:
    conn = FakeConnection()
    conn.on("fetchval", "to_regclass", row_count > 0)
    conn.on("fetchval", "count(*)", row_count)
    conn.on("execute", "INSERT INTO selectivity_data", f"INSERT 0 {row_count}")
    if plan is not None:
        conn.on("fetchval", "EXPLAIN (FORMAT JSON, ANALYZE)", plan)
    return conn


class TestSelectivitySteps:
    def test_seed_builds_table_index_and_statistics(self):
        conn = _conn()

        result = asyncio.run(SelectivityExperiment(rows=200000).run_step(conn, "seed"))

        executed = conn.statements("execute")
        assert executed[0] == "DROP TABLE IF EXISTS selectivity_data"
        assert "floor(random() * 100)" in executed[2]
        assert "generate_series(1, 200000)" in executed[2]
        assert any("idx_selectivity_data_score ON selectivity_data" in sql for sql in executed)
        assert executed[-1] == "ANALYZE selectivity_data"
        assert result.row_count == 200000
        assert result.completed_steps == ["seed"]

    def test_low_threshold_uses_the_index(self):
        plan = explain_json(
            plan_node(
                "Bitmap Heap Scan",
                [plan_node("Bitmap Index Scan", index="idx_selectivity_data_score", rows=2000)],
                rows=2000,
            ),
            execution_time=3.0,
        )
        conn = _conn(plan=plan)

        result = asyncio.run(
            SelectivityExperiment().run_step(conn, "run", ExperimentSession.from_steps(["seed"]), {"threshold": 1})
        )

        assert conn.statements("fetchval")[-1].endswith("SELECT * FROM selectivity_data WHERE score < 1")
        assert result.scan.kind == ScanKind.BITMAP_OR_OTHER_SCAN
        assert result.index_name == "idx_selectivity_data_score"
        assert result.rows_returned == 2000
        assert result.params == {"threshold": 1}

    def test_high_threshold_falls_back_to_seq_scan(self):
        plan = explain_json(plan_node("Seq Scan", rows=180000, removed=20000), execution_time=40.0)

        result = asyncio.run(
            SelectivityExperiment().run_step(
                _conn(plan=plan), "run", ExperimentSession.from_steps(["seed"]), {"threshold": "90"}
            )
        )

        assert result.scan.kind == ScanKind.SEQUENTIAL_SCAN
        assert result.rows_scanned == 200000
        assert result.rows_removed == 20000

    @pytest.mark.parametrize("params", [{}, {"threshold": 0}, {"threshold": 101}, {"threshold": "x"}])
    def test_run_validates_threshold(self, params):
        conn = _conn()

        with pytest.raises(ExperimentParameterError):
            asyncio.run(SelectivityExperiment().run_step(conn, "run", ExperimentSession.from_steps(["seed"]), params))

        assert not any("EXPLAIN" in sql for sql in conn.statements())

    def test_run_before_seed_on_empty_database_is_rejected(self):
        with pytest.raises(ExperimentStepOutOfOrderError):
            asyncio.run(SelectivityExperiment().run_step(_conn(row_count=0), "run", params={"threshold": 5}))

    def test_check_seeded(self):
        assert asyncio.run(SelectivityExperiment().check_seeded(_conn(row_count=0))) == {"count": 0}
        assert asyncio.run(SelectivityExperiment().check_seeded(_conn(row_count=7))) == {"count": 7}


class TestExperimentRegistry:
    def test_aliases_share_one_instance(self):
        clear_experiment_cache()

        assert get_experiment("selectivity_test") is get_experiment("Selectivity")
        assert get_experiment("index_cost_test").family == "write_cost"
        assert get_experiment("composite_test").family == "composite"

    def test_unknown_family(self):
        with pytest.raises(UnknownExperimentError) as excinfo:
            get_experiment("vacuum_test")

        assert "not supported" in str(excinfo.value)

    def test_list_families(self):
        assert list_families() == ["composite", "selectivity", "write_cost"]
