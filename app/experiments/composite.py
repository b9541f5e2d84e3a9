"""
Composite-index comparison

`reset` rebuilds `orders` with a skewed `status` column (a small 'Active'
minority) and random `created_at` timestamps. Each test step leaves exactly one
index shape in place and explains the same query, so only the index varies
between results.
"""
from typing import Any, Dict, List, Sequence

from app.config import settings
from app.core.index_manager import IndexHandle
from app.core.plan_parser import ScanClassification
from app.experiments.base import Experiment, ExperimentStepResult, StepSpec, require_number

COMPOSITE_QUERY = "SELECT * FROM orders WHERE status = 'Active' ORDER BY created_at DESC LIMIT 1000"

TEST_STEPS = ("test_none", "test_status", "test_date", "test_composite")

INDEX_SHAPES: Dict[str, List[IndexHandle]] = {
    "test_none": [],
    "test_status": [IndexHandle.for_columns("orders", "status")],
    "test_date": [IndexHandle.for_columns("orders", "created_at")],
    "test_composite": [IndexHandle.for_columns("orders", ("status", "created_at"))],
}


class CompositeIndexExperiment(Experiment):
    family = "composite"
    table = "orders"

    def __init__(self, *args, rows: int = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.rows = int(rows if rows is not None else settings.composite_rows)

    def steps(self) -> Sequence[StepSpec]:
        labels = {
            "test_none": "no index",
            "test_status": "index on status",
            "test_date": "index on created_at",
            "test_composite": "composite (status, created_at)",
        }
        return (
            StepSpec("check", label="check seed data", recorded=False),
            StepSpec("reset", invalidates=TEST_STEPS, label="reset data"),
            *(StepSpec(step, requires="reset", label=labels[step]) for step in TEST_STEPS),
        )

    async def _requirement_met_outside_session(self, db: Any, spec: StepSpec) -> bool:
        return await self.count_rows(db) > 0

    async def _run(self, db: Any, spec: StepSpec, params: Dict[str, Any]) -> ExperimentStepResult:
        if spec.step_id == "check":
            count = await self.count_rows(db)
            return ExperimentStepResult(
                experiment=self.family,
                step="check",
                duration_ms=0.0,
                scan=ScanClassification.not_applicable("No query executed"),
                row_count=count,
                message="Seed data present." if count else "No data yet; run the reset step.",
            )
        if spec.step_id == "reset":
            return await self._reset(db, params)
        return await self._test(db, spec.step_id)

    async def _reset(self, db: Any, params: Dict[str, Any]) -> ExperimentStepResult:
        fraction = require_number(
            params,
            "minority_fraction",
            settings.composite_minority_fraction,
            minimum=0.0,
            maximum=1.0,
        )
        await self.sql.execute_command(db, f"DROP TABLE IF EXISTS {self.table_sql}")
        await self.sql.execute_command(
            db,
            f"CREATE TABLE {self.table_sql} ("
            "id serial PRIMARY KEY, status text NOT NULL, created_at timestamp NOT NULL, amount numeric(10, 2))",
        )
        status = await self.sql.execute_command(
            db,
            f"INSERT INTO {self.table_sql} (status, created_at, amount) "
            f"SELECT CASE WHEN random() < {fraction!r} THEN 'Active' ELSE 'Inactive' END, "
            "now() - random() * interval '365 days', round((random() * 1000)::numeric, 2) "
            f"FROM generate_series(1, {self.rows})",
        )
        await self.refresh_statistics(db)
        return ExperimentStepResult(
            experiment=self.family,
            step="reset",
            duration_ms=status.duration_ms,
            scan=ScanClassification.not_applicable("Reset step"),
            row_count=status.row_count,
            params={"rows": self.rows, "minorityFraction": fraction},
            message=f"Recreated orders with {status.row_count} rows, {fraction:.2%} 'Active'.",
        )

    async def _test(self, db: Any, step: str) -> ExperimentStepResult:
        index_state = await self.sync_indexes(db, INDEX_SHAPES[step])
        await self.refresh_statistics(db)
        analysis = await self.explain(db, COMPOSITE_QUERY)
        return ExperimentStepResult.from_analysis(
            self.family,
            step,
            analysis,
            index_state=index_state,
            message=f"{analysis.scan.label}; scanned {analysis.rows_scanned} rows, removed {analysis.rows_removed}.",
        )
