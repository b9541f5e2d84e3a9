"""Selectivity sweep: where does the planner give up on the index?"""
from typing import Any, Dict, Sequence

from app.config import settings
from app.core.index_manager import IndexHandle
from app.core.plan_parser import ScanClassification
from app.experiments.base import (
    Experiment,
    ExperimentStepResult,
    StepSpec,
    require_number,
)

SCORE_INDEX = IndexHandle.for_columns("selectivity_data", "score")


class SelectivityExperiment(Experiment):
    """
    `seed` fills `selectivity_data` with scores spread uniformly over 0..99 and
    indexes the column; `run` filters `score < threshold` so the threshold is
    the matching percentage of the table.
    """

    family = "selectivity"
    table = "selectivity_data"

    def __init__(self, *args, rows: int = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.rows = int(rows if rows is not None else settings.selectivity_rows)

    def steps(self) -> Sequence[StepSpec]:
        return (
            StepSpec("check", label="check seed data", recorded=False),
            StepSpec("seed", invalidates=("run",), label="seed data"),
            StepSpec("run", requires="seed", label="threshold query"),
        )

    async def _requirement_met_outside_session(self, db: Any, spec: StepSpec) -> bool:
        return await self.count_rows(db) > 0

    @staticmethod
    def query_for(threshold: int) -> str:
        return f"SELECT * FROM selectivity_data WHERE score < {int(threshold)}"

    async def _run(self, db: Any, spec: StepSpec, params: Dict[str, Any]) -> ExperimentStepResult:
        if spec.step_id == "check":
            return await self._check(db)
        if spec.step_id == "seed":
            return await self._seed(db)
        return await self._threshold_run(db, params)

    async def _check(self, db: Any) -> ExperimentStepResult:
        count = await self.count_rows(db)
        return ExperimentStepResult(
            experiment=self.family,
            step="check",
            duration_ms=0.0,
            scan=ScanClassification.not_applicable("No query executed"),
            row_count=count,
            message="Seed data present." if count else "No seed data yet; run the seed step.",
        )

    async def _seed(self, db: Any) -> ExperimentStepResult:
        await self.sql.execute_command(db, f"DROP TABLE IF EXISTS {self.table_sql}")
        await self.sql.execute_command(
            db,
            f"CREATE TABLE {self.table_sql} (id serial PRIMARY KEY, score int NOT NULL, filler text)",
        )
        status = await self.sql.execute_command(
            db,
            f"INSERT INTO {self.table_sql} (score, filler) "
            f"SELECT floor(random() * 100)::int, md5(g::text) FROM generate_series(1, {self.rows}) AS g",
        )
        await self.index_manager.create_index(db, SCORE_INDEX.table, SCORE_INDEX.columns, SCORE_INDEX.method)
        await self.refresh_statistics(db)
        return ExperimentStepResult(
            experiment=self.family,
            step="seed",
            duration_ms=status.duration_ms,
            scan=ScanClassification.not_applicable("Seed step"),
            index_state=[SCORE_INDEX.name],
            row_count=status.row_count,
            params={"rows": self.rows},
            message=f"Seeded {status.row_count} rows and built {SCORE_INDEX.name}.",
        )

    async def _threshold_run(self, db: Any, params: Dict[str, Any]) -> ExperimentStepResult:
        threshold = int(require_number(params, "threshold", None, minimum=1, maximum=100))
        analysis = await self.explain(db, self.query_for(threshold))
        return ExperimentStepResult.from_analysis(
            self.family,
            "run",
            analysis,
            index_state=[SCORE_INDEX.name],
            params={"threshold": threshold},
            message=f"score < {threshold} matched {analysis.rows_returned} rows via {analysis.scan.label}.",
        )

