"""
Write-cost ladder

Step 0 recreates `insert_test` with no secondary index and bulk-inserts a fixed
batch. Step k adds the k-th single-column index (earlier ones stay) and repeats
the identical insert, so the durations show what each extra index costs a write.
"""
from typing import Any, Dict, List, Sequence

from app.config import settings
from app.core.index_manager import IndexHandle
from app.core.query_executor import modified_row_count
from app.experiments.base import Experiment, ExperimentStepResult, StepSpec

INDEXED_COLUMNS = ("col1", "col2", "col3", "col4")


class WriteCostExperiment(Experiment):
    family = "write_cost"
    table = "insert_test"

    def __init__(self, *args, rows: int = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.rows = int(rows if rows is not None else settings.write_cost_rows)

    def steps(self) -> Sequence[StepSpec]:
        specs: List[StepSpec] = []
        last = len(INDEXED_COLUMNS)
        for k in range(last + 1):
            specs.append(
                StepSpec(
                    step_id=str(k),
                    requires=None if k == 0 else str(k - 1),
                    invalidates=tuple(str(j) for j in range(k + 1, last + 1)),
                    label="no index" if k == 0 else f"{k} index" + ("es" if k > 1 else ""),
                )
            )
        return specs

    def handles_for(self, level: int) -> List[IndexHandle]:
        return [IndexHandle.for_columns(self.table, col) for col in INDEXED_COLUMNS[:level]]

    @property
    def insert_sql(self) -> str:
        return (
            f"INSERT INTO {self.table_sql} (col1, col2, col3, col4, payload) "
            "SELECT (random() * 1000000)::int, (random() * 1000000)::int, "
            "(random() * 1000000)::int, md5(g::text), repeat('x', 32) "
            f"FROM generate_series(1, {self.rows}) AS g"
        )

    async def reset_table(self, db: Any) -> None:
        await self.sql.execute_command(db, f"DROP TABLE IF EXISTS {self.table_sql}")
        await self.sql.execute_command(
            db,
            f"CREATE TABLE {self.table_sql} ("
            "id bigint GENERATED ALWAYS AS IDENTITY, "
            "col1 int, col2 int, col3 int, col4 text, payload text)",
        )

    async def _run(self, db: Any, spec: StepSpec, params: Dict[str, Any]) -> ExperimentStepResult:
        level = int(spec.step_id)
        if level == 0:
            await self.reset_table(db)
            index_state: List[str] = []
        else:
            index_state = await self.sync_indexes(db, self.handles_for(level))

        analysis = await self.explain(db, self.insert_sql)
        inserted = modified_row_count(analysis)
        return ExperimentStepResult.from_analysis(
            self.family,
            spec.step_id,
            analysis,
            index_state=index_state,
            row_count=await self.count_rows(db),
            params={"rows": self.rows, "indexCount": level},
            message=f"Inserted {inserted} rows with {level} secondary index(es).",
        )
