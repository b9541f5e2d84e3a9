"""Shared experiment machinery: step ordering, index state, result shape."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from app.config import settings
from app.core.index_manager import IndexHandle, IndexManager
from app.core.plan_parser import PlanAnalysis, ScanClassification
from app.core.query_executor import QueryExecutor
from app.core.sql_exec import SQLExecutor
from app.core.sql_guard import quote_identifier
from app.smart_logger import SmartLogger

StepId = Union[int, str]


class ExperimentError(Exception):
    """Base class for experiment failures"""
    pass


class UnknownExperimentError(ExperimentError):
    pass


class ExperimentStepOutOfOrderError(ExperimentError):
    """The step's required predecessor has not completed in this session"""

    def __init__(self, family: str, step: str, required: str):
        super().__init__(
            f"Step '{step}' of '{family}' requires step '{required}' to complete first in this session"
        )
        self.family = family
        self.step = step
        self.required = required


class ExperimentParameterError(ExperimentError):
    pass


def normalize_step(step: StepId) -> str:
    return str(step).strip()


@dataclass(frozen=True)
class StepSpec:
    step_id: str
    requires: Optional[str] = None
    # steps whose completion is voided when this one runs
    invalidates: Tuple[str, ...] = ()
    label: str = ""
    # read-only steps (e.g. "check") do not enter the session
    recorded: bool = True


@dataclass
class ExperimentSession:
    """
    Caller-held record of completed steps.

    The engine keeps no "current step" of its own: the caller sends the list
    back with every request and receives the updated list in the result.
    """

    completed: List[str] = field(default_factory=list)

    @classmethod
    def from_steps(cls, steps: Optional[Iterable[StepId]]) -> "ExperimentSession":
        session = cls()
        for step in steps or []:
            step_id = normalize_step(step)
            if step_id not in session.completed:
                session.completed.append(step_id)
        return session

    def has(self, step: StepId) -> bool:
        return normalize_step(step) in self.completed

    def record(self, spec: StepSpec) -> None:
        invalidated = set(spec.invalidates)
        self.completed = [s for s in self.completed if s not in invalidated and s != spec.step_id]
        self.completed.append(spec.step_id)


@dataclass
class ExperimentStepResult:
    experiment: str
    step: str
    duration_ms: float
    scan: ScanClassification
    rows_scanned: int = 0
    rows_removed: int = 0
    rows_returned: int = 0
    total_cost: float = 0.0
    index_name: Optional[str] = None
    index_state: List[str] = field(default_factory=list)
    row_count: Optional[int] = None
    completed_steps: List[str] = field(default_factory=list)
    message: str = ""
    label: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    top_cost_nodes: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_analysis(
        cls,
        experiment: str,
        step: str,
        analysis: PlanAnalysis,
        **extra: Any,
    ) -> "ExperimentStepResult":
        return cls(
            experiment=experiment,
            step=step,
            duration_ms=round(analysis.duration_ms, 3),
            scan=analysis.scan,
            rows_scanned=analysis.rows_scanned,
            rows_removed=analysis.rows_removed,
            rows_returned=analysis.rows_returned,
            total_cost=analysis.total_cost,
            index_name=analysis.index_name,
            top_cost_nodes=[node.summary() for node in analysis.top_cost_nodes],
            **extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment": self.experiment,
            "step": self.step,
            "label": self.label,
            "durationMs": self.duration_ms,
            "scan": self.scan.to_dict(),
            "details": {
                "scanType": self.scan.label,
                "rowsScanned": self.rows_scanned,
                "rowsRemoved": self.rows_removed,
                "rowsReturned": self.rows_returned,
                "totalCost": self.total_cost,
                "indexName": self.index_name or "N/A",
            },
            "indexState": self.index_state,
            "rowCount": self.row_count,
            "completedSteps": self.completed_steps,
            "message": self.message,
            "params": self.params,
            "topCostNodes": self.top_cost_nodes,
        }


class Experiment(ABC):
    """
    A named multi-step procedure over one experiment table.

    Subclasses declare their steps and implement `_run`; ordering checks run
    before any DDL/DML, so a rejected step leaves the database untouched.
    """

    family: str = ""
    table: str = ""

    def __init__(
        self,
        query_executor: Optional[QueryExecutor] = None,
        index_manager: Optional[IndexManager] = None,
    ):
        sql_executor = SQLExecutor(
            timeout=settings.experiment_timeout_seconds,
            explain_timeout=settings.experiment_timeout_seconds,
        )
        self.query_executor = query_executor or QueryExecutor(executor=sql_executor)
        self.index_manager = index_manager or IndexManager(executor=sql_executor)

    @property
    def sql(self) -> SQLExecutor:
        return self.query_executor.executor

    @property
    def index_prefix(self) -> str:
        return f"idx_{self.table}_"

    @property
    def table_sql(self) -> str:
        return quote_identifier(self.table)

    @abstractmethod
    def steps(self) -> Sequence[StepSpec]:
        """Steps in their local sequence order."""

    @abstractmethod
    async def _run(self, db: Any, spec: StepSpec, params: Dict[str, Any]) -> ExperimentStepResult:
        """Execute one step; ordering has already been checked."""

    def resolve_step(self, step: StepId) -> StepSpec:
        step_id = normalize_step(step)
        for spec in self.steps():
            if spec.step_id == step_id:
                return spec
        known = ", ".join(spec.step_id for spec in self.steps())
        raise ExperimentParameterError(f"Unknown step '{step_id}' for '{self.family}'. Known steps: {known}")

    async def _requirement_met_outside_session(self, db: Any, spec: StepSpec) -> bool:
        return False

    async def ensure_runnable(self, db: Any, spec: StepSpec, session: ExperimentSession) -> None:
        if spec.requires is None or session.has(spec.requires):
            return
        if await self._requirement_met_outside_session(db, spec):
            return
        raise ExperimentStepOutOfOrderError(self.family, spec.step_id, spec.requires)

    async def run_step(
        self,
        db: Any,
        step: StepId,
        session: Optional[ExperimentSession] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> ExperimentStepResult:
        session = session if session is not None else ExperimentSession()
        params = dict(params or {})
        spec = self.resolve_step(step)

        try:
            await self.ensure_runnable(db, spec, session)
        except ExperimentStepOutOfOrderError as exc:
            SmartLogger.log(
                "WARNING",
                "experiment.step.out_of_order",
                category=f"experiment.{self.family}",
                params={"step": spec.step_id, "required": exc.required, "completed": session.completed},
            )
            raise

        SmartLogger.log(
            "INFO",
            "experiment.step.start",
            category=f"experiment.{self.family}",
            params={"step": spec.step_id, "params": params},
        )
        result = await self._run(db, spec, params)
        if spec.recorded:
            session.record(spec)
        result.completed_steps = list(session.completed)
        result.label = result.label or spec.label

        SmartLogger.log(
            "INFO",
            "experiment.step.done",
            category=f"experiment.{self.family}",
            params={
                "step": spec.step_id,
                "duration_ms": result.duration_ms,
                "scan": result.scan.label,
                "rows_scanned": result.rows_scanned,
                "index_state": result.index_state,
            },
        )
        return result

    async def count_rows(self, db: Any) -> int:
        """Row count of the experiment table; 0 when it does not exist yet."""
        exists = await self.sql.fetch_value(db, "SELECT to_regclass($1::text) IS NOT NULL", self.table)
        if not exists:
            return 0
        count = await self.sql.fetch_value(db, f"SELECT count(*) FROM {self.table_sql}")
        return int(count or 0)

    async def check_seeded(self, db: Any) -> Dict[str, int]:
        return {"count": await self.count_rows(db)}

    async def sync_indexes(self, db: Any, desired: Sequence[IndexHandle]) -> List[str]:
        """
        Make this experiment's index family exactly `desired`.

        Family indexes not in `desired` are dropped first, then missing ones are
        created. Returns the resulting index names.
        """
        wanted = {handle.name for handle in desired}
        existing = await self.index_manager.list_indexes(db, self.table, prefix=self.index_prefix)
        for name in existing:
            if name not in wanted:
                await self.index_manager.drop_index_by_name(db, name)
        for handle in desired:
            await self.index_manager.create_index(db, handle.table, handle.columns, handle.method)
        return sorted(wanted)

    async def refresh_statistics(self, db: Any) -> None:
        await self.sql.execute_command(db, f"ANALYZE {self.table_sql}")

    async def explain(self, db: Any, sql: str) -> PlanAnalysis:
        """Run the statement under EXPLAIN ANALYZE; it really executes."""
        analysis, _ = await self.query_executor.analyze_plan(db, sql, analyze=True)
        return analysis


def require_number(
    params: Dict[str, Any],
    key: str,
    default: Optional[float],
    *,
    minimum: float,
    maximum: float,
) -> float:
    raw = params.get(key, default)
    if raw is None:
        raise ExperimentParameterError(f"Parameter '{key}' is required")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ExperimentParameterError(f"Parameter '{key}' must be a number, got {raw!r}") from None
    if not (minimum <= value <= maximum):
        raise ExperimentParameterError(f"Parameter '{key}' must be between {minimum} and {maximum}, got {value}")
    return value
