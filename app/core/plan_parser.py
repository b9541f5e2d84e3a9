"""
PostgreSQL execution plan parsing.

Turns the JSON output of `EXPLAIN (FORMAT JSON)` into immutable `PlanNode`
trees, a flat pre-order node list, the three most expensive nodes and a scan
strategy classification.

The scan classification follows the *driving* path only: the first node whose
type contains "Scan" in pre-order, always exploring child 0 before its
siblings. For joins this reports the outer input and ignores inner scans; it
is a heuristic, not a full description of the plan.
"""
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

TOP_COST_NODE_LIMIT = 3


class ScanKind(str, Enum):
    INDEX_SCAN = "IndexScan"
    BITMAP_OR_OTHER_SCAN = "BitmapOrOtherScan"
    SEQUENTIAL_SCAN = "SequentialScan"
    UTILITY_COMMAND = "UtilityCommand"
    EXPLAIN_FAILED = "ExplainFailed"
    NOT_APPLICABLE = "NotApplicable"


@dataclass(frozen=True)
class ScanClassification:
    kind: ScanKind
    label: str
    note: Optional[str] = None

    @classmethod
    def not_applicable(cls, note: Optional[str] = None) -> "ScanClassification":
        return cls(kind=ScanKind.NOT_APPLICABLE, label="N/A", note=note)

    @classmethod
    def explain_failed(cls, reason: str) -> "ScanClassification":
        return cls(kind=ScanKind.EXPLAIN_FAILED, label="Explain Failed", note=reason)

    @classmethod
    def utility_command(cls) -> "ScanClassification":
        return cls(kind=ScanKind.UTILITY_COMMAND, label="Utility Command")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "label": self.label, "note": self.note}


@dataclass(frozen=True)
class PlanNode:
    node_type: str
    actual_total_time_ms: float = 0.0
    actual_rows: int = 0
    actual_loops: int = 1
    rows_removed_by_filter: int = 0
    total_cost: float = 0.0
    index_name: Optional[str] = None
    relation_name: Optional[str] = None
    children: Tuple["PlanNode", ...] = ()

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def is_scan(self) -> bool:
        return "Scan" in self.node_type

    @property
    def rows_scanned(self) -> int:
        """Rows the node touched: emitted plus filtered out, over all loops."""
        loops = max(1, self.actual_loops)
        return (self.actual_rows + self.rows_removed_by_filter) * loops

    @classmethod
    def from_json(cls, node: Dict[str, Any]) -> "PlanNode":
        if not isinstance(node, dict) or "Node Type" not in node:
            raise ValueError("Plan node is missing 'Node Type'")
        return cls(
            node_type=str(node["Node Type"]),
            actual_total_time_ms=float(node.get("Actual Total Time", 0.0) or 0.0),
            actual_rows=int(node.get("Actual Rows", node.get("Plan Rows", 0)) or 0),
            actual_loops=int(node.get("Actual Loops", 1) or 1),
            rows_removed_by_filter=int(node.get("Rows Removed by Filter", 0) or 0),
            total_cost=float(node.get("Total Cost", 0.0) or 0.0),
            index_name=node.get("Index Name"),
            relation_name=node.get("Relation Name"),
            children=tuple(cls.from_json(child) for child in node.get("Plans", []) or []),
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "time": self.actual_total_time_ms,
            "rows": self.actual_rows,
        }


@dataclass(frozen=True)
class PlanAnalysis:
    root: PlanNode
    nodes: List[PlanNode]
    top_cost_nodes: List[PlanNode]
    scan: ScanClassification
    driving_scan: Optional[PlanNode] = None
    planning_time_ms: Optional[float] = None
    execution_time_ms: Optional[float] = None

    @property
    def rows_returned(self) -> int:
        return self.root.actual_rows

    @property
    def rows_scanned(self) -> int:
        return self.driving_scan.rows_scanned if self.driving_scan else 0

    @property
    def rows_removed(self) -> int:
        if not self.driving_scan:
            return 0
        return self.driving_scan.rows_removed_by_filter * max(1, self.driving_scan.actual_loops)

    @property
    def total_cost(self) -> float:
        return self.root.total_cost

    @property
    def index_name(self) -> Optional[str]:
        return find_index_name(self.driving_scan) if self.driving_scan else None

    @property
    def duration_ms(self) -> float:
        if self.execution_time_ms is not None:
            return self.execution_time_ms
        return self.root.actual_total_time_ms


def normalize_plan_payload(payload: Any) -> Dict[str, Any]:
    """Unwrap `EXPLAIN (FORMAT JSON)` output to its top-level object.

    Accepts the raw JSON text, the one-element list PostgreSQL returns, the
    `{"Plan": ...}` object, or a bare plan node.
    """
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8")
    if isinstance(payload, str):
        payload = json.loads(payload)
    if isinstance(payload, list):
        if not payload:
            raise ValueError("Execution plan payload is empty")
        payload = payload[0]
    if not isinstance(payload, dict):
        raise ValueError(f"Unexpected execution plan payload: {type(payload).__name__}")
    if "Plan" not in payload:
        payload = {"Plan": payload}
    return payload


def flatten(node: PlanNode) -> List[PlanNode]:
    """Depth-first pre-order list of every node."""
    nodes = [node]
    for child in node.children:
        nodes.extend(flatten(child))
    return nodes


def find_driving_scan(node: PlanNode) -> Optional[PlanNode]:
    if node.is_scan:
        return node
    for child in node.children:
        found = find_driving_scan(child)
        if found is not None:
            return found
    return None


def find_index_name(node: PlanNode) -> Optional[str]:
    # Bitmap Heap Scan keeps its index on the Bitmap Index Scan child.
    if node.index_name:
        return node.index_name
    for child in node.children:
        name = find_index_name(child)
        if name:
            return name
    return None


def classify_scan(scan_node: Optional[PlanNode]) -> ScanClassification:
    if scan_node is None:
        return ScanClassification.not_applicable(note="Explain output contained no scan node")
    node_type = scan_node.node_type
    if "Seq Scan" in node_type:
        return ScanClassification(kind=ScanKind.SEQUENTIAL_SCAN, label=node_type)
    if "Index" in node_type:
        return ScanClassification(kind=ScanKind.INDEX_SCAN, label=node_type)
    return ScanClassification(kind=ScanKind.BITMAP_OR_OTHER_SCAN, label=node_type)


def top_cost_nodes(nodes: List[PlanNode], limit: int = TOP_COST_NODE_LIMIT) -> List[PlanNode]:
    # sorted() is stable: equal times keep pre-order.
    return sorted(nodes, key=lambda n: n.actual_total_time_ms, reverse=True)[:limit]


def parse_plan(payload: Any) -> PlanAnalysis:
    """Parse explain output; raises ValueError/KeyError/TypeError on malformed input."""
    top = normalize_plan_payload(payload)
    root = PlanNode.from_json(top["Plan"])
    nodes = flatten(root)
    driving = find_driving_scan(root)

    planning = top.get("Planning Time")
    execution = top.get("Execution Time")
    return PlanAnalysis(
        root=root,
        nodes=nodes,
        top_cost_nodes=top_cost_nodes(nodes),
        scan=classify_scan(driving),
        driving_scan=driving,
        planning_time_ms=float(planning) if planning is not None else None,
        execution_time_ms=float(execution) if execution is not None else None,
    )
