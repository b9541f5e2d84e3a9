"""SQL safety classification and identifier handling"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlglot import exp


# Statements starting with these are always allowed, whatever they contain.
ALLOWED_PREFIXES = ("select", "explain")

# Destructive phrase fragments (matched against lower-cased text)
DESTRUCTIVE_FRAGMENTS = (
    "drop table",
    "truncate",
    "alter table",
    "grant",
    "revoke",
    "insert into",
    "update",
    "delete from",
    "create table",
    "drop database",
)

# Statements that have an EXPLAIN ANALYZE form which executes them
MODIFYING_VERBS = ("insert", "update", "delete")

_EXPLAIN_PREFIX_RE = re.compile(
    r"^explain\b\s*(?:\([^)]*\)\s*)?(?:(?:analy[sz]e|verbose)\b\s*)*",
    re.IGNORECASE,
)
_FIRST_WORD_RE = re.compile(r"^\s*([a-zA-Z_]+)")

SAFETY_GUARD_MESSAGE = (
    "Safety guard: destructive statement rejected ({fragment}). "
    "Only SELECT or EXPLAIN queries may contain data-changing keywords in this playground."
)


class QueryRejectedError(Exception):
    """Raised when the safety guard refuses a statement"""

    def __init__(self, reason: str, fragment: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.fragment = fragment


class StatementKind(str, Enum):
    SELECT = "select"
    EXPLAIN = "explain"
    MODIFY = "modify"
    UTILITY = "utility"


@dataclass(frozen=True)
class SafetyVerdict:
    allowed: bool
    kind: Optional[StatementKind] = None
    reason: str = ""
    fragment: Optional[str] = None
    # statement with any leading EXPLAIN [options] removed
    inner_sql: str = ""

    @property
    def executes_modification(self) -> bool:
        return self.kind == StatementKind.MODIFY

    @property
    def cacheable(self) -> bool:
        return self.kind == StatementKind.SELECT


def strip_explain_prefix(sql: str) -> str:
    """Return the statement under a leading EXPLAIN, or the text unchanged."""
    text = (sql or "").strip()
    match = _EXPLAIN_PREFIX_RE.match(text)
    if not match:
        return text
    return text[match.end():].strip()


def _first_word(sql: str) -> str:
    match = _FIRST_WORD_RE.match(sql or "")
    return match.group(1).lower() if match else ""


class SQLGuard:
    """Classify raw query text before anything reaches the database"""

    def classify(self, sql: str) -> SafetyVerdict:
        """
        Rules, on the lower-cased trimmed text:
        1. a `select`/`explain` prefix allows the statement outright
        2. otherwise any destructive fragment rejects it
        3. anything else runs as a utility/modifying command without caching

        No SQL-injection analysis is done here.
        """
        raw = (sql or "").strip()
        lowered = raw.lower()

        if not lowered:
            return SafetyVerdict(allowed=False, reason="Query text is empty")

        prefix_allowed = lowered.startswith(ALLOWED_PREFIXES)

        if not prefix_allowed:
            for fragment in DESTRUCTIVE_FRAGMENTS:
                if fragment in lowered:
                    return SafetyVerdict(
                        allowed=False,
                        reason=SAFETY_GUARD_MESSAGE.format(fragment=fragment.upper()),
                        fragment=fragment,
                    )

        inner = strip_explain_prefix(raw) if lowered.startswith("explain") else raw
        return SafetyVerdict(
            allowed=True,
            kind=self._statement_kind(lowered, inner),
            inner_sql=inner,
        )

    def validate(self, sql: str) -> SafetyVerdict:
        """Classify and raise QueryRejectedError on rejection."""
        verdict = self.classify(sql)
        if not verdict.allowed:
            raise QueryRejectedError(verdict.reason, verdict.fragment)
        return verdict

    @staticmethod
    def _statement_kind(lowered: str, inner: str) -> StatementKind:
        if lowered.startswith("select"):
            return StatementKind.SELECT
        if _first_word(inner) in MODIFYING_VERBS:
            return StatementKind.MODIFY
        if lowered.startswith("explain"):
            return StatementKind.EXPLAIN
        return StatementKind.UTILITY


def quote_identifier(name: str) -> str:
    """Render a table/column/index name for PostgreSQL DDL.

    Plain names come back unchanged; anything else is double-quoted.
    """
    return exp.to_identifier(name).sql(dialect="postgres")
