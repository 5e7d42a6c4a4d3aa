"""Error taxonomy for schema compilation and hydration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


Issue = Dict[str, Any]


@dataclass
class SchemaError(Exception):
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


@dataclass
class SchemaCompileError(SchemaError):
    """Fatal: table or relation generation cannot continue."""

    code: str = "SCHEMA_COMPILE_FAILED"
    path: str | None = None
    issues: List[Issue] = field(default_factory=list)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


@dataclass
class HydrationIssue(SchemaError):
    """Base for non-fatal read-time problems; always caught inside the engine."""


@dataclass
class MissingTableWarning(HydrationIssue):
    table: str = ""


@dataclass
class UnresolvedRelationTarget(HydrationIssue):
    table: str = ""
    target_id: Any = None


@dataclass
class MalformedStoredSchema(HydrationIssue):
    kind: str = ""
    slug: str = ""


def missing_table(table: str) -> MissingTableWarning:
    return MissingTableWarning(message=f"table not found: {table}", table=table)
