from __future__ import annotations

from typing import Any, List

from jinja2 import StrictUndefined
from jinja2.sandbox import ImmutableSandboxedEnvironment

from app.dialects import DialectAdapter, get_dialect
from schema_compiler import CompiledSchema


_SCRIPT_TEMPLATE = """\
-- sailor schema script
-- dialect: {{ dialect }}
-- tables: {{ summary.tables }}, relations: {{ relation_count }}, types: {{ summary.types }}
{% for table in tables %}
-- {{ table.name }} ({{ table.owner }})
{% for stmt in table.statements %}{{ stmt }};
{% endfor %}{% endfor %}"""


class _LockedSandbox(ImmutableSandboxedEnvironment):
    def is_safe_attribute(self, obj, attr, value) -> bool:
        return False

    def is_safe_callable(self, obj) -> bool:
        return False


def _env() -> _LockedSandbox:
    env = _LockedSandbox(autoescape=False, undefined=StrictUndefined, keep_trailing_newline=True)
    env.globals = {}
    env.filters = {}
    return env


def _resolve(dialect: DialectAdapter | str | None) -> DialectAdapter:
    if isinstance(dialect, DialectAdapter):
        return dialect
    return get_dialect(dialect)


def schema_statements(compiled: CompiledSchema, dialect: DialectAdapter | str | None = None) -> List[str]:
    adapter = _resolve(dialect)
    statements: List[str] = []
    for table in compiled.tables:
        statements.extend(adapter.declare(table))
    return statements


def render_schema_sql(compiled: CompiledSchema, dialect: DialectAdapter | str | None = None) -> str:
    adapter = _resolve(dialect)
    summary = compiled.summary()
    context: dict[str, Any] = {
        "dialect": adapter.name,
        "summary": {"tables": summary["tables"], "types": summary["types"]},
        "relation_count": sum(summary["relations"].values()),
        "tables": [
            {"name": table.name, "owner": table.owner_type, "statements": adapter.declare(table)}
            for table in compiled.tables
        ],
    }
    return _env().from_string(_SCRIPT_TEMPLATE).render(**context)
