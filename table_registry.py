"""Name -> table handle map built once when a schema is loaded."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from schema_errors import missing_table


@dataclass(frozen=True)
class TableHandle:
    name: str
    owner_type: str
    columns: Tuple[str, ...] = ()


class TableRegistry:
    def __init__(self, handles: Iterable[TableHandle] = ()) -> None:
        self._handles: Dict[str, TableHandle] = {h.name: h for h in handles}

    @classmethod
    def from_compiled(cls, compiled) -> "TableRegistry":
        return cls(TableHandle(t.name, t.owner_type, tuple(t.column_names)) for t in compiled.tables)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "TableRegistry":
        return cls(TableHandle(name, "unknown") for name in names)

    def require(self, name: str) -> TableHandle:
        handle = self._handles.get(name)
        if handle is None:
            raise missing_table(name)
        return handle

    def names(self) -> List[str]:
        return sorted(self._handles.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._handles

    def __len__(self) -> int:
        return len(self._handles)
