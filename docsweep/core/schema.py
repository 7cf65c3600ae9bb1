"""
Typed views used by the sweep: records, references and write outcomes.
"""

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

_MISSING = object()


@dataclass(frozen=True)
class Record:
    """Minimal view of a source document: its identity and one reference value."""
    id: Any
    ref: Optional[Any]


@dataclass(frozen=True)
class Reference:
    """Declares that `source.field` must match `target.target_field` of an existing document."""
    source: str
    field: str
    target: str
    target_field: str = "id"
    id_field: str = "_id"

    def describe(self) -> str:
        return f"{self.source}.{self.field} -> {self.target}.{self.target_field}"


@dataclass(frozen=True)
class WriteFailure:
    id: Any
    error: str

    def to_dict(self):
        return {"id": str(self.id), "error": self.error}


RecordMapper = Callable[[Mapping[str, Any]], Record]


def get_path(document: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Resolve a dotted field path against a nested document."""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return default
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return default
    return current


def field_mapper(field: str, id_field: str = "_id") -> RecordMapper:
    """Build a mapper reading the identity and one reference field off a raw document."""

    def _map(document: Mapping[str, Any]) -> Record:
        doc_id = get_path(document, id_field, _MISSING)
        if doc_id is _MISSING:
            raise ValueError(f"document has no '{id_field}' field")
        ref = get_path(document, field)
        if isinstance(ref, (list, dict)):
            raise ValueError(f"field '{field}' holds a {type(ref).__name__}, expected a scalar reference")
        return Record(id=doc_id, ref=ref)

    return _map
