"""Record (de)serialization shared between the memory and postgres stores."""

from __future__ import annotations

from dataclasses import fields
from datetime import date, datetime
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Tuple, get_type_hints

from churchregistry.storage.models import RECORD_TYPES, StageKind, StageRecord

# Foreign-key targets of the lineage columns
LINK_TARGETS: Dict[str, StageKind] = {
    "baptism_id": StageKind.BAPTISM,
    "communion_id": StageKind.COMMUNION,
    "confirmation_id": StageKind.CONFIRMATION,
}


@lru_cache(maxsize=None)
def record_columns(kind: StageKind) -> Tuple[str, ...]:
    """Column names for a stage table, in dataclass field order."""
    return tuple(f.name for f in fields(RECORD_TYPES[kind]))


@lru_cache(maxsize=None)
def _field_types(kind: StageKind) -> Dict[str, Any]:
    return get_type_hints(RECORD_TYPES[kind])


def record_to_dict(record: StageRecord) -> Dict[str, Any]:
    """JSON-ready mapping of a record; dates become ISO strings."""
    data: Dict[str, Any] = {}
    for name in record_columns(record.kind):
        value = getattr(record, name)
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        data[name] = value
    return data


def record_from_dict(kind: StageKind, data: Mapping[str, Any]) -> StageRecord:
    """Rebuild a record from a mapping such as a JSON document or a DB row."""
    types = _field_types(kind)
    values: Dict[str, Any] = {}
    for name in record_columns(kind):
        if name not in data:
            continue
        value = data[name]
        target = types.get(name)
        if isinstance(value, str):
            if target is datetime:
                value = datetime.fromisoformat(value)
            elif target is date:
                value = date.fromisoformat(value)
        elif name == "id" or name in LINK_TARGETS:
            # uuid columns come back from psycopg as UUID objects
            value = str(value) if value is not None else None
        values[name] = value
    return RECORD_TYPES[kind](**values)


def records_for_parish(
    records: List[StageRecord], baptisms: Mapping[str, StageRecord], parish_id: int
) -> List[StageRecord]:
    """Filter records to those whose baptism was registered in ``parish_id``."""
    matched = []
    for record in records:
        baptism_id = record.id if record.kind == StageKind.BAPTISM else getattr(record, "baptism_id")
        baptism = baptisms.get(baptism_id)
        if baptism is not None and getattr(baptism, "parish_id", None) == parish_id:
            matched.append(record)
    return matched
