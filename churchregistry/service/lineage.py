"""Sacrament lineage rules.

Each record kind names the kind it must follow. A successor inherits every
ancestor id of its predecessor, each predecessor accepts at most one
successor of a given kind, and Marriage and Holy Order exclude each other
for the same Confirmation. The store enforces the same links with
constraints; its verdict wins when a concurrent insert slips past the
pre-checks here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from churchregistry.logging import get_logger
from churchregistry.service.errors import ConflictError, NotFoundError, ValidationError
from churchregistry.service.tokens import Principal
from churchregistry.storage.errors import ConstraintViolation
from churchregistry.storage.models import (
    RECORD_TYPES,
    StageKind,
    StageRecord,
    new_record_id,
    utcnow,
)

logger = get_logger(__name__)

MAX_SEARCH_RESULTS = 200

# parish ids are stored as BIGINT
BIGINT_MIN = -(2**63)
BIGINT_MAX = 2**63 - 1

_TEXT = "text"
_DATE = "date"
_INT = "int"


@dataclass(frozen=True)
class FieldRule:
    name: str
    type: str = _TEXT
    required: bool = True
    max_length: Optional[int] = None


@dataclass(frozen=True)
class LineageRule:
    kind: StageKind
    label: str
    fields: Tuple[FieldRule, ...]
    predecessor: Optional[StageKind] = None
    exclusive_with: Tuple[StageKind, ...] = ()
    duplicate_message: Optional[str] = None

    @property
    def link_field(self) -> Optional[str]:
        return RECORD_TYPES[self.kind].link_field


LINEAGE_RULES: Dict[StageKind, LineageRule] = {
    StageKind.BAPTISM: LineageRule(
        kind=StageKind.BAPTISM,
        label="Baptism",
        fields=(
            FieldRule("baptism_name", max_length=255),
            FieldRule("surname", max_length=255),
            FieldRule("gender", max_length=10),
            FieldRule("date_of_birth", _DATE),
            FieldRule("fathers_name", max_length=255),
            FieldRule("mothers_name", max_length=255),
            FieldRule("sponsor_names", max_length=255),
            FieldRule("parish_id", _INT, required=False),
            FieldRule("address", required=False, max_length=500),
            FieldRule("parish_address", required=False, max_length=500),
            FieldRule("parent_address", required=False, max_length=500),
        ),
    ),
    StageKind.COMMUNION: LineageRule(
        kind=StageKind.COMMUNION,
        label="First Holy Communion",
        predecessor=StageKind.BAPTISM,
        duplicate_message="First Holy Communion already exists for this baptism",
        fields=(
            FieldRule("communion_date", _DATE),
            FieldRule("officiating_priest", max_length=255),
            FieldRule("parish", max_length=255),
        ),
    ),
    StageKind.CONFIRMATION: LineageRule(
        kind=StageKind.CONFIRMATION,
        label="Confirmation",
        predecessor=StageKind.COMMUNION,
        duplicate_message="Confirmation already exists for this communion",
        fields=(
            FieldRule("confirmation_date", _DATE),
            FieldRule("officiating_bishop", max_length=255),
            FieldRule("parish", required=False, max_length=255),
        ),
    ),
    StageKind.MARRIAGE: LineageRule(
        kind=StageKind.MARRIAGE,
        label="Marriage",
        predecessor=StageKind.CONFIRMATION,
        exclusive_with=(StageKind.HOLY_ORDER,),
        duplicate_message="Marriage already exists for this confirmation",
        fields=(
            FieldRule("partners_name", max_length=255),
            FieldRule("marriage_date", _DATE),
            FieldRule("officiating_priest", max_length=255),
            FieldRule("parish", max_length=255),
        ),
    ),
    StageKind.HOLY_ORDER: LineageRule(
        kind=StageKind.HOLY_ORDER,
        label="Holy Order",
        predecessor=StageKind.CONFIRMATION,
        exclusive_with=(StageKind.MARRIAGE,),
        duplicate_message="Holy Order already exists for this confirmation",
        fields=(
            FieldRule("ordination_date", _DATE),
            FieldRule("order_type", max_length=20),
            FieldRule("officiating_bishop", max_length=255),
            FieldRule("parish_id", _INT, required=False),
        ),
    ),
}


def _exclusive_message(rule: LineageRule, existing: StageKind) -> str:
    return (
        "mutually exclusive sacrament already recorded: "
        f"Cannot receive {rule.label}: person has already received "
        f"{LINEAGE_RULES[existing].label}"
    )


def _not_found_message(kind: StageKind, record_id: Any) -> str:
    return f"{LINEAGE_RULES[kind].label} not found: {record_id}"


def _coerce(field_rule: FieldRule, value: Any) -> Tuple[Any, Optional[str]]:
    """Return the normalized value or an error message for one field."""
    if field_rule.type == _DATE:
        if isinstance(value, datetime):
            return value.date(), None
        if isinstance(value, date):
            return value, None
        if isinstance(value, str):
            try:
                return date.fromisoformat(value.strip()), None
            except ValueError:
                pass
        return None, "must be an ISO date (YYYY-MM-DD)"
    if field_rule.type == _INT:
        if isinstance(value, bool):
            return None, "must be an integer"
        if isinstance(value, str):
            try:
                value = int(value.strip())
            except ValueError:
                return None, "must be an integer"
        if not isinstance(value, int):
            return None, "must be an integer"
        if not BIGINT_MIN <= value <= BIGINT_MAX:
            return None, "is out of range"
        return value, None
    if not isinstance(value, str):
        return None, "must be a string"
    if "\x00" in value:
        return None, "must not contain NUL characters"
    value = value.strip()
    if field_rule.required and not value:
        return None, "must not be blank"
    if field_rule.max_length is not None and len(value) > field_rule.max_length:
        return None, f"must be at most {field_rule.max_length} characters"
    return value or None, None


def validate_fields(rule: LineageRule, fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Check and normalize the caller-supplied fields for ``rule.kind``.

    Only the fields the rule declares are read; ids, lineage links and audit
    columns are always assigned by the service.
    """
    values: Dict[str, Any] = {}
    errors: List[Dict[str, str]] = []
    for field_rule in rule.fields:
        raw = fields.get(field_rule.name)
        if raw is None:
            if field_rule.required:
                errors.append({"field": field_rule.name, "message": "is required"})
            else:
                values[field_rule.name] = None
            continue
        value, problem = _coerce(field_rule, raw)
        if problem:
            errors.append({"field": field_rule.name, "message": problem})
        else:
            values[field_rule.name] = value
    if errors:
        raise ValidationError(
            f"invalid {rule.label} record", detail={"errors": errors}
        )
    return values


@dataclass
class LineageChain:
    """A baptism plus whichever later sacraments have been recorded."""

    baptism: StageRecord
    communion: Optional[StageRecord] = None
    confirmation: Optional[StageRecord] = None
    marriage: Optional[StageRecord] = None
    holy_order: Optional[StageRecord] = None


class LineageService:
    def __init__(self, store) -> None:
        self.store = store

    def create(
        self,
        kind: StageKind,
        fields: Mapping[str, Any],
        *,
        principal: Principal,
        predecessor_id: Optional[str] = None,
    ) -> StageRecord:
        """Validate and persist a new record of ``kind``.

        Raises ValidationError for bad input, NotFoundError when the
        predecessor does not exist and ConflictError when the predecessor
        already has this successor or an excluded sibling.
        """
        kind = StageKind(kind)
        rule = LINEAGE_RULES[kind]
        values = validate_fields(rule, fields)

        inherited: Dict[str, str] = {}
        if rule.predecessor is None:
            if predecessor_id is not None:
                raise ValidationError(
                    f"{rule.label} has no predecessor", detail={"field": "predecessor_id"}
                )
        else:
            link = rule.link_field
            if not predecessor_id:
                raise ValidationError(
                    "invalid request",
                    detail={"errors": [{"field": link, "message": "is required"}]},
                )
            predecessor = self.store.get_stage_record(rule.predecessor, str(predecessor_id))
            if predecessor is None:
                raise NotFoundError(
                    _not_found_message(rule.predecessor, predecessor_id),
                    detail={"kind": rule.predecessor.value, "id": str(predecessor_id)},
                )
            if self.store.find_successor(kind, predecessor.id) is not None:
                raise ConflictError(rule.duplicate_message, detail={link: predecessor.id})
            for other in rule.exclusive_with:
                if self.store.find_successor(other, predecessor.id) is not None:
                    raise ConflictError(
                        _exclusive_message(rule, other),
                        detail={link: predecessor.id, "existing_kind": other.value},
                    )
            inherited = predecessor.lineage()

        record = RECORD_TYPES[kind](
            id=new_record_id(),
            **inherited,
            **values,
            created_by=principal.username,
            created_at=utcnow(),
        )
        try:
            saved = self.store.insert_stage_record(record, exclusive_with=rule.exclusive_with)
        except ConstraintViolation as exc:
            raise self._map_violation(rule, exc, predecessor_id) from exc
        logger.info(
            "stage_record_created",
            kind=kind.value,
            record_id=saved.id,
            predecessor_id=predecessor_id,
            created_by=principal.username,
        )
        return saved

    @staticmethod
    def _map_violation(rule: LineageRule, exc: ConstraintViolation, predecessor_id: Any):
        reason = (exc.detail or {}).get("rule")
        logger.info(
            "stage_record_constraint_violation", kind=rule.kind.value, rule=reason
        )
        if reason == "missing_predecessor" and rule.predecessor is not None:
            return NotFoundError(
                _not_found_message(rule.predecessor, predecessor_id),
                detail={"kind": rule.predecessor.value, "id": str(predecessor_id)},
            )
        if reason == "mutually_exclusive":
            existing = (exc.detail or {}).get("existing_kind")
            try:
                other = StageKind(existing)
            except ValueError:
                other = rule.exclusive_with[0]
            return ConflictError(
                _exclusive_message(rule, other),
                detail={"existing_kind": other.value},
            )
        if reason == "duplicate" and rule.duplicate_message:
            return ConflictError(rule.duplicate_message)
        return ConflictError(f"{rule.label} already exists", detail=exc.detail)

    def get(self, kind: StageKind, record_id: str) -> StageRecord:
        kind = StageKind(kind)
        record = self.store.get_stage_record(kind, record_id)
        if record is None:
            raise NotFoundError(
                _not_found_message(kind, record_id),
                detail={"kind": kind.value, "id": record_id},
            )
        return record

    def list_for_parish(self, kind: StageKind, parish_id: int) -> List[StageRecord]:
        return self.store.list_stage_records(StageKind(kind), parish_id=parish_id)

    def search_baptisms(self, query: str, limit: int = 50) -> List[StageRecord]:
        query = (query or "").strip()
        if not query:
            raise ValidationError("search query is required", detail={"field": "q"})
        limit = max(1, min(limit, MAX_SEARCH_RESULTS))
        return self.store.search_baptisms(query, limit=limit)

    def lineage(self, baptism_id: str) -> LineageChain:
        chain = LineageChain(baptism=self.get(StageKind.BAPTISM, baptism_id))
        chain.communion = self.store.find_successor(StageKind.COMMUNION, chain.baptism.id)
        if chain.communion is None:
            return chain
        chain.confirmation = self.store.find_successor(
            StageKind.CONFIRMATION, chain.communion.id
        )
        if chain.confirmation is None:
            return chain
        chain.marriage = self.store.find_successor(StageKind.MARRIAGE, chain.confirmation.id)
        chain.holy_order = self.store.find_successor(
            StageKind.HOLY_ORDER, chain.confirmation.id
        )
        return chain
