"""Filter predicate language for rules.

A predicate is a small tagged-union AST evaluated by a pure interpreter:

    {"eq": {"field": "status", "value": "won"}}
    {"gte": {"field": "value", "value": 1000}}
    {"in": {"field": "stage_id", "values": [3, 4]}}
    {"and": [<predicate>, <predicate>, ...]}

Legacy flat filter objects (``value_min``, ``stage_ids``, ``labels`` ...) are
compiled into the same AST so older rules keep working.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Union

from chatrelay.core.errors import PredicateError


_THRESHOLD_OPS = ("gt", "gte", "lt", "lte")
_MISSING = object()
_LEGACY_KEYS = frozenset(
    {
        "value_min",
        "value_max",
        "probability_min",
        "probability_max",
        "stage_ids",
        "pipeline_ids",
        "owner_ids",
        "currencies",
        "labels",
        "label_match_type",
    }
)


@dataclass(frozen=True)
class Eq:
    field: str
    value: Any


@dataclass(frozen=True)
class Threshold:
    field: str
    op: str
    value: Decimal


@dataclass(frozen=True)
class InSet:
    field: str
    values: frozenset


@dataclass(frozen=True)
class And:
    clauses: tuple["Predicate", ...]


Predicate = Union[Eq, Threshold, InSet, And]


def _hashable(value: Any) -> Any:
    # Normalize scalars so "3" in a set matches stage id 3 the way CRM payloads mix types.
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return str(Decimal(str(value)).normalize())
    if isinstance(value, str):
        return value
    raise PredicateError(f"set members must be scalars, got {type(value).__name__}")


def _to_decimal(value: Any, *, field: str) -> Decimal:
    if isinstance(value, bool):
        raise PredicateError(f"{field}: boolean is not numeric")
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise PredicateError(f"{field}: {value!r} is not numeric") from None
    # NaN has no ordering; comparing it raises InvalidOperation.
    if number.is_nan():
        raise PredicateError(f"{field}: NaN is not comparable")
    return number


def _field_name(node: Mapping[str, Any], op: str) -> str:
    field = node.get("field")
    if not isinstance(field, str) or not field.strip():
        raise PredicateError(f"{op}: 'field' must be a non-empty string")
    return field.strip()


def _parse_node(raw: Any) -> Predicate:
    if not isinstance(raw, Mapping) or len(raw) != 1:
        raise PredicateError("predicate node must be an object with exactly one operator")
    op, body = next(iter(raw.items()))
    if op == "and":
        if not isinstance(body, list) or not body:
            raise PredicateError("and: expects a non-empty list of clauses")
        return And(tuple(_parse_node(item) for item in body))
    if not isinstance(body, Mapping):
        raise PredicateError(f"{op}: expects an object body")
    if op == "eq":
        if "value" not in body:
            raise PredicateError("eq: missing 'value'")
        return Eq(field=_field_name(body, op), value=body["value"])
    if op in _THRESHOLD_OPS:
        field = _field_name(body, op)
        return Threshold(field=field, op=op, value=_to_decimal(body.get("value"), field=field))
    if op == "in":
        values = body.get("values")
        if not isinstance(values, list) or not values:
            raise PredicateError("in: 'values' must be a non-empty list")
        return InSet(field=_field_name(body, op), values=frozenset(_hashable(v) for v in values))
    raise PredicateError(f"unknown predicate operator: {op!r}")


def _parse_legacy(raw: Mapping[str, Any]) -> Predicate | None:
    # Compile the flat filter objects older rules were stored with.
    unknown = sorted(set(raw) - _LEGACY_KEYS)
    if unknown:
        raise PredicateError(f"unknown filter keys: {', '.join(unknown)}")
    clauses: list[Predicate] = []
    bounds = (
        ("value_min", "value", "gte"),
        ("value_max", "value", "lte"),
        ("probability_min", "probability", "gte"),
        ("probability_max", "probability", "lte"),
    )
    for key, field, op in bounds:
        if raw.get(key) not in (None, ""):
            clauses.append(Threshold(field=field, op=op, value=_to_decimal(raw[key], field=key)))
    sets = (
        ("stage_ids", "stage_id"),
        ("pipeline_ids", "pipeline_id"),
        ("owner_ids", "user_id"),
        ("currencies", "currency"),
    )
    for key, field in sets:
        values = raw.get(key)
        if values is None:
            continue
        if not isinstance(values, list) or not values:
            raise PredicateError(f"{key} must be a non-empty list")
        clauses.append(InSet(field=field, values=frozenset(_hashable(v) for v in values)))
    labels = raw.get("labels")
    if labels is not None:
        if not isinstance(labels, list) or not labels:
            raise PredicateError("labels must be a non-empty list")
        if raw.get("label_match_type", "any") == "all":
            clauses.extend(InSet(field="label", values=frozenset({_hashable(label)})) for label in labels)
        else:
            clauses.append(InSet(field="label", values=frozenset(_hashable(v) for v in labels)))
    if not clauses:
        return None
    return clauses[0] if len(clauses) == 1 else And(tuple(clauses))


def parse_predicate(raw: Any) -> Predicate | None:
    """Compile stored JSON into a predicate; ``None`` means match-all."""
    if raw is None or raw == {}:
        return None
    if not isinstance(raw, Mapping):
        raise PredicateError("predicate must be an object")
    if len(raw) == 1 and next(iter(raw)) in ("and", "eq", "in", *_THRESHOLD_OPS):
        return _parse_node(raw)
    return _parse_legacy(raw)


def _resolve(attributes: Mapping[str, Any], path: str) -> Any:
    current: Any = attributes
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _compare(op: str, left: Decimal, right: Decimal) -> bool:
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    if op == "lt":
        return left < right
    return left <= right


def evaluate(predicate: Predicate | None, attributes: Mapping[str, Any]) -> bool:
    """Evaluate a compiled predicate against event attributes.

    Missing fields never match. Type mismatches raise PredicateError so the
    caller can skip just the offending rule.
    """
    if predicate is None:
        return True
    if isinstance(predicate, And):
        return all(evaluate(clause, attributes) for clause in predicate.clauses)
    value = _resolve(attributes, predicate.field)
    if value is _MISSING or value is None:
        return False
    if isinstance(predicate, Eq):
        if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            if isinstance(predicate.value, (int, float, Decimal)) and not isinstance(predicate.value, bool):
                return Decimal(str(value)) == Decimal(str(predicate.value))
        return value == predicate.value
    if isinstance(predicate, Threshold):
        if value == "":
            return False
        return _compare(predicate.op, _to_decimal(value, field=predicate.field), predicate.value)
    if isinstance(predicate, InSet):
        if isinstance(value, list):
            return any(_hashable(item) in predicate.values for item in value if item is not None)
        if isinstance(value, Mapping):
            raise PredicateError(f"{predicate.field}: cannot test an object for set membership")
        return _hashable(value) in predicate.values
    raise PredicateError(f"unsupported predicate node: {type(predicate).__name__}")
