from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Sequence, TypeVar

from ragkb.services.rag.errors import ValidationError

T = TypeVar("T")

_ONE_OF_SEPARATOR = "|"


class Operator(str, Enum):
    EQUALS = "equals"
    ONE_OF = "one_of"


@dataclass(frozen=True)
class Predicate:
    key: str
    operator: Operator
    value: Any

    @classmethod
    def equals(cls, key: str, value: Any) -> "Predicate":
        return cls(key=_validate_key(key), operator=Operator.EQUALS, value=value)

    @classmethod
    def one_of(cls, key: str, values: Iterable[Any]) -> "Predicate":
        options = tuple(values)
        if not options:
            raise ValidationError(f"one_of predicate on {key!r} needs at least one value")
        return cls(key=_validate_key(key), operator=Operator.ONE_OF, value=options)

    def evaluate(self, metadata: Mapping[str, Any]) -> bool:
        if self.key not in metadata:
            return False
        actual = metadata[self.key]
        if self.operator is Operator.EQUALS:
            return _same(actual, self.value)
        return any(_same(actual, option) for option in self.value)

    def as_dict(self) -> dict[str, Any]:
        value = list(self.value) if self.operator is Operator.ONE_OF else self.value
        return {"key": self.key, "op": self.operator.value, "value": value}


def _validate_key(key: str) -> str:
    if not isinstance(key, str) or not key.strip():
        raise ValidationError("predicate key must be a non-empty string")
    return key.strip()


def _same(actual: Any, expected: Any) -> bool:
    # bool is an int subclass; True must not match 1
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    return actual == expected


def coerce_value(raw: str) -> Any:
    value = raw.strip()
    if value in {"true", "false"}:
        return value == "true"
    if value.lstrip("-").isdigit():
        return int(value)
    return value


def parse_predicate(expression: str) -> Predicate:
    """Parse ``key=value`` (equals) or ``key=a|b|c`` (one of)."""
    key, separator, raw_value = expression.partition("=")
    if not separator:
        raise ValidationError(f"Invalid filter format: {expression!r}. Use key=value")
    if not key.strip():
        raise ValidationError(f"Invalid filter format: {expression!r}. Missing key")
    if not raw_value.strip():
        raise ValidationError(f"Invalid filter format: {expression!r}. Missing value")

    if _ONE_OF_SEPARATOR in raw_value:
        options = [part for part in raw_value.split(_ONE_OF_SEPARATOR) if part.strip()]
        return Predicate.one_of(key, [coerce_value(option) for option in options])
    return Predicate.equals(key, coerce_value(raw_value))


def predicate_from_dict(payload: Mapping[str, Any]) -> Predicate:
    key = payload.get("key")
    op = payload.get("op", Operator.EQUALS.value)
    if "value" not in payload:
        raise ValidationError(f"predicate on {key!r} is missing 'value'")
    value = payload["value"]

    try:
        operator = Operator(op)
    except ValueError as exc:
        raise ValidationError(f"unknown filter operator: {op!r}") from exc

    if operator is Operator.ONE_OF:
        if not isinstance(value, (list, tuple)):
            raise ValidationError(f"one_of predicate on {key!r} needs a list value")
        return Predicate.one_of(key, value)
    return Predicate.equals(key, value)


def parse_predicates(expressions: Sequence[str] | None) -> list[Predicate]:
    return [parse_predicate(expression) for expression in expressions or []]


def matches(metadata: Mapping[str, Any], predicates: Sequence[Predicate]) -> bool:
    return all(predicate.evaluate(metadata) for predicate in predicates)


def filter_candidates(
    items: Sequence[T],
    predicates: Sequence[Predicate],
    metadata_of: Callable[[T], Mapping[str, Any]],
) -> list[T]:
    if not predicates:
        return list(items)
    return [item for item in items if matches(metadata_of(item), predicates)]


def to_qdrant_filter(predicates: Sequence[Predicate]) -> dict[str, Any] | None:
    if not predicates:
        return None

    must: list[dict[str, Any]] = []
    for predicate in predicates:
        if predicate.operator is Operator.EQUALS:
            must.append({"key": predicate.key, "match": {"value": predicate.value}})
        else:
            must.append({"key": predicate.key, "match": {"any": list(predicate.value)}})
    return {"must": must}
