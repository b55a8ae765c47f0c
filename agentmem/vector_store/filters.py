"""Search filter parsing, evaluation and per-backend translation.

Filters are a mapping of payload field to predicate, ANDed together:

- exact: ``{"kind": "note"}``
- range: ``{"score": {"gte": 0.5, "lt": 1}}``
- any:   ``{"tags": {"any": ["a", "b"]}}``
- all:   ``{"tags": {"all": ["a", "b"]}}``

Field names may be dotted (``"user.name"``) to reach nested payload keys.
``parse_filters`` validates the shape once; ``matches`` is the reference
semantics the embedded store uses directly and that every translator must
reproduce natively. Flat-metadata backends answer equality and list membership
through the codec's value markers; without markers they have no native "contains
all" and degrade it to the first listed value, flagging the result with
``used_fallback``.
"""

import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import structlog
from qdrant_client import models as qdrant_models

from .base import Payload, SearchFilters, VectorStoreError

logger = structlog.get_logger("vector_store.filters")

RANGE_OPERATORS = ("gte", "gt", "lte", "lt")
SET_OPERATORS = ("any", "all")

Literal = Union[str, int, float, bool]
KeyMapper = Callable[[str], str]
MemberMapper = Callable[[str, Any], Optional[str]]

_MISSING = object()


@dataclass(frozen=True)
class ExactPredicate:
    field: str
    value: Literal


@dataclass(frozen=True)
class RangePredicate:
    field: str
    gte: Optional[float] = None
    gt: Optional[float] = None
    lte: Optional[float] = None
    lt: Optional[float] = None

    def bounds(self) -> Dict[str, float]:
        return {op: getattr(self, op) for op in RANGE_OPERATORS if getattr(self, op) is not None}


@dataclass(frozen=True)
class AnyPredicate:
    field: str
    values: Tuple[Literal, ...]


@dataclass(frozen=True)
class AllPredicate:
    field: str
    values: Tuple[Literal, ...]


Predicate = Union[ExactPredicate, RangePredicate, AnyPredicate, AllPredicate]


@dataclass
class TranslatedFilter:
    """Backend-native filter plus whether any predicate was degraded."""

    native: Any
    used_fallback: bool = False
    fallback_fields: Tuple[str, ...] = field(default_factory=tuple)


def _is_literal(value: Any) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    return isinstance(value, (str, int, bool))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _invalid(message: str) -> VectorStoreError:
    return VectorStoreError(message, operation="filter")


def parse_filters(filters: Optional[SearchFilters]) -> List[Predicate]:
    """Validate ``filters`` and return typed predicates.

    Raises ``VectorStoreError`` for any shape outside the filter language
    instead of letting it pass through unfiltered.
    """
    if not filters:
        return []
    if not isinstance(filters, Mapping):
        raise _invalid(f"Filters must be a mapping, got {type(filters).__name__}")

    predicates: List[Predicate] = []
    for field_name, condition in filters.items():
        if not isinstance(field_name, str) or not field_name or field_name.startswith(".") or field_name.endswith("."):
            raise _invalid(f"Invalid filter field: {field_name!r}")

        if _is_literal(condition):
            predicates.append(ExactPredicate(field_name, condition))
            continue

        if not isinstance(condition, Mapping) or not condition:
            raise _invalid(f"Unsupported filter value for '{field_name}': {condition!r}")

        operators = set(condition)
        if operators <= set(RANGE_OPERATORS):
            for op, bound in condition.items():
                if not _is_number(bound) or (isinstance(bound, float) and not math.isfinite(bound)):
                    raise _invalid(f"Range bound '{op}' for '{field_name}' must be a number")
            predicates.append(RangePredicate(field_name, **{op: condition[op] for op in operators}))
            continue

        if len(operators) == 1 and operators <= set(SET_OPERATORS):
            op = next(iter(operators))
            values = condition[op]
            if not isinstance(values, (list, tuple)) or not values:
                raise _invalid(f"'{op}' for '{field_name}' needs a non-empty list of values")
            if not all(_is_literal(value) for value in values):
                raise _invalid(f"'{op}' for '{field_name}' only accepts scalar values")
            predicate_class = AnyPredicate if op == "any" else AllPredicate
            predicates.append(predicate_class(field_name, tuple(values)))
            continue

        raise _invalid(f"Unsupported filter operator(s) for '{field_name}': {sorted(map(str, operators))}")

    return predicates


def resolve_field(payload: Payload, path: str) -> Any:
    """Value at ``path`` in ``payload``; a literal dotted key wins over nesting."""
    if path in payload:
        return payload[path]
    current: Any = payload
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def reachable_values(payload: Payload) -> Iterator[Tuple[str, Any]]:
    """Yield ``(path, value)`` for every non-object value ``resolve_field`` can return.

    A literal top-level key wins for its exact path only, and keys containing
    dots are reachable only at the top level.
    """
    def walk(path: str, value: Any, shadowed: bool) -> Iterator[Tuple[str, Any]]:
        if isinstance(value, dict):
            for key, child in value.items():
                if not isinstance(key, str) or "." in key:
                    continue
                child_path = f"{path}.{key}"
                yield from walk(child_path, child, child_path in payload)
        elif not shadowed:
            yield path, value

    for key, value in payload.items():
        if not isinstance(key, str) or (isinstance(value, dict) and "." in key):
            continue
        yield from walk(key, value, False)


def _equals(stored: Any, literal: Literal) -> bool:
    if isinstance(stored, bool) or isinstance(literal, bool):
        return isinstance(stored, bool) and isinstance(literal, bool) and stored == literal
    if _is_number(stored) and _is_number(literal):
        return stored == literal
    return type(stored) is type(literal) and stored == literal


def _contains(stored: Any, literal: Literal) -> bool:
    if isinstance(stored, list):
        return any(_equals(item, literal) for item in stored)
    return _equals(stored, literal)


def predicate_matches(payload: Payload, predicate: Predicate) -> bool:
    value = resolve_field(payload, predicate.field)
    if value is _MISSING:
        return False

    if isinstance(predicate, ExactPredicate):
        return _contains(value, predicate.value)

    if isinstance(predicate, RangePredicate):
        if not _is_number(value):
            return False
        return (
            (predicate.gte is None or value >= predicate.gte)
            and (predicate.gt is None or value > predicate.gt)
            and (predicate.lte is None or value <= predicate.lte)
            and (predicate.lt is None or value < predicate.lt)
        )

    if isinstance(predicate, AnyPredicate):
        return any(_contains(value, literal) for literal in predicate.values)

    return all(_contains(value, literal) for literal in predicate.values)


def matches(payload: Payload, filters: Union[Optional[SearchFilters], Sequence[Predicate]]) -> bool:
    """Evaluate filters against a payload client-side."""
    if isinstance(filters, (list, tuple)):
        predicates = filters
    else:
        predicates = parse_filters(filters)
    return all(predicate_matches(payload, predicate) for predicate in predicates)


class FilterTranslator(ABC):
    """Turns ``SearchFilters`` into a backend's native filter."""

    backend_type = "abstract"

    def translate(
        self,
        filters: Optional[SearchFilters],
        key_for: Optional[KeyMapper] = None,
        member_key: Optional[MemberMapper] = None
    ) -> TranslatedFilter:
        """Translate filters; ``native`` is ``None`` when there is nothing to filter.

        Parameters
        - filters: Filter mapping as accepted by ``parse_filters``
        - key_for: Maps a dotted field path to the stored key (codec aware)
        - member_key: Maps a field path and value to the codec's membership
          marker key, for backends that cannot store arrays
        """
        predicates = parse_filters(filters)
        if not predicates:
            return TranslatedFilter(native=None)

        translated = self._translate(
            predicates,
            key_for or (lambda path: path),
            member_key or (lambda path, value: None),
        )
        if translated.used_fallback:
            logger.warning(
                "Filter degraded to first value, backend has no native 'all' operator",
                backend=self.backend_type,
                fields=list(translated.fallback_fields)
            )
        return translated

    @abstractmethod
    def _translate(self, predicates: List[Predicate], key_for: KeyMapper, member_key: MemberMapper) -> TranslatedFilter:
        pass


class QdrantFilterTranslator(FilterTranslator):
    """``models.Filter`` with one ``must`` clause per predicate."""

    backend_type = "qdrant"

    def _translate(self, predicates: List[Predicate], key_for: KeyMapper, member_key: MemberMapper) -> TranslatedFilter:
        must: List[Any] = []
        for predicate in predicates:
            key = key_for(predicate.field)
            if isinstance(predicate, ExactPredicate):
                must.append(self._equals(key, predicate.value))
            elif isinstance(predicate, RangePredicate):
                must.append(qdrant_models.FieldCondition(key=key, range=qdrant_models.Range(**predicate.bounds())))
            elif isinstance(predicate, AnyPredicate):
                must.append(self._any(key, predicate.values))
            else:
                must.extend(self._equals(key, value) for value in predicate.values)
        return TranslatedFilter(native=qdrant_models.Filter(must=must))

    @staticmethod
    def _equals(key: str, value: Literal) -> Any:
        if isinstance(value, float):
            # MatchValue only takes str, int and bool
            return qdrant_models.FieldCondition(key=key, range=qdrant_models.Range(gte=value, lte=value))
        return qdrant_models.FieldCondition(key=key, match=qdrant_models.MatchValue(value=value))

    def _any(self, key: str, values: Tuple[Literal, ...]) -> Any:
        if all(isinstance(v, str) for v in values) or all(type(v) is int for v in values):
            return qdrant_models.FieldCondition(key=key, match=qdrant_models.MatchAny(any=list(values)))
        return qdrant_models.Filter(should=[self._equals(key, value) for value in values])


class FlatMetadataTranslator(FilterTranslator):
    """Shared translation for Chroma and Pinecone ``where`` documents.

    Flat metadata cannot tell a joined array or a JSON string from a plain
    string, so with a marking codec exact, ``any`` and ``all`` predicates test
    only the codec's value markers (``all`` becomes an ``$and`` of them).
    Without markers they compare the stored key, and ``all`` degrades to the
    first value. Ranges always compare the stored key.
    """

    def _translate(self, predicates: List[Predicate], key_for: KeyMapper, member_key: MemberMapper) -> TranslatedFilter:
        clauses: List[Dict[str, Any]] = []
        fallback: List[str] = []
        for predicate in predicates:
            key = key_for(predicate.field)
            if isinstance(predicate, ExactPredicate):
                clauses.append(self._contains(key, predicate.field, predicate.value, member_key))
            elif isinstance(predicate, RangePredicate):
                clauses.extend(self._range(key, predicate.bounds()))
            elif isinstance(predicate, AnyPredicate):
                if member_key(predicate.field, predicate.values[0]) is None:
                    clauses.append({key: {"$in": list(predicate.values)}})
                else:
                    markers = [self._contains(key, predicate.field, value, member_key) for value in predicate.values]
                    clauses.append(_combine("$or", markers))
            elif member_key(predicate.field, predicate.values[0]) is not None:
                clauses.extend(self._contains(key, predicate.field, value, member_key) for value in predicate.values)
            else:
                clauses.append({key: {"$eq": predicate.values[0]}})
                fallback.append(predicate.field)

        return TranslatedFilter(
            native=_combine("$and", clauses),
            used_fallback=bool(fallback),
            fallback_fields=tuple(fallback),
        )

    @staticmethod
    def _contains(key: str, path: str, value: Literal, member_key: MemberMapper) -> Dict[str, Any]:
        marker = member_key(path, value)
        if marker is None:
            return {key: {"$eq": value}}
        return {marker: {"$eq": True}}

    @abstractmethod
    def _range(self, key: str, bounds: Dict[str, float]) -> List[Dict[str, Any]]:
        pass


def _combine(operator: str, clauses: List[Dict[str, Any]]) -> Dict[str, Any]:
    # $and/$or need at least two operands
    return clauses[0] if len(clauses) == 1 else {operator: clauses}


class ChromaFilterTranslator(FlatMetadataTranslator):
    """Chroma ``where`` document; one operator per clause."""

    backend_type = "chroma"

    def _range(self, key: str, bounds: Dict[str, float]) -> List[Dict[str, Any]]:
        return [{key: {f"${op}": bound}} for op, bound in bounds.items()]


class PineconeFilterTranslator(FlatMetadataTranslator):
    """Pinecone metadata filter; a range keeps its bounds in one clause."""

    backend_type = "pinecone"

    def _range(self, key: str, bounds: Dict[str, float]) -> List[Dict[str, Any]]:
        return [{key: {f"${op}": bound for op, bound in bounds.items()}}]


def _milvus_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return json.dumps(value)
    return repr(value)


class MilvusFilterTranslator(FilterTranslator):
    """Boolean expression over the JSON ``payload`` field, joined with ``&&``."""

    backend_type = "milvus"

    def __init__(self, payload_field: str = "payload"):
        self.payload_field = payload_field

    def _field(self, path: str) -> str:
        return self.payload_field + "".join(f"[{json.dumps(part)}]" for part in path.split("."))

    def _translate(self, predicates: List[Predicate], key_for: KeyMapper, member_key: MemberMapper) -> TranslatedFilter:
        clauses: List[str] = []
        symbols = {"gte": ">=", "gt": ">", "lte": "<=", "lt": "<"}
        for predicate in predicates:
            expr_field = self._field(key_for(predicate.field))
            if isinstance(predicate, ExactPredicate):
                literal = _milvus_literal(predicate.value)
                clauses.append(f"({expr_field} == {literal} || json_contains({expr_field}, {literal}))")
            elif isinstance(predicate, RangePredicate):
                clauses.extend(
                    f"{expr_field} {symbols[op]} {_milvus_literal(bound)}"
                    for op, bound in predicate.bounds().items()
                )
            elif isinstance(predicate, AnyPredicate):
                values = ", ".join(_milvus_literal(value) for value in predicate.values)
                clauses.append(f"({expr_field} in [{values}] || json_contains_any({expr_field}, [{values}]))")
            else:
                values = ", ".join(_milvus_literal(value) for value in predicate.values)
                clauses.append(f"json_contains_all({expr_field}, [{values}])")
        return TranslatedFilter(native=" && ".join(clauses))


@dataclass
class SqlFilter:
    """Parameterized SQL ``WHERE`` fragment; placeholders follow ``param_offset``."""

    clause: str
    params: List[Any]


class PgVectorFilterTranslator(FilterTranslator):
    """JSONB predicates over the ``payload`` column.

    Every value and key path is bound as a query parameter; numbering starts
    after ``param_offset`` so the fragment can be appended to a query that
    already uses ``$1..$param_offset``.
    """

    backend_type = "pgvector"

    def __init__(self, param_offset: int = 0, column: str = "payload"):
        self.param_offset = param_offset
        self.column = column

    def _translate(self, predicates: List[Predicate], key_for: KeyMapper, member_key: MemberMapper) -> TranslatedFilter:
        params: List[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${self.param_offset + len(params)}"

        clauses: List[str] = []
        for predicate in predicates:
            path = key_for(predicate.field).split(".")
            if isinstance(predicate, ExactPredicate):
                # jsonb containment: equality for scalars, membership for arrays
                clauses.append(
                    f"({self.column} @> {bind(json.dumps(_nest(path, predicate.value)))}::jsonb"
                    f" OR {self.column} @> {bind(json.dumps(_nest(path, [predicate.value])))}::jsonb)"
                )
            elif isinstance(predicate, RangePredicate):
                key_param = bind(path)
                number = (
                    f"(CASE WHEN jsonb_typeof({self.column} #> {key_param}::text[]) = 'number' "
                    f"THEN ({self.column} #>> {key_param}::text[])::double precision END)"
                )
                symbols = {"gte": ">=", "gt": ">", "lte": "<=", "lt": "<"}
                clauses.extend(
                    f"{number} {symbols[op]} {bind(float(bound))}"
                    for op, bound in predicate.bounds().items()
                )
            elif isinstance(predicate, AnyPredicate):
                alternatives = []
                for value in predicate.values:
                    alternatives.append(f"{self.column} @> {bind(json.dumps(_nest(path, value)))}::jsonb")
                    alternatives.append(f"{self.column} @> {bind(json.dumps(_nest(path, [value])))}::jsonb")
                clauses.append("(" + " OR ".join(alternatives) + ")")
            else:
                clauses.append(f"{self.column} @> {bind(json.dumps(_nest(path, list(predicate.values))))}::jsonb")

        return TranslatedFilter(native=SqlFilter(clause=" AND ".join(clauses), params=params))


def _nest(path: List[str], value: Any) -> Dict[str, Any]:
    nested: Any = value
    for part in reversed(path):
        nested = {part: nested}
    return nested


def payload_terms(payload: Payload) -> List[Dict[str, Any]]:
    """Filterable leaves of ``payload`` as ``{path, str|num|bool, element}`` documents.

    Paths are those ``resolve_field`` can reach. List elements are flagged
    with ``element`` so ranges skip them.
    """
    terms: List[Dict[str, Any]] = []

    def leaf(path: str, value: Any, element: bool) -> None:
        slot = _term_slot(value)
        if slot is not None:
            terms.append({"path": path, slot: value, "element": element})

    for path, value in reachable_values(payload):
        if isinstance(value, list):
            for item in value:
                leaf(path, item, True)
        else:
            leaf(path, value, False)
    return terms


def _term_slot(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "bool"
    if _is_number(value):
        return "num" if _is_literal(value) else None
    if isinstance(value, str):
        return "str"
    return None


class OpenSearchFilterTranslator(FilterTranslator):
    """List of ``bool.filter`` clauses, each a ``nested`` query over ``payload_terms``.

    One nested query per predicate keeps the path and value conditions on the
    same leaf document.
    """

    backend_type = "opensearch"

    def __init__(self, terms_field: str = "payload_terms"):
        self.terms_field = terms_field

    def _translate(self, predicates: List[Predicate], key_for: KeyMapper, member_key: MemberMapper) -> TranslatedFilter:
        clauses: List[Dict[str, Any]] = []
        for predicate in predicates:
            path = key_for(predicate.field)
            if isinstance(predicate, ExactPredicate):
                clauses.append(self._nested(path, self._value(predicate.value)))
            elif isinstance(predicate, RangePredicate):
                clauses.append(self._nested(
                    path,
                    {"term": {f"{self.terms_field}.element": False}},
                    {"range": {f"{self.terms_field}.num": predicate.bounds()}},
                ))
            elif isinstance(predicate, AnyPredicate):
                should = [self._value(value) for value in predicate.values]
                clauses.append(self._nested(path, {"bool": {"should": should, "minimum_should_match": 1}}))
            else:
                clauses.extend(self._nested(path, self._value(value)) for value in predicate.values)
        return TranslatedFilter(native=clauses)

    def _nested(self, path: str, *conditions: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "nested": {
                "path": self.terms_field,
                "query": {
                    "bool": {
                        "filter": [{"term": {f"{self.terms_field}.path": path}}, *conditions]
                    }
                }
            }
        }

    def _value(self, value: Literal) -> Dict[str, Any]:
        return {"term": {f"{self.terms_field}.{_term_slot(value)}": value}}
