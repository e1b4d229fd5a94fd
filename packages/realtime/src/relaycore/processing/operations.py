"""Row operations — aggregate, filter, sort, transform, analyze.

Learn: Every operation is a pure function ``(records, options) -> result``
over a list of row dicts. None of them mutate their input; transform
builds new row dicts. They run inside worker processes, so they only
touch the arguments they are given.

Options use the wire's camelCase names (groupBy, sortBy, searchTerm...)
because they arrive untouched from the request message.
"""

import json
import math
import statistics
from datetime import date, datetime, time
from typing import Any, Callable, Iterable, Mapping, Optional

from relaycore.errors import ProcessingError
from relaycore.processing.expressions import Literal, compile_expression, evaluate

Row = Mapping[str, Any]

TOP_VALUES_LIMIT = 10


# ─── Value helpers ───────────────────────────────────────


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not (isinstance(value, float) and math.isnan(value))


def _group_key(value: Any) -> Any:
    """Hashable key with structural/string equality semantics."""
    if value is None:
        return None
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True, default=str)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def _sort_key(value: Any) -> tuple:
    """Rank None < numbers < dates < everything else (as lowercase text)."""
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return (0, 0)
    if _is_number(value):
        return (1, value)
    if isinstance(value, datetime):
        return (2, value.timestamp())
    if isinstance(value, date):
        return (2, datetime.combine(value, time.min).timestamp())
    if isinstance(value, bool):
        return (3, "true" if value else "false")
    return (3, str(value).lower())


def _compare(left: Any, right: Any) -> Optional[int]:
    """-1 / 0 / 1, or None when the values are not comparable."""
    if left is None or right is None:
        return None
    lk, rk = _sort_key(left), _sort_key(right)
    if lk[0] != rk[0]:
        return None
    if lk[1] < rk[1]:
        return -1
    return 1 if lk[1] > rk[1] else 0


def _text(value: Any) -> str:
    return str(value).lower()


def _require_list(value: Any, name: str) -> list:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ProcessingError(f"'{name}' must be a list")
    return list(value)


# ─── aggregate ───────────────────────────────────────────


def _sum(values: list) -> Any:
    return sum(values) if values else 0


def _avg(values: list) -> Any:
    return sum(values) / len(values) if values else None


def _min(values: list) -> Any:
    return min(values) if values else None


def _max(values: list) -> Any:
    return max(values) if values else None


_NUMERIC_AGGREGATORS: dict[str, Callable[[list], Any]] = {
    "sum": _sum,
    "avg": _avg,
    "min": _min,
    "max": _max,
}
AGGREGATIONS = (*_NUMERIC_AGGREGATORS, "count")


def _aggregate_field(rows: list[Row], field: str, func: str) -> Any:
    values = [row.get(field) for row in rows]
    if func == "count":
        return sum(1 for v in values if v is not None)
    return _NUMERIC_AGGREGATORS[func]([v for v in values if _is_number(v)])


def _aggregate_rows(rows: list[Row], aggregations: Mapping[str, Any]) -> dict:
    out = {}
    for field, funcs in aggregations.items():
        if isinstance(funcs, str):
            out[field] = _aggregate_field(rows, field, funcs)
        else:
            # {"amount": ["sum", "avg"]} → amount_sum, amount_avg
            for func in funcs:
                out[f"{field}_{func}"] = _aggregate_field(rows, field, func)
    return out


def _validate_aggregations(aggregations: Any) -> Mapping[str, Any]:
    if not isinstance(aggregations, Mapping) or not aggregations:
        raise ProcessingError("aggregate requires a non-empty 'aggregations' mapping")
    for field, funcs in aggregations.items():
        names = [funcs] if isinstance(funcs, str) else funcs
        if not isinstance(names, (list, tuple)) or not names:
            raise ProcessingError(f"Invalid aggregation for '{field}': {funcs!r}")
        for name in names:
            if name not in AGGREGATIONS:
                raise ProcessingError(
                    f"Unknown aggregation '{name}' for '{field}'. "
                    f"Available: {', '.join(AGGREGATIONS)}"
                )
    return aggregations


def aggregate(records: list[Row], options: Mapping[str, Any]) -> Any:
    """One row without groupBy; otherwise one row per group, first-seen order."""
    aggregations = _validate_aggregations(options.get("aggregations"))
    group_by = options.get("groupBy")
    if not group_by:
        return _aggregate_rows(records, aggregations)

    groups: dict[Any, tuple[Any, list[Row]]] = {}
    for row in records:
        value = row.get(group_by)
        key = _group_key(value)
        if key not in groups:
            groups[key] = (value, [])
        groups[key][1].append(row)

    result = []
    for value, rows in groups.values():
        out = {group_by: value}
        out.update(_aggregate_rows(rows, aggregations))
        result.append(out)
    return result


# ─── filter ──────────────────────────────────────────────


def _equals(left, right):
    return left == right


def _greater(left, right):
    return _compare(left, right) == 1


def _less(left, right):
    return _compare(left, right) == -1


def _greater_equal(left, right):
    return _compare(left, right) in (0, 1)


def _less_equal(left, right):
    return _compare(left, right) in (-1, 0)


def _contains(left, right):
    return left is not None and right is not None and _text(right) in _text(left)


def _starts_with(left, right):
    return left is not None and right is not None and _text(left).startswith(_text(right))


def _ends_with(left, right):
    return left is not None and right is not None and _text(left).endswith(_text(right))


def _in(left, right):
    return left in _require_list(right, "value")


def _not_in(left, right):
    return left not in _require_list(right, "value")


FILTER_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": lambda left, right: not _equals(left, right),
    "greater_than": _greater,
    "less_than": _less,
    "greater_equal": _greater_equal,
    "less_equal": _less_equal,
    "contains": _contains,
    "starts_with": _starts_with,
    "ends_with": _ends_with,
    "in": _in,
    "not_in": _not_in,
}


def _compile_predicates(raw: list) -> list[tuple[str, Callable, Any]]:
    compiled = []
    for i, predicate in enumerate(raw):
        if not isinstance(predicate, Mapping) or "field" not in predicate:
            raise ProcessingError(f"Filter #{i} needs a 'field'")
        op_name = predicate.get("operator", "equals")
        func = FILTER_OPERATORS.get(op_name)
        if func is None:
            raise ProcessingError(
                f"Unknown filter operator '{op_name}'. "
                f"Available: {', '.join(FILTER_OPERATORS)}"
            )
        value = predicate.get("value")
        if op_name in ("in", "not_in"):
            value = _require_list(value, "value")
        compiled.append((predicate["field"], func, value))
    return compiled


def _matches_search(row: Row, term: str, fields: Optional[Iterable[str]]) -> bool:
    for field in fields if fields else row.keys():
        value = row.get(field)
        if value is not None and term in _text(value):
            return True
    return False


def filter_records(records: list[Row], options: Mapping[str, Any]) -> list[Row]:
    """Conjunctive predicates, in order, plus an optional free-text search."""
    raw = options.get("filters")
    if raw is None:
        raw = options.get("predicates")
    predicates = _compile_predicates(_require_list(raw, "filters"))

    search_term = options.get("searchTerm")
    search_fields = _require_list(options.get("searchFields"), "searchFields") or None
    term = _text(search_term) if search_term not in (None, "") else None

    result = []
    for row in records:
        if not all(func(row.get(field), value) for field, func, value in predicates):
            continue
        if term is not None and not _matches_search(row, term, search_fields):
            continue
        result.append(row)
    return result


# ─── sort ────────────────────────────────────────────────


def sort_records(records: list[Row], options: Mapping[str, Any]) -> list[Row]:
    """Stable sort; nulls first ascending, last descending."""
    sort_by = options.get("sortBy")
    if not sort_by:
        raise ProcessingError("sort requires 'sortBy'")
    order = str(options.get("sortOrder", "asc")).lower()
    if order not in ("asc", "desc"):
        raise ProcessingError(f"sortOrder must be 'asc' or 'desc', got {order!r}")
    # sorted() keeps equal elements in input order even with reverse=True
    return sorted(records, key=lambda row: _sort_key(row.get(sort_by)), reverse=order == "desc")


# ─── transform ───────────────────────────────────────────


def _rename(row: Row, field: str, new_field: str) -> dict:
    if field not in row:
        return dict(row)
    return {(new_field if k == field else k): v for k, v in row.items() if k != new_field or k == field}


def transform(records: list[Row], options: Mapping[str, Any]) -> list[dict]:
    """Apply transformations in order, each on the previous one's output."""
    rows = [dict(row) for row in records]
    for i, step in enumerate(_require_list(options.get("transformations"), "transformations")):
        if not isinstance(step, Mapping):
            raise ProcessingError(f"Transformation #{i} must be an object")
        kind = step.get("type")
        field = step.get("field")
        if not field:
            raise ProcessingError(f"Transformation #{i} ({kind}) needs a 'field'")

        if kind in ("add_field", "modify_field"):
            operation = step.get("operation")
            expr = compile_expression(operation) if operation is not None else Literal(step.get("value"))
            rows = [{**row, field: evaluate(expr, row)} for row in rows]
        elif kind == "remove_field":
            rows = [{k: v for k, v in row.items() if k != field} for row in rows]
        elif kind == "rename_field":
            new_field = step.get("newField")
            if not new_field:
                raise ProcessingError(f"Transformation #{i} (rename_field) needs 'newField'")
            rows = [_rename(row, field, new_field) for row in rows]
        else:
            raise ProcessingError(f"Unknown transformation type {kind!r}")
    return rows


# ─── analyze ─────────────────────────────────────────────


def _top_values(values: list) -> list[dict]:
    counts: dict[Any, list] = {}
    for value in values:
        key = _group_key(value)
        if key in counts:
            counts[key][1] += 1
        else:
            counts[key] = [value, 1]
    # Stable sort: ties stay in first-encountered order
    ranked = sorted(counts.values(), key=lambda pair: -pair[1])
    return [{"value": value, "count": count} for value, count in ranked[:TOP_VALUES_LIMIT]]


def _analyze_field(records: list[Row], field: str) -> dict:
    values = [row.get(field) for row in records]
    present = [v for v in values if v is not None]
    stats: dict[str, Any] = {
        "totalCount": len(values),
        "nullCount": len(values) - len(present),
        "uniqueCount": len({_group_key(v) for v in present}),
    }

    numbers = [v for v in present if _is_number(v)]
    if present and len(numbers) == len(present):
        stats["type"] = "number"
        stats["min"] = min(numbers)
        stats["max"] = max(numbers)
        stats["avg"] = sum(numbers) / len(numbers)
        stats["median"] = statistics.median(numbers)
    elif present and all(isinstance(v, str) for v in present):
        lengths = [len(v) for v in present]
        stats["type"] = "string"
        stats["avgLength"] = sum(lengths) / len(lengths)
        stats["minLength"] = min(lengths)
        stats["maxLength"] = max(lengths)
    else:
        stats["type"] = "mixed" if present else "empty"

    stats["topValues"] = _top_values(present)
    return stats


def analyze(records: list[Row], options: Mapping[str, Any]) -> dict:
    """Per-field profile. Without 'fields', every field seen in the data."""
    fields = _require_list(options.get("fields"), "fields")
    if not fields:
        seen: dict[str, None] = {}
        for row in records:
            for key in row:
                seen.setdefault(key, None)
        fields = list(seen)
    return {field: _analyze_field(records, field) for field in fields}


OPERATIONS: dict[str, Callable[[list[Row], Mapping[str, Any]], Any]] = {
    "aggregate": aggregate,
    "filter": filter_records,
    "sort": sort_records,
    "transform": transform,
    "analyze": analyze,
}


def run_operation(operation: str, records: list[Row], options: Optional[Mapping[str, Any]] = None) -> Any:
    """Dispatch to the named operation.

    Raises ProcessingError if the operation is not registered.
    """
    func = OPERATIONS.get(operation)
    if func is None:
        available = ", ".join(sorted(OPERATIONS))
        raise ProcessingError(f"Unknown operation '{operation}'. Available: {available}")
    return func(records, options or {})
