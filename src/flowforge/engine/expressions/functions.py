"""The closed set of functions callable from expressions.

Functions are pure: they only see their arguments (and, for NOW/TODAY, the
clock carried by the evaluation context). Names are case-insensitive.
"""

from __future__ import annotations

import calendar
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from flowforge.engine.errors import EvaluationError


@dataclass(frozen=True, slots=True)
class FunctionSpec:
    name: str
    impl: Callable[..., Any] | None
    min_args: int
    max_args: int | None
    needs_clock: bool = False


FUNCTIONS: dict[str, FunctionSpec] = {}


def _register(
    name: str, min_args: int, max_args: int | None, *, needs_clock: bool = False
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        FUNCTIONS[name] = FunctionSpec(name, fn, min_args, max_args, needs_clock)
        return fn

    return decorator


def is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number(value: object, fn: str) -> float | int:
    if not is_number(value):
        raise EvaluationError(f"{fn}: expected a number, got {type(value).__name__}")
    return value  # type: ignore[return-value]


MAX_EXPONENT = 1024
MAX_INTEGER_BITS = 4096


def power(base: float | int, exponent: float | int) -> float | int:
    """``base ** exponent`` with a bounded exponent and a real result."""

    if abs(exponent) > MAX_EXPONENT:
        raise EvaluationError(f"Exponent {exponent!r} is too large (limit {MAX_EXPONENT})")
    if isinstance(base, int) and isinstance(exponent, int) and exponent > 0:
        if abs(base).bit_length() * exponent > MAX_INTEGER_BITS:
            raise EvaluationError(f"{base!r} ** {exponent!r} is too large")
    try:
        result = base**exponent
    except ArithmeticError as e:
        raise EvaluationError(f"Cannot raise {base!r} to {exponent!r}: {e}") from e
    if isinstance(result, complex):
        raise EvaluationError(f"Cannot raise {base!r} to {exponent!r}: result is not real")
    return result


def _text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _list(value: object, fn: str) -> list[Any]:
    if not isinstance(value, (list, tuple)):
        raise EvaluationError(f"{fn}: expected an array, got {type(value).__name__}")
    return list(value)


def _field(item: object, field: str, fn: str) -> Any:
    if not isinstance(item, dict):
        raise EvaluationError(f"{fn}: array items must be objects to read {field!r}")
    if field not in item:
        raise EvaluationError(f"{fn}: item has no field {field!r}")
    return item[field]


def _numbers(args: tuple[Any, ...], fn: str) -> list[float | int]:
    """Flatten the aggregate calling conventions.

    ``FN(1, 2, 3)``, ``FN(list)`` and ``FN(list_of_objects, "field")``.
    """

    if args and isinstance(args[0], (list, tuple)):
        items = list(args[0])
        if len(args) == 2:
            if not isinstance(args[1], str):
                raise EvaluationError(f"{fn}: field name must be a string")
            items = [_field(item, args[1], fn) for item in items]
        elif len(args) > 2:
            raise EvaluationError(f"{fn}: too many arguments for array form")
    else:
        items = list(args)
    return [_number(v, fn) for v in items if v is not None]


def to_datetime(value: object, fn: str = "date") -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise EvaluationError(f"{fn}: invalid date {value!r}") from e
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    raise EvaluationError(f"{fn}: expected a date, got {type(value).__name__}")


# -- math / aggregates -------------------------------------------------------


@_register("SUM", 1, None)
def _sum(*args: Any) -> float | int:
    return sum(_numbers(args, "SUM"))


@_register("AVERAGE", 1, None)
def _average(*args: Any) -> float:
    values = _numbers(args, "AVERAGE")
    if not values:
        raise EvaluationError("AVERAGE: no values")
    return sum(values) / len(values)


@_register("MIN", 1, None)
def _min(*args: Any) -> float | int:
    values = _numbers(args, "MIN")
    if not values:
        raise EvaluationError("MIN: no values")
    return min(values)


@_register("MAX", 1, None)
def _max(*args: Any) -> float | int:
    values = _numbers(args, "MAX")
    if not values:
        raise EvaluationError("MAX: no values")
    return max(values)


@_register("COUNT", 1, 1)
def _count(items: Any) -> int:
    return len(_list(items, "COUNT"))


@_register("SUMPRODUCT", 3, 3)
def _sumproduct(items: Any, left: Any, right: Any) -> float | int:
    total: float | int = 0
    for item in _list(items, "SUMPRODUCT"):
        a = _number(_field(item, left, "SUMPRODUCT"), "SUMPRODUCT")
        b = _number(_field(item, right, "SUMPRODUCT"), "SUMPRODUCT")
        total += a * b
    return total


@_register("PLUCK", 2, 2)
def _pluck(items: Any, field: Any) -> list[Any]:
    return [_field(item, field, "PLUCK") for item in _list(items, "PLUCK")]


@_register("ABS", 1, 1)
def _abs(value: Any) -> float | int:
    return abs(_number(value, "ABS"))


@_register("ROUND", 1, 2)
def _round(value: Any, digits: Any = 0) -> float | int:
    number = _number(value, "ROUND")
    places = int(_number(digits, "ROUND"))
    if abs(places) > 15:
        raise EvaluationError(f"ROUND: {places} digits is out of range")
    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(str(number)).quantize(quantum, rounding=ROUND_HALF_UP)
    return int(rounded) if places <= 0 else float(rounded)


@_register("FLOOR", 1, 1)
def _floor(value: Any) -> int:
    return math.floor(_number(value, "FLOOR"))


@_register("CEIL", 1, 1)
def _ceil(value: Any) -> int:
    return math.ceil(_number(value, "CEIL"))


@_register("POWER", 2, 2)
def _power(base: Any, exponent: Any) -> float | int:
    return power(_number(base, "POWER"), _number(exponent, "POWER"))


@_register("SQRT", 1, 1)
def _sqrt(value: Any) -> float:
    number = _number(value, "SQRT")
    if number < 0:
        raise EvaluationError("SQRT: negative argument")
    return math.sqrt(number)


@_register("MOD", 2, 2)
def _mod(value: Any, divisor: Any) -> float | int:
    d = _number(divisor, "MOD")
    if d == 0:
        raise EvaluationError("MOD: division by zero")
    return _number(value, "MOD") % d


# -- text --------------------------------------------------------------------


@_register("CONCAT", 1, None)
def _concat(*args: Any) -> str:
    return "".join(_text(a) for a in args)


@_register("UPPER", 1, 1)
def _upper(value: Any) -> str:
    return _text(value).upper()


@_register("LOWER", 1, 1)
def _lower(value: Any) -> str:
    return _text(value).lower()


@_register("TRIM", 1, 1)
def _trim(value: Any) -> str:
    return _text(value).strip()


@_register("LEFT", 2, 2)
def _left(value: Any, count: Any) -> str:
    return _text(value)[: int(_number(count, "LEFT"))]


@_register("RIGHT", 2, 2)
def _right(value: Any, count: Any) -> str:
    n = int(_number(count, "RIGHT"))
    return _text(value)[-n:] if n > 0 else ""


@_register("LEN", 1, 1)
def _len(value: Any) -> int:
    if isinstance(value, (list, tuple)):
        return len(value)
    return len(_text(value))


@_register("CONTAINS", 2, 2)
def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple)):
        return needle in haystack
    if isinstance(haystack, str):
        return _text(needle) in haystack
    raise EvaluationError("CONTAINS: expected a string or an array")


@_register("REPLACE", 3, 3)
def _replace(value: Any, old: Any, new: Any) -> str:
    return _text(value).replace(_text(old), _text(new))


@_register("SPLIT", 2, 2)
def _split(value: Any, separator: Any) -> list[str]:
    sep = _text(separator)
    if not sep:
        raise EvaluationError("SPLIT: empty separator")
    return _text(value).split(sep)


@_register("JOIN", 1, 2)
def _join(items: Any, separator: Any = ",") -> str:
    return _text(separator).join(_text(v) for v in _list(items, "JOIN"))


@_register("TEXT", 1, 1)
def _to_text(value: Any) -> str:
    return _text(value)


# -- dates -------------------------------------------------------------------


@_register("NOW", 0, 0, needs_clock=True)
def _now(clock: datetime) -> datetime:
    return clock


@_register("TODAY", 0, 0, needs_clock=True)
def _today(clock: datetime) -> datetime:
    return clock.replace(hour=0, minute=0, second=0, microsecond=0)


@_register("DATE", 1, 3)
def _date(*args: Any) -> datetime:
    if len(args) == 1:
        return to_datetime(args[0], "DATE")
    if len(args) != 3:
        raise EvaluationError("DATE: expected DATE(text) or DATE(year, month, day)")
    year, month, day = (int(_number(a, "DATE")) for a in args)
    try:
        return datetime(year, month, day, tzinfo=UTC)
    except ValueError as e:
        raise EvaluationError(f"DATE: {e}") from e


def _add_months(value: datetime, months: int) -> datetime:
    index = value.month - 1 + months
    year = value.year + index // 12
    month = index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


_UNIT_ALIASES = {
    "year": "years",
    "month": "months",
    "week": "weeks",
    "day": "days",
    "hour": "hours",
    "minute": "minutes",
    "second": "seconds",
}


def _unit(value: Any, fn: str) -> str:
    unit = _text(value).lower()
    unit = _UNIT_ALIASES.get(unit, unit)
    if unit not in {"years", "months", "weeks", "days", "hours", "minutes", "seconds"}:
        raise EvaluationError(f"{fn}: unknown unit {value!r}")
    return unit


@_register("DATEADD", 3, 3)
def _dateadd(value: Any, amount: Any, unit: Any) -> datetime:
    start = to_datetime(value, "DATEADD")
    n = _number(amount, "DATEADD")
    u = _unit(unit, "DATEADD")
    if u == "years":
        return _add_months(start, int(n) * 12)
    if u == "months":
        return _add_months(start, int(n))
    return start + timedelta(**{u: n})


_SECONDS_PER_UNIT = {
    "weeks": 7 * 86400,
    "days": 86400,
    "hours": 3600,
    "minutes": 60,
    "seconds": 1,
}


@_register("DATEDIFF", 2, 3)
def _datediff(start: Any, end: Any, unit: Any = "days") -> int:
    a = to_datetime(start, "DATEDIFF")
    b = to_datetime(end, "DATEDIFF")
    u = _unit(unit, "DATEDIFF")
    if u in {"years", "months"}:
        months = (b.year - a.year) * 12 + (b.month - a.month)
        if b.day < a.day:
            months -= 1 if months > 0 else 0
        return months // 12 if u == "years" else months
    return int((b - a).total_seconds() // _SECONDS_PER_UNIT[u])


@_register("YEAR", 1, 1)
def _year(value: Any) -> int:
    return to_datetime(value, "YEAR").year


@_register("MONTH", 1, 1)
def _month(value: Any) -> int:
    return to_datetime(value, "MONTH").month


@_register("DAY", 1, 1)
def _day(value: Any) -> int:
    return to_datetime(value, "DAY").day


# -- logic / conversion ------------------------------------------------------

# IF is evaluated lazily by the evaluator; only its arity is declared here.
FUNCTIONS["IF"] = FunctionSpec("IF", None, 2, 3)


@_register("COALESCE", 1, None)
def _coalesce(*args: Any) -> Any:
    for value in args:
        if value is not None and value != "":
            return value
    return None


@_register("ISBLANK", 1, 1)
def _isblank(value: Any) -> bool:
    return value is None or value == "" or value == []


@_register("NUMBER", 1, 1)
def _to_number(value: Any) -> float | int:
    if is_number(value):
        return value
    if isinstance(value, bool):
        return int(value)
    try:
        text = _text(value).strip()
        return int(text) if text.lstrip("-").isdigit() else float(text)
    except ValueError as e:
        raise EvaluationError(f"NUMBER: cannot convert {value!r}") from e


@_register("STRING", 1, 1)
def _to_string(value: Any) -> str:
    return _text(value)
