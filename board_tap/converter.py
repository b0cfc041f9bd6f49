"""Closed set of conversion operations applied to captured fields.

Values start as the text captured by the extractor and pass through the
module's ``conversion`` steps followed by the target's own ``convert`` steps.
The final value is coerced to the target's declared type and checked against
its valid range. Every failure raises :class:`ConversionError`.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
import math
from typing import Any

from board_tap.errors import ConversionError
from board_tap.registry import ConversionStep, Target

Number = int | float
Value = str | int | float | bool
Record = Mapping[str, str | None]

_TRUE_WORDS = {"1", "true", "yes", "on", "enabled", "up"}
_FALSE_WORDS = {"0", "false", "no", "off", "disabled", "down"}


def _numeric_text(value: Any, kind: str) -> str:
    text = str(value).strip()
    # int() and float() also accept digit separators and non-ASCII digits.
    if not text.isascii() or "_" in text:
        raise ConversionError(f"{kind}: {value!r}")
    return text


def to_number(value: Any) -> Number:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if value is None:
        raise ConversionError("missing value")
    text = _numeric_text(value, "not a number")
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        raise ConversionError(f"not a number: {value!r}") from None


def _field_number(record: Record, name: str | None) -> Number:
    if name is None or record.get(name) is None:
        raise ConversionError(f"field {name!r} not captured")
    return to_number(record[name])


def _parse_int(value: Value, _step: ConversionStep, _record: Record) -> int:
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ConversionError(f"not a finite number: {value!r}")
        return int(value)
    if isinstance(value, int):
        return int(value)
    try:
        return int(_numeric_text(value, "not an integer"), 10)
    except ValueError:
        raise ConversionError(f"not an integer: {value!r}") from None


def _parse_float(value: Value, _step: ConversionStep, _record: Record) -> float:
    return float(to_number(value))


def _parse_hex(value: Value, _step: ConversionStep, _record: Record) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    try:
        return int(_numeric_text(value, "not a hexadecimal number"), 16)
    except ValueError:
        raise ConversionError(f"not a hexadecimal number: {value!r}") from None


def _multiply(value: Value, step: ConversionStep, _record: Record) -> Number:
    return to_number(value) * step.value


def _divide(value: Value, step: ConversionStep, _record: Record) -> float:
    if step.value == 0:
        raise ConversionError("division by zero")
    return to_number(value) / step.value


def _add(value: Value, step: ConversionStep, _record: Record) -> Number:
    return to_number(value) + step.value


def _subtract(value: Value, step: ConversionStep, _record: Record) -> Number:
    return to_number(value) - step.value


def _round(value: Value, step: ConversionStep, _record: Record) -> float:
    number = to_number(value)
    if isinstance(number, float) and not math.isfinite(number):
        raise ConversionError(f"not a finite number: {value!r}")
    return round(float(number), step.digits or 0)


def _ratio(value: Value, step: ConversionStep, record: Record) -> float:
    denominator = _field_number(record, step.field)
    if denominator == 0:
        raise ConversionError(f"division by zero ({step.field} is 0)")
    result = to_number(value) / denominator
    return result * 100 if step.percent else result


def _subtract_from(value: Value, step: ConversionStep, record: Record) -> Number:
    return _field_number(record, step.field) - to_number(value)


def _bit(value: Value, step: ConversionStep, _record: Record) -> bool:
    number = to_number(value)
    if isinstance(number, float):
        if not number.is_integer():
            raise ConversionError(f"bit test on non-integer: {value!r}")
        number = int(number)
    return bool((number >> (step.index or 0)) & 1)


OPERATIONS: dict[str, Callable[[Value, ConversionStep, Record], Value]] = {
    "int": _parse_int,
    "float": _parse_float,
    "hex": _parse_hex,
    "strip": lambda value, _s, _r: str(value).strip(),
    "lower": lambda value, _s, _r: str(value).lower(),
    "upper": lambda value, _s, _r: str(value).upper(),
    "mul": _multiply,
    "div": _divide,
    "add": _add,
    "sub": _subtract,
    "round": _round,
    "ratio": _ratio,
    "subtract_from": _subtract_from,
    "bit": _bit,
}


def apply_steps(value: Value, steps: Iterable[ConversionStep], record: Record) -> Value:
    for step in steps:
        try:
            operation = OPERATIONS[step.op]
        except KeyError:
            raise ConversionError(f"unsupported operation: {step.op}") from None
        try:
            value = operation(value, step, record)
        except (OverflowError, ZeroDivisionError) as exc:
            raise ConversionError(f"{step.op} failed: {exc}") from exc
    return value


def coerce(value: Value, declared_type: str) -> Value:
    """Coerce a converted value to the target's declared type."""
    if declared_type == "number":
        number = float(to_number(value))
        if not math.isfinite(number):
            raise ConversionError(f"not a finite number: {value!r}")
        return number
    if declared_type == "integer":
        number = to_number(value)
        if isinstance(number, float):
            if not math.isfinite(number) or not number.is_integer():
                raise ConversionError(f"not an integer: {value!r}")
            number = int(number)
        return number
    if declared_type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        word = str(value).strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        raise ConversionError(f"not a boolean: {value!r}")
    if declared_type == "string":
        return str(value)
    raise ConversionError(f"unknown type: {declared_type}")


def check_range(value: Value, target: Target) -> None:
    if isinstance(value, (bool, str)):
        return
    if target.minimum is not None and value < target.minimum:
        raise ConversionError(f"{value} below minimum {target.minimum}")
    if target.maximum is not None and value > target.maximum:
        raise ConversionError(f"{value} above maximum {target.maximum}")


def convert_target(
    target: Target,
    record: Record,
    module_steps: Iterable[ConversionStep] = (),
) -> Value:
    """Produce the final typed value of one target from one record."""
    raw = record.get(target.field)
    if raw is None:
        raise ConversionError(f"field {target.field!r} not captured")
    value = apply_steps(raw, module_steps, record)
    value = apply_steps(value, target.convert, record)
    value = coerce(value, target.type)
    check_range(value, target)
    return value
