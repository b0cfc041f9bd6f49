"""Tests for the closed set of conversion operations."""
from __future__ import annotations

import pytest

from board_tap.converter import apply_steps, coerce, convert_target, to_number
from board_tap.errors import ConversionError
from board_tap.registry import ConversionStep, Target


def step(op, **kwargs):
    """Conversion step with the given operation."""
    return ConversionStep(op=op, **kwargs)


def target(field="value", type="number", convert=(), **kwargs):
    """Target named "test" reading one field."""
    return Target(field=field, name="test", type=type, convert=tuple(convert), **kwargs)


class TestScenarios:
    """End-to-end conversions seen on real boards."""

    def test_float_without_conversion(self):
        """CPU frequency text is a plain number."""
        assert convert_target(target(), {"value": "1200.000"}) == 1200.0

    def test_millidegrees_to_celsius(self):
        """Thermal zone millidegrees become float degrees."""
        result = convert_target(
            target(convert=[step("div", value=1000)]), {"value": "45000"}
        )
        assert result == 45.0
        assert isinstance(result, float)

    def test_percentage_from_two_fields(self):
        """Usage is the ratio of two captured fields."""
        record = {"used": "250", "total": "1000"}
        result = convert_target(
            target(
                field="used",
                convert=[step("ratio", field="total", percent=True)],
                minimum=0,
                maximum=100,
            ),
            record,
        )
        assert result == 25.0

    def test_used_from_available(self):
        """Used memory derived from the available figure."""
        record = {"available": "600", "total": "1000"}
        result = convert_target(
            target(
                field="available",
                convert=[
                    step("subtract_from", field="total"),
                    step("ratio", field="total", percent=True),
                    step("round", digits=1),
                ],
            ),
            record,
        )
        assert result == 40.0

    def test_module_steps_run_before_target_steps(self):
        """Module conversion applies first."""
        record = {"value": "10"}
        result = convert_target(
            target(convert=[step("mul", value=3)]),
            record,
            module_steps=[step("add", value=1)],
        )
        assert result == 33.0

    def test_idempotent(self):
        """Converting the same record twice gives the same value."""
        tgt = target(convert=[step("div", value=1024), step("round", digits=3)])
        record = {"value": "3884096"}
        first = convert_target(tgt, record)
        second = convert_target(tgt, record)
        assert repr(first) == repr(second)


class TestOperations:
    """Individual operations."""

    def test_int_parse(self):
        """Surrounding whitespace is ignored."""
        assert apply_steps("  42\n", [step("int")], {}) == 42

    def test_int_rejects_fraction_text(self):
        with pytest.raises(ConversionError):
            apply_steps("4.2", [step("int")], {})

    def test_hex_and_bits(self):
        """Throttle flags are read bit by bit from hex."""
        assert apply_steps("0x50005", [step("hex")], {}) == 0x50005
        assert apply_steps("0x50005", [step("hex"), step("bit", index=0)], {}) is True
        assert apply_steps("0x50005", [step("hex"), step("bit", index=1)], {}) is False
        assert apply_steps("0x50005", [step("hex"), step("bit", index=18)], {}) is True

    def test_string_steps(self):
        assert apply_steps("  OnDemand \n", [step("strip"), step("lower")], {}) == "ondemand"
        assert apply_steps("abc", [step("upper")], {}) == "ABC"

    def test_sub_and_add(self):
        assert apply_steps("10", [step("sub", value=2.5), step("add", value=1)], {}) == 8.5

    def test_round(self):
        assert apply_steps("3793.0625", [step("round", digits=1)], {}) == 3793.1

    def test_divide_by_zero_literal(self):
        """Division by zero is a conversion failure."""
        with pytest.raises(ConversionError, match="division by zero"):
            apply_steps("1", [step("div", value=0)], {})

    def test_ratio_with_zero_denominator(self):
        with pytest.raises(ConversionError, match="division by zero"):
            apply_steps("1", [step("ratio", field="total")], {"total": "0"})

    def test_ratio_with_missing_field(self):
        """An uncaptured denominator fails the conversion."""
        with pytest.raises(ConversionError, match="not captured"):
            apply_steps("1", [step("ratio", field="total")], {"total": None})

    def test_unparsable_number(self):
        with pytest.raises(ConversionError, match="not a number"):
            apply_steps("n/a", [step("mul", value=2)], {})

    def test_unsupported_operation(self):
        """Operations outside the closed set are rejected."""
        with pytest.raises(ConversionError, match="unsupported"):
            apply_steps("1", [step("exec")], {})

    @pytest.mark.parametrize("raw", ["1_000", "١٢٣", "４２", "1_0.5"])
    def test_to_number_rejects_non_plain_digits(self, raw):
        """Digit separators and non-ASCII digits are not numbers in sysfs output."""
        with pytest.raises(ConversionError, match="not a number"):
            to_number(raw)

    @pytest.mark.parametrize("op,raw", [("int", "1_000"), ("int", "٤٢"), ("hex", "0x_50"), ("hex", "5_0")])
    def test_parse_rejects_non_plain_digits(self, op, raw):
        """The int and hex steps take plain ASCII digits only."""
        with pytest.raises(ConversionError):
            apply_steps(raw, [step(op)], {})

    def test_to_number_keeps_integers(self):
        """Integer text stays an int."""
        assert to_number("12") == 12
        assert isinstance(to_number("12"), int)
        assert to_number("1.5") == 1.5


class TestCoercion:
    """Coercion to declared target types."""

    def test_number(self):
        assert coerce("12", "number") == 12.0

    def test_number_rejects_nan(self):
        """Non-finite values are never published."""
        with pytest.raises(ConversionError):
            coerce("nan", "number")

    def test_integer_from_integral_float(self):
        assert coerce(12346.0, "integer") == 12346

    def test_integer_rejects_fraction(self):
        """Fractional values are not silently truncated."""
        with pytest.raises(ConversionError):
            coerce(1.5, "integer")

    @pytest.mark.parametrize(
        "raw,expected",
        [("1", True), ("yes", True), ("ON", True), ("0", False), ("off", False), (0, False)],
    )
    def test_boolean(self, raw, expected):
        """Common on/off words are accepted."""
        assert coerce(raw, "boolean") is expected

    def test_boolean_rejects_garbage(self):
        with pytest.raises(ConversionError):
            coerce("maybe", "boolean")

    def test_string(self):
        assert coerce(1.5, "string") == "1.5"


class TestRange:
    """Valid range checks."""

    def test_above_maximum(self):
        """Out-of-range readings fail instead of being clamped."""
        tgt = target(convert=[step("div", value=1000)], minimum=-40, maximum=150)
        with pytest.raises(ConversionError, match="above maximum"):
            convert_target(tgt, {"value": "999000"})

    def test_below_minimum(self):
        with pytest.raises(ConversionError, match="below minimum"):
            convert_target(target(minimum=0), {"value": "-1"})

    def test_missing_field(self):
        """An optional group that did not match fails the target."""
        with pytest.raises(ConversionError, match="not captured"):
            convert_target(target(), {"value": None})
