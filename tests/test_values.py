import pytest

from studyrules.engine.errors import ExpressionError
from studyrules.engine.values import Value, ValueKind


class TestValue:
    def test_of_checks_bool_before_number(self):
        assert Value.of(True).kind == ValueKind.BOOLEAN
        assert Value.of(1).kind == ValueKind.NUMBER
        assert Value.of("x").kind == ValueKind.STRING

    def test_of_rejects_other_types(self):
        with pytest.raises(ExpressionError, match="unsupported value type"):
            Value.of([1, 2])

    def test_accessor_kind_mismatch(self):
        with pytest.raises(ExpressionError, match="should be a number"):
            Value.string("3").as_number()
        with pytest.raises(ExpressionError, match="flag: argument 1 should be a string"):
            Value.number(3).as_str("flag: argument 1")

    @pytest.mark.parametrize(
        "value, expected",
        [
            (Value.boolean(True), True),
            (Value.boolean(False), False),
            (Value.number(0), False),
            (Value.number(-2), True),
            (Value.string("yes"), None),
        ],
    )
    def test_truthy(self, value, expected):
        assert value.truthy() is expected

    def test_str(self):
        assert str(Value.boolean(True)) == "true"
        assert str(Value.number(2)) == "2.0"
        assert str(Value.string("a")) == "a"
