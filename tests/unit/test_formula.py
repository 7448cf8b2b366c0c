"""Tests for symbolic formulas."""

import math

import pytest

from nlme_sim.contracts.errors import ModelError, UnresolvedParameterError
from nlme_sim.domain.formula import Formula, ilogit


class TestFormula:
    def test_caret_is_power(self):
        f = Formula("tvCl * (BW/70)^0.75")
        assert f.symbols == {"tvCl", "BW"}
        assert f.evaluate({"tvCl": 2.0, "BW": 70.0}) == pytest.approx(2.0)
        assert f.evaluate({"tvCl": 1.0, "BW": 140.0}) == pytest.approx(2 ** 0.75)

    def test_functions(self):
        f = Formula("exp(log(x)) + sqrt(y) + ilogit(0)")
        assert f.evaluate({"x": 3.0, "y": 4.0}) == pytest.approx(5.5)

    def test_single_letter_symbols_are_not_sympy_constants(self):
        f = Formula("E + I + S")
        assert f.symbols == {"E", "I", "S"}
        assert f.evaluate({"E": 1.0, "I": 2.0, "S": 3.0}) == pytest.approx(6.0)

    def test_missing_symbol_raises(self):
        f = Formula("a * b")
        with pytest.raises(UnresolvedParameterError) as exc:
            f.evaluate({"a": 1.0})
        assert exc.value.symbols == ("b",)

    def test_unresolved(self):
        assert Formula("a + b + c").unresolved({"a", "c"}) == {"b"}

    def test_parse_error(self):
        with pytest.raises(ModelError, match="Cannot parse"):
            Formula("a * (b")


def test_ilogit_is_stable():
    assert ilogit(0.0) == 0.5
    assert ilogit(800.0) == 1.0
    assert ilogit(-800.0) == 0.0
    assert ilogit(2.0) == pytest.approx(1 / (1 + math.exp(-2.0)))
