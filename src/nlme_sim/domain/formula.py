"""Symbolic formulas for parameters, observation predictors and hazards.

Formulas are written the way model code writes them, e.g.
``tvCl * (BW/refBW)^dCldBW * exp(nCl)``, parsed once with sympy and compiled
to a numpy callable with ``lambdify``.
"""

from __future__ import annotations
import re
from functools import lru_cache
from tokenize import TokenError
from typing import Callable, FrozenSet, Iterable, Mapping, Tuple, Union

import numpy as np
import sympy
from sympy.parsing.sympy_parser import (
    convert_xor,
    parse_expr,
    standard_transformations,
)

from ..contracts.errors import ModelError, UnresolvedParameterError

_x = sympy.Symbol("x")

FUNCTIONS = {
    "exp": sympy.exp,
    "log": sympy.log,
    "sqrt": sympy.sqrt,
    "abs": sympy.Abs,
    "min": sympy.Min,
    "max": sympy.Max,
    "ilogit": sympy.Lambda(_x, 1 / (1 + sympy.exp(-_x))),
    "logit": sympy.Lambda(_x, sympy.log(_x / (1 - _x))),
}

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_TRANSFORMATIONS = standard_transformations + (convert_xor,)


@lru_cache(maxsize=1024)
def _parse(text: str) -> sympy.Expr:
    local_dict = dict(FUNCTIONS)
    for name in set(_IDENTIFIER.findall(text)):
        if name not in FUNCTIONS:
            local_dict[name] = sympy.Symbol(name)
    try:
        return parse_expr(text, local_dict=local_dict, transformations=_TRANSFORMATIONS)
    except (SyntaxError, TokenError, TypeError, sympy.SympifyError) as exc:
        raise ModelError(f"Cannot parse formula '{text}': {exc}") from exc


class Formula:
    """A compiled scalar expression over named symbols."""

    __slots__ = ("text", "expr", "symbols", "_args", "_fn")

    def __init__(self, source: Union[str, sympy.Expr]):
        if isinstance(source, str):
            self.text = source.strip()
            self.expr = _parse(self.text)
        else:
            self.expr = sympy.sympify(source)
            self.text = str(self.expr)
        if not isinstance(self.expr, sympy.Expr):
            raise ModelError(f"Formula '{self.text}' does not evaluate to a scalar expression")

        self._args: Tuple[sympy.Symbol, ...] = tuple(
            sorted(self.expr.free_symbols, key=lambda s: s.name)
        )
        self.symbols: FrozenSet[str] = frozenset(s.name for s in self._args)
        self._fn: Callable = sympy.lambdify(self._args, self.expr, modules="numpy")

    def __repr__(self) -> str:
        return f"Formula({self.text!r})"

    def unresolved(self, known: Iterable[str]) -> FrozenSet[str]:
        """Symbols this formula uses that are not in `known`."""
        return self.symbols - frozenset(known)

    def evaluate(self, namespace: Mapping[str, float]) -> float:
        """Evaluate with values taken from `namespace`.

        Raises:
            UnresolvedParameterError: If a referenced symbol has no value
        """
        try:
            values = [namespace[s.name] for s in self._args]
        except KeyError:
            missing = sorted(self.symbols - set(namespace))
            raise UnresolvedParameterError(
                f"Formula '{self.text}' references undefined symbols: {', '.join(missing)}",
                symbols=missing,
            )
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            return float(self._fn(*values))


def ilogit(x: float) -> float:
    """Inverse logit, numerically stable for large |x|."""
    if x >= 0:
        return float(1.0 / (1.0 + np.exp(-x)))
    z = np.exp(x)
    return float(z / (1.0 + z))
