#!/usr/bin/env python3
"""
derived_features.py

# *how raw bands become indices*

Band math for secondary bands (vegetation indices and the like).

- A DerivedBand is a name plus an arithmetic expression over variables, each
  variable bound to a band of the same image.
- Expressions are parsed with `ast` and restricted to numbers, bound names,
  + - * / ** and unary minus. Anything else is rejected at config time.
- Evaluation runs on numpy masked arrays, so a masked (unavailable) input
  pixel yields a masked output pixel. Division by zero and non-finite
  results are masked too, never turned into a number.

Examples:
  NDVI = (B8 - B4) / (B8 + B4)
  EVI  = 2.5 * ((NIR - RED) / (NIR + 6 * RED - 7.5 * BLUE + 1))
"""

from __future__ import annotations

import ast
import operator
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Tuple

import numpy as np


_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Pow: operator.pow,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


def _check_node(node: ast.AST, names: set) -> None:
    if isinstance(node, ast.Expression):
        _check_node(node.body, names)
    elif isinstance(node, ast.BinOp):
        if type(node.op) not in _BIN_OPS:
            raise ValueError(f"Operator {type(node.op).__name__} not allowed in band math")
        _check_node(node.left, names)
        _check_node(node.right, names)
    elif isinstance(node, ast.UnaryOp):
        if type(node.op) not in _UNARY_OPS:
            raise ValueError(f"Operator {type(node.op).__name__} not allowed in band math")
        _check_node(node.operand, names)
    elif isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise ValueError(f"Only numeric constants are allowed in band math, got {node.value!r}")
    elif isinstance(node, ast.Name):
        names.add(node.id)
    else:
        raise ValueError(f"Syntax {type(node).__name__} not allowed in band math")


def parse_expression(expression: str) -> Tuple[ast.Expression, FrozenSet[str]]:
    """Parse and validate a band-math expression.

    Returns the AST and the set of variable names it uses.
    Raises ValueError on syntax errors or disallowed constructs.
    """
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Invalid band math expression {expression!r}: {e.msg}") from e
    names: set = set()
    _check_node(tree, names)
    return tree, frozenset(names)


def _eval(node: ast.AST, values: Mapping[str, np.ma.MaskedArray]) -> Any:
    if isinstance(node, ast.Expression):
        return _eval(node.body, values)
    if isinstance(node, ast.BinOp):
        return _BIN_OPS[type(node.op)](_eval(node.left, values), _eval(node.right, values))
    if isinstance(node, ast.UnaryOp):
        return _UNARY_OPS[type(node.op)](_eval(node.operand, values))
    if isinstance(node, ast.Constant):
        return float(node.value)
    if isinstance(node, ast.Name):
        return values[node.id]
    raise ValueError(f"Syntax {type(node).__name__} not allowed in band math")


def evaluate_expression(expression: str, values: Mapping[str, Any]) -> np.ma.MaskedArray:
    """Evaluate `expression` with each variable bound to a (masked) array."""
    tree, names = parse_expression(expression)
    missing = sorted(names - set(values))
    if missing:
        raise KeyError(f"Band math expression {expression!r} has unbound variable(s): {missing}")

    bound = {n: np.ma.asarray(values[n], dtype="float64") for n in names}
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        result = _eval(tree, bound)
    if not np.ma.isMaskedArray(result):
        # constant-only expression; broadcast to the shape of any input
        shape = next(iter(bound.values())).shape if bound else ()
        result = np.ma.MaskedArray(np.full(shape, result, dtype="float64"))
    return np.ma.masked_invalid(np.ma.asarray(result, dtype="float64"))


# -----------------------------------------------------------------------------
# Derived band declarations
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class DerivedBand:
    name: str
    expression: str
    # expression variable -> band name; unbound variables refer to bands of the same name
    bindings: Mapping[str, str] = field(default_factory=dict)

    def variables(self) -> FrozenSet[str]:
        return parse_expression(self.expression)[1]

    def band_for(self, variable: str) -> str:
        return self.bindings.get(variable, variable)

    def inputs(self) -> Tuple[str, ...]:
        return tuple(sorted({self.band_for(v) for v in self.variables()}))


def normalized_difference(name: str, first: str, second: str) -> DerivedBand:
    """(first - second) / (first + second), e.g. NDVI from NIR and red."""
    return DerivedBand(name=name, expression="(A - B) / (A + B)", bindings={"A": first, "B": second})


def parse_derived_bands(cfg: Any) -> List[DerivedBand]:
    """Parse the `derived_bands:` block of a source.

    Accepts a mapping of band name -> spec, where spec is either
        {normalized_difference: [B8, B4]}
    or
        {expression: "...", bindings: {NIR: B8, ...}}
    or a bare expression string.
    """
    if cfg is None:
        return []
    if not isinstance(cfg, dict):
        raise ValueError(f"derived_bands must be a mapping of name -> spec, got {type(cfg).__name__}")

    out: List[DerivedBand] = []
    for name, spec in cfg.items():
        if isinstance(spec, str):
            out.append(DerivedBand(name=str(name), expression=spec))
            continue
        if not isinstance(spec, dict):
            raise ValueError(f"derived band '{name}' must be a string or mapping")
        if "normalized_difference" in spec:
            pair = spec["normalized_difference"]
            if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                raise ValueError(f"derived band '{name}': normalized_difference needs exactly two bands")
            out.append(normalized_difference(str(name), str(pair[0]), str(pair[1])))
        elif "expression" in spec:
            bindings = spec.get("bindings") or {}
            if not isinstance(bindings, dict):
                raise ValueError(f"derived band '{name}': bindings must be a mapping")
            out.append(
                DerivedBand(
                    name=str(name),
                    expression=str(spec["expression"]),
                    bindings={str(k): str(v) for k, v in bindings.items()},
                )
            )
        else:
            raise ValueError(f"derived band '{name}' needs 'expression' or 'normalized_difference'")
    return out
