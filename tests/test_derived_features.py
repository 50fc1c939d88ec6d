#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pytest

from ecosample.features import derived_features as df


def test_parse_expression_collects_names():
    _, names = df.parse_expression("2.5 * ((NIR - RED) / (NIR + 6 * RED - 7.5 * BLUE + 1))")
    assert names == frozenset({"NIR", "RED", "BLUE"})


@pytest.mark.parametrize(
    "expr",
    [
        "__import__('os').system('true')",
        "B8 > B4",
        "B8.real",
        "B8[0]",
        "'a' + B8",
        "B8 +",
    ],
)
def test_parse_expression_rejects_non_arithmetic(expr):
    with pytest.raises(ValueError):
        df.parse_expression(expr)


def test_evaluate_ndvi_and_evi():
    b8 = np.array([0.5, 0.3])
    b4 = np.array([0.1, 0.1])
    b2 = np.array([0.05, 0.05])

    ndvi = df.evaluate_expression("(A - B) / (A + B)", {"A": b8, "B": b4})
    np.testing.assert_allclose(ndvi, [0.4 / 0.6, 0.2 / 0.4])

    evi = df.evaluate_expression(
        "2.5 * ((NIR - RED) / (NIR + 6 * RED - 7.5 * BLUE + 1))", {"NIR": b8, "RED": b4, "BLUE": b2}
    )
    expected = 2.5 * ((b8 - b4) / (b8 + 6 * b4 - 7.5 * b2 + 1))
    np.testing.assert_allclose(evi, expected)


def test_masked_input_gives_masked_output():
    b8 = np.ma.MaskedArray([0.5, 0.5], mask=[False, True])
    b4 = np.ma.MaskedArray([0.1, 0.1], mask=[False, False])
    out = df.evaluate_expression("(A - B) / (A + B)", {"A": b8, "B": b4})
    assert list(np.ma.getmaskarray(out)) == [False, True]


def test_division_by_zero_is_masked_not_a_number():
    out = df.evaluate_expression("(A - B) / (A + B)", {"A": np.array([0.0, 1.0]), "B": np.array([0.0, 1.0])})
    assert list(np.ma.getmaskarray(out)) == [True, False]
    assert out[1] == 0.0


def test_unbound_variable_raises():
    with pytest.raises(KeyError):
        df.evaluate_expression("A + C", {"A": np.array([1.0])})


def test_normalized_difference_declaration():
    ndvi = df.normalized_difference("NDVI", "B8", "B4")
    assert ndvi.inputs() == ("B4", "B8")
    assert ndvi.band_for("A") == "B8"


def test_parse_derived_bands_forms():
    bands = df.parse_derived_bands(
        {
            "NDVI": {"normalized_difference": ["B8", "B4"]},
            "EVI": {"expression": "2.5 * (NIR - RED)", "bindings": {"NIR": "B8", "RED": "B4"}},
            "RATIO": "B8 / B4",
        }
    )
    assert [b.name for b in bands] == ["NDVI", "EVI", "RATIO"]
    assert bands[1].inputs() == ("B4", "B8")
    assert bands[2].inputs() == ("B4", "B8")


def test_parse_derived_bands_rejects_bad_specs():
    with pytest.raises(ValueError):
        df.parse_derived_bands(["NDVI"])
    with pytest.raises(ValueError):
        df.parse_derived_bands({"NDVI": {"normalized_difference": ["B8"]}})
    with pytest.raises(ValueError):
        df.parse_derived_bands({"NDVI": {"bands": ["B8", "B4"]}})
