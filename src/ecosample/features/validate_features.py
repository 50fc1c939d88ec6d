#!/usr/bin/env python3
"""
validate_features.py

QA for an extracted feature table.

Checks, per output field:
- missingness (null rate)
- impossible values (outside the field's configured valid_range,
  e.g. NDVI > 1)
- constant features (a single distinct value across all points)

Reports only. Nothing here changes the table.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import pandas as pd

from ecosample.registry.sources import FieldSchema


@dataclass(frozen=True)
class FieldQA:
    field: str
    n: int
    n_missing: int
    n_out_of_range: int
    valid_range: Optional[Tuple[float, float]] = None
    constant: bool = False

    @property
    def missing_rate(self) -> float:
        return self.n_missing / self.n if self.n else 0.0

    @property
    def ok(self) -> bool:
        return self.n_out_of_range == 0


def validate_features(df: pd.DataFrame, schema: FieldSchema) -> List[FieldQA]:
    """One FieldQA per schema field, in schema order.

    A field missing from the table counts as entirely null.
    """
    n = len(df)
    report = []
    for name in schema:
        _, spec = schema.lookup(name)
        if name not in df.columns:
            report.append(FieldQA(name, n, n, 0, spec.valid_range))
            continue

        values = pd.to_numeric(df[name], errors="coerce")
        present = values.dropna()
        n_bad = 0
        if spec.valid_range is not None:
            lo, hi = spec.valid_range
            n_bad = int(((present < lo) | (present > hi)).sum())
        report.append(
            FieldQA(
                field=name,
                n=n,
                n_missing=int(values.isna().sum()),
                n_out_of_range=n_bad,
                valid_range=spec.valid_range,
                constant=len(present) > 1 and present.nunique() == 1,
            )
        )
    return report


def format_report(report: List[FieldQA]) -> List[str]:
    lines = []
    for qa in report:
        line = f"{qa.field}: {qa.n_missing}/{qa.n} missing ({qa.missing_rate:.1%})"
        if qa.valid_range is not None:
            line += f", {qa.n_out_of_range} outside [{qa.valid_range[0]:g}, {qa.valid_range[1]:g}]"
        lines.append(line)
        if qa.constant:
            lines.append(f"  - warning: {qa.field} is constant across all points")
        if not qa.ok:
            lines.append(f"  - warning: {qa.field} has impossible values")
    return lines
