#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import numpy as np
import pytest

from ecosample.geo.raster import Grid, Raster


def pixel_centres(grid: Grid):
    """(xs, ys) 2D arrays of pixel centre coordinates."""
    rows, cols = np.mgrid[0 : grid.height, 0 : grid.width]
    xres, yres = grid.res
    xs = grid.transform.c + (cols + 0.5) * xres
    ys = grid.transform.f - (rows + 0.5) * yres
    return xs, ys


def raster_from_fns(grid: Grid, fns, properties=None) -> Raster:
    """Raster whose band values are fn(xs, ys) at pixel centres. NaN -> unavailable."""
    xs, ys = pixel_centres(grid)
    bands = {}
    for name, fn in fns.items():
        values = fn(xs, ys)
        bands[name] = np.broadcast_to(np.asarray(values, dtype="float64"), grid.shape).copy()
    return Raster.from_bands(bands, grid, properties)


class FakeCatalog:
    """In-memory catalogue: source name -> builder(grid).

    Image builders return a Raster; collection builders return a tuple of Items.
    """

    def __init__(self, images=None, collections=None):
        self.images = dict(images or {})
        self.collections = dict(collections or {})
        self.calls = []

    def open_image(self, source, grid):
        self.calls.append(("image", source.name))
        return self.images[source.name](grid)

    def open_collection(self, source, grid):
        self.calls.append(("collection", source.name))
        return tuple(self.collections[source.name](grid))


@pytest.fixture
def grid10() -> Grid:
    """10 x 10 pixels of 10 units, covering (0, 0, 100, 100)."""
    return Grid.from_bounds((0.0, 0.0, 100.0, 100.0), 10.0)


@pytest.fixture
def index_raster(grid10: Grid) -> Raster:
    """Single band 'v' whose value is col + 10 * row (row 0 at the top)."""
    values = np.arange(100, dtype="float64").reshape(10, 10)
    return Raster.from_bands({"v": values}, grid10)


@pytest.fixture
def make_raster():
    return raster_from_fns


@pytest.fixture
def fake_catalog():
    return FakeCatalog
