"""Tests for the lattice model and the lattice fitter."""

from __future__ import annotations

import math

import numpy as np
import pytest

from goban_vision.config import FitterConfig
from goban_vision.exceptions import (
    FitDidNotConverge,
    NoAcceptableBoardSize,
    NoStonesDetected,
)
from goban_vision.models.board import GridCrossing, LatticeModel, Point2D, StoneDetection
from goban_vision.models.lattice import (
    LatticeFitter,
    _canonical,
    estimate_orientation,
    estimate_spacing,
    fit_board,
)


def _crossings(lattice: LatticeModel, skip=()) -> list:
    n = lattice.board_size
    return [
        GridCrossing(center=lattice.project(r, c), confidence=0.6)
        for r in range(n) for c in range(n) if (r, c) not in skip
    ]


def _same_points(p: LatticeModel, q: LatticeModel) -> bool:
    a = p.positions().reshape(-1, 2)
    b = q.positions().reshape(-1, 2)
    dist = np.hypot(a[:, None, 0] - b[None, :, 0], a[:, None, 1] - b[None, :, 1])
    return bool(np.all(dist.min(axis=1) < 1e-6))


# ── LatticeModel ───────────────────────────────────────────────────────

def test_lattice_model_projection_and_inverse():
    lattice = LatticeModel.from_geometry(13, spacing=25.0, rotation_degrees=20.0, origin=(100, 50))
    assert lattice.spacing == pytest.approx(25.0)
    assert lattice.rotation_degrees == pytest.approx(20.0)

    positions = lattice.positions()
    p = lattice.project(4, 7)
    assert positions[4, 7] == pytest.approx([p.x, p.y])

    coords = lattice.lattice_coordinates(positions.reshape(-1, 2))
    rows, cols = np.mgrid[0:13, 0:13]
    assert coords[:, 0] == pytest.approx(cols.ravel().astype(float))
    assert coords[:, 1] == pytest.approx(rows.ravel().astype(float))


def test_nearest_intersections_clamps_to_board():
    lattice = LatticeModel.from_geometry(9, 10.0, 0.0, (0, 0))
    rc, sq = lattice.nearest_intersections(np.array([[21.0, 39.0], [-30.0, 200.0]]))
    assert rc.tolist() == [[4, 2], [8, 0]]
    assert sq[0] == pytest.approx(2.0)
    assert sq[1] == pytest.approx(30.0 ** 2 + 120.0 ** 2)


@pytest.mark.parametrize("size", [8, 10, 21])
def test_lattice_model_rejects_unknown_sizes(size):
    with pytest.raises(ValueError):
        LatticeModel(board_size=size, a=10.0, b=0.0, origin=Point2D(0, 0))


def test_lattice_model_rejects_degenerate():
    with pytest.raises(ValueError):
        LatticeModel(board_size=9, a=0.0, b=0.0, origin=Point2D(0, 0))


@pytest.mark.parametrize("rotation", [60.0, -60.0, 150.0, -170.0])
def test_canonical_keeps_intersections(rotation):
    lattice = LatticeModel.from_geometry(9, 20.0, rotation, (300, 300))
    canonical = _canonical(lattice)
    assert -45.0 < canonical.rotation_degrees <= 45.0
    assert canonical.spacing == pytest.approx(20.0)
    assert _same_points(canonical, lattice)


# ── Seeds ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize("rotation", [0.0, 10.0, -25.0, 40.0])
def test_estimate_orientation(rotation):
    lattice = LatticeModel.from_geometry(19, 30.0, rotation, (200, 100))
    assert estimate_orientation(lattice.positions().reshape(-1, 2)) == pytest.approx(rotation, abs=1e-6)


def test_estimate_orientation_folds_quarter_turns():
    lattice = LatticeModel.from_geometry(9, 30.0, 100.0, (400, 100))
    assert estimate_orientation(lattice.positions().reshape(-1, 2)) == pytest.approx(10.0, abs=1e-6)


def test_estimate_spacing_from_crossings():
    lattice = LatticeModel.from_geometry(19, 30.0, 12.0, (200, 100))
    pts = lattice.positions().reshape(-1, 2)
    assert estimate_spacing(pts, orientation=12.0) == pytest.approx(30.0, abs=0.1)


def test_estimate_spacing_from_stone_diameter():
    # Sparse stones only: the diameter is the starting guess
    lattice = LatticeModel.from_geometry(19, 30.0, 0.0, (50, 50))
    cells = [(0, 0), (0, 2), (3, 3), (5, 1), (7, 8), (10, 4), (12, 12), (15, 2), (18, 18)]
    pts = np.array([lattice.project(r, c).as_tuple() for r, c in cells])
    assert estimate_spacing(pts, 0.0, stone_diameter=27.6) == pytest.approx(30.0, abs=0.5)


def test_estimate_spacing_ignores_duplicate_crossings():
    # Two detections per printed crossing, under a pixel apart
    lattice = LatticeModel.from_geometry(9, 30.0, 0.0, (40, 40))
    pts = lattice.positions().reshape(-1, 2)
    doubled = np.vstack([pts, pts + (0.9, 0.3)])

    assert estimate_spacing(doubled) == pytest.approx(30.0, abs=0.5)
    floor = FitterConfig().min_spacing
    assert estimate_orientation(doubled, min_distance=floor) == pytest.approx(0.0, abs=1.0)

    crossings = [GridCrossing(center=Point2D(x, y), confidence=0.6) for x, y in doubled]
    fit = fit_board([], crossings)
    assert fit.lattice.board_size == 9
    assert fit.lattice.spacing == pytest.approx(30.0, abs=0.5)


def test_fitter_keeps_best_start():
    truth = LatticeModel.from_geometry(13, 30.0, 30.0, (200.0, 60.0))
    pts = truth.positions().reshape(-1, 2)
    fitter = LatticeFitter(pts, np.full(len(pts), 0.6))

    starts = [fitter._fit_from(r, 13) for r in fitter._rotation_seeds()]
    assert fitter.fit(13).objective == min(f.objective for f in starts)


# ── fit_board ──────────────────────────────────────────────────────────

@pytest.mark.parametrize("size, rotation", [(19, 0.0), (19, 12.0), (13, -20.0), (9, 33.0)])
def test_fit_board_recovers_exact_lattice(size, rotation):
    truth = LatticeModel.from_geometry(size, 28.0, rotation, (260.0, 230.0))
    fit = fit_board([], _crossings(truth))

    lattice = fit.lattice
    assert lattice.board_size == size
    assert lattice.origin.distance_to(truth.origin) < 0.05
    assert lattice.rotation_degrees == pytest.approx(rotation, abs=0.01)
    assert lattice.spacing == pytest.approx(28.0, abs=0.01)
    assert fit.best.residual < 1e-4
    assert fit.best.coverage == pytest.approx(1.0)


def test_fit_board_uses_stones_and_crossings():
    truth = LatticeModel.from_geometry(19, 30.0, 5.0, (60.0, 40.0))
    black = [(3, 3), (3, 4), (4, 4), (15, 15), (9, 9), (16, 3)]
    stones = [StoneDetection(truth.project(r, c), radius=13.0, confidence=0.95) for r, c in black]
    # Crossings under the stones are hidden
    fit = fit_board(stones, _crossings(truth, skip=set(black)))

    assert fit.lattice.board_size == 19
    assert fit.lattice.origin.distance_to(truth.origin) < 0.05


def test_fit_board_prefers_smallest_covering_board():
    truth = LatticeModel.from_geometry(9, 40.0, 0.0, (100.0, 100.0))
    fit = fit_board([], _crossings(truth))

    assert fit.lattice.board_size == 9
    # Larger lattices match every anchor too, but cover less of themselves
    assert fit.candidates[19].coverage < fit.candidates[9].coverage


def test_fit_board_tolerates_outliers():
    truth = LatticeModel.from_geometry(19, 30.0, 8.0, (120.0, 80.0))
    rng = np.random.default_rng(3)
    outliers = [
        GridCrossing(Point2D(float(x), float(y)), confidence=0.6)
        for x, y in rng.uniform(0, 40, size=(8, 2))
    ]
    fit = fit_board([], _crossings(truth) + outliers)

    assert fit.lattice.board_size == 19
    assert fit.lattice.origin.distance_to(truth.origin) < 0.1
    assert fit.best.residual < FitterConfig().residual_tolerance


def test_fit_board_needs_enough_anchors():
    stones = [StoneDetection(Point2D(10.0 * i, 10.0), 5.0, 1.0) for i in range(3)]
    crossings = [GridCrossing(Point2D(10.0 * i, 50.0), 0.6) for i in range(2)]
    with pytest.raises(NoStonesDetected) as exc:
        fit_board(stones, crossings)
    assert exc.value.stone_count == 3
    assert exc.value.crossing_count == 2


def test_fit_board_rejects_random_points():
    rng = np.random.default_rng(5)
    crossings = [
        GridCrossing(Point2D(float(x), float(y)), confidence=0.6)
        for x, y in rng.uniform(0, 600, size=(60, 2))
    ]
    with pytest.raises(NoAcceptableBoardSize) as exc:
        fit_board([], crossings)
    assert set(exc.value.residuals) == {9, 13, 19}
    assert all(r > FitterConfig().residual_tolerance for r in exc.value.residuals.values())


def test_fit_board_iteration_cap():
    truth = LatticeModel.from_geometry(9, 30.0, 0.0, (50.0, 50.0))
    with pytest.raises(FitDidNotConverge) as exc:
        fit_board([], _crossings(truth), FitterConfig(max_iterations=1))
    assert set(exc.value.residuals) == {9, 13, 19}


def test_fit_board_single_size_sequential():
    truth = LatticeModel.from_geometry(13, 30.0, -3.0, (50.0, 50.0))
    config = FitterConfig(board_sizes=(13,), fit_workers=1)
    fit = fit_board([], _crossings(truth), config)
    assert list(fit.candidates) == [13]
    assert fit.lattice.rotation_degrees == pytest.approx(-3.0, abs=0.01)
    assert math.isfinite(fit.best.residual)
