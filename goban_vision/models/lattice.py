"""
Lattice Fitting – Rotation + Scale + Origin Search
==================================================

Given lattice evidence (black stone centres and visible grid crossings,
each with a confidence) and a candidate board size, find the lattice

    position(row, col) = origin + (a·col − b·row, b·col + a·row)

that minimises the confidence-weighted squared distance from every anchor
to its nearest on-board intersection.

Why an iterative search:
  • The nearest-intersection assignment changes as the lattice moves, so
    the objective is only piecewise quadratic and has many local minima
    (one per way of labelling the anchors).
  • Detections are incomplete (occluded crossings, filtered stones) and
    some do not belong to the board at all.  Each anchor's error is
    therefore truncated at ``(match_gate · seed_spacing)²``.

Search, per board size:
  1. **Seed** – spacing from the adjacent-distance heuristic, rotation
     from ``b = 0`` and from the dominant nearest-neighbour direction,
     centre from the weighted anchor centroid, then snapped onto the
     anchors' phase and shifted by whole steps to cover the most anchors.
  2. **Cyclic coordinate descent** over ``(a, b, centre_x, centre_y)`` with
     per-parameter step halving.  The lattice centre is searched rather
     than the (0, 0) corner so that scale changes do not drag the board
     sideways; the origin is derived from it exactly.
  3. **Polish** – with the assignment fixed the model is linear in
     ``(x0, y0, a, b)``, so a weighted least-squares solve tightens the
     result; it is kept only when the objective improves.

``fit_board`` runs the search for each candidate board size concurrently
and picks the size with the best normalised residual, using coverage of
the lattice by anchors to break the tie between a board and any larger
lattice that contains it.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from goban_vision.config import FitterConfig
from goban_vision.exceptions import (
    FitDidNotConverge,
    NoAcceptableBoardSize,
    NoStonesDetected,
)
from goban_vision.models.board import (
    BOARD_SIZES,
    GridCrossing,
    LatticeModel,
    Point2D,
    StoneDetection,
    confidences_array,
    points_array,
)

log = logging.getLogger(__name__)

# Index of each search parameter in the parameter vector
_A, _B, _CX, _CY = 0, 1, 2, 3


# ── Results ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LatticeFit:
    """Outcome of the search for one board size."""
    lattice: LatticeModel
    objective: float          # truncated, weighted squared error (px²)
    residual: float           # objective / (seed spacing² · matched weight)
    matched: int              # anchors within the match gate
    coverage: float           # fraction of intersections with a matched anchor
    converged: bool
    iterations: int

    @property
    def board_size(self) -> int:
        return self.lattice.board_size


@dataclass(frozen=True)
class BoardFit:
    """Selected lattice plus the diagnostics of every candidate size."""
    best: LatticeFit
    candidates: Dict[int, LatticeFit] = field(default_factory=dict)
    seed_spacing: float = 0.0
    seed_rotation: float = 0.0

    @property
    def lattice(self) -> LatticeModel:
        return self.best.lattice

    @property
    def residuals(self) -> Dict[int, float]:
        return {n: f.residual for n, f in self.candidates.items()}


# ── Seeds ──────────────────────────────────────────────────────────────

def _nearest_neighbours(
    points: np.ndarray, min_distance: float = 0.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """Distance and index of each point's nearest neighbour.

    Pairs closer than *min_distance* are ignored; points without a valid
    neighbour get ``inf`` / ``-1``.
    """
    n = len(points)
    if n < 2:
        return np.full(n, np.inf), np.full(n, -1)
    diff = points[:, None, :] - points[None, :, :]
    dist = np.hypot(diff[..., 0], diff[..., 1])
    dist[dist <= min_distance] = np.inf
    np.fill_diagonal(dist, np.inf)
    idx = np.argmin(dist, axis=1)
    nearest = dist[np.arange(n), idx]
    idx = np.where(np.isfinite(nearest), idx, -1)
    return nearest, idx


def estimate_orientation(points: np.ndarray, min_distance: float = 0.0) -> float:
    """Dominant lattice direction in degrees, folded into ``(-45, 45]``.

    Nearest-neighbour vectors of lattice points run along the two lattice
    axes, so their angles agree modulo 90°; the circular mean of four
    times the angle recovers it.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    _, idx = _nearest_neighbours(pts, min_distance)
    valid = idx >= 0
    if not valid.any():
        return 0.0
    vec = pts[idx[valid]] - pts[valid]
    angles = np.arctan2(vec[:, 1], vec[:, 0])
    phi = math.atan2(float(np.sin(4 * angles).sum()), float(np.cos(4 * angles).sum())) / 4
    return _fold_angle(math.degrees(phi))


def estimate_spacing(
    points: np.ndarray,
    orientation: float = 0.0,
    stone_diameter: Optional[float] = None,
    config: FitterConfig = FitterConfig(),
    max_multiple: float = 4.5,
) -> float:
    """Distance between neighbouring intersections, used to seed the fit.

    Axis-aligned distances between sampled pairs of anchors (after undoing
    *orientation*) are integer multiples of the spacing.  Starting from the
    stone diameter (or, without stones, the median nearest-neighbour
    distance), the estimate is moved by the average of
    ``d / round(d / s) − s`` until the change is below ``seed_epsilon``.
    Distances shorter than most of a stone diameter (same row / column, or
    the same stone) and beyond ``max_multiple`` spacings are left out.
    Anchor pairs closer than ``config.min_spacing`` never count as
    neighbours.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    min_distance = _pair_floor(stone_diameter, config)
    if stone_diameter:
        start = float(stone_diameter)
    else:
        nearest, _ = _nearest_neighbours(pts, min_distance)
        finite = nearest[np.isfinite(nearest)]
        if finite.size == 0:
            raise ValueError("Cannot estimate spacing from fewer than two distinct points")
        start = float(np.median(finite))

    theta = math.radians(orientation)
    c, s = math.cos(theta), math.sin(theta)
    rotated = np.stack([c * pts[:, 0] + s * pts[:, 1], -s * pts[:, 0] + c * pts[:, 1]], axis=1)
    rotated = rotated[np.lexsort((rotated[:, 0], rotated[:, 1]))]

    threshold = 0.8 * start
    samples: List[float] = []

    def add_distances(p: np.ndarray, q: np.ndarray) -> None:
        for d in (abs(p[0] - q[0]), abs(p[1] - q[1])):
            if threshold < d <= max_multiple * start:
                samples.append(float(d))

    m = len(rotated)
    half = m // 2
    for i in range(m - 1):
        # Likely neighbours on the same row
        add_distances(rotated[i], rotated[i + 1])
        # Far apart pairs
        add_distances(rotated[i], rotated[m - i - 1])
        # Pairs half the list apart
        if i < half:
            add_distances(rotated[i], rotated[i + half])

    if not samples:
        return start

    distances = np.asarray(samples)
    spacing = start
    for _ in range(config.seed_iterations):
        multiples = np.maximum(np.rint(distances / spacing), 1.0)
        change = float(np.mean(distances / multiples - spacing))
        spacing += change
        if abs(change) < config.seed_epsilon:
            break

    return max(spacing, 0.5 * start, config.min_spacing)


def _pair_floor(stone_diameter: Optional[float], config: FitterConfig) -> float:
    half = 0.5 * stone_diameter if stone_diameter else 0.0
    return max(half, config.min_spacing)


def _fold_angle(degrees: float) -> float:
    """Map an angle onto ``(-45, 45]`` using the lattice's 90° symmetry."""
    folded = math.fmod(degrees + 45.0, 90.0)
    if folded <= 0:
        folded += 90.0
    return folded - 45.0


# ── Fitter ─────────────────────────────────────────────────────────────

class LatticeFitter:
    """Coordinate-descent lattice search over a fixed set of anchors.

    Parameters
    ----------
    points : np.ndarray
        ``(N, 2)`` anchor positions in pixels.
    weights : np.ndarray
        ``(N,)`` anchor confidences.
    config : FitterConfig
    stone_diameter : float, optional
        Typical stone diameter; starts the spacing seed, and pairs of
        anchors closer than half of it are ignored by the seeds.
    """

    def __init__(
        self,
        points: np.ndarray,
        weights: np.ndarray,
        config: FitterConfig = FitterConfig(),
        stone_diameter: Optional[float] = None,
    ) -> None:
        self.points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        self.weights = np.asarray(weights, dtype=np.float64).reshape(-1)
        if len(self.points) != len(self.weights):
            raise ValueError("points and weights must have the same length")
        self.config = config

        self.seed_rotation = estimate_orientation(
            self.points, _pair_floor(stone_diameter, config),
        )
        self.seed_spacing = estimate_spacing(
            self.points, self.seed_rotation, stone_diameter, config,
        )
        self.gate = config.match_gate * self.seed_spacing
        self.cap = self.gate ** 2

        total = float(self.weights.sum())
        self.centroid = (self.weights @ self.points) / total if total > 0 else self.points.mean(axis=0)

    # ── Objective ──────────────────────────────────────────────────────

    @staticmethod
    def _origin(params: np.ndarray, n: int) -> Tuple[float, float]:
        a, b, cx, cy = params
        h = (n - 1) / 2.0
        return cx - (a * h - b * h), cy - (b * h + a * h)

    def _assign(
        self, params: np.ndarray, n: int,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Squared distance, row and column of each anchor's nearest intersection."""
        a, b = params[_A], params[_B]
        ox, oy = self._origin(params, n)
        dx = self.points[:, 0] - ox
        dy = self.points[:, 1] - oy
        norm = a * a + b * b
        cols = np.clip(np.rint((a * dx + b * dy) / norm), 0, n - 1)
        rows = np.clip(np.rint((-b * dx + a * dy) / norm), 0, n - 1)
        ex = dx - (a * cols - b * rows)
        ey = dy - (b * cols + a * rows)
        return ex * ex + ey * ey, rows, cols

    def objective(self, params: np.ndarray, n: int) -> float:
        if params[_A] ** 2 + params[_B] ** 2 < 1.0:
            return math.inf
        sq, _, _ = self._assign(params, n)
        return float(self.weights @ np.minimum(sq, self.cap))

    # ── Search ─────────────────────────────────────────────────────────

    def fit(self, board_size: int) -> LatticeFit:
        """Search the best lattice for *board_size* from every start."""
        if board_size not in BOARD_SIZES:
            raise ValueError(f"Unsupported board size {board_size}")

        # The first seed is always 0°, so there is at least one start
        starts = [self._fit_from(rotation, board_size) for rotation in self._rotation_seeds()]
        return min(starts, key=lambda f: f.objective)

    def _fit_from(self, rotation: float, board_size: int) -> LatticeFit:
        params = self._initial_params(rotation, board_size)
        params, converged, iterations = self._descend(params, board_size)
        params = self._polish(params, board_size)
        fit = self._evaluate(params, board_size, converged, iterations)
        log.debug(
            "size=%d seed=%.1f° → residual=%.4f coverage=%.2f converged=%s (%d cycles)",
            board_size, rotation, fit.residual, fit.coverage, converged, iterations,
        )
        return fit

    def _rotation_seeds(self) -> List[float]:
        seeds: List[float] = []
        for angle in (0.0, self.seed_rotation, _fold_angle(self.seed_rotation + 45.0)):
            if all(abs(_fold_angle(angle - s)) > 1.0 for s in seeds):
                seeds.append(angle)
        return seeds

    def _initial_params(self, rotation: float, n: int) -> np.ndarray:
        theta = math.radians(rotation)
        a = self.seed_spacing * math.cos(theta)
        b = self.seed_spacing * math.sin(theta)
        params = np.array([a, b, self.centroid[0], self.centroid[1]], dtype=np.float64)
        return self._place(params, n)

    def _place(self, params: np.ndarray, n: int) -> np.ndarray:
        """Align the lattice phase to the anchors and slide the board window
        by whole steps so it covers the most anchor weight."""
        a, b = params[_A], params[_B]
        ox, oy = self._origin(params, n)
        dx = self.points[:, 0] - ox
        dy = self.points[:, 1] - oy
        norm = a * a + b * b
        coords = np.stack([(a * dx + b * dy) / norm, (-b * dx + a * dy) / norm], axis=1)

        shift = np.zeros(2)
        for axis in range(2):
            phase_angles = 2 * np.pi * coords[:, axis]
            phase = math.atan2(
                float(self.weights @ np.sin(phase_angles)),
                float(self.weights @ np.cos(phase_angles)),
            ) / (2 * np.pi)
            index = np.rint(coords[:, axis] - phase)
            shift[axis] = phase + self._best_window(index, n)

        # shift is in (col, row) lattice units
        new_ox = ox + a * shift[0] - b * shift[1]
        new_oy = oy + b * shift[0] + a * shift[1]
        h = (n - 1) / 2.0
        return np.array([a, b, new_ox + a * h - b * h, new_oy + b * h + a * h])

    def _best_window(self, index: np.ndarray, n: int) -> int:
        """First index of the ``n``-wide window holding the most weight."""
        lo, hi = int(index.min()) - n + 1, int(index.max())
        total = float(self.weights.sum())
        mean = float(self.weights @ index) / total if total > 0 else float(index.mean())
        best_start, best_key = 0, None
        for start in range(lo, hi + 1):
            inside = (index >= start) & (index <= start + n - 1)
            weight = float(self.weights[inside].sum())
            key = (-weight, abs(start + (n - 1) / 2.0 - mean))
            if best_key is None or key < best_key:
                best_start, best_key = start, key
        return best_start

    def _descend(self, params: np.ndarray, n: int) -> Tuple[np.ndarray, bool, int]:
        """Cyclic coordinate descent with per-parameter step halving."""
        cfg = self.config
        s = self.seed_spacing
        steps = np.array([0.1 * s, 0.1 * s, 0.5 * s, 0.5 * s])
        eps = np.array([cfg.scale_epsilon, cfg.scale_epsilon,
                        cfg.position_epsilon, cfg.position_epsilon])
        params = params.copy()
        current = self.objective(params, n)

        for cycle in range(cfg.max_iterations):
            if np.all(steps < eps):
                return params, True, cycle
            for i in range(4):
                if steps[i] < eps[i]:
                    continue
                lower = params.copy()
                lower[i] -= steps[i]
                upper = params.copy()
                upper[i] += steps[i]
                f_lower = self.objective(lower, n)
                f_upper = self.objective(upper, n)
                if f_lower < current and f_lower <= f_upper:
                    params, current = lower, f_lower
                elif f_upper < current:
                    params, current = upper, f_upper
                else:
                    steps[i] *= 0.5

        return params, bool(np.all(steps < eps)), cfg.max_iterations

    def _polish(self, params: np.ndarray, n: int) -> np.ndarray:
        """Weighted least squares under a fixed assignment, repeated while
        the objective keeps improving."""
        best = params
        best_f = self.objective(params, n)
        h = (n - 1) / 2.0

        for _ in range(self.config.polish_iterations):
            sq, rows, cols = self._assign(best, n)
            inlier = sq <= self.cap
            if inlier.sum() < 3:
                break
            r, c = rows[inlier], cols[inlier]
            pts = self.points[inlier]
            sw = np.sqrt(self.weights[inlier])

            m = len(r)
            design = np.zeros((2 * m, 4))
            design[0::2, 0] = 1.0
            design[0::2, 2] = c
            design[0::2, 3] = -r
            design[1::2, 1] = 1.0
            design[1::2, 2] = r
            design[1::2, 3] = c
            target = pts.reshape(-1)
            weights = np.repeat(sw, 2)

            solution, _, rank, _ = np.linalg.lstsq(
                design * weights[:, None], target * weights, rcond=None,
            )
            if rank < 4:
                break
            ox, oy, a, b = solution
            candidate = np.array([a, b, ox + a * h - b * h, oy + b * h + a * h])
            f = self.objective(candidate, n)
            if not f < best_f - 1e-9:
                break
            best, best_f = candidate, f

        return best

    def _evaluate(
        self, params: np.ndarray, n: int, converged: bool, iterations: int,
    ) -> LatticeFit:
        sq, rows, cols = self._assign(params, n)
        matched = sq <= self.cap
        matched_weight = float(self.weights[matched].sum())
        objective = float(self.weights @ np.minimum(sq, self.cap))
        # Normalised by the seed spacing: inflating the lattice must not
        # shrink the residual
        spacing2 = self.seed_spacing ** 2
        residual = objective / (spacing2 * matched_weight) if matched_weight > 0 else math.inf

        cells = {(int(r), int(c)) for r, c in zip(rows[matched], cols[matched])}
        ox, oy = self._origin(params, n)
        lattice = _canonical(LatticeModel(
            board_size=n,
            a=float(params[_A]),
            b=float(params[_B]),
            origin=Point2D(float(ox), float(oy)),
        ))
        return LatticeFit(
            lattice=lattice,
            objective=objective,
            residual=residual,
            matched=int(matched.sum()),
            coverage=len(cells) / float(n * n),
            converged=converged,
            iterations=iterations,
        )


def _canonical(lattice: LatticeModel) -> LatticeModel:
    """Relabel the lattice so its rotation lies in ``(-45°, 45°]``.

    Turning the labelling by a quarter turn describes the same set of
    intersections with a different corner as (0, 0).
    """
    n = lattice.board_size
    a, b = lattice.a, lattice.b
    ox, oy = lattice.origin.x, lattice.origin.y
    for _ in range(4):
        angle = math.degrees(math.atan2(b, a))
        if angle > 45.0:
            # (0, 0) moves to the old (n−1, 0); axes turn by −90°
            ox, oy = ox - b * (n - 1), oy + a * (n - 1)
            a, b = b, -a
        elif angle <= -45.0:
            # (0, 0) moves to the old (0, n−1); axes turn by +90°
            ox, oy = ox + a * (n - 1), oy + b * (n - 1)
            a, b = -b, a
        else:
            break
    return LatticeModel(board_size=n, a=a, b=b, origin=Point2D(ox, oy))


# ── Public API ─────────────────────────────────────────────────────────

def fit_board(
    stones: Sequence[StoneDetection],
    crossings: Sequence[GridCrossing] = (),
    config: FitterConfig = FitterConfig(),
) -> BoardFit:
    """Fit every candidate board size and select the best one.

    Raises
    ------
    NoStonesDetected
        Fewer than ``min_anchors`` stones and crossings together.
    FitDidNotConverge
        No board size converged within ``max_iterations``.
    NoAcceptableBoardSize
        Every converged fit exceeds ``residual_tolerance`` (or matched
        fewer than ``min_matched`` anchors).
    """
    points = np.vstack([points_array(stones), points_array(crossings)])
    weights = np.concatenate([confidences_array(stones), confidences_array(crossings)])

    if len(points) < config.min_anchors:
        raise NoStonesDetected(
            f"Need at least {config.min_anchors} stones or grid crossings, "
            f"found {len(stones)} stones and {len(crossings)} crossings",
            stone_count=len(stones),
            crossing_count=len(crossings),
        )

    stone_diameter = 2.0 * float(np.median([s.radius for s in stones])) if stones else None
    fitter = LatticeFitter(points, weights, config, stone_diameter)
    log.info(
        "Lattice seed: spacing=%.2fpx rotation=%.2f° from %d anchors",
        fitter.seed_spacing, fitter.seed_rotation, len(points),
    )

    sizes = tuple(config.board_sizes)
    workers = max(1, min(config.fit_workers, len(sizes)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        candidates = dict(zip(sizes, pool.map(fitter.fit, sizes)))

    residuals = {n: f.residual for n, f in candidates.items()}
    for n, f in candidates.items():
        log.debug(
            "Board %dx%d: residual=%.4f matched=%d coverage=%.2f converged=%s",
            n, n, f.residual, f.matched, f.coverage, f.converged,
        )

    converged = [f for f in candidates.values() if f.converged]
    if not converged:
        raise FitDidNotConverge(
            f"Lattice search did not converge within {config.max_iterations} cycles "
            f"for any board size (best residuals {_fmt(residuals)})",
            residuals=residuals,
        )

    acceptable = [
        f for f in converged
        if f.residual <= config.residual_tolerance and f.matched >= config.min_matched
    ]
    if not acceptable:
        raise NoAcceptableBoardSize(
            f"No board found: residuals {_fmt(residuals)} exceed tolerance "
            f"{config.residual_tolerance}",
            residuals=residuals,
        )

    best = min(
        acceptable,
        key=lambda f: (f.residual + config.coverage_weight * (1.0 - f.coverage), f.board_size),
    )
    log.info(
        "Selected %dx%d board: spacing=%.2fpx rotation=%.2f° residual=%.4f",
        best.board_size, best.board_size, best.lattice.spacing,
        best.lattice.rotation_degrees, best.residual,
    )
    return BoardFit(
        best=best,
        candidates=candidates,
        seed_spacing=fitter.seed_spacing,
        seed_rotation=fitter.seed_rotation,
    )


def _fmt(residuals: Dict[int, float]) -> str:
    return ", ".join(f"{n}: {r:.4f}" for n, r in sorted(residuals.items()))
