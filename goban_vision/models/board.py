"""
Board Data Model – Stones, Lattice, Intersections
=================================================

All artefacts passed between pipeline stages live here.  Every type is an
immutable (frozen) dataclass: a stage consumes the previous stage's output
and produces a new object, it never edits one in place.

Coordinate conventions:
  • Image coordinates are ``(x, y)`` pixels, ``y`` growing downwards.
  • Lattice coordinates are ``(row, col)``; ``col`` follows the lattice's
    first axis ``(a, b)`` and ``row`` its second axis ``(-b, a)``.
  • A lattice point projects to ``origin + (a·col − b·row, b·col + a·row)``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np


# ── Canonical board sizes ──────────────────────────────────────────────

BOARD_SIZES: Tuple[int, ...] = (9, 13, 19)


class Stone(str, Enum):
    """State of a single intersection."""
    EMPTY = "empty"
    BLACK = "black"
    WHITE = "white"


# Single-character symbols used by the text rendering helpers
STONE_TO_CHAR: Dict[Stone, str] = {
    Stone.EMPTY: ".",
    Stone.BLACK: "X",
    Stone.WHITE: "O",
}
CHAR_TO_STONE: Dict[str, Stone] = {ch: st for st, ch in STONE_TO_CHAR.items()}


# ── Geometry primitives ────────────────────────────────────────────────

@dataclass(frozen=True)
class Point2D:
    """Real-valued pixel position."""
    x: float
    y: float

    def distance_to(self, other: "Point2D") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def as_tuple(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class Blob:
    """A connected group of dark pixels and its fitted ellipse."""
    label: int
    pixel_count: int
    centroid: Point2D
    semi_major: float                       # a, from the larger eigenvalue
    semi_minor: float                       # b, from the smaller eigenvalue
    bbox: Tuple[int, int, int, int]         # x, y, width, height
    touches_border: bool = False

    @property
    def axis_ratio(self) -> float:
        if self.semi_minor <= 0:
            return math.inf
        return self.semi_major / self.semi_minor


@dataclass(frozen=True)
class StoneDetection:
    """A confidently detected black stone."""
    center: Point2D
    radius: float
    confidence: float


@dataclass(frozen=True)
class GridCrossing:
    """A visible crossing of two printed grid lines."""
    center: Point2D
    confidence: float


# ── Lattice ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LatticeModel:
    """Rotation + uniform scale + translation of the integer lattice.

    The linear part is ``[[a, -b], [b, a]]``; ``hypot(a, b)`` is the
    distance between neighbouring intersections and ``atan2(b, a)`` the
    in-plane rotation.
    """
    board_size: int
    a: float
    b: float
    origin: Point2D

    def __post_init__(self) -> None:
        if self.board_size not in BOARD_SIZES:
            raise ValueError(
                f"board_size must be one of {BOARD_SIZES}, got {self.board_size}"
            )
        if self.a == 0 and self.b == 0:
            raise ValueError("Degenerate lattice: a and b are both zero")

    @classmethod
    def from_geometry(
        cls,
        board_size: int,
        spacing: float,
        rotation_degrees: float,
        origin: Tuple[float, float],
    ) -> "LatticeModel":
        """Build a lattice from spacing / angle instead of ``(a, b)``."""
        theta = math.radians(rotation_degrees)
        return cls(
            board_size=board_size,
            a=spacing * math.cos(theta),
            b=spacing * math.sin(theta),
            origin=Point2D(float(origin[0]), float(origin[1])),
        )

    @property
    def spacing(self) -> float:
        return math.hypot(self.a, self.b)

    @property
    def rotation_degrees(self) -> float:
        return math.degrees(math.atan2(self.b, self.a))

    @property
    def col_axis(self) -> Tuple[float, float]:
        """Unit vector along increasing column index."""
        s = self.spacing
        return (self.a / s, self.b / s)

    @property
    def row_axis(self) -> Tuple[float, float]:
        """Unit vector along increasing row index."""
        s = self.spacing
        return (-self.b / s, self.a / s)

    def project(self, row: float, col: float) -> Point2D:
        """Image position of lattice point ``(row, col)``."""
        return Point2D(
            self.origin.x + self.a * col - self.b * row,
            self.origin.y + self.b * col + self.a * row,
        )

    def positions(self) -> np.ndarray:
        """All intersections as an ``(n, n, 2)`` array indexed ``[row, col]``."""
        n = self.board_size
        rows, cols = np.mgrid[0:n, 0:n].astype(np.float64)
        xs = self.origin.x + self.a * cols - self.b * rows
        ys = self.origin.y + self.b * cols + self.a * rows
        return np.stack([xs, ys], axis=-1)

    def lattice_coordinates(self, points: np.ndarray) -> np.ndarray:
        """Inverse transform: ``(N, 2)`` image points → ``(N, 2)`` ``(col, row)``."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        dx = pts[:, 0] - self.origin.x
        dy = pts[:, 1] - self.origin.y
        norm = self.a * self.a + self.b * self.b
        cols = (self.a * dx + self.b * dy) / norm
        rows = (-self.b * dx + self.a * dy) / norm
        return np.stack([cols, rows], axis=1)

    def nearest_intersections(
        self, points: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Nearest on-board intersection for each point.

        Returns ``(rc, sq_dist)`` where ``rc`` is an ``(N, 2)`` int array of
        ``(row, col)`` and ``sq_dist`` the squared pixel distances.
        """
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        coords = self.lattice_coordinates(pts)
        n = self.board_size
        cols = np.clip(np.rint(coords[:, 0]), 0, n - 1)
        rows = np.clip(np.rint(coords[:, 1]), 0, n - 1)
        px = self.origin.x + self.a * cols - self.b * rows
        py = self.origin.y + self.b * cols + self.a * rows
        sq = (pts[:, 0] - px) ** 2 + (pts[:, 1] - py) ** 2
        rc = np.stack([rows, cols], axis=1).astype(np.int64)
        return rc, sq


# ── Board state ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Intersection:
    """Classified lattice point."""
    row: int
    col: int
    position: Point2D
    state: Stone
    confidence: float
    ambiguous: bool = False


@dataclass(frozen=True)
class BoardState:
    """Final, externally visible artefact of one pipeline run.

    ``grid`` is a read-only mapping; it is left out of the hash.
    """
    board_size: int
    top_left: Point2D
    bottom_right: Point2D
    grid: Mapping[Tuple[int, int], Intersection] = field(hash=False)
    confidence: float
    lattice: LatticeModel
    residual: float
    detections: Tuple[StoneDetection, ...] = field(default_factory=tuple)

    def __getitem__(self, key: Tuple[int, int]) -> Intersection:
        return self.grid[key]

    def stone_at(self, row: int, col: int) -> Stone:
        return self.grid[(row, col)].state

    def stones(self, color: Stone) -> List[Tuple[int, int]]:
        """Sorted ``(row, col)`` of every intersection in *color*."""
        return sorted(k for k, v in self.grid.items() if v.state == color)

    def count(self, color: Stone) -> int:
        return sum(1 for v in self.grid.values() if v.state == color)

    def as_rows(self) -> List[List[Stone]]:
        n = self.board_size
        return [[self.grid[(r, c)].state for c in range(n)] for r in range(n)]

    def ambiguous_cells(self) -> List[Tuple[int, int]]:
        return sorted(k for k, v in self.grid.items() if v.ambiguous)


def points_array(items: Sequence[object]) -> np.ndarray:
    """Stack the ``center`` of detections / crossings into an ``(N, 2)`` array."""
    if not items:
        return np.zeros((0, 2), dtype=np.float64)
    return np.array(
        [(it.center.x, it.center.y) for it in items],  # type: ignore[attr-defined]
        dtype=np.float64,
    )


def confidences_array(items: Sequence[object]) -> np.ndarray:
    if not items:
        return np.zeros((0,), dtype=np.float64)
    return np.array([it.confidence for it in items], dtype=np.float64)  # type: ignore[attr-defined]
