"""
Board Utilities – Assembly, Text Form & Scoring
===============================================

Responsibilities:
  1. Assemble the classified intersections into the final ``BoardState``:
     corner extrapolation, confidence floor, overall confidence.
  2. Render a board as text rows (``.`` empty, ``X`` black, ``O`` white)
     and parse such rows back.
  3. Count an area score: stones on the board plus empty regions that
     touch only one colour.

The confidence floor is *conservative*: a low-confidence cell is never
given a colour, it is reported empty and flagged ambiguous so callers can
ask for a better photo or a manual fix.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from goban_vision.config import AssemblerConfig, FitterConfig
from goban_vision.models.board import (
    BOARD_SIZES,
    CHAR_TO_STONE,
    STONE_TO_CHAR,
    BoardState,
    Intersection,
    LatticeModel,
    Stone,
    StoneDetection,
)

log = logging.getLogger(__name__)


# ── Assembly ───────────────────────────────────────────────────────────

def assemble_board(
    lattice: LatticeModel,
    intersections: Sequence[Intersection],
    detections: Sequence[StoneDetection] = (),
    residual: float = 0.0,
    config: AssemblerConfig = AssemblerConfig(),
    residual_tolerance: float = FitterConfig().residual_tolerance,
) -> BoardState:
    """Build the final ``BoardState`` from classified intersections.

    Parameters
    ----------
    lattice : LatticeModel
        Selected lattice.
    intersections : list[Intersection]
        Exactly ``board_size²`` classified intersections.
    detections : list[StoneDetection]
        Filtered stone detections, kept on the result for callers.
    residual : float
        Normalised residual of the selected fit.
    config : AssemblerConfig
    residual_tolerance : float
        Residual at which the fit quality drops to zero.

    Returns
    -------
    BoardState
    """
    n = lattice.board_size
    if len(intersections) != n * n:
        raise ValueError(f"Expected {n * n} intersections, got {len(intersections)}")

    grid: Dict[Tuple[int, int], Intersection] = {}
    floored = 0
    for cell in intersections:
        if cell.confidence < config.confidence_floor and not (
            cell.state == Stone.EMPTY and cell.ambiguous
        ):
            floored += int(cell.state != Stone.EMPTY)
            cell = Intersection(
                row=cell.row,
                col=cell.col,
                position=cell.position,
                state=Stone.EMPTY,
                confidence=cell.confidence,
                ambiguous=True,
            )
        grid[(cell.row, cell.col)] = cell

    if len(grid) != n * n:
        raise ValueError("Intersections do not cover every (row, col) exactly once")

    if floored:
        log.info("%d low-confidence stones reported as empty", floored)

    mean_conf = float(np.mean([c.confidence for c in grid.values()]))
    quality = float(np.clip(1.0 - residual / residual_tolerance, 0.0, 1.0)) if residual_tolerance > 0 else 1.0

    return BoardState(
        board_size=n,
        top_left=lattice.project(0, 0),
        bottom_right=lattice.project(n - 1, n - 1),
        grid=MappingProxyType(grid),
        confidence=mean_conf * quality,
        lattice=lattice,
        residual=residual,
        detections=tuple(detections),
    )


# ── Text form ──────────────────────────────────────────────────────────

BoardLike = Union[BoardState, Sequence[Sequence[Stone]]]


def _rows(board: BoardLike) -> List[List[Stone]]:
    if isinstance(board, BoardState):
        return board.as_rows()
    return [list(row) for row in board]


def board_to_text(board: BoardLike) -> str:
    """Render a board as ``n`` lines of ``.``, ``X`` and ``O``."""
    return "\n".join(
        "".join(STONE_TO_CHAR[Stone(s)] for s in row) for row in _rows(board)
    )


def parse_board_text(text: str) -> List[List[Stone]]:
    """Parse the output of ``board_to_text``.

    Whitespace inside a row is ignored, so ``". X O"`` also works.

    Raises
    ------
    ValueError
        On unknown symbols, ragged rows, or a size other than 9, 13 or 19.
    """
    rows: List[List[Stone]] = []
    for lineno, line in enumerate(text.strip().splitlines(), start=1):
        symbols = "".join(line.split())
        if not symbols:
            continue
        try:
            rows.append([CHAR_TO_STONE[ch] for ch in symbols])
        except KeyError as e:
            raise ValueError(f"Unknown symbol {e.args[0]!r} on line {lineno}") from e

    n = len(rows)
    if n not in BOARD_SIZES:
        raise ValueError(f"Board must have 9, 13 or 19 rows, got {n}")
    for i, row in enumerate(rows, start=1):
        if len(row) != n:
            raise ValueError(f"Row {i} has {len(row)} points, expected {n}")
    return rows


# ── Scoring ────────────────────────────────────────────────────────────

@dataclass
class ScoreResult:
    """Area score of a position."""
    black: float
    white: float                                  # includes komi
    komi: float
    territory: List[List[Optional[Stone]]] = field(default_factory=list)

    @property
    def margin(self) -> float:
        """Positive when Black leads."""
        return self.black - self.white

    @property
    def winner(self) -> Optional[Stone]:
        if self.margin > 0:
            return Stone.BLACK
        if self.margin < 0:
            return Stone.WHITE
        return None

    def summary(self) -> str:
        if self.winner is None:
            return f"Jigo ({self.black:g} – {self.white:g})"
        name = "B" if self.winner == Stone.BLACK else "W"
        return f"{name}+{abs(self.margin):g}"


def score_board(board: BoardLike, komi: float = 6.5) -> ScoreResult:
    """Count an area (Chinese) score.

    Every stone counts one point for its colour.  An empty region counts
    for a colour when every stone bordering it has that colour; regions
    touching both colours (or none) are neutral.  No dead-stone removal
    is attempted: the position is scored as it stands.
    """
    rows = _rows(board)
    n = len(rows)
    territory: List[List[Optional[Stone]]] = [[None] * n for _ in range(n)]
    seen = [[False] * n for _ in range(n)]
    points = {Stone.BLACK: 0, Stone.WHITE: 0}

    for r in range(n):
        for c in range(n):
            if rows[r][c] != Stone.EMPTY:
                points[rows[r][c]] += 1
                continue
            if seen[r][c]:
                continue

            # Flood-fill the empty region and collect its bordering colours
            region: List[Tuple[int, int]] = []
            borders = set()
            queue = deque([(r, c)])
            seen[r][c] = True
            while queue:
                y, x = queue.popleft()
                region.append((y, x))
                for ny, nx in ((y - 1, x), (y + 1, x), (y, x - 1), (y, x + 1)):
                    if not (0 <= ny < n and 0 <= nx < n):
                        continue
                    state = rows[ny][nx]
                    if state != Stone.EMPTY:
                        borders.add(state)
                    elif not seen[ny][nx]:
                        seen[ny][nx] = True
                        queue.append((ny, nx))

            if len(borders) == 1:
                owner = borders.pop()
                points[owner] += len(region)
                for y, x in region:
                    territory[y][x] = owner

    return ScoreResult(
        black=float(points[Stone.BLACK]),
        white=float(points[Stone.WHITE]) + komi,
        komi=komi,
        territory=territory,
    )
