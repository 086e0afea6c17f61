"""
Synthetic Board Photos
======================

Renders go boards from a known ``LatticeModel`` so the pipeline can be
exercised without a camera:

  • wooden board (tinted, so it never reads as stone material)
  • printed grid lines and star points in a dark, non-neutral ink
  • black and white stones, white ones with a thin grey rim
  • optional Gaussian sensor noise and JPEG artefacts (Pillow)

All drawing is anti-aliased and uses OpenCV's fixed-point ``shift`` so
sub-pixel lattice positions are honoured.
"""

from __future__ import annotations

import io
import math
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from goban_vision.models.board import LatticeModel, Point2D, Stone

# BGR colours
WOOD = (92, 170, 218)
INK = (40, 60, 85)
BLACK_STONE = (28, 28, 28)
WHITE_STONE = (228, 228, 228)
WHITE_RIM = (150, 150, 150)
BACKGROUND = (60, 100, 45)

STONE_RADIUS = 0.46         # × spacing
BOARD_MARGIN = 0.8          # × spacing, wood beyond the outer lines
LINE_THICKNESS = 2

_SHIFT = 4
_SCALE = 1 << _SHIFT

STAR_POINTS: Dict[int, Tuple[Tuple[int, int], ...]] = {
    9: ((2, 2), (2, 6), (4, 4), (6, 2), (6, 6)),
    13: ((3, 3), (3, 9), (6, 6), (9, 3), (9, 9)),
    19: tuple((r, c) for r in (3, 9, 15) for c in (3, 9, 15)),
}


@dataclass
class SyntheticBoard:
    """A rendered photo together with its ground truth."""
    image: np.ndarray
    lattice: LatticeModel
    stones: Dict[Tuple[int, int], Stone] = field(default_factory=dict)


def _fixed(x: float, y: float) -> Tuple[int, int]:
    return int(round(x * _SCALE)), int(round(y * _SCALE))


def image_size_for(board_size: int, spacing: float, rotation: float = 0.0) -> int:
    """Side of a square image that holds the rotated board with some background."""
    extent = (board_size - 1 + 2 * BOARD_MARGIN) * spacing
    theta = math.radians(rotation)
    return int(math.ceil(extent * (abs(math.cos(theta)) + abs(math.sin(theta))) + 2 * spacing))


def default_lattice(
    board_size: int = 19,
    spacing: float = 32.0,
    rotation: float = 0.0,
    image_size: Optional[int] = None,
) -> LatticeModel:
    """Lattice centred in a square image of *image_size* pixels."""
    side = image_size or image_size_for(board_size, spacing, rotation)
    theta = math.radians(rotation)
    a, b = spacing * math.cos(theta), spacing * math.sin(theta)
    h = (board_size - 1) / 2.0
    cx = cy = (side - 1) / 2.0
    return LatticeModel(
        board_size=board_size,
        a=a,
        b=b,
        origin=_origin_for_centre(a, b, h, cx, cy),
    )


def _origin_for_centre(a: float, b: float, h: float, cx: float, cy: float) -> Point2D:
    return Point2D(cx - (a * h - b * h), cy - (b * h + a * h))


def render_board(
    lattice: LatticeModel,
    stones: Optional[Dict[Tuple[int, int], Stone]] = None,
    image_size: Optional[Tuple[int, int]] = None,
    noise_sigma: float = 0.0,
    jpeg_quality: Optional[int] = None,
    seed: Optional[int] = None,
    star_points: bool = True,
) -> np.ndarray:
    """Draw a board photo.

    Parameters
    ----------
    lattice : LatticeModel
        Where the intersections go.
    stones : dict, optional
        ``(row, col) → Stone``; empty cells may be omitted.
    image_size : (width, height), optional
        Defaults to a square that fits the (rotated) board.
    noise_sigma : float
        Standard deviation of additive Gaussian noise (0 = none).
    jpeg_quality : int, optional
        Re-encode as JPEG at this quality to add compression artefacts.
    seed : int, optional
        Seed for the noise generator.

    Returns
    -------
    np.ndarray
        ``(H, W, 3)`` uint8 BGR image.
    """
    n = lattice.board_size
    s = lattice.spacing
    if image_size is None:
        side = image_size_for(n, s, lattice.rotation_degrees)
        image_size = (side, side)
    width, height = image_size

    img = np.empty((height, width, 3), dtype=np.uint8)
    img[:] = BACKGROUND

    # Board
    m = BOARD_MARGIN
    corners = [
        lattice.project(-m, -m),
        lattice.project(-m, n - 1 + m),
        lattice.project(n - 1 + m, n - 1 + m),
        lattice.project(n - 1 + m, -m),
    ]
    poly = np.array([_fixed(p.x, p.y) for p in corners], dtype=np.int32)
    cv2.fillPoly(img, [poly], WOOD, cv2.LINE_AA, _SHIFT)

    # Grid
    for i in range(n):
        for p, q in ((lattice.project(i, 0), lattice.project(i, n - 1)),
                     (lattice.project(0, i), lattice.project(n - 1, i))):
            cv2.line(img, _fixed(p.x, p.y), _fixed(q.x, q.y), INK,
                     LINE_THICKNESS, cv2.LINE_AA, _SHIFT)

    if star_points:
        dot = int(round(max(2.0, 0.1 * s) * _SCALE))
        for r, c in STAR_POINTS[n]:
            p = lattice.project(r, c)
            cv2.circle(img, _fixed(p.x, p.y), dot, INK, -1, cv2.LINE_AA, _SHIFT)

    # Stones
    radius = int(round(STONE_RADIUS * s * _SCALE))
    for (r, c), stone in (stones or {}).items():
        if stone == Stone.EMPTY:
            continue
        p = _fixed(*lattice.project(r, c).as_tuple())
        if stone == Stone.BLACK:
            cv2.circle(img, p, radius, BLACK_STONE, -1, cv2.LINE_AA, _SHIFT)
        else:
            cv2.circle(img, p, radius, WHITE_STONE, -1, cv2.LINE_AA, _SHIFT)
            cv2.circle(img, p, radius, WHITE_RIM, 1, cv2.LINE_AA, _SHIFT)

    if noise_sigma > 0:
        rng = np.random.default_rng(seed)
        noisy = img.astype(np.float32) + rng.normal(0.0, noise_sigma, img.shape)
        img = np.clip(np.rint(noisy), 0, 255).astype(np.uint8)

    if jpeg_quality is not None:
        img = jpeg_compress(img, jpeg_quality)

    return img


def jpeg_compress(image: np.ndarray, quality: int = 85) -> np.ndarray:
    """Round-trip a BGR image through JPEG to add compression artefacts."""
    rgb = Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGR2RGB))
    buffer = io.BytesIO()
    rgb.save(buffer, format="JPEG", quality=quality)
    buffer.seek(0)
    decoded = np.asarray(Image.open(buffer).convert("RGB"))
    return cv2.cvtColor(decoded, cv2.COLOR_RGB2BGR)


def random_position(
    board_size: int,
    black: int = 20,
    white: int = 20,
    seed: Optional[int] = None,
) -> Dict[Tuple[int, int], Stone]:
    """Place *black* and *white* stones on distinct random intersections."""
    if black + white > board_size * board_size:
        raise ValueError("More stones than intersections")
    rng = np.random.default_rng(seed)
    cells = rng.choice(board_size * board_size, size=black + white, replace=False)
    position: Dict[Tuple[int, int], Stone] = {}
    for i, idx in enumerate(cells):
        rc = divmod(int(idx), board_size)
        position[rc] = Stone.BLACK if i < black else Stone.WHITE
    return position


def make_board(
    board_size: int = 19,
    spacing: float = 32.0,
    rotation: float = 0.0,
    black: int = 20,
    white: int = 20,
    seed: int = 0,
    noise_sigma: float = 0.0,
    jpeg_quality: Optional[int] = None,
    stones: Optional[Dict[Tuple[int, int], Stone]] = None,
) -> SyntheticBoard:
    """Random position rendered on a centred lattice."""
    lattice = default_lattice(board_size, spacing, rotation)
    if stones is None:
        stones = random_position(board_size, black, white, seed)
    image = render_board(
        lattice,
        stones,
        noise_sigma=noise_sigma,
        jpeg_quality=jpeg_quality,
        seed=seed,
    )
    return SyntheticBoard(image=image, lattice=lattice, stones=dict(stones))


def scatter_discs(
    image_size: int = 600,
    count: int = 40,
    radius: float = 12.0,
    seed: Optional[int] = None,
) -> np.ndarray:
    """Dark discs at random positions on a plain background (no board)."""
    rng = np.random.default_rng(seed)
    img = np.empty((image_size, image_size, 3), dtype=np.uint8)
    img[:] = BACKGROUND
    r = int(round(radius * _SCALE))
    lo, hi = 2 * radius, image_size - 2 * radius
    for x, y in rng.uniform(lo, hi, size=(count, 2)):
        cv2.circle(img, _fixed(float(x), float(y)), r, BLACK_STONE, -1, cv2.LINE_AA, _SHIFT)
    return img
