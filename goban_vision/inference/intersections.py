"""
Intersection Classification – Empty / Black / White
===================================================

Every intersection of the fitted lattice gets a state:

  • **Black** – a filtered stone detection lies within
    ``stone_match_tolerance · spacing``.  Failing that, a disc that is
    mostly Dark pixels still reads as Black, at reduced confidence; this
    keeps a stone black when its detection was lost to occlusion or the
    size filter.
  • **White** – the annulus around the intersection is mostly Light.  The
    centre of the disc is left out so a glare spot or a printed star point
    does not decide the colour.
  • **Empty** – the printed lines are visible through the intersection
    along both lattice directions.
  • Anything else is reported Empty with ``ambiguous = True``.

All sampling is vectorised: one set of disc offsets and one set of
cross offsets is built per lattice and applied to every intersection at
once.
"""

from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

import cv2
import numpy as np

from goban_vision.config import ClassifierConfig
from goban_vision.models.board import (
    Intersection,
    LatticeModel,
    Point2D,
    Stone,
    StoneDetection,
    points_array,
)
from goban_vision.models.stone_detector import PixelClass

log = logging.getLogger(__name__)


class IntersectionClassifier:
    """Classify lattice intersections from the pixel-class map.

    Parameters
    ----------
    classes : np.ndarray
        ``(H, W)`` array of ``PixelClass`` values.
    line_mask : np.ndarray
        ``(H, W)`` boolean mask of printed grid-line pixels.
    config : ClassifierConfig
    """

    def __init__(
        self,
        classes: np.ndarray,
        line_mask: np.ndarray,
        config: ClassifierConfig = ClassifierConfig(),
    ) -> None:
        self.config = config
        self.dark = classes == PixelClass.DARK
        self.light = classes == PixelClass.LIGHT
        # Widen the lines a little so a sub-pixel lattice error still hits them
        self.lines = cv2.dilate(
            line_mask.astype(np.uint8), np.ones((3, 3), np.uint8),
        ).astype(bool)
        self.height, self.width = classes.shape[:2]

    # ── Public API ─────────────────────────────────────────────────────

    def classify(
        self,
        lattice: LatticeModel,
        detections: Sequence[StoneDetection] = (),
    ) -> List[Intersection]:
        """Classify all ``n²`` intersections, row-major."""
        cfg = self.config
        n = lattice.board_size
        spacing = lattice.spacing
        centres = lattice.positions().reshape(-1, 2)

        matched_conf = self._match_detections(lattice, detections)

        disc, ring = self._disc_offsets(spacing)
        light_ring, ring_count = self._fraction(centres, disc[ring], self.light)
        light_disc, disc_count = self._fraction(centres, disc, self.light)
        dark_disc, _ = self._fraction(centres, disc, self.dark)
        cross, _ = self._fraction(centres, self._cross_offsets(lattice), self.lines)

        intersections: List[Intersection] = []
        for idx in range(n * n):
            row, col = divmod(idx, n)
            position = Point2D(float(centres[idx, 0]), float(centres[idx, 1]))

            if matched_conf[idx] > 0:
                state, conf, ambiguous = Stone.BLACK, float(matched_conf[idx]), False
            elif disc_count[idx] == 0:
                # Intersection projects outside the image
                state, conf, ambiguous = Stone.EMPTY, 0.0, True
            else:
                state, conf, ambiguous = self._decide(
                    light_ring[idx] if ring_count[idx] else 0.0,
                    light_disc[idx],
                    dark_disc[idx],
                    cross[idx],
                )

            if conf < cfg.ambiguity_threshold:
                ambiguous = True
            intersections.append(Intersection(
                row=row,
                col=col,
                position=position,
                state=state,
                confidence=conf,
                ambiguous=ambiguous,
            ))

        log.debug(
            "Classified %d intersections: %d black, %d white, %d ambiguous",
            len(intersections),
            sum(1 for i in intersections if i.state == Stone.BLACK),
            sum(1 for i in intersections if i.state == Stone.WHITE),
            sum(1 for i in intersections if i.ambiguous),
        )
        return intersections

    # ── Decision ───────────────────────────────────────────────────────

    def _decide(
        self, light_ring: float, light_disc: float, dark_disc: float, cross: float,
    ) -> Tuple[Stone, float, bool]:
        cfg = self.config
        if light_ring >= cfg.white_ring_fraction:
            return Stone.WHITE, min(1.0, light_ring), False
        if dark_disc >= cfg.black_disc_fraction:
            return Stone.BLACK, cfg.patch_black_weight * dark_disc, False
        stone_material = max(light_disc, dark_disc)
        if cross >= cfg.empty_cross_fraction:
            conf = min(1.0, cross / 0.5) * (1.0 - stone_material)
            return Stone.EMPTY, conf, False
        return Stone.EMPTY, 0.5 * cross * (1.0 - stone_material), True

    def _match_detections(
        self, lattice: LatticeModel, detections: Sequence[StoneDetection],
    ) -> np.ndarray:
        """Per intersection, the confidence of the detection sitting on it (0 if none)."""
        n = lattice.board_size
        conf = np.zeros(n * n, dtype=np.float64)
        if not detections:
            return conf
        rc, sq = lattice.nearest_intersections(points_array(detections))
        limit = (self.config.stone_match_tolerance * lattice.spacing) ** 2
        for (row, col), d2, det in zip(rc, sq, detections):
            if d2 <= limit:
                idx = int(row) * n + int(col)
                conf[idx] = max(conf[idx], det.confidence)
        return conf

    # ── Sampling ───────────────────────────────────────────────────────

    def _disc_offsets(self, spacing: float) -> Tuple[np.ndarray, np.ndarray]:
        """Integer offsets inside the patch disc, and which of them form the ring."""
        radius = self.config.patch_radius * spacing
        inner = self.config.ring_inner * spacing
        r = int(np.ceil(radius))
        dy, dx = np.mgrid[-r:r + 1, -r:r + 1]
        dist = np.hypot(dx, dy)
        inside = dist <= radius
        offsets = np.stack([dx[inside], dy[inside]], axis=1).astype(np.float64)
        return offsets, dist[inside] >= inner

    def _cross_offsets(self, lattice: LatticeModel) -> np.ndarray:
        """Sample points along both lattice directions through the centre."""
        cfg = self.config
        reach = cfg.patch_radius * lattice.spacing
        t = np.linspace(-reach, reach, max(2, cfg.cross_samples // 2))
        ux, uy = lattice.col_axis
        vx, vy = lattice.row_axis
        along_col = np.stack([t * ux, t * uy], axis=1)
        along_row = np.stack([t * vx, t * vy], axis=1)
        return np.vstack([along_col, along_row])

    def _fraction(
        self, centres: np.ndarray, offsets: np.ndarray, mask: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Fraction of in-image samples that hit *mask*, and the sample count."""
        xs = np.rint(centres[:, 0, None] + offsets[None, :, 0]).astype(np.int64)
        ys = np.rint(centres[:, 1, None] + offsets[None, :, 1]).astype(np.int64)
        inside = (xs >= 0) & (xs < self.width) & (ys >= 0) & (ys < self.height)
        hits = np.zeros(xs.shape, dtype=bool)
        hits[inside] = mask[ys[inside], xs[inside]]
        count = inside.sum(axis=1)
        fraction = np.where(count > 0, hits.sum(axis=1) / np.maximum(count, 1), 0.0)
        return fraction, count
