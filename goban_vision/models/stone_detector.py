"""
Stone & Grid Detection – Classical CV
=====================================

Turns a decoded pixel buffer into lattice evidence:

  1. **Pixel classes** – every pixel is Dark (black-stone material), Light
     (white-stone material) or Colored (board, lines, background).  Only
     near-neutral pixels can be Dark or Light: board wood and printed
     lines are tinted, stones are not.
  2. **Blobs** – 8-connected components of Dark pixels.  Printed lines are
     removed first with a morphological opening so that stones sitting on
     a line do not merge into one giant grid-shaped component.  Each blob
     gets a second-moment ellipse.
  3. **Stone filter** – a photo of a game is mostly stones, so the median
     blob size is the expected stone size.  Blobs far from it, elongated
     blobs and blobs cut by the image border are rejected.  The filter is
     deliberately conservative: a missed stone costs little, a noise blob
     accepted as a stone pulls the lattice fit off.
  4. **Grid crossings** – visible crossings of the printed lines, found as
     corners of the morphological black-hat response.  They give the
     lattice fitter evidence where no black stone sits, which is what
     makes board extent (and therefore board size) observable.

``analyze_image`` runs all four and returns an ``ImageEvidence`` bundle.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Sequence, Tuple

import cv2
import numpy as np

from goban_vision.config import (
    BlobConfig,
    CrossingConfig,
    PipelineConfig,
    PixelConfig,
    StoneFilterConfig,
)
from goban_vision.exceptions import InvalidImageError
from goban_vision.models.board import Blob, GridCrossing, Point2D, StoneDetection

log = logging.getLogger(__name__)


class PixelClass(IntEnum):
    COLORED = 0
    DARK = 1
    LIGHT = 2


@dataclass(frozen=True)
class ImageEvidence:
    """Everything the later stages need from the raw pixels."""
    classes: np.ndarray              # (H, W) uint8 of PixelClass values
    line_mask: np.ndarray            # (H, W) bool, printed grid lines
    blobs: Tuple[Blob, ...]
    stones: Tuple[StoneDetection, ...]
    crossings: Tuple[GridCrossing, ...]

    @property
    def shape(self) -> Tuple[int, int]:
        return self.classes.shape[:2]


# ── Input validation ───────────────────────────────────────────────────

def validate_image(image: np.ndarray) -> np.ndarray:
    """Return *image* as ``(H, W)`` or ``(H, W, 3)`` uint8, or raise."""
    if not isinstance(image, np.ndarray):
        raise InvalidImageError(f"Expected numpy.ndarray, got {type(image).__name__}")
    if image.dtype != np.uint8:
        raise InvalidImageError(f"Expected uint8 pixels, got {image.dtype}")
    if image.ndim == 3 and image.shape[2] == 1:
        image = image[:, :, 0]
    if image.ndim == 3 and image.shape[2] == 4:
        image = image[:, :, :3]
    if image.ndim not in (2, 3) or (image.ndim == 3 and image.shape[2] != 3):
        raise InvalidImageError(f"Unsupported image shape {image.shape}")
    if image.shape[0] < 3 or image.shape[1] < 3:
        raise InvalidImageError(f"Image too small: {image.shape}")
    return image


def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


# ── 1. Pixel classification ────────────────────────────────────────────

def classify_pixel(pixel: Sequence[int] | int, config: PixelConfig = PixelConfig()) -> PixelClass:
    """Classify a single pixel (one luminance value or a colour triple)."""
    channels = np.atleast_1d(np.asarray(pixel, dtype=np.int32))
    hi, lo = int(channels.max()), int(channels.min())
    neutral = hi - lo <= config.grayness_limit
    white = config.luminance_white_threshold if channels.size == 1 else config.white_threshold
    if neutral and hi < config.black_threshold:
        return PixelClass.DARK
    if neutral and lo > white:
        return PixelClass.LIGHT
    return PixelClass.COLORED


def classify_pixels(image: np.ndarray, config: PixelConfig = PixelConfig()) -> np.ndarray:
    """Vectorised ``classify_pixel`` over a whole buffer → ``(H, W)`` uint8."""
    img = validate_image(image)
    if img.ndim == 2:
        # No hue to tell wood from stone; a higher light bound stands in
        hi = lo = img
        neutral = np.ones(img.shape, dtype=bool)
        white = config.luminance_white_threshold
    else:
        hi = img.max(axis=2)
        lo = img.min(axis=2)
        neutral = (hi.astype(np.int16) - lo.astype(np.int16)) <= config.grayness_limit
        white = config.white_threshold

    classes = np.full(img.shape[:2], PixelClass.COLORED, dtype=np.uint8)
    classes[neutral & (hi < config.black_threshold)] = PixelClass.DARK
    classes[neutral & (lo > white)] = PixelClass.LIGHT
    return classes


# ── 2. Blob extraction ─────────────────────────────────────────────────

def extract_blobs(dark_mask: np.ndarray, config: BlobConfig = BlobConfig()) -> List[Blob]:
    """Group 8-connected dark pixels and fit an ellipse to each group.

    Parameters
    ----------
    dark_mask : np.ndarray
        ``(H, W)`` boolean / 0-1 mask of Dark pixels.
    config : BlobConfig
        Opening kernel and minimum blob extent.

    Returns
    -------
    list[Blob]
        In scan order of their first pixel.
    """
    mask = (np.asarray(dark_mask) > 0).astype(np.uint8)
    if config.opening_kernel > 1:
        k = config.opening_kernel
        kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (k, k))
        mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, kernel)

    n_labels, labels, stats, _ = cv2.connectedComponentsWithStats(mask, connectivity=8)
    h, w = mask.shape
    blobs: List[Blob] = []

    for label in range(1, n_labels):
        x = int(stats[label, cv2.CC_STAT_LEFT])
        y = int(stats[label, cv2.CC_STAT_TOP])
        bw = int(stats[label, cv2.CC_STAT_WIDTH])
        bh = int(stats[label, cv2.CC_STAT_HEIGHT])

        # Specks of noise
        if bw <= config.min_blob_extent and bh <= config.min_blob_extent:
            continue

        ys, xs = np.nonzero(labels[y:y + bh, x:x + bw] == label)
        xs = xs.astype(np.float64) + x
        ys = ys.astype(np.float64) + y

        # Semi-axes of the ellipse with the same second moments: a filled
        # ellipse with semi-axis r has variance r²/4 along that axis.
        cov = np.cov(np.vstack([xs, ys]), bias=True)
        eigvals = np.linalg.eigh(cov)[0]            # ascending
        semi_minor = 2.0 * math.sqrt(max(float(eigvals[0]), 0.0))
        semi_major = 2.0 * math.sqrt(max(float(eigvals[1]), 0.0))

        blobs.append(Blob(
            label=label,
            pixel_count=int(xs.size),
            centroid=Point2D(float(xs.mean()), float(ys.mean())),
            semi_major=semi_major,
            semi_minor=semi_minor,
            bbox=(x, y, bw, bh),
            touches_border=(x == 0 or y == 0 or x + bw >= w or y + bh >= h),
        ))

    return blobs


# ── 3. Stone filter ────────────────────────────────────────────────────

def filter_stones(
    blobs: Sequence[Blob],
    config: StoneFilterConfig = StoneFilterConfig(),
) -> List[StoneDetection]:
    """Keep blobs that look like a black stone of the dominant size.

    Confidence is ``1 / (1 + size deviation + elongation)`` where the size
    deviation is ``|count / median − 1|`` and elongation is
    ``axis_ratio − 1``.
    """
    if not blobs:
        return []

    median = float(np.median([b.pixel_count for b in blobs]))
    stones: List[StoneDetection] = []

    for blob in blobs:
        if blob.touches_border:
            continue
        ratio = blob.pixel_count / median
        if ratio < config.min_size_ratio or ratio > config.max_size_ratio:
            continue
        if blob.axis_ratio > config.max_axis_ratio:
            continue

        deviation = abs(ratio - 1.0) + (blob.axis_ratio - 1.0)
        confidence = 1.0 / (1.0 + deviation)
        if confidence < config.min_confidence:
            continue

        stones.append(StoneDetection(
            center=blob.centroid,
            radius=math.sqrt(blob.pixel_count / math.pi),
            confidence=confidence,
        ))

    stones.sort(key=lambda s: (s.center.y, s.center.x))
    return stones


# ── 4. Grid crossings ──────────────────────────────────────────────────

def grid_line_response(gray: np.ndarray, config: CrossingConfig = CrossingConfig()) -> np.ndarray:
    """Black-hat transform: how much darker each pixel is than its surroundings.

    Structures thinner than ``line_kernel`` (printed lines) respond
    strongly; stones are wider than the kernel and do not.
    """
    k = config.line_kernel
    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (k, k))
    return cv2.morphologyEx(gray, cv2.MORPH_BLACKHAT, kernel)


def detect_crossings(
    response: np.ndarray,
    classes: np.ndarray,
    config: CrossingConfig = CrossingConfig(),
) -> List[GridCrossing]:
    """Find crossings of printed grid lines.

    Parameters
    ----------
    response : np.ndarray
        Output of ``grid_line_response``.
    classes : np.ndarray
        Pixel classes; crossings are only searched away from stone
        material so that lines ending at a stone rim are not reported.
    config : CrossingConfig

    Returns
    -------
    list[GridCrossing]
        Sub-pixel crossing positions, sorted top to bottom.
    """
    strength = np.where(response >= config.line_contrast, response, 0).astype(np.uint8)
    if not strength.any():
        return []

    stone_mask = (classes != PixelClass.COLORED).astype(np.uint8)
    if config.stone_margin > 0:
        m = 2 * config.stone_margin + 1
        kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (m, m))
        stone_mask = cv2.dilate(stone_mask, kernel)
    allowed = np.where(stone_mask == 0, 255, 0).astype(np.uint8)

    corners = cv2.goodFeaturesToTrack(
        strength,
        maxCorners=config.max_crossings,
        qualityLevel=config.quality_level,
        minDistance=config.min_distance,
        mask=allowed,
        blockSize=config.block_size,
    )
    if corners is None:
        return []

    # Corners come strongest first; several can land on one printed
    # crossing and refine onto the same point, so only the first is kept.
    weights = strength.astype(np.float32)
    kept: List[Tuple[float, float]] = []
    for x, y in corners.reshape(-1, 2):
        rx, ry = _refine_crossing(weights, float(x), float(y), config)
        if any(math.hypot(rx - kx, ry - ky) < config.min_distance for kx, ky in kept):
            continue
        kept.append((rx, ry))

    crossings = [
        GridCrossing(center=Point2D(x, y), confidence=config.crossing_confidence)
        for x, y in kept
    ]

    crossings.sort(key=lambda c: (c.center.y, c.center.x))
    return crossings


def _refine_crossing(
    weights: np.ndarray, x: float, y: float, config: CrossingConfig,
) -> Tuple[float, float]:
    """Mean-shift the crossing onto the centre of line mass around it."""
    radius = config.refine_radius
    size = 2 * radius + 1
    offsets = np.arange(size, dtype=np.float32) - radius
    h, w = weights.shape

    for _ in range(config.refine_iterations):
        patch = cv2.getRectSubPix(weights, (size, size), (x, y))
        total = float(patch.sum())
        if total <= 0:
            break
        dx = float((patch.sum(axis=0) * offsets).sum()) / total
        dy = float((patch.sum(axis=1) * offsets).sum()) / total
        x = min(max(x + dx, 0.0), w - 1.0)
        y = min(max(y + dy, 0.0), h - 1.0)
        if abs(dx) < 0.05 and abs(dy) < 0.05:
            break

    return x, y


# ── Public API ─────────────────────────────────────────────────────────

def analyze_image(
    image: np.ndarray,
    config: PipelineConfig = PipelineConfig(),
) -> ImageEvidence:
    """Run pixel classification, blob extraction, stone filter and
    crossing detection on a BGR or luminance buffer.
    """
    img = validate_image(image)
    classes = classify_pixels(img, config.pixels)

    blobs = extract_blobs(classes == PixelClass.DARK, config.blobs)
    stones = filter_stones(blobs, config.stones)

    response = grid_line_response(to_gray(img), config.crossings)
    line_mask = response >= config.crossings.line_contrast
    crossings = detect_crossings(response, classes, config.crossings)

    log.info(
        "Detected %d black stones (%d blobs) and %d grid crossings",
        len(stones), len(blobs), len(crossings),
    )
    return ImageEvidence(
        classes=classes,
        line_mask=line_mask,
        blobs=tuple(blobs),
        stones=tuple(stones),
        crossings=tuple(crossings),
    )
