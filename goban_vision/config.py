"""Pipeline configuration.

Every stage reads its own frozen dataclass; ``PipelineConfig`` bundles them.
All options have defaults, so ``PipelineConfig()`` is a working setup.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

from goban_vision.exceptions import InvalidConfigError

log = logging.getLogger(__name__)

SUPPORTED_BOARD_SIZES = {9, 13, 19}


@dataclass(frozen=True)
class PixelConfig:
    black_threshold: int = 60       # every channel below → candidate dark
    white_threshold: int = 170      # every channel above → candidate light
    grayness_limit: int = 24        # max channel spread for a neutral pixel
    luminance_white_threshold: int = 200  # light bound for single-channel input


@dataclass(frozen=True)
class BlobConfig:
    opening_kernel: int = 5         # removes printed lines from the dark mask
    min_blob_extent: int = 5


@dataclass(frozen=True)
class StoneFilterConfig:
    min_size_ratio: float = 0.5
    max_size_ratio: float = 2.0
    max_axis_ratio: float = 1.6
    min_confidence: float = 0.5


@dataclass(frozen=True)
class CrossingConfig:
    line_kernel: int = 9
    line_contrast: int = 25
    max_crossings: int = 1500
    quality_level: float = 0.1
    min_distance: int = 6
    block_size: int = 5
    stone_margin: int = 4
    refine_radius: int = 4
    refine_iterations: int = 4
    crossing_confidence: float = 0.6


@dataclass(frozen=True)
class FitterConfig:
    board_sizes: Tuple[int, ...] = (9, 13, 19)
    position_epsilon: float = 0.25
    scale_epsilon: float = 0.01
    max_iterations: int = 400
    match_gate: float = 0.3
    residual_tolerance: float = 0.05
    coverage_weight: float = 0.5
    min_matched: int = 4
    min_anchors: int = 6
    min_spacing: float = 8.0        # pixels; closer anchor pairs are not neighbours
    seed_iterations: int = 50
    seed_epsilon: float = 0.05
    polish_iterations: int = 5
    fit_workers: int = 3


@dataclass(frozen=True)
class ClassifierConfig:
    stone_match_tolerance: float = 0.3
    patch_radius: float = 0.42
    ring_inner: float = 0.22
    white_ring_fraction: float = 0.5
    black_disc_fraction: float = 0.5
    patch_black_weight: float = 0.7
    empty_cross_fraction: float = 0.35
    cross_samples: int = 24
    ambiguity_threshold: float = 0.25


@dataclass(frozen=True)
class AssemblerConfig:
    confidence_floor: float = 0.2


@dataclass(frozen=True)
class PipelineConfig:
    pixels: PixelConfig = field(default_factory=PixelConfig)
    blobs: BlobConfig = field(default_factory=BlobConfig)
    stones: StoneFilterConfig = field(default_factory=StoneFilterConfig)
    crossings: CrossingConfig = field(default_factory=CrossingConfig)
    fitter: FitterConfig = field(default_factory=FitterConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    assembler: AssemblerConfig = field(default_factory=AssemblerConfig)

    def with_overrides(self, **sections: Dict[str, Any]) -> "PipelineConfig":
        """Return a copy with individual values replaced.

        Example::

            cfg.with_overrides(fitter={"max_iterations": 50})
        """
        return _build(sections, base=self)


def load_config(path: Path) -> PipelineConfig:
    """Load a configuration from a YAML file.

    Sections and keys mirror the dataclass names, e.g.::

        pixels:
          black_threshold: 45
        fitter:
          board_sizes: [19]

    Missing sections keep their defaults.

    Raises
    ------
    InvalidConfigError
        If the file is missing, is not valid YAML, or contains unknown
        sections, unknown keys or badly typed values.
    """
    path = Path(path)
    log.info("Loading configuration from %s", path)
    if not path.exists():
        raise InvalidConfigError(f"Configuration file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise InvalidConfigError(f"Failed to parse configuration file: {e}") from e

    if not isinstance(data, dict):
        raise InvalidConfigError("Configuration root must be a mapping")
    return _build(data, base=PipelineConfig())


def _build(data: Dict[str, Any], base: PipelineConfig) -> PipelineConfig:
    sections = {f.name: getattr(base, f.name) for f in dataclasses.fields(base)}

    for name, values in data.items():
        if name not in sections:
            raise InvalidConfigError(f"Unknown configuration section: {name!r}")
        if values is None:
            continue
        if not isinstance(values, dict):
            raise InvalidConfigError(f"Section {name!r} must be a mapping")

        current = sections[name]
        known = {f.name: f for f in dataclasses.fields(current)}
        updates: Dict[str, Any] = {}
        for key, value in values.items():
            if key not in known:
                raise InvalidConfigError(f"Unknown key {name}.{key}")
            updates[key] = _coerce(name, key, getattr(current, key), value)
        sections[name] = dataclasses.replace(current, **updates)

    unsupported = set(sections["fitter"].board_sizes) - SUPPORTED_BOARD_SIZES
    if unsupported:
        raise InvalidConfigError(f"Unsupported board sizes: {sorted(unsupported)}")
    return PipelineConfig(**sections)


def _coerce(section: str, key: str, default: Any, value: Any) -> Any:
    """Convert *value* to the type of the default, rejecting mismatches."""
    where = f"{section}.{key}"
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise InvalidConfigError(f"{where} must be a boolean, got {value!r}")
        return value
    if isinstance(default, tuple):
        if not isinstance(value, (list, tuple)) or not value:
            raise InvalidConfigError(f"{where} must be a non-empty list")
        try:
            return tuple(type(default[0])(v) for v in value)
        except (TypeError, ValueError) as e:
            raise InvalidConfigError(f"Invalid value for {where}: {e}") from e
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidConfigError(f"{where} must be an integer, got {value!r}")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidConfigError(f"{where} must be a number, got {value!r}")
        return float(value)
    return value
