"""Custom exception classes for goban_vision."""

from __future__ import annotations

from typing import Dict, Optional


class GobanVisionError(Exception):
    """Base exception for all goban_vision errors."""

    pass


class ConfigError(GobanVisionError):
    """Base exception for configuration errors."""

    pass


class InvalidConfigError(ConfigError):
    """Raised when a configuration file or value is invalid."""

    pass


class DetectionError(GobanVisionError):
    """Base exception for stone / grid detection errors."""

    pass


class InvalidImageError(DetectionError):
    """Raised when the pixel buffer has an unsupported shape or dtype."""

    pass


class NoStonesDetected(DetectionError):
    """Raised when too little lattice evidence was found to fit a board."""

    def __init__(self, message: str, stone_count: int = 0, crossing_count: int = 0):
        self.stone_count = stone_count
        self.crossing_count = crossing_count
        super().__init__(message)


class FitError(GobanVisionError):
    """Base exception for lattice fitting errors.

    ``residuals`` maps each attempted board size to the best normalised
    residual reached for it (``inf`` when no anchor matched).
    """

    def __init__(self, message: str, residuals: Optional[Dict[int, float]] = None):
        self.residuals = dict(residuals or {})
        super().__init__(message)


class FitDidNotConverge(FitError):
    """Raised when no board size converged within the iteration cap."""

    pass


class NoAcceptableBoardSize(FitError):
    """Raised when every candidate board size exceeds the residual tolerance."""

    pass
