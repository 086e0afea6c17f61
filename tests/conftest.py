"""Shared fixtures: synthetic board photos with known ground truth."""

from __future__ import annotations

import pytest

from goban_vision.config import PipelineConfig
from goban_vision.models.stone_detector import analyze_image
from goban_vision.synthetic import make_board


@pytest.fixture(scope="session")
def config():
    return PipelineConfig()


@pytest.fixture(scope="session")
def board19():
    """19×19, axis aligned, 25 black and 25 white stones."""
    return make_board(board_size=19, spacing=32.0, rotation=0.0, black=25, white=25, seed=7)


@pytest.fixture(scope="session")
def board19_rotated():
    """19×19 rotated by 10°."""
    return make_board(board_size=19, spacing=30.0, rotation=10.0, black=30, white=30, seed=11)


@pytest.fixture(scope="session")
def evidence19(board19, config):
    return analyze_image(board19.image, config)


@pytest.fixture(scope="session")
def evidence19_rotated(board19_rotated, config):
    return analyze_image(board19_rotated.image, config)
