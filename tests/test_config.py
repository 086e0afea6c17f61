"""Tests for configuration defaults, overrides and YAML loading."""

from __future__ import annotations

import dataclasses

import pytest

from goban_vision.config import FitterConfig, PipelineConfig, load_config
from goban_vision.exceptions import ConfigError, InvalidConfigError


def test_defaults():
    cfg = PipelineConfig()
    assert cfg.pixels.black_threshold == 60
    assert cfg.pixels.white_threshold == 170
    assert cfg.fitter.board_sizes == (9, 13, 19)
    assert cfg.fitter.residual_tolerance == 0.05
    assert cfg.classifier.ambiguity_threshold == 0.25
    assert cfg.assembler.confidence_floor == 0.2


def test_configs_are_frozen():
    with pytest.raises(dataclasses.FrozenInstanceError):
        FitterConfig().max_iterations = 10


def test_with_overrides():
    cfg = PipelineConfig().with_overrides(fitter={"max_iterations": 50}, pixels={"grayness_limit": 30})
    assert cfg.fitter.max_iterations == 50
    assert cfg.pixels.grayness_limit == 30
    # Untouched values keep their defaults
    assert cfg.fitter.match_gate == 0.3
    assert cfg.stones == PipelineConfig().stones


def test_load_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "pixels:\n"
        "  black_threshold: 45\n"
        "fitter:\n"
        "  board_sizes: [19]\n"
        "  residual_tolerance: 1\n"
        "classifier:\n"
    )
    cfg = load_config(path)
    assert cfg.pixels.black_threshold == 45
    assert cfg.fitter.board_sizes == (19,)
    assert cfg.fitter.residual_tolerance == 1.0
    assert isinstance(cfg.fitter.residual_tolerance, float)
    assert cfg.classifier == PipelineConfig().classifier


def test_load_empty_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path) == PipelineConfig()


@pytest.mark.parametrize(
    "text",
    [
        "bogus:\n  a: 1\n",                       # unknown section
        "pixels:\n  bogus: 1\n",                  # unknown key
        "pixels:\n  black_threshold: high\n",     # wrong type
        "pixels:\n  black_threshold: 4.5\n",      # float for an int
        "fitter:\n  board_sizes: []\n",           # empty list
        "fitter:\n  board_sizes: [9, 11]\n",      # unsupported size
        "fitter:\n  match_gate: true\n",          # bool for a float
        "pixels: 5\n",                            # section is not a mapping
        "- a\n- b\n",                             # root is not a mapping
        "pixels: [unclosed\n",                    # YAML syntax error
    ],
)
def test_load_config_rejects(tmp_path, text):
    path = tmp_path / "bad.yaml"
    path.write_text(text)
    with pytest.raises(InvalidConfigError):
        load_config(path)


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.yaml")
