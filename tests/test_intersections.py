"""Tests for the empty / black / white decision per intersection."""

from __future__ import annotations

import numpy as np
import pytest

from goban_vision.inference.intersections import IntersectionClassifier
from goban_vision.models.board import LatticeModel, Point2D, Stone, StoneDetection
from goban_vision.models.stone_detector import analyze_image
from goban_vision.synthetic import default_lattice, render_board


def _truth(board, row, col):
    return board.stones.get((row, col), Stone.EMPTY)


def test_classifies_every_intersection(board19, evidence19):
    classifier = IntersectionClassifier(evidence19.classes, evidence19.line_mask)
    cells = classifier.classify(board19.lattice, evidence19.stones)

    assert len(cells) == 19 * 19
    assert [(c.row, c.col) for c in cells] == [(r, c) for r in range(19) for c in range(19)]
    for cell in cells:
        assert cell.state == _truth(board19, cell.row, cell.col)
        assert not cell.ambiguous
        p = board19.lattice.project(cell.row, cell.col)
        assert cell.position.distance_to(p) < 1e-9


def test_rotated_board(board19_rotated, evidence19_rotated):
    classifier = IntersectionClassifier(evidence19_rotated.classes, evidence19_rotated.line_mask)
    cells = classifier.classify(board19_rotated.lattice, evidence19_rotated.stones)
    wrong = [c for c in cells if c.state != _truth(board19_rotated, c.row, c.col)]
    assert wrong == []


def test_lost_detections_keep_colour(board19, evidence19):
    classifier = IntersectionClassifier(evidence19.classes, evidence19.line_mask)
    full = classifier.classify(board19.lattice, evidence19.stones)
    partial = classifier.classify(board19.lattice, evidence19.stones[::2])

    for a, b in zip(full, partial):
        if a.state in (Stone.BLACK, Stone.WHITE):
            assert b.state == a.state
        assert b.confidence <= a.confidence + 1e-9
    assert np.mean([c.confidence for c in partial]) < np.mean([c.confidence for c in full])


def test_far_detection_is_not_a_stone():
    lattice = default_lattice(9, spacing=32.0)
    image = render_board(lattice, {})
    evidence = analyze_image(image)
    p = lattice.project(4, 4)
    stray = StoneDetection(Point2D(p.x + 0.45 * 32, p.y), radius=14.0, confidence=1.0)

    cells = IntersectionClassifier(evidence.classes, evidence.line_mask).classify(lattice, [stray])
    assert all(c.state == Stone.EMPTY for c in cells)


def test_white_stone_found_from_patch():
    lattice = default_lattice(9, spacing=32.0)
    image = render_board(lattice, {(2, 5): Stone.WHITE, (6, 1): Stone.BLACK})
    evidence = analyze_image(image)

    # No detections at all: black must come from the disc, white from the ring
    cells = IntersectionClassifier(evidence.classes, evidence.line_mask).classify(lattice, [])
    by_rc = {(c.row, c.col): c for c in cells}
    assert by_rc[(2, 5)].state == Stone.WHITE
    assert by_rc[(6, 1)].state == Stone.BLACK
    assert by_rc[(6, 1)].confidence == pytest.approx(0.7, abs=0.05)
    assert sum(c.state != Stone.EMPTY for c in cells) == 2


def test_intersections_outside_image_are_ambiguous():
    classes = np.zeros((50, 50), dtype=np.uint8)
    line_mask = np.zeros((50, 50), dtype=bool)
    lattice = LatticeModel.from_geometry(9, 20.0, 0.0, (1000.0, 1000.0))

    cells = IntersectionClassifier(classes, line_mask).classify(lattice)
    assert all(c.state == Stone.EMPTY and c.ambiguous and c.confidence == 0.0 for c in cells)


def test_featureless_cell_is_ambiguous():
    # Plain wood: no lines, no stone material
    classes = np.zeros((300, 300), dtype=np.uint8)
    line_mask = np.zeros((300, 300), dtype=bool)
    lattice = LatticeModel.from_geometry(9, 30.0, 0.0, (30.0, 30.0))

    cells = IntersectionClassifier(classes, line_mask).classify(lattice)
    assert all(c.state == Stone.EMPTY and c.ambiguous for c in cells)
