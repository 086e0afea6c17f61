"""End-to-end recognition of synthetic board photos."""

from __future__ import annotations

import json

import cv2
import numpy as np
import pytest

from goban_vision.exceptions import (
    InvalidImageError,
    NoAcceptableBoardSize,
    NoStonesDetected,
)
from goban_vision.inference.pipeline import BoardRecognitionPipeline, recognize_board
from goban_vision.models.board import Stone
from goban_vision.synthetic import WOOD, make_board, scatter_discs


def _layout(board_size, stones):
    grid = np.zeros((board_size, board_size), dtype=np.int8)
    for (r, c), s in stones.items():
        grid[r, c] = {Stone.BLACK: 1, Stone.WHITE: 2}.get(s, 0)
    return grid


def _recognised_layout(board):
    return _layout(board.board_size, {rc: cell.state for rc, cell in board.grid.items()})


def _symmetries(grid):
    for k in range(4):
        rotated = np.rot90(grid, k)
        yield rotated
        yield rotated.T


@pytest.fixture(scope="module")
def pipeline():
    return BoardRecognitionPipeline()


@pytest.mark.parametrize(
    "size, spacing, rotation, seed",
    [(19, 32.0, 0.0, 1), (19, 30.0, 10.0, 2), (13, 34.0, 15.0, 3), (19, 28.0, -7.5, 4)],
)
def test_recognizes_synthetic_board(pipeline, size, spacing, rotation, seed):
    synthetic = make_board(size, spacing, rotation, black=30, white=30, seed=seed)
    result = pipeline.recognize(synthetic.image)
    board = result.board

    assert board.board_size == size
    assert board.lattice.origin.distance_to(synthetic.lattice.origin) <= 1.0
    assert board.lattice.rotation_degrees == pytest.approx(rotation, abs=0.5)
    assert board.top_left.distance_to(synthetic.lattice.project(0, 0)) <= 1.0
    assert board.bottom_right.distance_to(synthetic.lattice.project(size - 1, size - 1)) <= 1.5
    np.testing.assert_array_equal(_recognised_layout(board), _layout(size, synthetic.stones))
    assert board.confidence > 0.7
    assert board.ambiguous_cells() == []


def test_idempotent(pipeline, board19):
    first = pipeline.recognize(board19.image).board
    second = pipeline.recognize(board19.image).board

    assert first.as_rows() == second.as_rows()
    assert first.top_left == second.top_left
    assert first.bottom_right == second.bottom_right
    assert first.confidence == second.confidence


def test_input_buffer_is_not_modified(pipeline, board19):
    before = board19.image.copy()
    pipeline.recognize(board19.image)
    np.testing.assert_array_equal(board19.image, before)


def test_single_stone_in_corner(pipeline):
    synthetic = make_board(9, 32.0, 0.0, stones={(0, 0): Stone.BLACK})
    board = pipeline.recognize(synthetic.image).board

    assert board.board_size == 9
    assert board.residual <= 0.01
    assert board.stones(Stone.BLACK) == [(0, 0)]
    assert board.count(Stone.WHITE) == 0
    assert board.count(Stone.EMPTY) == 80


@pytest.mark.parametrize("rotation", [0.0, 15.0, 45.0])
def test_rotation_invariance(pipeline, rotation):
    stones = {(2, 3): Stone.BLACK, (3, 3): Stone.BLACK, (6, 9): Stone.WHITE,
              (10, 10): Stone.BLACK, (9, 2): Stone.WHITE, (0, 12): Stone.WHITE}
    synthetic = make_board(13, 32.0, rotation, stones=stones)
    board = pipeline.recognize(synthetic.image).board

    assert board.board_size == 13
    expected = _layout(13, stones)
    found = _recognised_layout(board)
    assert any(np.array_equal(found, sym) for sym in _symmetries(expected))
    if rotation < 45.0:
        # Inside the canonical rotation range the labelling is unique
        np.testing.assert_array_equal(found, expected)


def test_noisy_jpeg_photo(pipeline):
    synthetic = make_board(19, 32.0, 6.0, black=40, white=40, seed=9,
                           noise_sigma=3.0, jpeg_quality=90)
    board = pipeline.recognize(synthetic.image).board

    assert board.board_size == 19
    agree = _recognised_layout(board) == _layout(19, synthetic.stones)
    assert agree.mean() > 0.97


def test_empty_board_fits_from_crossings(pipeline):
    synthetic = make_board(9, 32.0, 0.0, black=0, white=0)
    board = pipeline.recognize(synthetic.image).board

    assert board.board_size == 9
    assert board.count(Stone.EMPTY) == 81
    assert board.top_left.distance_to(synthetic.lattice.project(0, 0)) <= 1.5
    assert board.bottom_right.distance_to(synthetic.lattice.project(8, 8)) <= 1.5


def test_white_only_board(pipeline):
    synthetic = make_board(13, 32.0, 8.0, black=0, white=20, seed=5)
    board = pipeline.recognize(synthetic.image).board

    assert board.board_size == 13
    assert board.count(Stone.BLACK) == 0
    np.testing.assert_array_equal(_recognised_layout(board), _layout(13, synthetic.stones))


def test_luminance_photo(pipeline, board19):
    gray = cv2.cvtColor(board19.image, cv2.COLOR_BGR2GRAY)
    board = pipeline.recognize(gray).board

    assert board.board_size == 19
    np.testing.assert_array_equal(_recognised_layout(board), _layout(19, board19.stones))


def test_rejects_scattered_noise(pipeline):
    image = scatter_discs(image_size=600, count=40, radius=12.0, seed=4)
    with pytest.raises(NoAcceptableBoardSize) as exc:
        pipeline.recognize(image)
    assert set(exc.value.residuals) == {9, 13, 19}


def test_blank_image_has_no_anchors(pipeline):
    image = np.empty((200, 200, 3), dtype=np.uint8)
    image[:] = WOOD
    with pytest.raises(NoStonesDetected):
        pipeline.recognize(image)


def test_invalid_buffer(pipeline):
    with pytest.raises(InvalidImageError):
        pipeline.recognize(np.zeros((100, 100, 3), dtype=np.float64))


def test_result_to_dict_is_json_ready(pipeline, board19):
    result = pipeline.recognize(board19.image)
    data = json.loads(json.dumps(result.to_dict()))

    assert data["board_size"] == 19
    assert len(data["board"]) == 19
    assert sorted(map(tuple, data["black"])) == sorted(
        rc for rc, s in board19.stones.items() if s == Stone.BLACK
    )
    assert set(data["residuals"]) == {"9", "13", "19"}


def test_visualize_returns_annotated_copy(pipeline, board19, tmp_path):
    result = pipeline.recognize(board19.image)
    out = tmp_path / "debug.png"
    vis = pipeline.visualize(result, board19.image, show=False, save_path=str(out))

    assert vis.shape == board19.image.shape
    assert not np.array_equal(vis, board19.image)
    assert out.exists()


def test_recognize_board_wrapper(board19):
    board = recognize_board(board19.image)
    assert board.board_size == 19
