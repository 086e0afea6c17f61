"""
Inference Pipeline – End-to-End Image → Board State
===================================================

This is the single-call entry point for recognising a go board photo.

Pipeline stages:
  1. Pixel classes       – Dark / Light / Colored per pixel
  2. Stone detection     – blobs of Dark pixels, median-size filter
  3. Grid crossings      – black-hat line response + corner detection
  4. Lattice fit         – rotation / scale / origin search for 9, 13, 19
  5. Classification      – empty / black / white per intersection
  6. Assembly            – corners, confidence floor, overall confidence

Optional extras:
  • Debug visualisation overlay
  • JSON-ready summary via ``RecognitionResult.to_dict()``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import cv2
import numpy as np

from goban_vision.config import PipelineConfig
from goban_vision.inference.board_utils import assemble_board, board_to_text
from goban_vision.inference.intersections import IntersectionClassifier
from goban_vision.models.board import BoardState, GridCrossing, Stone, StoneDetection
from goban_vision.models.lattice import BoardFit, fit_board
from goban_vision.models.stone_detector import analyze_image

log = logging.getLogger(__name__)


# ── Result dataclass ──────────────────────────────────────────────────

@dataclass
class RecognitionResult:
    """Full output of the recognition pipeline."""
    board: BoardState                              # Final board
    stones: Tuple[StoneDetection, ...]             # Filtered black stone detections
    crossings: Tuple[GridCrossing, ...]            # Visible grid crossings
    blob_count: int                                # Dark blobs before filtering
    fit: BoardFit                                  # Per-size fit diagnostics
    residuals: Dict[int, float] = field(default_factory=dict)

    @property
    def confidence(self) -> float:
        return self.board.confidence

    @property
    def board_size(self) -> int:
        return self.board.board_size

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serialisable summary."""
        board = self.board
        lattice = board.lattice
        return {
            "board_size": board.board_size,
            "confidence": round(board.confidence, 4),
            "residual": round(board.residual, 6),
            "corners": {
                "top_left": [round(v, 2) for v in board.top_left.as_tuple()],
                "bottom_right": [round(v, 2) for v in board.bottom_right.as_tuple()],
            },
            "lattice": {
                "spacing": round(lattice.spacing, 3),
                "rotation_degrees": round(lattice.rotation_degrees, 3),
                "origin": [round(v, 2) for v in lattice.origin.as_tuple()],
            },
            "board": board_to_text(board).splitlines(),
            "black": [list(rc) for rc in board.stones(Stone.BLACK)],
            "white": [list(rc) for rc in board.stones(Stone.WHITE)],
            "ambiguous": [list(rc) for rc in board.ambiguous_cells()],
            "detections": {
                "stones": len(self.stones),
                "blobs": self.blob_count,
                "crossings": len(self.crossings),
            },
            "residuals": {
                str(n): (round(r, 6) if np.isfinite(r) else None)
                for n, r in sorted(self.residuals.items())
            },
        }


# ── Pipeline class ─────────────────────────────────────────────────────

class BoardRecognitionPipeline:
    """End-to-end go board image → ``BoardState`` pipeline.

    Parameters
    ----------
    config : PipelineConfig, optional
        Thresholds for every stage.  Defaults work for typical photos of
        a wooden board taken from above.
    """

    def __init__(self, config: Optional[PipelineConfig] = None) -> None:
        self.config = config or PipelineConfig()
        log.info(
            "Pipeline ready  board_sizes=%s  tolerance=%.3f",
            self.config.fitter.board_sizes,
            self.config.fitter.residual_tolerance,
        )

    # ── Public API ─────────────────────────────────────────────────────

    def recognize(self, image: np.ndarray) -> RecognitionResult:
        """Run the full pipeline on a BGR or luminance image.

        Parameters
        ----------
        image : np.ndarray
            ``(H, W, 3)`` BGR (OpenCV convention) or ``(H, W)`` uint8.
            The buffer is only read.

        Returns
        -------
        RecognitionResult

        Raises
        ------
        InvalidImageError, NoStonesDetected, FitDidNotConverge, NoAcceptableBoardSize
        """
        cfg = self.config

        # 1–3. Pixel classes, stones, grid crossings
        evidence = analyze_image(image, cfg)

        # 4. Lattice fit over all candidate board sizes
        fit = fit_board(evidence.stones, evidence.crossings, cfg.fitter)
        lattice = fit.lattice

        # 5. Classify every intersection
        classifier = IntersectionClassifier(evidence.classes, evidence.line_mask, cfg.classifier)
        intersections = classifier.classify(lattice, evidence.stones)

        # 6. Assemble the board
        board = assemble_board(
            lattice,
            intersections,
            detections=evidence.stones,
            residual=fit.best.residual,
            config=cfg.assembler,
            residual_tolerance=cfg.fitter.residual_tolerance,
        )

        log.info(
            "Recognised %dx%d board: %d black, %d white, confidence=%.2f",
            board.board_size, board.board_size,
            board.count(Stone.BLACK), board.count(Stone.WHITE), board.confidence,
        )
        return RecognitionResult(
            board=board,
            stones=evidence.stones,
            crossings=evidence.crossings,
            blob_count=len(evidence.blobs),
            fit=fit,
            residuals=fit.residuals,
        )

    # ── Debug visualisation ────────────────────────────────────────────

    def visualize(
        self,
        result: RecognitionResult,
        image: np.ndarray,
        show: bool = True,
        save_path: Optional[str] = None,
    ) -> np.ndarray:
        """Draw the fitted lattice and the classified stones on the photo.

        Parameters
        ----------
        result : RecognitionResult
            Output of ``recognize()``.
        image : np.ndarray
            The image that was recognised.
        show : bool
            Display with ``cv2.imshow`` (blocks until key press).
        save_path : str, optional
            Save the annotated image to disk.

        Returns
        -------
        np.ndarray
            Annotated BGR image.
        """
        vis = image.copy() if image.ndim == 3 else cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        board = result.board
        n = board.board_size
        positions = board.lattice.positions()
        radius = max(2, int(round(0.4 * board.lattice.spacing)))

        # Lattice lines
        for i in range(n):
            for a, b in ((positions[i, 0], positions[i, n - 1]), (positions[0, i], positions[n - 1, i])):
                cv2.line(vis, _pt(a), _pt(b), (255, 160, 0), 1, cv2.LINE_AA)

        # Raw evidence
        for crossing in result.crossings:
            cv2.drawMarker(vis, _pt(crossing.center.as_tuple()), (200, 0, 200),
                           cv2.MARKER_CROSS, 6, 1)

        # Classified cells: green if confident, yellow if marginal, red if ambiguous
        for cell in board.grid.values():
            if cell.ambiguous:
                color = (0, 0, 255)
            elif cell.confidence >= 0.8:
                color = (0, 200, 0)
            else:
                color = (0, 200, 255)

            centre = _pt(cell.position.as_tuple())
            if cell.state == Stone.BLACK:
                cv2.circle(vis, centre, radius, color, 2, cv2.LINE_AA)
            elif cell.state == Stone.WHITE:
                cv2.circle(vis, centre, radius, color, 1, cv2.LINE_AA)
                cv2.circle(vis, centre, 2, color, -1)
            elif cell.ambiguous:
                cv2.drawMarker(vis, centre, color, cv2.MARKER_TILTED_CROSS, 8, 1)

        # Corners
        for corner in (board.top_left, board.bottom_right):
            cv2.circle(vis, _pt(corner.as_tuple()), 5, (0, 0, 255), -1)

        cv2.putText(
            vis,
            f"{n}x{n}  conf={board.confidence:.0%}  rot={board.lattice.rotation_degrees:.1f}",
            (10, 24),
            cv2.FONT_HERSHEY_SIMPLEX, 0.6, (255, 255, 255), 2,
        )

        if save_path:
            cv2.imwrite(save_path, vis)
            log.info("Saved debug image to %s", save_path)

        if show:
            cv2.imshow("Goban Recognition", vis)
            cv2.waitKey(0)
            cv2.destroyAllWindows()

        return vis


def _pt(xy) -> Tuple[int, int]:
    return int(round(float(xy[0]))), int(round(float(xy[1])))


def recognize_board(image: np.ndarray, config: Optional[PipelineConfig] = None) -> BoardState:
    """Convenience wrapper returning only the ``BoardState``."""
    return BoardRecognitionPipeline(config).recognize(image).board
