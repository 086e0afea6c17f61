"""
Go Board Recognition – Main Entry Point
=======================================

Commands:

  1. **Recognize**  – Run the full pipeline on a board photo and print
                      the board size, corners and stone layout.
  2. **Render**     – Write a synthetic board photo with a random
                      position, for trying the pipeline out.

Usage examples
--------------

**Recognition**::

    python goban_vision.py recognize \\
        --image game.jpg \\
        --score --komi 6.5 \\
        --visualize

**Recognition with custom thresholds, JSON output**::

    python goban_vision.py recognize \\
        --image game.jpg \\
        --config thresholds.yaml \\
        --json

**Synthetic board**::

    python goban_vision.py render \\
        --output board.png \\
        --size 13 \\
        --rotation 12
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

import cv2

from goban_vision.exceptions import GobanVisionError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger("goban_vision")


# ═══════════════════════════════════════════════════════════════════════
# Recognition
# ═══════════════════════════════════════════════════════════════════════

def cmd_recognize(args: argparse.Namespace) -> None:
    """Run the recognition pipeline on an image."""
    from goban_vision.config import PipelineConfig, load_config
    from goban_vision.inference.board_utils import board_to_text, score_board
    from goban_vision.inference.pipeline import BoardRecognitionPipeline
    from goban_vision.models.board import Stone

    # Load image
    image = cv2.imread(args.image)
    if image is None:
        log.error("Could not read image: %s", args.image)
        sys.exit(1)

    try:
        config = load_config(args.config) if args.config else PipelineConfig()
        pipeline = BoardRecognitionPipeline(config)
        result = pipeline.recognize(image)
    except GobanVisionError as e:
        log.error("Recognition failed: %s", e)
        sys.exit(1)

    board = result.board
    score = score_board(board, komi=args.komi) if args.score else None

    if args.json:
        output = result.to_dict()
        if score is not None:
            output["score"] = {
                "black": score.black,
                "white": score.white,
                "komi": score.komi,
                "result": score.summary(),
            }
        print(json.dumps(output, indent=2))
    else:
        print("\n" + "=" * 60)
        print("  GO BOARD RECOGNITION RESULT")
        print("=" * 60)
        print(f"  Board size     : {board.board_size}x{board.board_size}")
        print(f"  Confidence     : {board.confidence:.2%}")
        print(f"  Top-left       : ({board.top_left.x:.1f}, {board.top_left.y:.1f})")
        print(f"  Bottom-right   : ({board.bottom_right.x:.1f}, {board.bottom_right.y:.1f})")
        print(f"  Rotation       : {board.lattice.rotation_degrees:.2f}°")
        print(f"  Stones         : {board.count(Stone.BLACK)} black, "
              f"{board.count(Stone.WHITE)} white")
        if board.ambiguous_cells():
            print(f"  Ambiguous      : {board.ambiguous_cells()}")
        if score is not None:
            print(f"  Score          : B {score.black:g}  W {score.white:g}  "
                  f"→ {score.summary()}")
        print("=" * 60)
        print(board_to_text(board))
        print("=" * 60 + "\n")

    # Visualise
    if args.visualize or args.save_debug:
        pipeline.visualize(
            result, image, show=args.visualize, save_path=args.save_debug,
        )


# ═══════════════════════════════════════════════════════════════════════
# Synthetic boards
# ═══════════════════════════════════════════════════════════════════════

def cmd_render(args: argparse.Namespace) -> None:
    """Write a synthetic board photo."""
    from goban_vision.inference.board_utils import board_to_text
    from goban_vision.models.board import Stone
    from goban_vision.synthetic import make_board

    synthetic = make_board(
        board_size=args.size,
        spacing=args.spacing,
        rotation=args.rotation,
        black=args.black,
        white=args.white,
        seed=args.seed,
        noise_sigma=args.noise,
        jpeg_quality=args.jpeg_quality,
    )
    if not cv2.imwrite(args.output, synthetic.image):
        log.error("Could not write image: %s", args.output)
        sys.exit(1)

    n = args.size
    rows = [[synthetic.stones.get((r, c), Stone.EMPTY) for c in range(n)] for r in range(n)]
    log.info("Saved %dx%d board to %s", n, n, args.output)
    print(board_to_text(rows))


# ═══════════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="goban_vision",
        description="Go board photo recognition system.",
    )
    parser.add_argument("--debug", action="store_true",
                        help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # ── recognize ──
    p_rec = sub.add_parser("recognize", help="Recognize a board photo")
    p_rec.add_argument("--image", required=True,
                       help="Path to the board photo")
    p_rec.add_argument("--config", default=None,
                       help="YAML file overriding pipeline thresholds")
    p_rec.add_argument("--json", action="store_true",
                       help="Print the result as JSON")
    p_rec.add_argument("--score", action="store_true",
                       help="Count an area score for the recognised position")
    p_rec.add_argument("--komi", type=float, default=6.5)
    p_rec.add_argument("--visualize", action="store_true",
                       help="Show debug visualisation")
    p_rec.add_argument("--save-debug", default=None,
                       help="Save debug image to path")

    # ── render ──
    p_ren = sub.add_parser("render", help="Write a synthetic board photo")
    p_ren.add_argument("--output", required=True)
    p_ren.add_argument("--size", type=int, default=19, choices=[9, 13, 19])
    p_ren.add_argument("--spacing", type=float, default=32.0,
                       help="Distance between lines in pixels")
    p_ren.add_argument("--rotation", type=float, default=0.0,
                       help="In-plane rotation in degrees")
    p_ren.add_argument("--black", type=int, default=30)
    p_ren.add_argument("--white", type=int, default=30)
    p_ren.add_argument("--seed", type=int, default=0)
    p_ren.add_argument("--noise", type=float, default=0.0,
                       help="Gaussian noise sigma")
    p_ren.add_argument("--jpeg-quality", type=int, default=None)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    dispatch = {
        "recognize": cmd_recognize,
        "render": cmd_render,
    }

    dispatch[args.command](args)


if __name__ == "__main__":
    main()
