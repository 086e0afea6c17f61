"""
Root entry point – delegates to the goban_vision package.

Usage:
    python goban_vision.py recognize --image game.jpg --score
    python goban_vision.py render    --output board.png --size 13 --rotation 12
"""

from goban_vision.main import main

if __name__ == "__main__":
    main()
