"""
Go Board Recognition System
===========================

Turns a photograph of a physical go board into a structured board state:
board size (9×9, 13×13 or 19×19), the board's corner positions and, for
every intersection, whether it holds a black stone, a white stone or
nothing.

Architecture:
    1. Pixel Classes      – Dark / Light / Colored per pixel
    2. Stone Detection    – dark blobs, ellipse fit, median-size filter
    3. Grid Crossings     – black-hat line response + corner detection
    4. Lattice Fit        – rotation / scale / origin search per board size
    5. Classification     – empty / black / white per intersection
    6. Board Assembly     – corners, confidence floor, text form, scoring
"""

__version__ = "1.0.0"
