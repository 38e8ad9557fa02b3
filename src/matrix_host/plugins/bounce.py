"""
Bouncing pixel.

Never finishes on its own; run it with a time limit or stop the host.
"""

import json
import random

x = 0
y = 0
dx = 1
dy = 1
color = [255, 255, 255, 0]


def _new_color():
    global color
    color = [random.randint(50, 255), random.randint(50, 255), random.randint(50, 255), 0]


def setup():
    _new_color()
    Log.info("Bouncing on a {}x{} matrix".format(Config.get("width"), Config.get("height")))


def update():
    global x, y, dx, dy
    width = Config.get("width")
    height = Config.get("height")

    matrix = [[[0, 0, 0, 0] for _ in range(width)] for _ in range(height)]
    matrix[y][x] = list(color)
    Host.output_string(json.dumps(matrix))

    # Bounce off the edges
    if not 0 <= x + dx < width:
        dx = -dx
        _new_color()
    if not 0 <= y + dy < height:
        dy = -dy
        _new_color()
    x = min(max(x + dx, 0), width - 1)
    y = min(max(y + dy, 0), height - 1)
