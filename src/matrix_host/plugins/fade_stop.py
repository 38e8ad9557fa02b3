"""
Fade to white, then stop by returning null.

Uses the bare-matrix response form and reads its size from Config.
"""

import json

counter = 0


def setup():
    pass


def update():
    global counter
    width = Config.get("width")
    height = Config.get("height")

    if counter >= 255:
        Host.output_string(json.dumps(None))
        return

    matrix = [[[counter, counter, counter, counter] for _ in range(width)] for _ in range(height)]
    counter += 1
    Host.output_string(json.dumps(matrix))
