"""
Fade to white.

Reads the matrix configuration from its setup input, brightens every pixel
one step per frame and reports done once the channels reach 255.
"""

import json

mat_config = {}
counter = 0


def setup():
    global mat_config
    mat_config = json.loads(Host.input_string())


def update():
    global counter
    level = min(counter, 255)
    matrix = [
        [[level, level, level, 0] for _ in range(mat_config["width"])]
        for _ in range(mat_config["height"])
    ]

    if counter >= 255:
        Host.output_string(
            json.dumps({"state": matrix, "done": True, "log_message": ["Done fading to white!"]})
        )
    else:
        counter += 1
        Host.output_string(json.dumps({"state": matrix, "done": False, "log_message": None}))
