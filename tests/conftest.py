"""Shared fixtures for matrix-host tests."""

import json
from typing import List, Optional

import pytest

from matrix_host.core.codec import PluginCodec
from matrix_host.core.config import ConfigStore
from matrix_host.core.display import MemoryDisplay
from matrix_host.core.sandbox import ScriptRunner

BLACK_2X1 = [[[0, 0, 0, 0], [0, 0, 0, 0]]]


def envelope(state, done: bool = False, log_message: Optional[List[str]] = None) -> str:
    return json.dumps({"state": state, "done": done, "log_message": log_message})


COUNTER_PLUGIN = """
import json

counter = 0

def setup():
    pass

def update():
    global counter
    counter += 1
    if counter > 3:
        Host.output_string(json.dumps(None))
        return
    row = [[counter, counter, counter, 0] for _ in range(Config.get("width"))]
    Host.output_string(json.dumps([row for _ in range(Config.get("height"))]))
"""


class ScriptedRunner(ScriptRunner):
    """Runner that replays canned update outputs instead of running a script."""

    def __init__(self, outputs, setup_output: Optional[str] = None, session_id: str = "fake"):
        super().__init__(session_id, timeout=None)
        self.outputs = list(outputs)
        self.setup_output = setup_output
        self.calls: List[str] = []
        self.setup_inputs: List[str] = []
        self.started = False
        self.closed = False

    def start(self) -> None:
        self.started = True

    def invoke(self, name: str, input_string: str = "") -> Optional[str]:
        assert not self.closed, "invoke after close"
        self.calls.append(name)
        if name == "setup":
            self.setup_inputs.append(input_string)
            return self.setup_output
        result = self.outputs.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def store_2x1() -> ConfigStore:
    return ConfigStore({"width": 2, "height": 1, "target_fps": 30.0})


@pytest.fixture
def codec_2x1() -> PluginCodec:
    return PluginCodec(2, 1)


@pytest.fixture
def display() -> MemoryDisplay:
    return MemoryDisplay()
