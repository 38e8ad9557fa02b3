"""Tests for the kernel: sequential playlists and concurrent sessions."""

import threading

import pytest

from matrix_host.core.codec import Frame, PluginCodec
from matrix_host.core.config import ExecutionMode, MatrixConfig, SchedulerConfig, SystemConfig
from matrix_host.core.display import MemoryDisplay
from matrix_host.core.errors import DecodeError, RuntimeFault
from matrix_host.core.kernel import Kernel, PluginSource
from matrix_host.core.session import SessionState
from matrix_host.plugins import load_bundled

from .conftest import COUNTER_PLUGIN

BAD_FRAME_PLUGIN = """
import json

def setup():
    pass

def update():
    Host.output_string(json.dumps({"state": "not-a-matrix", "done": False, "log_message": None}))
"""

ENDLESS_PLUGIN = """
import json

def setup():
    pass

def update():
    Host.output_string(json.dumps([[[0, 0, 0, 0], [0, 0, 0, 0]]]))
"""

JSON_PATCHING_PLUGIN = """
import json

def setup():
    json.loads = lambda s, *args, **kwargs: None

def update():
    Host.output_string("null")
"""


def make_config(**scheduler):
    scheduler.setdefault("fps", 0)
    scheduler.setdefault("update_timeout", 5.0)
    return SystemConfig(
        matrix=MatrixConfig(width=2, height=1),
        scheduler=SchedulerConfig(**scheduler),
    )


@pytest.fixture
def kernel():
    return Kernel(make_config(), display_factory=MemoryDisplay)


class TestKernel:
    def test_session_ids(self, kernel):
        plugin = PluginSource("counter", COUNTER_PLUGIN)
        first = kernel.create_session(plugin)
        second = kernel.create_session(plugin)
        named = kernel.create_session(plugin, session_id="mine")

        assert (first.session_id, second.session_id, named.session_id) == (
            "counter_1",
            "counter_2",
            "mine",
        )
        for session in (first, second, named):
            session.close()

    def test_run_plugin(self, kernel):
        display = MemoryDisplay()

        report = kernel.run_plugin(load_bundled("fade"), display)

        assert report.state is SessionState.COMPLETED
        assert report.frames == len(display.frames) == 256

    def test_run_plugin_needs_a_display(self):
        kernel = Kernel(make_config())
        with pytest.raises(ValueError):
            kernel.run_plugin(PluginSource("counter", COUNTER_PLUGIN))

    def test_load_failure_is_skipped(self, kernel, caplog):
        report = kernel.run_plugin(PluginSource("broken", "def setup(:\n"))

        assert report.state is SessionState.FAILED
        assert report.ticks == 0
        assert isinstance(report.error, RuntimeFault)
        assert "Skipping plugin 'broken'" in caplog.text

    def test_time_limit(self):
        kernel = Kernel(make_config(time_limit=0.1), display_factory=MemoryDisplay)

        report = kernel.run_plugin(PluginSource("endless", ENDLESS_PLUGIN))

        assert report.state is SessionState.STOPPED
        assert report.frames > 0


class TestPlaylist:
    def test_runs_in_order_and_continues_past_failures(self, kernel):
        display = MemoryDisplay()
        plugins = [
            PluginSource("broken", "def setup(:\n"),
            PluginSource("counter", COUNTER_PLUGIN),
            PluginSource("bad", BAD_FRAME_PLUGIN),
            load_bundled("fade_stop"),
        ]

        reports = kernel.run_playlist(plugins, display)

        assert [r.state for r in reports] == [
            SessionState.FAILED,
            SessionState.STOPPED,
            SessionState.FAILED,
            SessionState.STOPPED,
        ]
        assert [r.frames for r in reports] == [0, 3, 0, 255]
        assert display.cleared == 4

    def test_loop_plugins(self):
        kernel = Kernel(make_config(loop_plugins=True), display_factory=MemoryDisplay)
        plugins = [PluginSource("counter", COUNTER_PLUGIN), PluginSource("again", COUNTER_PLUGIN)]

        reports = kernel.run_playlist(plugins, max_loops=2)

        assert [r.session_id for r in reports] == ["counter_1", "again_2", "counter_3", "again_4"]
        # Fresh sessions each pass, so every run starts from a reset counter
        assert all(r.frames == 3 for r in reports)

    def test_without_loop_plugins_runs_once(self, kernel):
        reports = kernel.run_playlist([PluginSource("counter", COUNTER_PLUGIN)], max_loops=5)
        assert len(reports) == 1

    def test_empty_playlist(self, kernel):
        assert kernel.run_playlist([]) == []

    def test_stop_ends_looping_playlist(self):
        kernel = Kernel(make_config(loop_plugins=True), display_factory=MemoryDisplay)
        reports = []

        thread = threading.Thread(
            target=lambda: reports.extend(
                kernel.run_playlist([PluginSource("endless", ENDLESS_PLUGIN)])
            )
        )
        thread.start()
        threading.Event().wait(0.2)
        kernel.stop()
        thread.join(5.0)

        assert not thread.is_alive()
        assert len(reports) == 1
        assert reports[0].state is SessionState.STOPPED


class TestConcurrent:
    def test_faults_are_isolated(self, kernel):
        displays = []

        def factory():
            display = MemoryDisplay()
            displays.append(display)
            return display

        kernel.display_factory = factory
        plugins = [
            load_bundled("fade"),
            PluginSource("bad", BAD_FRAME_PLUGIN),
            load_bundled("fade_stop"),
        ]

        reports = kernel.run_concurrent(plugins, timeout=30.0)

        assert set(reports) == {"fade_1", "bad_2", "fade_stop_3"}
        assert reports["fade_1"].state is SessionState.COMPLETED
        assert reports["bad_2"].state is SessionState.FAILED
        assert isinstance(reports["bad_2"].error, DecodeError)
        assert reports["fade_stop_3"].state is SessionState.STOPPED
        assert sorted(len(d.frames) for d in displays) == [0, 255, 256]

    def test_sessions_do_not_share_script_state(self, kernel):
        plugin = PluginSource("counter", COUNTER_PLUGIN)

        reports = kernel.run_concurrent([plugin, plugin, plugin], timeout=30.0)

        assert len(reports) == 3
        assert all(r.frames == 3 for r in reports.values())

    def test_process_mode(self):
        config = make_config(execution_mode=ExecutionMode.PROCESS)
        kernel = Kernel(config, display_factory=MemoryDisplay)

        reports = kernel.run_concurrent(
            [PluginSource("counter", COUNTER_PLUGIN), PluginSource("bad", BAD_FRAME_PLUGIN)],
            timeout=30.0,
        )

        assert reports["counter_1"].state is SessionState.STOPPED
        assert reports["counter_1"].frames == 3
        assert reports["bad_2"].state is SessionState.FAILED

    def test_needs_display_factory(self):
        with pytest.raises(ValueError):
            Kernel(make_config()).run_concurrent([PluginSource("counter", COUNTER_PLUGIN)])

    def test_plugin_cannot_patch_shared_modules(self, kernel):
        plugins = [
            PluginSource("patcher", JSON_PATCHING_PLUGIN),
            PluginSource("counter", COUNTER_PLUGIN),
        ]

        reports = kernel.run_concurrent(plugins, timeout=30.0)

        assert reports["patcher_1"].state is SessionState.FAILED
        assert "read-only" in str(reports["patcher_1"].error)
        assert reports["counter_2"].state is SessionState.STOPPED
        assert reports["counter_2"].frames == 3
        outcome = PluginCodec(1, 1).decode_update_response("[[[1, 2, 3, 4]]]")
        assert isinstance(outcome, Frame)
        assert outcome.state.get_pixel(0, 0) == (1, 2, 3, 4)

    def test_timeout_cancels_unfinished_sessions(self, kernel):
        plugins = [
            PluginSource("counter", COUNTER_PLUGIN),
            PluginSource("endless", ENDLESS_PLUGIN),
        ]

        reports = kernel.run_concurrent(plugins, timeout=0.5)
        returned = dict(reports)

        assert reports["counter_1"].state is SessionState.STOPPED
        assert "endless_2" not in reports
        # The cancelled session winds down without touching the returned dict
        threading.Event().wait(0.5)
        assert reports == returned
        assert kernel._schedulers == {}
