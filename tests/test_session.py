"""Tests for the PluginSession state machine."""

import json

import pytest

from matrix_host.core.codec import Done, Frame, PluginCodec, Stop
from matrix_host.core.errors import (
    ConfigurationError,
    DecodeError,
    RuntimeFault,
    SessionStateError,
)
from matrix_host.core.sandbox import InlineRunner
from matrix_host.core.session import PluginSession, SessionState

from .conftest import BLACK_2X1, COUNTER_PLUGIN, ScriptedRunner, envelope


def scripted_session(outputs, codec, **kwargs):
    runner = ScriptedRunner(outputs, **kwargs)
    return PluginSession("scripted", runner, codec), runner


class TestLifecycle:
    def test_scenario_a_first_update_keeps_running(self, codec_2x1):
        session, _ = scripted_session([envelope(BLACK_2X1)], codec_2x1)
        session.setup()
        assert session.state is SessionState.READY

        outcome = session.update()

        assert isinstance(outcome, Frame)
        assert outcome.state.to_rows() == BLACK_2X1
        assert session.state is SessionState.RUNNING
        assert session.tick == 1

    def test_done_completes_and_closes_runner(self, codec_2x1):
        session, runner = scripted_session(
            [envelope(BLACK_2X1), envelope(BLACK_2X1, done=True)], codec_2x1
        )
        session.setup()
        session.update()

        assert isinstance(session.update(), Done)
        assert session.state is SessionState.COMPLETED
        assert runner.closed

    def test_null_stops(self, codec_2x1):
        session, runner = scripted_session(["null"], codec_2x1)
        session.setup()

        assert isinstance(session.update(), Stop)
        assert session.state is SessionState.STOPPED
        assert runner.closed

    def test_no_update_after_terminal_state(self, codec_2x1):
        session, runner = scripted_session(["null", envelope(BLACK_2X1)], codec_2x1)
        session.setup()
        session.update()

        with pytest.raises(SessionStateError):
            session.update()
        assert runner.calls == ["setup", "update"]

    def test_setup_runs_once(self, codec_2x1):
        session, _ = scripted_session([], codec_2x1)
        session.setup()
        with pytest.raises(SessionStateError):
            session.setup()

    def test_update_before_setup(self, codec_2x1):
        session, runner = scripted_session([envelope(BLACK_2X1)], codec_2x1)
        with pytest.raises(SessionStateError):
            session.update()
        assert runner.calls == []

    def test_cancel(self, codec_2x1):
        session, runner = scripted_session([envelope(BLACK_2X1)], codec_2x1)
        session.setup()
        session.cancel()

        assert session.state is SessionState.STOPPED
        assert runner.closed
        # Cancelling a finished session is a no-op
        session.cancel()
        assert session.state is SessionState.STOPPED

    def test_context_manager_closes(self, codec_2x1):
        with scripted_session([], codec_2x1)[0] as session:
            session.setup()
        assert session.state is SessionState.STOPPED


class TestSetupInput:
    def test_setup_input_is_serialized(self, codec_2x1):
        runner = ScriptedRunner([])
        session = PluginSession("s", runner, codec_2x1, setup_input={"width": 2, "height": 1})
        session.setup()
        assert json.loads(runner.setup_inputs[0]) == {"width": 2, "height": 1}

    def test_no_setup_input_is_empty_string(self, codec_2x1):
        session, runner = scripted_session([], codec_2x1)
        session.setup()
        assert runner.setup_inputs == [""]

    def test_setup_output_is_ignored(self, codec_2x1, caplog):
        session, _ = scripted_session([], codec_2x1, setup_output="[]")
        session.setup()
        assert session.state is SessionState.READY
        assert "ignoring output" in caplog.text


class TestFailures:
    def test_scenario_d_decode_error_fails_session(self, codec_2x1):
        raw = envelope("not-a-matrix")
        session, runner = scripted_session([raw], codec_2x1)
        session.setup()

        with pytest.raises(DecodeError) as excinfo:
            session.update()

        error = excinfo.value
        assert session.state is SessionState.FAILED
        assert session.error is error
        assert (error.session_id, error.tick, error.payload) == ("scripted", 0, raw)
        assert runner.closed

    def test_missing_output_is_decode_error(self, codec_2x1):
        session, _ = scripted_session([None], codec_2x1)
        session.setup()
        with pytest.raises(DecodeError, match="no output"):
            session.update()
        assert session.state is SessionState.FAILED

    def test_runtime_fault_fails_session(self, codec_2x1):
        session, _ = scripted_session([RuntimeFault("boom")], codec_2x1)
        session.setup()
        with pytest.raises(RuntimeFault):
            session.update()
        assert session.state is SessionState.FAILED
        assert session.error.tick == 0

    def test_setup_failure(self, codec_2x1, store_2x1):
        source = "def setup():\n    Config.get('depth')\n\ndef update():\n    pass\n"
        runner = InlineRunner(source, store_2x1, session_id="bad-setup")
        session = PluginSession("bad-setup", runner, codec_2x1)

        with pytest.raises(ConfigurationError):
            session.setup()
        assert session.state is SessionState.FAILED
        assert session.error.session_id == "bad-setup"

    def test_setup_raising_base_exception_fails_session(self, codec_2x1, store_2x1):
        source = "def setup():\n    raise Exception.__base__('boom')\n\ndef update():\n    pass\n"
        runner = InlineRunner(source, store_2x1, session_id="escape")
        session = PluginSession("escape", runner, codec_2x1)

        with pytest.raises(RuntimeFault, match="boom"):
            session.setup()
        assert session.state is SessionState.FAILED
        with pytest.raises(SessionStateError):
            session.update()


class TestScriptState:
    def test_counter_persists_across_updates(self, store_2x1):
        codec = PluginCodec(2, 1)
        runner = InlineRunner(COUNTER_PLUGIN, store_2x1, session_id="counter")
        with PluginSession("counter", runner, codec) as session:
            session.setup()
            levels = []
            while True:
                outcome = session.update()
                if isinstance(outcome, Stop):
                    break
                levels.append(outcome.state.get_pixel(0, 0)[0])

        assert levels == [1, 2, 3]
        assert session.state is SessionState.STOPPED
