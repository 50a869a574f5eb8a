# tests/test_run_loop.py
# Unit tests for loop session start-up, signal handling and cleanup in fsd-loop.py

import importlib.util
import os
import signal
from unittest.mock import patch

spec = importlib.util.spec_from_file_location("fsd_loop", "scripts/fsd-loop.py")
mod = importlib.util.module_from_spec(spec)
spec.loader.exec_module(mod)

LoopConfig = mod.LoopConfig
LOOP_PID_PATH = mod.LOOP_PID_PATH
SESSION_STATE_PATH = mod.SESSION_STATE_PATH
STOP_SEMAPHORE_PATH = mod.STOP_SEMAPHORE_PATH


def fake_orchestrator(body):
    """Orchestrator stand-in whose run() executes body(orchestrator)."""

    class FakeOrchestrator:
        instances = []

        def __init__(self, config, cancel_event=None):
            self.config = config
            self.cancel_event = cancel_event
            self.task_source = mod.TaskSource(config.plan_path)
            self.force_stop_calls = 0
            self.seen = {}
            FakeOrchestrator.instances.append(self)

        def request_stop(self):
            self.cancel_event.set()

        def force_stop(self):
            self.force_stop_calls += 1
            self.cancel_event.set()

        def run(self):
            return body(self)

    return FakeOrchestrator


def start_session(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "PLAN.md").write_text("- [ ] build it\n")
    (tmp_path / ".claude-fsd").mkdir()
    return LoopConfig(plan_path="PLAN.md", log_dir=str(tmp_path / "logs"))


def test_run_loop_clears_snapshot_and_semaphore(tmp_path, monkeypatch):
    config = start_session(tmp_path, monkeypatch)
    (tmp_path / SESSION_STATE_PATH).write_text("task: old\n")
    (tmp_path / STOP_SEMAPHORE_PATH).write_text("")

    def body(orchestrator):
        orchestrator.seen = {
            "snapshot": os.path.exists(SESSION_STATE_PATH),
            "semaphore": os.path.exists(STOP_SEMAPHORE_PATH),
            "pid": mod.autocommit.read_pid_file(LOOP_PID_PATH),
        }
        return mod.EXIT_SUCCESS

    fake = fake_orchestrator(body)
    with patch.object(mod, "check_preconditions", return_value=None), \
         patch.object(mod, "Orchestrator", fake):
        assert mod.run_loop(config) == mod.EXIT_SUCCESS

    seen = fake.instances[0].seen
    assert seen == {"snapshot": False, "semaphore": False, "pid": os.getpid()}
    assert not (tmp_path / LOOP_PID_PATH).exists()


def test_run_loop_precondition_failure_touches_nothing(tmp_path, monkeypatch, capsys):
    config = start_session(tmp_path, monkeypatch)
    (tmp_path / SESSION_STATE_PATH).write_text("task: old\n")
    with patch.object(mod, "check_preconditions", return_value="No plan"):
        assert mod.run_loop(config) == mod.EXIT_FAILURE
    assert (tmp_path / SESSION_STATE_PATH).exists()
    assert not (tmp_path / LOOP_PID_PATH).exists()
    assert "ERROR: No plan" in capsys.readouterr().out


def test_run_loop_signal_cleans_up(tmp_path, monkeypatch):
    config = start_session(tmp_path, monkeypatch)
    previous = signal.getsignal(signal.SIGTERM)

    def body(orchestrator):
        os.kill(os.getpid(), signal.SIGTERM)
        if orchestrator.cancel_event.wait(5):
            return mod.EXIT_SUCCESS
        return mod.EXIT_FAILURE

    fake = fake_orchestrator(body)
    with patch.object(mod, "check_preconditions", return_value=None), \
         patch.object(mod, "Orchestrator", fake):
        assert mod.run_loop(config) == mod.EXIT_SUCCESS

    assert fake.instances[0].force_stop_calls == 0
    assert not (tmp_path / LOOP_PID_PATH).exists()
    assert signal.getsignal(signal.SIGTERM) == previous


def test_second_signal_forces_stop_and_still_cleans_up(tmp_path, monkeypatch):
    config = start_session(tmp_path, monkeypatch)
    previous = signal.getsignal(signal.SIGINT)

    def body(orchestrator):
        os.kill(os.getpid(), signal.SIGINT)
        orchestrator.cancel_event.wait(5)
        os.kill(os.getpid(), signal.SIGINT)
        for _ in range(100):
            if orchestrator.force_stop_calls:
                break
            orchestrator.cancel_event.wait(0.05)
        return mod.EXIT_SUCCESS

    fake = fake_orchestrator(body)
    with patch.object(mod, "check_preconditions", return_value=None), \
         patch.object(mod, "Orchestrator", fake):
        assert mod.run_loop(config) == mod.EXIT_SUCCESS

    assert fake.instances[0].force_stop_calls == 1
    assert not (tmp_path / LOOP_PID_PATH).exists()
    assert signal.getsignal(signal.SIGINT) == previous
