# tests/test_review_coordinator.py
# Unit tests for the background secondary review and the verifier in fsd-loop.py

import importlib.util
import sys
from unittest.mock import patch

spec = importlib.util.spec_from_file_location("fsd_loop", "scripts/fsd-loop.py")
mod = importlib.util.module_from_spec(spec)
spec.loader.exec_module(mod)

LoopConfig = mod.LoopConfig
ReviewCoordinator = mod.ReviewCoordinator
Verifier = mod.Verifier
InvocationResult = mod.InvocationResult
ALL_DONE_MARKER = mod.ALL_DONE_MARKER
VERDICT_ALL_DONE = mod.VERDICT_ALL_DONE
VERDICT_COMMITTED = mod.VERDICT_COMMITTED
VERDICT_INCOMPLETE = mod.VERDICT_INCOMPLETE
PHASE_TESTER = mod.PHASE_TESTER
contains_all_done_marker = mod.contains_all_done_marker


def make_config(tmp_path, **overrides):
    values = dict(log_dir=str(tmp_path / "logs"), tmp_dir=str(tmp_path / "tmp"),
                  plan_path="docs/PLAN.md")
    values.update(overrides)
    return LoopConfig(**values)


# --- ReviewCoordinator ---


def test_placeholder_when_reviewer_missing(tmp_path):
    coordinator = ReviewCoordinator(make_config(tmp_path))
    with patch.object(mod.shutil, "which", return_value=None):
        handle = coordinator.start_background("task", "logs/dev.txt", "20250101_000000")
    assert handle.done()
    assert not handle.available
    content = open(handle.log_path).read()
    assert "not installed" in content
    assert handle.log_path.endswith("claude-20250101_000000-reviewer.txt")


def test_placeholder_when_review_disabled(tmp_path):
    coordinator = ReviewCoordinator(make_config(tmp_path, review_enabled=False))
    handle = coordinator.start_background("task", "logs/dev.txt", "ts")
    assert handle.done()
    assert "disabled" in open(handle.log_path).read()


def test_reviewer_command_uses_read_only_sandbox(tmp_path):
    coordinator = ReviewCoordinator(make_config(tmp_path))
    with patch.object(mod.shutil, "which", return_value="/usr/local/bin/codex"):
        cmd = coordinator.reviewer_command()
    assert cmd == ["/usr/local/bin/codex", "exec", "--sandbox", "read-only", "-"]


def test_background_review_reads_prompt_from_stdin(tmp_path):
    coordinator = ReviewCoordinator(make_config(tmp_path))
    echo_stdin = [sys.executable, "-c", "import sys; sys.stdout.write(sys.stdin.read())"]
    with patch.object(coordinator, "reviewer_command", return_value=echo_stdin):
        handle = coordinator.start_background("Add the parser", "logs/dev.txt", "ts")
        assert handle.wait(timeout=30)
    content = open(handle.log_path).read()
    assert "Add the parser" in content
    assert "logs/dev.txt" in content
    assert "Return code: 0" in content
    # Temp prompt file is cleaned up
    assert list((tmp_path / "tmp").glob("fsd-review-*")) == []


def test_shutdown_cancels_running_review(tmp_path):
    coordinator = ReviewCoordinator(make_config(tmp_path))
    sleeper = [sys.executable, "-c", "import time; time.sleep(30)"]
    with patch.object(coordinator, "reviewer_command", return_value=sleeper):
        handle = coordinator.start_background("task", "logs/dev.txt", "ts")
        for _ in range(100):
            if handle.process is not None:
                break
            handle.wait(timeout=0.05)
        coordinator.shutdown()
    assert handle.wait(timeout=15)


def wait_for_process(handle):
    for _ in range(200):
        if handle.process is not None:
            return
        handle.wait(timeout=0.05)


def test_new_review_cancels_one_still_running(tmp_path, capsys):
    coordinator = ReviewCoordinator(make_config(tmp_path))
    sleeper = [sys.executable, "-c", "import time; time.sleep(30)"]
    with patch.object(coordinator, "reviewer_command", return_value=sleeper):
        first = coordinator.start_background("task 1", "logs/dev1.txt", "ts1")
        wait_for_process(first)
        second = coordinator.start_background("task 2", "logs/dev2.txt", "ts2")
        assert first.wait(timeout=15)
        assert first.cancelled
        assert coordinator.active is second
        assert not second.cancelled
        coordinator.shutdown()
    assert second.wait(timeout=15)
    assert coordinator.active is None
    assert "still running; cancelling" in capsys.readouterr().out


def test_cancel_before_launch_starts_nothing(tmp_path):
    handle = mod.ReviewHandle(str(tmp_path / "review.txt"))
    handle.cancel()
    with patch.object(mod.subprocess, "Popen") as popen:
        assert handle.launch(["codex"]) is None
    popen.assert_not_called()
    assert handle.process is None
    assert handle.cancelled


def test_review_cancelled_while_preparing_never_runs(tmp_path):
    coordinator = ReviewCoordinator(make_config(tmp_path))
    real_header = mod.write_log_header

    def cancel_during_setup(f, *args, **kwargs):
        coordinator.active.cancel()
        real_header(f, *args, **kwargs)

    sleeper = [sys.executable, "-c", "import time; time.sleep(30)"]
    with patch.object(coordinator, "reviewer_command", return_value=sleeper), \
         patch.object(mod, "write_log_header", side_effect=cancel_during_setup):
        handle = coordinator.start_background("task", "logs/dev.txt", "ts")
        assert handle.wait(timeout=15)
    assert handle.process is None
    assert "cancelled before start" in open(handle.log_path).read()


# --- Verifier ---


class ScriptedInvoker:
    def __init__(self, output, on_invoke=None):
        self.output = output
        self.on_invoke = on_invoke
        self.calls = []

    def invoke(self, prompt, model_class, dangerous, phase, session_ts):
        self.calls.append((prompt, model_class, dangerous, phase))
        if self.on_invoke:
            self.on_invoke()
        return InvocationResult(self.output, f"logs/claude-{session_ts}-{phase}.txt", 1.0, 0)


def test_verdict_all_done_on_marker(tmp_path):
    invoker = ScriptedInvoker(f"Everything verified.\n{ALL_DONE_MARKER}\n")
    result = Verifier(invoker, make_config(tmp_path), head_reader=lambda: "a").verify(
        "task", "logs/dev.txt", "ts")
    assert result.verdict == VERDICT_ALL_DONE
    prompt, model_class, dangerous, phase = invoker.calls[0]
    assert dangerous is True
    assert phase == PHASE_TESTER
    assert ALL_DONE_MARKER in prompt


def test_verdict_committed_when_head_moves(tmp_path):
    heads = ["before"]
    invoker = ScriptedInvoker("Committed.", on_invoke=lambda: heads.append("after"))
    result = Verifier(invoker, make_config(tmp_path), head_reader=lambda: heads[-1]).verify(
        "task", "logs/dev.txt", "ts")
    assert result.verdict == VERDICT_COMMITTED


def test_verdict_incomplete_when_nothing_committed(tmp_path):
    invoker = ScriptedInvoker("Tests fail, not committing.")
    result = Verifier(invoker, make_config(tmp_path), head_reader=lambda: "same").verify(
        "task", "logs/dev.txt", "ts")
    assert result.verdict == VERDICT_INCOMPLETE


def test_verdict_all_done_on_decorated_marker(tmp_path):
    invoker = ScriptedInvoker(f"All verified. **{ALL_DONE_MARKER}**\n")
    result = Verifier(invoker, make_config(tmp_path), head_reader=lambda: "a").verify(
        "task", "logs/dev.txt", "ts")
    assert result.verdict == VERDICT_ALL_DONE


def test_marker_detected_anywhere_in_output():
    assert contains_all_done_marker(f"ok\n  {ALL_DONE_MARKER}  \n")
    assert contains_all_done_marker(f"**{ALL_DONE_MARKER}**")
    assert contains_all_done_marker(f"`{ALL_DONE_MARKER}`")
    assert contains_all_done_marker(f"Everything passes, so: {ALL_DONE_MARKER}.")
    assert not contains_all_done_marker("VERIFIED_ALL_DONE without brackets")
