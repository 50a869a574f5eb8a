# tests/test_loop_config.py
# Unit tests for loop configuration and start-up preconditions in fsd-loop.py

import argparse
import importlib.util
import os
from unittest.mock import patch

spec = importlib.util.spec_from_file_location("fsd_loop", "scripts/fsd-loop.py")
mod = importlib.util.module_from_spec(spec)
spec.loader.exec_module(mod)

LoopConfig = mod.LoopConfig
build_loop_config = mod.build_loop_config
check_preconditions = mod.check_preconditions
resolve_plan_path = mod.resolve_plan_path


def cli_args(**overrides):
    values = dict(plan="", verbose=False, no_review=False, no_auto_commit=False, force=False)
    values.update(overrides)
    return argparse.Namespace(**values)


def test_defaults_without_config_file(tmp_path):
    config = build_loop_config(None, environ={}, config_path=str(tmp_path / "missing.yaml"))
    assert config.primary_model == "sonnet"
    assert config.deep_model == "opus"
    assert config.fast_iteration_seconds == 300
    assert config.backoff_step_seconds == 60
    assert config.max_fast_iterations == 3
    assert config.deep_planning_interval == 4
    assert config.review_enabled is True
    assert config.verbose is False


def test_precedence_file_env_cli(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "primary_model: haiku\n"
        "review_enabled: false\n"
        "plan_path: from-file.md\n"
        "fast_iteration_seconds: 120\n"
    )
    config = build_loop_config(
        cli_args(plan="from-cli.md", verbose=True),
        environ={"CLAUDEFSD_TMPDIR": "/scratch", "CLAUDEFSD_VERBOSE": "0"},
        config_path=str(path),
    )
    assert config.primary_model == "haiku"
    assert config.review_enabled is False
    assert config.fast_iteration_seconds == 120.0
    assert config.tmp_dir == "/scratch"
    assert config.plan_path == "from-cli.md"
    assert config.verbose is True


def test_env_verbose_flag(tmp_path):
    config = build_loop_config(None, environ={"CLAUDEFSD_VERBOSE": "true"},
                               config_path=str(tmp_path / "missing.yaml"))
    assert config.verbose is True


def test_cli_switches(tmp_path):
    config = build_loop_config(
        cli_args(no_review=True, no_auto_commit=True, force=True),
        environ={}, config_path=str(tmp_path / "missing.yaml"),
    )
    assert config.review_enabled is False
    assert config.auto_commit is False
    assert config.force is True


def test_invalid_and_unknown_keys_ignored(tmp_path, capsys):
    path = tmp_path / "config.yaml"
    path.write_text(
        "review_enabled: 'false'\n"
        "max_fast_iterations: lots\n"
        "deep_planning_interval: 0\n"
        "colour: blue\n"
    )
    config = build_loop_config(None, environ={}, config_path=str(path))
    assert config.review_enabled is True
    assert config.max_fast_iterations == 3
    assert config.deep_planning_interval == 4
    out = capsys.readouterr().out
    assert "Unknown key" in out
    assert "Invalid value for review_enabled" in out


def test_non_mapping_config_file_ignored(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- a\n- b\n")
    assert mod.load_loop_config_file(str(path)) == {}


def test_resolve_plan_path_fallback(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert resolve_plan_path() is None
    (tmp_path / "PLAN.md").write_text("- [ ] x\n")
    assert resolve_plan_path() == "PLAN.md"
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "PLAN.md").write_text("- [ ] x\n")
    assert resolve_plan_path() == "docs/PLAN.md"
    assert resolve_plan_path("other.md") is None


# --- Preconditions ---


def test_precondition_missing_plan(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    error = check_preconditions(LoopConfig())
    assert "Plan document not found" in error


def test_precondition_no_open_tasks(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "PLAN.md").write_text("- [x] done\n")
    assert "No open or in-progress tasks" in check_preconditions(LoopConfig())


def test_precondition_missing_claude(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "PLAN.md").write_text("- [ ] todo\n")
    with patch.object(mod, "resolve_claude_binary", return_value=None):
        assert "Could not find 'claude'" in check_preconditions(LoopConfig())


def test_precondition_other_loop_running(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "PLAN.md").write_text("- [ ] todo\n")
    with patch.object(mod, "resolve_claude_binary", return_value=["claude"]), \
         patch.object(mod, "find_running_loop", return_value=os.getpid() + 1):
        assert "already running" in check_preconditions(LoopConfig())
        assert check_preconditions(LoopConfig(force=True)) is None


def test_preconditions_resolve_plan_and_binary(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "PLAN.md").write_text("- [~] doing\n")
    config = LoopConfig()
    with patch.object(mod, "resolve_claude_binary", return_value=["/bin/claude"]):
        assert check_preconditions(config) is None
    assert config.plan_path == "PLAN.md"
    assert config.claude_cmd == ["/bin/claude"]


def test_main_exits_1_without_plan(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert mod.main([]) == 1
    assert "ERROR: Plan document not found" in capsys.readouterr().out
