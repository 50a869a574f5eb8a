#!/usr/bin/env -S python3 -u
"""
FSD Session: pause, resume and inspect a development loop session.

pause stops a running loop and snapshots where it was, resume checks the
snapshot against the current repository and restarts the loop, and status
reports on the session without changing anything.

Usage:
    python scripts/fsd-session.py pause
    python scripts/fsd-session.py resume [--force] [--yes]
    python scripts/fsd-session.py status

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import importlib.util
import os
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml

# Import the loop from the sibling script
_loop_spec = importlib.util.spec_from_file_location(
    "fsd_loop", os.path.join(os.path.dirname(os.path.abspath(__file__)), "fsd-loop.py"))
loop_mod = importlib.util.module_from_spec(_loop_spec)
_loop_spec.loader.exec_module(loop_mod)

autocommit = loop_mod.autocommit

# ─── Configuration ────────────────────────────────────────────────────

# Must exceed the loop's worst-case shutdown time
PAUSE_GRACE_SECONDS = 10
PAUSE_TIMEOUT_SECONDS = loop_mod.LOOP_SHUTDOWN_TIMEOUT_SECONDS + PAUSE_GRACE_SECONDS
RECENT_LOG_COUNT = 3


# ─── Session State ───────────────────────────────────────────────────


@dataclass
class SessionState:
    """Snapshot written at pause time and read back by resume."""
    paused_at: str = ""
    working_directory: str = ""
    branch: str = ""
    uncommitted_changes: str = ""
    recent_logs: list[str] = field(default_factory=list)
    total_tasks: int = 0
    completed_tasks: int = 0
    next_task: str = ""

    def to_record(self) -> dict:
        return {
            "paused_at": self.paused_at,
            "working_directory": self.working_directory,
            "branch": self.branch,
            "uncommitted_changes": self.uncommitted_changes,
            "recent_logs": list(self.recent_logs),
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "next_task": self.next_task,
        }

    @classmethod
    def from_record(cls, record: dict) -> "SessionState":
        def _int(value) -> int:
            try:
                return int(value)
            except (TypeError, ValueError):
                return 0

        recent_logs = record.get("recent_logs") or []
        if not isinstance(recent_logs, list):
            recent_logs = [str(recent_logs)]
        return cls(
            paused_at=str(record.get("paused_at") or ""),
            working_directory=str(record.get("working_directory") or ""),
            branch=str(record.get("branch") or ""),
            uncommitted_changes=str(record.get("uncommitted_changes") or ""),
            recent_logs=[str(name) for name in recent_logs],
            total_tasks=_int(record.get("total_tasks")),
            completed_tasks=_int(record.get("completed_tasks")),
            next_task=str(record.get("next_task") or ""),
        )


def save_session_state(state: SessionState,
                       state_path: str = loop_mod.SESSION_STATE_PATH) -> None:
    Path(state_path).parent.mkdir(parents=True, exist_ok=True)
    with open(state_path, "w") as f:
        yaml.safe_dump(state.to_record(), f, default_flow_style=False, sort_keys=False,
                       allow_unicode=True)


def load_session_state(state_path: str = loop_mod.SESSION_STATE_PATH) -> Optional[SessionState]:
    """Read the snapshot. Returns None when missing or unreadable."""
    try:
        with open(state_path, "r") as f:
            record = yaml.safe_load(f)
    except (IOError, yaml.YAMLError):
        return None
    if not isinstance(record, dict):
        return None
    return SessionState.from_record(record)


def clear_session_state(state_path: str = loop_mod.SESSION_STATE_PATH) -> None:
    if os.path.exists(state_path):
        os.remove(state_path)


# ─── Snapshot Capture ────────────────────────────────────────────────


def recent_log_files(log_dir: str = loop_mod.DEFAULT_LOG_DIR,
                     limit: int = RECENT_LOG_COUNT) -> list[str]:
    """Names of the most recently modified agent logs, newest first."""
    log_path = Path(log_dir)
    if not log_path.is_dir():
        return []
    logs = [p for p in log_path.glob("claude-*") if p.is_file()]
    logs.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return [p.name for p in logs[:limit]]


def capture_session_state(plan_path: Optional[str],
                          log_dir: str = loop_mod.DEFAULT_LOG_DIR) -> SessionState:
    """Build a snapshot of the current working directory."""
    if plan_path:
        source = loop_mod.TaskSource(plan_path)
        counts = source.counts()
        next_task = source.next_task() or ""
    else:
        counts = loop_mod.TaskCounts()
        next_task = ""
    return SessionState(
        paused_at=datetime.now().isoformat(timespec="seconds"),
        working_directory=os.getcwd(),
        branch=loop_mod.git_current_branch(),
        uncommitted_changes=autocommit.git_status_porcelain(),
        recent_logs=recent_log_files(log_dir),
        total_tasks=counts.total,
        completed_tasks=counts.done,
        next_task=next_task,
    )


def find_conflicts(state: SessionState, current: SessionState,
                   loop_pid: Optional[int]) -> list[str]:
    """Differences between a saved snapshot and the repository now."""
    conflicts = []
    if state.branch and current.branch and state.branch != current.branch:
        conflicts.append(f"Branch changed: paused on '{state.branch}', now on '{current.branch}'")
    if state.working_directory and state.working_directory != current.working_directory:
        conflicts.append(f"Working directory changed: paused in {state.working_directory}, "
                         f"now in {current.working_directory}")
    if loop_pid is not None:
        conflicts.append(f"A loop is already running in this directory (PID {loop_pid})")
    if state.next_task != current.next_task:
        conflicts.append(f"Next task changed: was '{state.next_task or '(none)'}', "
                         f"now '{current.next_task or '(none)'}'")
    return conflicts


# ─── Loop Process Control ────────────────────────────────────────────


def stop_loop_process(pid: int, timeout: float = PAUSE_TIMEOUT_SECONDS) -> bool:
    """SIGTERM the loop and wait; SIGKILL if it outlives timeout.

    Returns True if the process ended within the grace period.
    """
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True
    deadline = time.time() + timeout
    while time.time() < deadline:
        if not autocommit.pid_is_running(pid):
            return True
        time.sleep(0.5)
    print(f"Loop (PID {pid}) did not stop within {timeout:.0f}s. Killing...")
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    return False


def confirm(question: str) -> bool:
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


# ─── Commands ────────────────────────────────────────────────────────


def cmd_pause(args: argparse.Namespace) -> int:
    config = loop_mod.build_loop_config()
    pid = loop_mod.find_running_loop()
    if pid is None:
        print("WARNING: no running loop found; saving snapshot anyway")
    else:
        print(f"Stopping loop (PID {pid}), waiting up to {PAUSE_TIMEOUT_SECONDS:.0f}s...")
        if not stop_loop_process(pid):
            print("WARNING: loop was killed; agent processes it started may still be running")
        # A killed loop cannot clean up after itself
        autocommit.remove_pid_file(loop_mod.LOOP_PID_PATH, pid)

    state = capture_session_state(loop_mod.resolve_plan_path(config.plan_path), config.log_dir)
    save_session_state(state)
    print(f"Session paused at {state.paused_at}")
    print(f"Progress: {state.completed_tasks}/{state.total_tasks} tasks done")
    if state.next_task:
        print(f"Next task: {state.next_task}")
    if state.uncommitted_changes.strip():
        print("Uncommitted changes:")
        print(state.uncommitted_changes.rstrip())
    print(f"Snapshot: {loop_mod.SESSION_STATE_PATH}")
    return loop_mod.EXIT_SUCCESS


def cmd_resume(args: argparse.Namespace) -> int:
    state = load_session_state()
    if state is None:
        print(f"ERROR: no paused session found ({loop_mod.SESSION_STATE_PATH})")
        return loop_mod.EXIT_FAILURE

    config = loop_mod.build_loop_config()
    current = capture_session_state(loop_mod.resolve_plan_path(config.plan_path), config.log_dir)
    loop_pid = loop_mod.find_running_loop()

    print(f"Resuming session paused at {state.paused_at}")
    print(f"Progress then: {state.completed_tasks}/{state.total_tasks}, "
          f"now: {current.completed_tasks}/{current.total_tasks}")

    conflicts = find_conflicts(state, current, loop_pid)
    for conflict in conflicts:
        print(f"WARNING: {conflict}")
    if conflicts and not (args.force or args.yes):
        if not confirm("Resume anyway?"):
            print("Resume cancelled; snapshot kept")
            return loop_mod.EXIT_FAILURE
    if loop_pid is not None:
        config.force = True

    return loop_mod.run_loop(config)


def cmd_status(args: argparse.Namespace) -> int:
    config = loop_mod.build_loop_config()
    plan_path = loop_mod.resolve_plan_path(config.plan_path)
    loop_pid = loop_mod.find_running_loop()

    print("=== FSD Status ===")
    print(f"Loop:        {'running (PID ' + str(loop_pid) + ')' if loop_pid else 'not running'}")
    if plan_path:
        source = loop_mod.TaskSource(plan_path)
        counts = source.counts()
        print(f"Plan:        {plan_path}")
        print(f"Tasks:       {counts.done}/{counts.total} done, "
              f"{counts.in_progress} in progress, {counts.open} open")
        print(f"Next task:   {source.next_task() or '(all done)'}")
    else:
        print("Plan:        not found")

    state = load_session_state()
    if state is None:
        print("Snapshot:    none")
    else:
        print(f"Snapshot:    paused at {state.paused_at} on '{state.branch}' "
              f"({state.completed_tasks}/{state.total_tasks} done)")

    ac_config = autocommit.load_auto_commit_config()
    ac_pid = autocommit.live_pid_from_file(autocommit.AUTO_COMMIT_PID_PATH)
    print(f"Auto-commit: {'enabled' if ac_config.enabled else 'disabled'}"
          f"{', monitor PID ' + str(ac_pid) if ac_pid else ''}")

    logs = recent_log_files(config.log_dir)
    print("Recent logs:" + ("" if logs else " none"))
    for name in logs:
        print(f"  {name}")
    return loop_mod.EXIT_SUCCESS


COMMANDS = {
    "pause": cmd_pause,
    "resume": cmd_resume,
    "status": cmd_status,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Pause, resume or inspect an FSD loop session")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("pause", help="Stop the running loop and save a snapshot")
    resume = sub.add_parser("resume", help="Restart the loop from a saved snapshot")
    resume.add_argument("--force", action="store_true",
                        help="Resume despite conflicts without asking")
    resume.add_argument("--yes", "-y", action="store_true",
                        help="Answer yes to the conflict prompt")
    sub.add_parser("status", help="Show loop, plan, snapshot and auto-commit state")

    args = parser.parse_args(argv)
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
