#!/usr/bin/env -S python3 -u
"""
Auto-Commit: background commit safety net for the FSD development loop.

Watches logs/ for agent activity and commits outstanding working-tree
changes once no log file has been written for the configured timeout.
The loop normally commits on its own during verification; this monitor
only catches work that would otherwise sit uncommitted.

Usage:
    python scripts/auto-commit.py enable [--timeout SECONDS]
    python scripts/auto-commit.py disable
    python scripts/auto-commit.py monitor [--daemon]
    python scripts/auto-commit.py stop
    python scripts/auto-commit.py commit
    python scripts/auto-commit.py status

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import yaml

try:
    from watchdog.observers import Observer
    from watchdog.events import FileSystemEventHandler
except ImportError:
    print("[AUTO-COMMIT] ERROR: watchdog not installed. Run: pip install watchdog")
    sys.exit(1)

# ─── Configuration ────────────────────────────────────────────────────

STATE_DIR = ".claude-fsd"
AUTO_COMMIT_CONFIG_PATH = ".claude-fsd/auto-commit.yaml"
AUTO_COMMIT_PID_PATH = ".claude-fsd/auto-commit.pid"
MONITOR_OUTPUT_PATH = ".claude-fsd/auto-commit-monitor.out"
LOG_DIR = "logs"

# Session bookkeeping is never part of the work being committed
COMMIT_EXCLUDED_PATHS = [STATE_DIR]

DEFAULT_AUTO_COMMIT_ENABLED = False
DEFAULT_AUTO_COMMIT_TIMEOUT_SECONDS = 1800  # 30 minutes
MIN_AUTO_COMMIT_TIMEOUT_SECONDS = 60
MONITOR_POLL_INTERVAL_SECONDS = 30
MONITOR_SHUTDOWN_TIMEOUT_SECONDS = 10

AUTO_COMMIT_MESSAGE_TEMPLATE = "Auto-commit: work in progress after {minutes}m of inactivity"

_PID = os.getpid()


# ─── Logging ──────────────────────────────────────────────────────────


def log(message: str) -> None:
    """Print a timestamped log message with PID for process tracking."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] [AUTO-COMMIT:{_PID}] {message}", flush=True)


# ─── Process Liveness ────────────────────────────────────────────────


def pid_is_running(pid: int) -> bool:
    """Check whether a process with the given PID exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)  # Signal 0 just checks existence
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    except OSError:
        return False
    return True


def read_pid_file(pid_path: str) -> Optional[int]:
    """Read a PID file. Returns None when missing or unparseable."""
    try:
        with open(pid_path, "r") as f:
            pid_str = f.read().strip()
        return int(pid_str) if pid_str else None
    except (IOError, ValueError):
        return None


def live_pid_from_file(pid_path: str) -> Optional[int]:
    """Return the PID recorded in pid_path if that process is still alive."""
    pid = read_pid_file(pid_path)
    if pid is not None and pid_is_running(pid):
        return pid
    return None


def write_pid_file(pid_path: str, pid: Optional[int] = None) -> None:
    """Record a PID (default: this process) in pid_path."""
    Path(pid_path).parent.mkdir(parents=True, exist_ok=True)
    with open(pid_path, "w") as f:
        f.write(f"{pid if pid is not None else os.getpid()}\n")


def remove_pid_file(pid_path: str, pid: Optional[int] = None) -> None:
    """Remove pid_path, but only if it still names pid (default: this process)."""
    owner = pid if pid is not None else os.getpid()
    if read_pid_file(pid_path) == owner:
        try:
            os.remove(pid_path)
        except FileNotFoundError:
            pass


# ─── Git Helpers ─────────────────────────────────────────────────────


def commit_pathspec() -> list:
    """Pathspec covering the whole tree except the session bookkeeping paths."""
    return ["--", "."] + [f":(exclude){path}" for path in COMMIT_EXCLUDED_PATHS]


def git_status_porcelain(cwd: str = ".") -> str:
    """Return the raw `git status --porcelain` listing, or "" outside a repo."""
    try:
        result = subprocess.run(
            ["git", "status", "--porcelain"] + commit_pathspec(),
            capture_output=True, text=True, cwd=cwd,
        )
    except OSError:
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout


def git_has_changes(cwd: str = ".") -> bool:
    """True when the working tree has staged, unstaged or untracked changes."""
    return bool(git_status_porcelain(cwd).strip())


def git_commit_all(message: str, cwd: str = ".") -> bool:
    """Stage everything and commit. Returns True if a commit was created."""
    try:
        add = subprocess.run(
            ["git", "add", "-A"] + commit_pathspec(), capture_output=True, text=True, cwd=cwd,
        )
        if add.returncode != 0:
            log(f"WARNING: git add failed: {add.stderr.strip()[:200]}")
            return False
        commit = subprocess.run(
            ["git", "commit", "-m", message], capture_output=True, text=True, cwd=cwd,
        )
    except OSError as e:
        log(f"WARNING: git not available: {e}")
        return False
    if commit.returncode != 0:
        log(f"WARNING: git commit failed: {(commit.stderr or commit.stdout).strip()[:200]}")
        return False
    return True


# ─── Auto-Commit Config ──────────────────────────────────────────────


@dataclass
class AutoCommitConfig:
    """Persisted auto-commit settings.

    The file is a best-effort store shared by the control commands and the
    monitor; readers tolerate a stale or missing file by using defaults.
    """
    enabled: bool = DEFAULT_AUTO_COMMIT_ENABLED
    timeout_seconds: int = DEFAULT_AUTO_COMMIT_TIMEOUT_SECONDS
    last_commit: int = 0  # epoch seconds, 0 = never

    def to_record(self) -> dict:
        return {
            "enabled": bool(self.enabled),
            "timeout_seconds": int(self.timeout_seconds),
            "last_commit": int(self.last_commit),
        }

    @classmethod
    def from_record(cls, record: dict) -> "AutoCommitConfig":
        defaults = cls()
        try:
            timeout = int(record.get("timeout_seconds", defaults.timeout_seconds))
        except (TypeError, ValueError):
            timeout = defaults.timeout_seconds
        try:
            last_commit = int(record.get("last_commit", 0) or 0)
        except (TypeError, ValueError):
            last_commit = 0
        enabled = record.get("enabled", defaults.enabled)
        return cls(
            enabled=enabled if isinstance(enabled, bool) else defaults.enabled,
            timeout_seconds=max(timeout, MIN_AUTO_COMMIT_TIMEOUT_SECONDS),
            last_commit=last_commit,
        )


def load_auto_commit_config(config_path: str = AUTO_COMMIT_CONFIG_PATH) -> AutoCommitConfig:
    """Load the auto-commit config. Missing or invalid files yield defaults."""
    try:
        with open(config_path, "r") as f:
            record = yaml.safe_load(f)
    except (IOError, yaml.YAMLError):
        return AutoCommitConfig()
    if not isinstance(record, dict):
        return AutoCommitConfig()
    return AutoCommitConfig.from_record(record)


def save_auto_commit_config(
    config: AutoCommitConfig, config_path: str = AUTO_COMMIT_CONFIG_PATH
) -> None:
    """Write all three config fields."""
    Path(config_path).parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.safe_dump(config.to_record(), f, default_flow_style=False, sort_keys=False)


# ─── Filesystem Watcher ──────────────────────────────────────────────


class LogActivityHandler(FileSystemEventHandler):
    """Watchdog handler that reports any file write under the log directory."""

    def __init__(self, activity_callback: Callable[[], None]):
        super().__init__()
        self.activity_callback = activity_callback

    def on_created(self, event):
        if not event.is_directory:
            self.activity_callback()

    def on_modified(self, event):
        if not event.is_directory:
            self.activity_callback()


# ─── Monitor ─────────────────────────────────────────────────────────


class AutoCommitMonitor:
    """Commits outstanding changes after a period without log activity.

    Hosted either in-process by the development loop (start()/stop()) or as
    a standalone long-running monitor (run_forever()). At most one monitor
    per working directory is allowed through a PID-file liveness check; this
    is advisory, two monitors racing to start are tolerated.
    """

    def __init__(
        self,
        config_path: str = AUTO_COMMIT_CONFIG_PATH,
        pid_path: str = AUTO_COMMIT_PID_PATH,
        log_dir: str = LOG_DIR,
        repo_dir: str = ".",
        poll_interval: float = MONITOR_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.config_path = config_path
        self.pid_path = pid_path
        self.log_dir = log_dir
        self.repo_dir = repo_dir
        self.poll_interval = poll_interval
        self.clock = clock
        self.last_activity = clock()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._observer = None

    def record_activity(self) -> None:
        """Reset the inactivity clock (called on every log-file write)."""
        with self._lock:
            self.last_activity = self.clock()

    def inactive_seconds(self) -> float:
        with self._lock:
            return self.clock() - self.last_activity

    def check_once(self) -> bool:
        """Run one monitor check. Returns True if a commit was made.

        Commits only when enabled, the inactivity timeout has elapsed and the
        tree is dirty. After a commit attempt the inactivity clock restarts,
        so at most one commit happens per timeout period.
        """
        config = load_auto_commit_config(self.config_path)
        if not config.enabled:
            return False
        if self.inactive_seconds() < config.timeout_seconds:
            return False
        if not git_has_changes(self.repo_dir):
            return False

        minutes = config.timeout_seconds // 60
        message = AUTO_COMMIT_MESSAGE_TEMPLATE.format(minutes=minutes)
        committed = git_commit_all(message, self.repo_dir)
        now = self.clock()
        with self._lock:
            self.last_activity = now
        if committed:
            # Re-read so a concurrent enable/disable is not clobbered
            latest = load_auto_commit_config(self.config_path)
            latest.last_commit = int(now)
            save_auto_commit_config(latest, self.config_path)
            log(f"Committed outstanding changes after {minutes}m of inactivity")
        return committed

    def _start_observer(self) -> None:
        Path(self.log_dir).mkdir(parents=True, exist_ok=True)
        self._observer = Observer()
        self._observer.schedule(
            LogActivityHandler(self.record_activity), self.log_dir, recursive=True
        )
        self._observer.start()

    def _stop_observer(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=MONITOR_SHUTDOWN_TIMEOUT_SECONDS)
            self._observer = None

    def _poll_loop(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            try:
                self.check_once()
            except (OSError, yaml.YAMLError) as e:
                log(f"WARNING: monitor check failed: {e}")

    def acquire(self) -> bool:
        """Claim the PID file. False if another live monitor owns it."""
        owner = live_pid_from_file(self.pid_path)
        if owner is not None and owner != os.getpid():
            return False
        write_pid_file(self.pid_path)
        return True

    def start(self) -> bool:
        """Start monitoring in a background thread. False if another monitor is live."""
        if self._thread is not None:
            return True
        if not self.acquire():
            return False
        self._stop_event.clear()
        self.record_activity()
        self._start_observer()
        self._thread = threading.Thread(
            target=self._poll_loop, name="auto-commit-monitor", daemon=True
        )
        self._thread.start()
        return True

    def request_stop(self) -> None:
        """Ask the monitor to stop; safe to call from a signal handler."""
        self._stop_event.set()

    def stop(self) -> None:
        """Stop the background thread and release the PID file."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=MONITOR_SHUTDOWN_TIMEOUT_SECONDS)
            self._thread = None
        self._stop_observer()
        remove_pid_file(self.pid_path)

    def run_forever(self) -> None:
        """Foreground monitor loop; returns after stop() or SIGTERM/SIGINT."""
        if not self.start():
            return
        try:
            while not self._stop_event.wait(1):
                pass
        finally:
            self.stop()


# ─── Commands ────────────────────────────────────────────────────────


def format_last_commit(last_commit: int) -> str:
    if not last_commit:
        return "never"
    return datetime.fromtimestamp(last_commit).strftime("%Y-%m-%d %H:%M:%S")


def cmd_enable(args: argparse.Namespace) -> int:
    config = load_auto_commit_config(args.config)
    config.enabled = True
    if args.timeout is not None:
        if args.timeout < MIN_AUTO_COMMIT_TIMEOUT_SECONDS:
            print(f"ERROR: timeout must be at least {MIN_AUTO_COMMIT_TIMEOUT_SECONDS}s")
            return 1
        config.timeout_seconds = args.timeout
    save_auto_commit_config(config, args.config)
    print(f"Auto-commit enabled (timeout: {config.timeout_seconds}s)")
    return 0


def cmd_disable(args: argparse.Namespace) -> int:
    config = load_auto_commit_config(args.config)
    config.enabled = False
    save_auto_commit_config(config, args.config)
    print("Auto-commit disabled")
    owner = live_pid_from_file(AUTO_COMMIT_PID_PATH)
    if owner is not None:
        print(f"Monitor (PID {owner}) stays idle while disabled; stop it with: auto-commit stop")
    return 0


def spawn_daemon() -> int:
    """Re-launch this script as a detached `monitor` process."""
    # Output stays out of logs/ so it never counts as agent activity
    Path(STATE_DIR).mkdir(parents=True, exist_ok=True)
    with open(MONITOR_OUTPUT_PATH, "a") as out:
        process = subprocess.Popen(
            [sys.executable, os.path.abspath(__file__), "monitor"],
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=subprocess.STDOUT,
            cwd=os.getcwd(),
            start_new_session=True,
        )
    return process.pid


def cmd_monitor(args: argparse.Namespace) -> int:
    owner = live_pid_from_file(AUTO_COMMIT_PID_PATH)
    if owner is not None:
        print(f"Auto-commit monitor already running (PID {owner})")
        return 0

    if args.daemon:
        pid = spawn_daemon()
        print(f"Auto-commit monitor started in background (PID {pid})")
        print(f"Stop it with: {os.path.basename(__file__)} stop")
        return 0

    config = load_auto_commit_config(args.config)
    if not config.enabled:
        log("Auto-commit is disabled; monitor will idle until enabled")
    monitor = AutoCommitMonitor(config_path=args.config)

    def _handle_signal(signum, frame):
        log("Received shutdown signal, stopping monitor...")
        monitor.request_stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    log(f"Monitoring {LOG_DIR}/ (timeout: {config.timeout_seconds}s)")
    monitor.run_forever()
    log("Auto-commit monitor stopped.")
    return 0


def cmd_stop(args: argparse.Namespace) -> int:
    owner = live_pid_from_file(AUTO_COMMIT_PID_PATH)
    if owner is None:
        print("No auto-commit monitor running")
        return 0
    os.kill(owner, signal.SIGTERM)
    print(f"Sent stop signal to auto-commit monitor (PID {owner})")
    return 0


def cmd_commit(args: argparse.Namespace) -> int:
    if not git_has_changes():
        print("Nothing to commit, working tree clean")
        return 0
    if not git_commit_all("Auto-commit: manual checkpoint"):
        return 1
    config = load_auto_commit_config(args.config)
    config.last_commit = int(time.time())
    save_auto_commit_config(config, args.config)
    print("Committed outstanding changes")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    config = load_auto_commit_config(args.config)
    owner = live_pid_from_file(AUTO_COMMIT_PID_PATH)
    print(f"Auto-commit: {'enabled' if config.enabled else 'disabled'}")
    print(f"Timeout:     {config.timeout_seconds}s ({config.timeout_seconds // 60}m)")
    print(f"Last commit: {format_last_commit(config.last_commit)}")
    print(f"Monitor:     {'running (PID ' + str(owner) + ')' if owner else 'not running'}")
    print(f"Tree:        {'dirty' if git_has_changes() else 'clean'}")
    return 0


COMMANDS = {
    "enable": cmd_enable,
    "disable": cmd_disable,
    "monitor": cmd_monitor,
    "stop": cmd_stop,
    "commit": cmd_commit,
    "status": cmd_status,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Auto-commit safety net for the FSD development loop"
    )
    parser.add_argument(
        "--config",
        default=AUTO_COMMIT_CONFIG_PATH,
        help=f"Path to auto-commit config (default: {AUTO_COMMIT_CONFIG_PATH})",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    enable = sub.add_parser("enable", help="Enable auto-commit")
    enable.add_argument(
        "--timeout", type=int, default=None, metavar="SECONDS",
        help=f"Inactivity timeout (default: {DEFAULT_AUTO_COMMIT_TIMEOUT_SECONDS})",
    )
    sub.add_parser("disable", help="Disable auto-commit")
    monitor = sub.add_parser("monitor", help="Run the inactivity monitor")
    monitor.add_argument(
        "--daemon", action="store_true",
        help="Detach and keep monitoring after this shell exits",
    )
    sub.add_parser("stop", help="Stop a running monitor")
    sub.add_parser("commit", help="Commit outstanding changes now")
    sub.add_parser("status", help="Show auto-commit settings and monitor state")

    args = parser.parse_args(argv)
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
