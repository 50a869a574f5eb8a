#!/usr/bin/env -S python3 -u
"""
FSD Loop: supervised, plan-driven development cycle for Claude Code.

Each iteration plans the next task from docs/PLAN.md, has Claude implement
it, launches an optional background code review, and runs a verification
pass that commits finished work. The loop repeats until the verifier
reports that all work is verified complete, or until repeated anomalously
fast iterations indicate that the agent service is failing.

Usage:
    python scripts/fsd-loop.py [--plan PATH] [--verbose] [--no-review]
                               [--no-auto-commit] [--force]

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import contextlib
import importlib.util
import os
import re
import shutil
import signal
import subprocess
import sys
import tempfile
import termios
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import yaml

# Import the auto-commit monitor from the sibling script
_ac_spec = importlib.util.spec_from_file_location(
    "auto_commit", os.path.join(os.path.dirname(os.path.abspath(__file__)), "auto-commit.py"))
autocommit = importlib.util.module_from_spec(_ac_spec)
_ac_spec.loader.exec_module(autocommit)

# ─── Configuration ────────────────────────────────────────────────────

LOOP_CONFIG_PATH = ".claude-fsd/config.yaml"
SESSION_STATE_PATH = ".claude-fsd/session-state.yaml"
LOOP_PID_PATH = ".claude-fsd/loop.pid"
STOP_SEMAPHORE_PATH = ".claude-fsd/.stop"
DEFAULT_PLAN_PATHS = ["docs/PLAN.md", "PLAN.md"]
DEFAULT_LOG_DIR = "logs"
LOG_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

# Log artifact phases
PHASE_PLANNER = "planner"
PHASE_DEVELOPER = "developer"
PHASE_REVIEWER = "reviewer"
PHASE_TESTER = "tester"

# Model classes and their default concrete models
MODEL_PRIMARY = "primary"
MODEL_DEEP = "deep"
DEFAULT_PRIMARY_MODEL = "sonnet"
DEFAULT_DEEP_MODEL = "opus"

# Failure-mode detection
DEFAULT_FAST_ITERATION_SECONDS = 300  # iterations shorter than this are suspicious
DEFAULT_BACKOFF_STEP_SECONDS = 60
DEFAULT_MAX_FAST_ITERATIONS = 3
DEFAULT_DEEP_PLANNING_INTERVAL = 4

ITERATION_NORMAL = "normal"
ITERATION_FAST = "fast"

# Verification verdicts
VERDICT_COMMITTED = "complete-and-committed"
VERDICT_INCOMPLETE = "incomplete"
VERDICT_ALL_DONE = "all-tasks-done"
ALL_DONE_MARKER = "<VERIFIED_ALL_DONE>"

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

CHILD_SHUTDOWN_TIMEOUT_SECONDS = 10
STREAM_JOIN_TIMEOUT_SECONDS = 5
CANCEL_POLL_SECONDS = 1

# Worst-case time from SIGTERM to exit with an agent, a review and the
# auto-commit monitor all running
LOOP_SHUTDOWN_TIMEOUT_SECONDS = (
    CANCEL_POLL_SECONDS
    + CHILD_SHUTDOWN_TIMEOUT_SECONDS + 2 * STREAM_JOIN_TIMEOUT_SECONDS
    + CHILD_SHUTDOWN_TIMEOUT_SECONDS
    + 2 * autocommit.MONITOR_SHUTDOWN_TIMEOUT_SECONDS
)

STATUS_TICK_SECONDS = 1.0
REVIEWER_BINARY = "codex"

# Known locations for the claude binary
CLAUDE_BINARY_SEARCH_PATHS = [
    "/opt/homebrew/lib/node_modules/@anthropic-ai/claude-code/cli.js",
    "/usr/local/lib/node_modules/@anthropic-ai/claude-code/cli.js",
]

# CLAUDECODE is set by Claude Code to detect nested sessions; strip it so
# the loop can be launched from inside a Claude Code session.
STRIPPED_ENV_VARS = ["CLAUDECODE"]

LOG_STDOUT_SECTION = "=== STDOUT ==="
LOG_STDERR_SECTION = "=== STDERR ==="

_saved_terminal_settings = None  # Saved termios settings for restoration


@dataclass
class LoopConfig:
    """Settings for one loop session, built once in main() and passed down."""
    plan_path: str = ""
    log_dir: str = DEFAULT_LOG_DIR
    tmp_dir: str = field(default_factory=tempfile.gettempdir)
    verbose: bool = False
    primary_model: str = DEFAULT_PRIMARY_MODEL
    deep_model: str = DEFAULT_DEEP_MODEL
    fast_iteration_seconds: float = DEFAULT_FAST_ITERATION_SECONDS
    backoff_step_seconds: float = DEFAULT_BACKOFF_STEP_SECONDS
    max_fast_iterations: int = DEFAULT_MAX_FAST_ITERATIONS
    deep_planning_interval: int = DEFAULT_DEEP_PLANNING_INTERVAL
    review_enabled: bool = True
    auto_commit: bool = True
    force: bool = False
    claude_cmd: list[str] = field(default_factory=lambda: ["claude"])

    def model_name(self, model_class: str) -> str:
        """Map a model class (primary/deep) to the concrete model name."""
        return self.deep_model if model_class == MODEL_DEEP else self.primary_model


# Keys accepted in .claude-fsd/config.yaml, with the type they are coerced to
CONFIG_FILE_KEYS = {
    "plan_path": str,
    "log_dir": str,
    "tmp_dir": str,
    "primary_model": str,
    "deep_model": str,
    "fast_iteration_seconds": float,
    "backoff_step_seconds": float,
    "max_fast_iterations": int,
    "deep_planning_interval": int,
    "review_enabled": bool,
    "auto_commit": bool,
}


def load_loop_config_file(config_path: str = LOOP_CONFIG_PATH) -> dict:
    """Load project-level loop config from .claude-fsd/config.yaml.

    Returns the parsed dict, or an empty dict if the file doesn't exist.
    """
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
        return config if isinstance(config, dict) else {}
    except (IOError, yaml.YAMLError):
        return {}


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def build_loop_config(
    args: Optional[argparse.Namespace] = None,
    environ: Optional[dict] = None,
    config_path: str = LOOP_CONFIG_PATH,
) -> LoopConfig:
    """Merge defaults, config file, environment and CLI flags (in that order)."""
    environ = os.environ if environ is None else environ
    config = LoopConfig()

    for key, value in load_loop_config_file(config_path).items():
        caster = CONFIG_FILE_KEYS.get(key)
        if caster is None:
            print(f"[WARNING] Unknown key in {config_path}: {key}")
            continue
        if caster is bool and not isinstance(value, bool):
            print(f"[WARNING] Invalid value for {key} in {config_path}: {value!r}")
            continue
        try:
            setattr(config, key, caster(value))
        except (TypeError, ValueError):
            print(f"[WARNING] Invalid value for {key} in {config_path}: {value!r}")

    if _env_flag(environ.get("CLAUDEFSD_VERBOSE")):
        config.verbose = True
    if environ.get("CLAUDEFSD_TMPDIR"):
        config.tmp_dir = environ["CLAUDEFSD_TMPDIR"]

    if args is not None:
        if getattr(args, "plan", None):
            config.plan_path = args.plan
        if getattr(args, "verbose", False):
            config.verbose = True
        if getattr(args, "no_review", False):
            config.review_enabled = False
        if getattr(args, "no_auto_commit", False):
            config.auto_commit = False
        if getattr(args, "force", False):
            config.force = True

    if config.deep_planning_interval < 1:
        config.deep_planning_interval = DEFAULT_DEEP_PLANNING_INTERVAL
    if config.max_fast_iterations < 1:
        config.max_fast_iterations = DEFAULT_MAX_FAST_ITERATIONS
    return config


def resolve_plan_path(explicit: str = "") -> Optional[str]:
    """Return the plan document path, or None if no plan document exists."""
    candidates = [explicit] if explicit else DEFAULT_PLAN_PATHS
    for candidate in candidates:
        if os.path.isfile(candidate):
            return candidate
    return None


# ─── Logging ──────────────────────────────────────────────────────────


_LOOP_PID = os.getpid()


def log(message: str) -> None:
    """Print a timestamped log message with PID for process tracking."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] [FSD-LOOP:{_LOOP_PID}] {message}", flush=True)


def verbose_log(message: str, verbose: bool, prefix: str = "VERBOSE") -> None:
    """Print a verbose log message if verbose mode is enabled."""
    if verbose:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        print(f"[{timestamp}] [{prefix}:{_LOOP_PID}] {message}", flush=True)


# ─── Terminal Management ─────────────────────────────────────────────


def save_terminal_settings() -> None:
    """Save current terminal settings. Call before spawning child processes."""
    global _saved_terminal_settings
    try:
        if sys.stdin.isatty():
            _saved_terminal_settings = termios.tcgetattr(sys.stdin)
    except (termios.error, OSError, ValueError):
        pass


def restore_terminal_settings() -> None:
    """Restore terminal settings after a child process exits or is killed.

    Claude CLI can leave the terminal in raw mode when killed abruptly.
    """
    if _saved_terminal_settings is None:
        return
    try:
        if sys.stdin.isatty():
            termios.tcsetattr(sys.stdin, termios.TCSADRAIN, _saved_terminal_settings)
    except (termios.error, OSError, ValueError):
        pass


# ─── Stop Semaphore & Session Markers ────────────────────────────────


def check_stop_requested(stop_path: str = STOP_SEMAPHORE_PATH) -> bool:
    """Check if a graceful stop has been requested via semaphore file.

    The loop checks for the file before starting each iteration.
    To request a stop:  touch .claude-fsd/.stop
    """
    return os.path.exists(stop_path)


def clear_stop_semaphore(stop_path: str = STOP_SEMAPHORE_PATH) -> None:
    """Remove the stop semaphore file if it exists."""
    if os.path.exists(stop_path):
        os.remove(stop_path)
        log(f"Cleared stale stop semaphore: {stop_path}")


def clear_session_snapshot(state_path: str = SESSION_STATE_PATH) -> None:
    """Delete a pause snapshot; a new loop session makes it stale."""
    if os.path.exists(state_path):
        os.remove(state_path)
        log(f"Cleared pause snapshot: {state_path}")


def find_running_loop(pid_path: str = LOOP_PID_PATH) -> Optional[int]:
    """PID of a live loop in this working directory, if any."""
    return autocommit.live_pid_from_file(pid_path)


# ─── Git Helpers ─────────────────────────────────────────────────────


def git_head_commit(cwd: str = ".") -> str:
    """Return the current HEAD commit hash, or "" when unavailable."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"], capture_output=True, text=True, cwd=cwd,
        )
    except OSError:
        return ""
    return result.stdout.strip() if result.returncode == 0 else ""


def git_current_branch(cwd: str = ".") -> str:
    """Return the checked-out branch name, or "" when unavailable."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            capture_output=True, text=True, cwd=cwd,
        )
    except OSError:
        return ""
    return result.stdout.strip() if result.returncode == 0 else ""


# ─── Task Source ─────────────────────────────────────────────────────

STATUS_OPEN = "open"
STATUS_IN_PROGRESS = "in-progress"
STATUS_DONE = "done"

TASK_MARKERS = {
    " ": STATUS_OPEN,
    "~": STATUS_IN_PROGRESS,
    "x": STATUS_DONE,
    "X": STATUS_DONE,
}

# "- [ ] text", "* [x] text", "  - [~] text"
TASK_LINE_PATTERN = re.compile(r"^\s*[-*+]\s+\[([ xX~])\]\s*(.*?)\s*$")


@dataclass(frozen=True)
class PlanTask:
    """One checklist line from the plan document."""
    status: str
    text: str
    line_number: int


@dataclass(frozen=True)
class TaskCounts:
    total: int = 0
    done: int = 0
    in_progress: int = 0

    @property
    def open(self) -> int:
        return self.total - self.done - self.in_progress


def parse_plan_tasks(content: str) -> list[PlanTask]:
    """Extract checklist tasks from plan text, in document order."""
    tasks: list[PlanTask] = []
    for line_number, line in enumerate(content.splitlines(), 1):
        match = TASK_LINE_PATTERN.match(line)
        if match:
            tasks.append(PlanTask(
                status=TASK_MARKERS[match.group(1)],
                text=match.group(2),
                line_number=line_number,
            ))
    return tasks


class TaskSource:
    """Read-only view over the plan document.

    Document order is priority order. The plan is re-read on every call so
    edits made by the agents between iterations are picked up.
    """

    def __init__(self, plan_path: str):
        self.plan_path = plan_path

    def tasks(self) -> list[PlanTask]:
        """All checklist tasks; [] when the plan is missing or unreadable."""
        try:
            with open(self.plan_path, "r", encoding="utf-8", errors="replace") as f:
                content = f.read()
        except (IOError, OSError, TypeError):
            return []
        return parse_plan_tasks(content)

    def next_task(self) -> Optional[str]:
        """Text of the first open task, else the first in-progress task.

        Returns None (all done) when neither remains.
        """
        tasks = self.tasks()
        for wanted in (STATUS_OPEN, STATUS_IN_PROGRESS):
            for task in tasks:
                if task.status == wanted:
                    return task.text
        return None

    def counts(self) -> TaskCounts:
        tasks = self.tasks()
        return TaskCounts(
            total=len(tasks),
            done=sum(1 for t in tasks if t.status == STATUS_DONE),
            in_progress=sum(1 for t in tasks if t.status == STATUS_IN_PROGRESS),
        )


# ─── Agent Invocation ────────────────────────────────────────────────


@dataclass
class InvocationResult:
    """Outcome of one agent invocation. The exit code is informational only."""
    output: str
    log_path: str
    duration_seconds: float
    exit_code: int
    cancelled: bool = False


class OutputCollector:
    """Collects output from Claude CLI and tracks stats."""

    def __init__(self):
        self.lines: list[str] = []
        self.bytes_received = 0
        self.line_count = 0

    def add_line(self, line: str) -> None:
        self.lines.append(line)
        self.bytes_received += len(line.encode("utf-8"))
        self.line_count += 1

    def get_output(self) -> str:
        return "".join(self.lines)


def stream_output(pipe, prefix: str, collector: OutputCollector, show_full: bool,
                  sink=None) -> None:
    """Stream output from a subprocess pipe line by line.

    Lines are collected, optionally echoed (verbose mode) and appended to
    sink as they arrive so the log artifact grows while the agent works.
    """
    try:
        for line in iter(pipe.readline, ""):
            if line:
                collector.add_line(line)
                if sink is not None:
                    sink.write(line)
                    sink.flush()
                if show_full:
                    print(f"[CLAUDE {prefix}] {line.rstrip()}", flush=True)
    except (OSError, ValueError):
        pass


def build_child_env() -> dict[str, str]:
    """Build a clean environment for spawning Claude child processes."""
    env = os.environ.copy()
    for var in STRIPPED_ENV_VARS:
        env.pop(var, None)
    return env


def resolve_claude_binary() -> Optional[list[str]]:
    """Find the claude binary, checking PATH then known install locations.

    Returns a command list (e.g. ['claude'] or ['node', '/path/to/cli.js']),
    or None if Claude CLI cannot be found.
    """
    claude_path = shutil.which("claude")
    if claude_path:
        return [claude_path]

    for search_path in CLAUDE_BINARY_SEARCH_PATHS:
        if os.path.isfile(search_path):
            node_path = shutil.which("node")
            if node_path:
                return [node_path, search_path]

    npx_path = shutil.which("npx")
    if npx_path:
        return [npx_path, "@anthropic-ai/claude-code"]

    return None


def build_agent_command(claude_cmd: list[str], prompt: str, model: str,
                        dangerous: bool) -> list[str]:
    """Build the Claude CLI command line for one invocation."""
    cmd = [*claude_cmd]
    if dangerous:
        cmd.append("--dangerously-skip-permissions")
    cmd.extend(["--print", prompt, "--model", model])
    return cmd


def log_artifact_path(log_dir: str, session_ts: str, phase: str) -> Path:
    """logs/claude-<session timestamp>-<phase>.txt"""
    return Path(log_dir) / f"claude-{session_ts}-{phase}.txt"


def write_log_header(f, phase: str, model: str, extra: Optional[dict] = None) -> None:
    f.write(f"=== Claude FSD {phase} ===\n")
    f.write(f"Timestamp: {datetime.now().isoformat()}\n")
    f.write(f"Phase: {phase}\n")
    f.write(f"Model: {model}\n")
    for key, value in (extra or {}).items():
        f.write(f"{key}: {value}\n")
    f.write(f"\n{LOG_STDOUT_SECTION}\n")
    f.flush()


def write_log_footer(f, stderr: str, duration: float, exit_code: int) -> None:
    f.write(f"\n{LOG_STDERR_SECTION}\n")
    f.write(stderr)
    f.write(f"\n=== END ===\n")
    f.write(f"Duration: {duration:.1f}s\n")
    f.write(f"Return code: {exit_code}\n")


def terminate_process(process: subprocess.Popen,
                      timeout: float = CHILD_SHUTDOWN_TIMEOUT_SECONDS) -> None:
    """Terminate a child process, escalating to kill after timeout."""
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        log(f"Child process {process.pid} did not exit gracefully. Killing...")
        process.kill()
        process.wait()


class AgentInvoker:
    """Runs one blocking Claude CLI invocation and records its log artifact.

    Never raises for agent-side failures: a missing binary, a non-zero exit
    or empty output all come back as an InvocationResult and are judged
    downstream by timing and content.
    """

    def __init__(self, config: LoopConfig, cancel_event: Optional[threading.Event] = None):
        self.config = config
        self.cancel_event = cancel_event or threading.Event()
        self.process: Optional[subprocess.Popen] = None

    def kill_active(self) -> None:
        """Kill the running agent immediately (second interrupt)."""
        process = self.process
        if process is not None and process.poll() is None:
            process.kill()

    def invoke(
        self,
        prompt: str,
        model_class: str,
        dangerous: bool,
        phase: str,
        session_ts: str,
    ) -> InvocationResult:
        """Execute prompt against the agent. Blocks until the agent exits."""
        model = self.config.model_name(model_class)
        log_path = log_artifact_path(self.config.log_dir, session_ts, phase)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = build_agent_command(self.config.claude_cmd, prompt, model, dangerous)
        verbose = self.config.verbose

        verbose_log(f"Invoking {phase} (model={model}, dangerous={dangerous})", verbose, "EXEC")
        verbose_log(f"Prompt length: {len(prompt)} chars", verbose, "EXEC")
        verbose_log(f"Log artifact: {log_path}", verbose, "EXEC")

        stdout_collector = OutputCollector()
        stderr_collector = OutputCollector()
        exit_code = -1
        cancelled = False
        start_time = time.time()

        save_terminal_settings()
        with open(log_path, "w") as log_file:
            write_log_header(log_file, phase, model, {"Dangerous": dangerous})
            try:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    cwd=os.getcwd(),
                    env=build_child_env(),
                )
            except OSError as e:
                log(f"ERROR: Could not start agent for {phase}: {e}")
                stderr_collector.add_line(f"{e}\n")
                exit_code = 127
            else:
                self.process = process
                stdout_thread = threading.Thread(
                    target=stream_output,
                    args=(process.stdout, "OUT", stdout_collector, verbose, log_file),
                )
                stderr_thread = threading.Thread(
                    target=stream_output,
                    args=(process.stderr, "ERR", stderr_collector, verbose),
                )
                stdout_thread.start()
                stderr_thread.start()

                while process.poll() is None:
                    if self.cancel_event.wait(CANCEL_POLL_SECONDS):
                        log(f"Stop requested; terminating {phase} agent (PID {process.pid})...")
                        terminate_process(process)
                        cancelled = True
                        break

                stdout_thread.join(timeout=STREAM_JOIN_TIMEOUT_SECONDS)
                stderr_thread.join(timeout=STREAM_JOIN_TIMEOUT_SECONDS)
                exit_code = process.returncode if process.returncode is not None else -1
                self.process = None
            finally:
                restore_terminal_settings()

            duration = time.time() - start_time
            write_log_footer(log_file, stderr_collector.get_output(), duration, exit_code)

        verbose_log(
            f"{phase} finished: exit={exit_code}, {stdout_collector.line_count} lines, "
            f"{stdout_collector.bytes_received:,} bytes, {duration:.1f}s",
            verbose, "EXEC",
        )
        return InvocationResult(
            output=stdout_collector.get_output(),
            log_path=str(log_path),
            duration_seconds=duration,
            exit_code=exit_code,
            cancelled=cancelled,
        )


# ─── Failure Detection ───────────────────────────────────────────────


@dataclass(frozen=True)
class Iteration:
    """One finished pass through the cycle."""
    number: int
    started_at: float
    ended_at: float
    classification: str

    @property
    def duration(self) -> float:
        return self.ended_at - self.started_at


@dataclass(frozen=True)
class FailureAssessment:
    iteration: Iteration
    consecutive_fast: int
    backoff_seconds: float
    failure_mode: bool


class FailureDetector:
    """Timing heuristic for a degraded agent service.

    A throttled or erroring agent returns almost immediately instead of
    reporting an error, so iterations shorter than the threshold count as
    fast. Each consecutive fast iteration adds backoff_step seconds of delay;
    reaching max_consecutive fast iterations is failure mode. Any normal
    iteration clears the streak.

    The orchestrator only relies on record(); a detector driven by explicit
    failure reports could replace this one.
    """

    def __init__(
        self,
        threshold_seconds: float = DEFAULT_FAST_ITERATION_SECONDS,
        backoff_step_seconds: float = DEFAULT_BACKOFF_STEP_SECONDS,
        max_consecutive: int = DEFAULT_MAX_FAST_ITERATIONS,
    ):
        self.threshold_seconds = threshold_seconds
        self.backoff_step_seconds = backoff_step_seconds
        self.max_consecutive = max_consecutive
        self.consecutive_fast = 0
        self.recent: deque[Iteration] = deque(maxlen=max_consecutive)

    def classify(self, duration: float) -> str:
        return ITERATION_FAST if duration < self.threshold_seconds else ITERATION_NORMAL

    def record(self, number: int, started_at: float, ended_at: float) -> FailureAssessment:
        """Finalize an iteration and decide on backoff or failure mode."""
        iteration = Iteration(
            number=number,
            started_at=started_at,
            ended_at=ended_at,
            classification=self.classify(ended_at - started_at),
        )
        self.recent.append(iteration)

        if iteration.classification == ITERATION_NORMAL:
            self.consecutive_fast = 0
            return FailureAssessment(iteration, 0, 0.0, False)

        self.consecutive_fast += 1
        if self.consecutive_fast >= self.max_consecutive:
            return FailureAssessment(iteration, self.consecutive_fast, 0.0, True)
        return FailureAssessment(
            iteration,
            self.consecutive_fast,
            self.consecutive_fast * self.backoff_step_seconds,
            False,
        )


# ─── Status Line ─────────────────────────────────────────────────────


def format_elapsed(seconds: float) -> str:
    """Format seconds as MM:SS, or H:MM:SS past the hour."""
    seconds = max(int(seconds), 0)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class StatusReporter:
    """Single live status line (phase + elapsed time) redrawn once a second.

    Purely observational: it never feeds timing back into the loop. Disabled
    in verbose mode, where the agent output is streamed instead.
    """

    LINE_WIDTH = 80

    def __init__(self, enabled: bool = True, stream=None,
                 interval: float = STATUS_TICK_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.enabled = enabled
        self._stream = stream
        self.interval = interval
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def stream(self):
        return self._stream if self._stream is not None else sys.stdout

    @property
    def active(self) -> bool:
        return self._thread is not None

    def _render(self, phase: str, started: float) -> None:
        line = f"[{phase}] {format_elapsed(self.clock() - started)}"
        self.stream.write("\r" + line.ljust(self.LINE_WIDTH))
        self.stream.flush()

    def _tick_loop(self, phase: str, started: float, stop_event: threading.Event) -> None:
        self._render(phase, started)
        while not stop_event.wait(self.interval):
            self._render(phase, started)

    def start(self, phase: str) -> None:
        """Start ticking for phase; replaces any ticker already running."""
        if not self.enabled:
            return
        with self._lock:
            self._stop_locked()
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._tick_loop,
                args=(phase, self.clock(), self._stop_event),
                name="status-ticker",
                daemon=True,
            )
            self._thread.start()

    def _stop_locked(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=2)
        self._thread = None
        self.stream.write("\r" + " " * self.LINE_WIDTH + "\r")
        self.stream.flush()

    def stop(self) -> None:
        """Stop the ticker and clear the status line."""
        with self._lock:
            self._stop_locked()

    @contextlib.contextmanager
    def ticking(self, phase: str):
        self.start(phase)
        try:
            yield self
        finally:
            self.stop()


# ─── Background Review ───────────────────────────────────────────────

REVIEWER_PROMPT_TEMPLATE = """You are a senior code reviewer doing a static review of recent work.

The task that was just implemented:
{task}

The developer's full transcript is in: {developer_log}

Review the uncommitted changes (git diff) and the most recent commit for:
- bugs, edge cases and error handling gaps
- deviations from the task and from the plan in {plan_path}
- missing or weak tests
- security problems

Do not modify any files. Report findings as a concise, prioritized list.
"""


class ReviewHandle:
    """Handle on a background review; the loop never waits on it."""

    def __init__(self, log_path: str, available: bool = True):
        self.log_path = log_path
        self.available = available
        self.process: Optional[subprocess.Popen] = None
        self.thread: Optional[threading.Thread] = None
        self._done = threading.Event()
        self._cancelled = False
        # Guards _cancelled and process so a cancel never misses a child
        self._lock = threading.Lock()

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def launch(self, cmd: list[str], **popen_kwargs) -> Optional[subprocess.Popen]:
        """Start the reviewer process unless the review was already cancelled."""
        with self._lock:
            if self._cancelled:
                return None
            self.process = subprocess.Popen(cmd, **popen_kwargs)
            return self.process

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            process = self.process
        if process is not None:
            terminate_process(process)

    def kill(self) -> None:
        """Kill the reviewer without waiting for a graceful exit."""
        with self._lock:
            self._cancelled = True
            process = self.process
        if process is not None and process.poll() is None:
            process.kill()

    def _finish(self) -> None:
        self._done.set()


class ReviewCoordinator:
    """Launches the optional secondary reviewer (codex) in the background.

    When the reviewer is disabled or not installed, a placeholder artifact
    is written instead and the loop carries on.
    """

    def __init__(self, config: LoopConfig):
        self.config = config
        self._active: Optional[ReviewHandle] = None

    def reviewer_command(self) -> Optional[list[str]]:
        if not self.config.review_enabled:
            return None
        binary = shutil.which(REVIEWER_BINARY)
        if not binary:
            return None
        return [binary, "exec", "--sandbox", "read-only", "-"]

    def start_background(self, task: str, developer_log_path: str,
                         session_ts: str) -> ReviewHandle:
        """Start a review without blocking. Returns immediately.

        At most one review runs at a time: a review still running from an
        earlier iteration is cancelled first.
        """
        self.cancel_active()
        log_path = log_artifact_path(self.config.log_dir, session_ts, PHASE_REVIEWER)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = self.reviewer_command()

        if cmd is None:
            reason = "disabled" if not self.config.review_enabled else f"'{REVIEWER_BINARY}' not installed"
            with open(log_path, "w") as f:
                write_log_header(f, PHASE_REVIEWER, REVIEWER_BINARY)
                f.write(f"Secondary review not available ({reason}); skipped.\n")
            handle = ReviewHandle(str(log_path), available=False)
            handle._finish()
            verbose_log(f"Secondary review skipped: {reason}", self.config.verbose, "REVIEW")
            return handle

        prompt = REVIEWER_PROMPT_TEMPLATE.format(
            task=task, developer_log=developer_log_path, plan_path=self.config.plan_path,
        )
        handle = ReviewHandle(str(log_path))
        handle.thread = threading.Thread(
            target=self._run_review, args=(handle, cmd, prompt),
            name="secondary-review", daemon=True,
        )
        self._active = handle
        handle.thread.start()
        verbose_log(f"Secondary review started: {log_path}", self.config.verbose, "REVIEW")
        return handle

    def _run_review(self, handle: ReviewHandle, cmd: list[str], prompt: str) -> None:
        start_time = time.time()
        exit_code = -1
        prompt_path = None
        try:
            Path(self.config.tmp_dir).mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=self.config.tmp_dir, prefix="fsd-review-", suffix=".md", delete=False
            ) as prompt_file:
                prompt_file.write(prompt)
                prompt_path = prompt_file.name

            with open(handle.log_path, "w") as log_file:
                write_log_header(log_file, PHASE_REVIEWER, REVIEWER_BINARY)
            # Reviewer output and footer go after the header
            with open(handle.log_path, "a") as log_file, open(prompt_path, "r") as stdin:
                process = handle.launch(
                    cmd,
                    stdin=stdin,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    text=True,
                    cwd=os.getcwd(),
                    env=build_child_env(),
                )
                if process is None:
                    log_file.write("\nSecondary review cancelled before start.\n")
                    return
                exit_code = process.wait()
                log_file.write(f"\n=== END ===\n")
                log_file.write(f"Duration: {time.time() - start_time:.1f}s\n")
                log_file.write(f"Return code: {exit_code}\n")
        except OSError as e:
            with open(handle.log_path, "a") as log_file:
                log_file.write(f"\nSecondary review failed to run: {e}\n")
        finally:
            if prompt_path and os.path.exists(prompt_path):
                os.remove(prompt_path)
            handle._finish()
            verbose_log(f"Secondary review finished (exit {exit_code}): {handle.log_path}",
                        self.config.verbose, "REVIEW")

    @property
    def active(self) -> Optional[ReviewHandle]:
        return self._active

    def cancel_active(self) -> None:
        handle, self._active = self._active, None
        if handle is not None and not handle.done():
            log("Previous secondary review still running; cancelling it")
            handle.cancel()

    def kill_active(self) -> None:
        if self._active is not None and not self._active.done():
            self._active.kill()

    def shutdown(self) -> None:
        """Cancel a review still running (used on loop exit)."""
        self.cancel_active()


# ─── Prompts ─────────────────────────────────────────────────────────

DEEP_PLANNING_PREFIX = """DEEP PLANNING ITERATION: before doing anything else, step back and
reconsider the architecture. Look at how the codebase has evolved, whether the
current design still fits the plan, and whether accumulated shortcuts need to be
refactored before more features are added. Prefer structural fixes over patches.

"""

PLANNER_PROMPT_TEMPLATE = """You are the planner for an automated development loop.

Read the project brief (BRIEF.md, if present), the plan in {plan_path}, and
the current state of the code. Plan progress: {done} of {total} tasks done,
{in_progress} in progress.

{next_task_section}

Choose the single most important task to do next. Output ONLY a clear,
self-contained description of that task for the developer: what to change,
where, and how to tell it is done. Do not modify any files.
"""

NEXT_TASK_SECTION = """The first open task in the plan is:
{next_task}"""

ALL_CHECKED_SECTION = """Every task in the plan is checked off. Decide what, if anything, is still
missing for the project to be complete (gaps, failing tests, unfinished
features) and describe that as the next task."""

DEVELOPER_PROMPT_TEMPLATE = """You are the developer in an automated development loop.

Implement the following task in this repository:

{task}

Guidelines:
- Follow the existing conventions of the codebase.
- Write or update tests for the behavior you change.
- Mark the task in {plan_path} as in progress with [~] when you start.
- Do not commit; the verification step decides whether to commit.
"""

VERIFIER_PROMPT_TEMPLATE = """You are the tester/verifier in an automated development loop.

The task the developer was asked to do:
{task}

The developer's full transcript is in: {developer_log}
A secondary code review may be running; if {reviewer_log} exists and is
complete, take its findings into account.

1. Inspect the uncommitted changes (git status, git diff).
2. Run the project's tests and any build or lint steps.
3. If the task is complete and everything passes: mark it [x] in
   {plan_path} and commit all changes with a descriptive message.
4. If it is not complete: do not commit; write what is missing under the
   task in {plan_path} so the next iteration can continue.
5. If, and only if, every task in the plan is done, verified and committed,
   and nothing is left to do, output this marker on its own line:
   {marker}
"""


def build_planner_prompt(plan_path: str, next_task: Optional[str],
                         counts: TaskCounts, deep: bool) -> str:
    if next_task is None:
        next_task_section = ALL_CHECKED_SECTION
    else:
        next_task_section = NEXT_TASK_SECTION.format(next_task=next_task)
    prompt = PLANNER_PROMPT_TEMPLATE.format(
        plan_path=plan_path,
        done=counts.done,
        total=counts.total,
        in_progress=counts.in_progress,
        next_task_section=next_task_section,
    )
    return DEEP_PLANNING_PREFIX + prompt if deep else prompt


def build_developer_prompt(task: str, plan_path: str, deep: bool) -> str:
    prompt = DEVELOPER_PROMPT_TEMPLATE.format(task=task, plan_path=plan_path)
    return DEEP_PLANNING_PREFIX + prompt if deep else prompt


def build_verifier_prompt(task: str, developer_log: str, reviewer_log: str,
                          plan_path: str) -> str:
    return VERIFIER_PROMPT_TEMPLATE.format(
        task=task,
        developer_log=developer_log,
        reviewer_log=reviewer_log,
        plan_path=plan_path,
        marker=ALL_DONE_MARKER,
    )


# ─── Verification ────────────────────────────────────────────────────


@dataclass
class VerificationResult:
    verdict: str
    log_path: str
    output: str = ""


def contains_all_done_marker(output: str) -> bool:
    """True when the verifier output contains the all-done marker anywhere."""
    return ALL_DONE_MARKER in output


class Verifier:
    """Verification stage: has write access and alone decides to commit."""

    def __init__(self, invoker: AgentInvoker, config: LoopConfig,
                 head_reader: Callable[[], str] = git_head_commit):
        self.invoker = invoker
        self.config = config
        self.head_reader = head_reader

    def verify(self, task: str, developer_log_path: str, session_ts: str = "",
               reviewer_log_path: str = "") -> VerificationResult:
        session_ts = session_ts or datetime.now().strftime(LOG_TIMESTAMP_FORMAT)
        reviewer_log_path = reviewer_log_path or str(
            log_artifact_path(self.config.log_dir, session_ts, PHASE_REVIEWER))
        prompt = build_verifier_prompt(
            task, developer_log_path, reviewer_log_path, self.config.plan_path,
        )
        head_before = self.head_reader()
        result = self.invoker.invoke(
            prompt, MODEL_PRIMARY, dangerous=True, phase=PHASE_TESTER, session_ts=session_ts,
        )
        head_after = self.head_reader()

        if contains_all_done_marker(result.output):
            verdict = VERDICT_ALL_DONE
        elif head_after and head_after != head_before:
            verdict = VERDICT_COMMITTED
        else:
            verdict = VERDICT_INCOMPLETE
        return VerificationResult(verdict=verdict, log_path=result.log_path, output=result.output)


# ─── Orchestrator ────────────────────────────────────────────────────


def print_failure_mode_diagnostic(config: LoopConfig, assessment: FailureAssessment) -> None:
    print(f"\n=== FAILURE MODE DETECTED ===")
    print(f"{assessment.consecutive_fast} consecutive iterations finished in under "
          f"{config.fast_iteration_seconds:.0f}s (last: {assessment.iteration.duration:.0f}s).")
    print("The agent is most likely rate-limited or failing upstream.")
    print(f"Inspect the latest logs in {config.log_dir}/ and check your usage limits")
    print("before restarting the loop.")


class Orchestrator:
    """Drives Planning -> Implementing -> (Review || Verifying) until done.

    Terminates with EXIT_SUCCESS when the verifier reports all work verified
    complete or an operator stop is requested, and with EXIT_FAILURE on
    failure mode. Otherwise it loops indefinitely.
    """

    def __init__(
        self,
        config: LoopConfig,
        invoker: Optional[AgentInvoker] = None,
        task_source: Optional[TaskSource] = None,
        detector: Optional[FailureDetector] = None,
        reporter: Optional[StatusReporter] = None,
        reviewer: Optional[ReviewCoordinator] = None,
        verifier: Optional[Verifier] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], object]] = None,
        monitor_factory: Optional[Callable[..., object]] = None,
        stop_path: str = STOP_SEMAPHORE_PATH,
    ):
        self.config = config
        self.cancel_event = cancel_event or threading.Event()
        self.invoker = invoker or AgentInvoker(config, self.cancel_event)
        self.task_source = task_source or TaskSource(config.plan_path)
        self.detector = detector or FailureDetector(
            threshold_seconds=config.fast_iteration_seconds,
            backoff_step_seconds=config.backoff_step_seconds,
            max_consecutive=config.max_fast_iterations,
        )
        self.reporter = reporter or StatusReporter(enabled=not config.verbose)
        self.reviewer = reviewer or ReviewCoordinator(config)
        self.verifier = verifier or Verifier(self.invoker, config)
        self.clock = clock
        self.sleep = sleep or self.cancel_event.wait
        self.monitor_factory = monitor_factory or autocommit.AutoCommitMonitor
        self.stop_path = stop_path
        self.iteration = 0

    def request_stop(self) -> None:
        self.cancel_event.set()

    def force_stop(self) -> None:
        """Stop now: kill the running agent and review instead of waiting for them."""
        self.cancel_event.set()
        self.invoker.kill_active()
        self.reviewer.kill_active()

    def is_deep_iteration(self, number: int) -> bool:
        return number % self.config.deep_planning_interval == 0

    def start_auto_commit_monitor(self):
        """Host the auto-commit monitor in-process if enabled and not already running."""
        if not self.config.auto_commit:
            return None
        ac_config = autocommit.load_auto_commit_config()
        if not ac_config.enabled:
            verbose_log("Auto-commit disabled; not starting monitor", self.config.verbose, "INIT")
            return None
        owner = autocommit.live_pid_from_file(autocommit.AUTO_COMMIT_PID_PATH)
        if owner is not None:
            log(f"Auto-commit monitor already running (PID {owner}); leaving it alone")
            return None
        monitor = self.monitor_factory(log_dir=self.config.log_dir)
        if not monitor.start():
            return None
        log(f"Auto-commit monitor started (timeout: {ac_config.timeout_seconds}s)")
        return monitor

    def run(self) -> int:
        """Run until a terminal condition. Observers are shut down on every exit path."""
        with contextlib.ExitStack() as cleanup:
            cleanup.callback(self.reporter.stop)
            cleanup.callback(self.reviewer.shutdown)
            monitor = self.start_auto_commit_monitor()
            if monitor is not None:
                cleanup.callback(monitor.stop)

            while True:
                if self.cancel_event.is_set():
                    log("Stop requested. Exiting loop.")
                    return EXIT_SUCCESS
                if check_stop_requested(self.stop_path):
                    log(f"Graceful stop requested (found {self.stop_path}). Exiting loop.")
                    os.remove(self.stop_path)
                    return EXIT_SUCCESS

                exit_code = self.run_iteration()
                if exit_code is not None:
                    return exit_code

    def _invoke(self, label: str, prompt: str, model_class: str, dangerous: bool,
                phase: str, session_ts: str) -> InvocationResult:
        with self.reporter.ticking(label):
            return self.invoker.invoke(prompt, model_class, dangerous, phase, session_ts)

    def run_iteration(self) -> Optional[int]:
        """Run one full iteration. Returns an exit code to stop, None to continue."""
        self.iteration += 1
        number = self.iteration
        deep = self.is_deep_iteration(number)
        model_class = MODEL_DEEP if deep else MODEL_PRIMARY
        session_ts = datetime.now().strftime(LOG_TIMESTAMP_FORMAT)
        started_at = self.clock()

        next_task = self.task_source.next_task()
        counts = self.task_source.counts()
        log(f"=== Iteration {number}: {counts.done}/{counts.total} done, "
            f"{counts.in_progress} in progress{' [DEEP PLANNING]' if deep else ''} ===")

        # Planning: read-only
        planning = self._invoke(
            "Planning", build_planner_prompt(self.config.plan_path, next_task, counts, deep),
            model_class, False, PHASE_PLANNER, session_ts,
        )
        if self.cancel_event.is_set():
            return EXIT_SUCCESS
        task = planning.output

        # Implementing: unattended write access
        developer = self._invoke(
            "Developing", build_developer_prompt(task, self.config.plan_path, deep),
            model_class, True, PHASE_DEVELOPER, session_ts,
        )
        if self.cancel_event.is_set():
            return EXIT_SUCCESS

        # Fork: review runs in the background, verification is awaited
        review = self.reviewer.start_background(task, developer.log_path, session_ts)
        with self.reporter.ticking("Verifying"):
            verification = self.verifier.verify(
                task, developer.log_path, session_ts, review.log_path,
            )
        if self.cancel_event.is_set():
            return EXIT_SUCCESS

        log(f"Iteration {number} verdict: {verification.verdict}")
        if verification.verdict == VERDICT_ALL_DONE:
            log("All work verified complete. Exiting.")
            return EXIT_SUCCESS

        assessment = self.detector.record(number, started_at, self.clock())
        verbose_log(
            f"Iteration {number} took {assessment.iteration.duration:.0f}s "
            f"({assessment.iteration.classification}), consecutive fast: {assessment.consecutive_fast}",
            self.config.verbose, "LOOP",
        )
        if assessment.failure_mode:
            print_failure_mode_diagnostic(self.config, assessment)
            return EXIT_FAILURE
        if assessment.backoff_seconds > 0:
            log(f"Iteration finished in {assessment.iteration.duration:.0f}s "
                f"({assessment.consecutive_fast} fast in a row); "
                f"backing off {assessment.backoff_seconds:.0f}s")
            self.sleep(assessment.backoff_seconds)
        return None


# ─── Entry Point ──────────────────────────────────────────────────────


def check_preconditions(config: LoopConfig) -> Optional[str]:
    """Return an error message if the loop cannot start, else None."""
    plan_path = resolve_plan_path(config.plan_path)
    if plan_path is None:
        wanted = config.plan_path or " or ".join(DEFAULT_PLAN_PATHS)
        return f"Plan document not found: {wanted}"
    config.plan_path = plan_path

    if TaskSource(plan_path).next_task() is None:
        return f"No open or in-progress tasks in {plan_path}"

    claude_cmd = resolve_claude_binary()
    if claude_cmd is None:
        return "Could not find 'claude' binary. Install with: npm install -g @anthropic-ai/claude-code"
    config.claude_cmd = claude_cmd

    running = find_running_loop()
    if running is not None and running != os.getpid() and not config.force:
        return f"Another loop is already running in this directory (PID {running}); use --force to override"
    return None


def run_loop(config: LoopConfig) -> int:
    """Start a loop session in the current working directory."""
    error = check_preconditions(config)
    if error:
        print(f"ERROR: {error}")
        return EXIT_FAILURE

    clear_stop_semaphore()
    clear_session_snapshot()
    autocommit.write_pid_file(LOOP_PID_PATH)

    cancel_event = threading.Event()
    orchestrator = Orchestrator(config, cancel_event=cancel_event)

    def handle_signal(signum, frame):
        sig_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
        if cancel_event.is_set():
            # Cleanup still runs; only the waits on child processes are cut short
            log(f"Received second {sig_name}. Killing agent processes...")
            orchestrator.force_stop()
            return
        log(f"Received {sig_name}. Shutting down gracefully...")
        orchestrator.request_stop()

    previous_handlers = {
        sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    counts = orchestrator.task_source.counts()
    print(f"=== FSD Loop (PID {os.getpid()}) ===")
    print(f"Plan: {config.plan_path} ({counts.done}/{counts.total} done)")
    print(f"Claude binary: {' '.join(config.claude_cmd)}")
    print(f"Models: {config.primary_model} (deep: {config.deep_model} "
          f"every {config.deep_planning_interval} iterations)")
    print(f"Logs: {config.log_dir}/")
    print(f"Secondary review: {'enabled' if config.review_enabled else 'disabled'}")
    print(f"Graceful stop: touch {STOP_SEMAPHORE_PATH}")
    print()

    try:
        return orchestrator.run()
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)
        autocommit.remove_pid_file(LOOP_PID_PATH)
        restore_terminal_settings()
        log("FSD loop stopped.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the supervised plan -> develop -> verify loop with Claude"
    )
    parser.add_argument(
        "--plan",
        default="",
        help=f"Path to the plan document (default: {' or '.join(DEFAULT_PLAN_PATHS)})",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Stream agent output instead of showing the status line",
    )
    parser.add_argument(
        "--no-review",
        action="store_true",
        help="Skip the background secondary review",
    )
    parser.add_argument(
        "--no-auto-commit",
        action="store_true",
        help="Do not host the auto-commit monitor in this process",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Start even if another loop appears to be running here",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = build_loop_config(args)
    return run_loop(config)


if __name__ == "__main__":
    sys.exit(main())
