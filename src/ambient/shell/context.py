"""Live shell context fed by the shell hook."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from ambient.memory.models import now_ms

MAX_RECENT_COMMANDS = 50
MAX_OUTPUT_CHARS = 8000
HISTORY_IN_PROMPT = 20
FAILURES_IN_PROMPT = 3

SHELL_EVENTS = ("preexec", "precmd", "chpwd")

# First match wins
PROJECT_MARKERS: list[tuple[str, str]] = [
    ("package.json", "node"),
    ("Cargo.toml", "rust"),
    ("go.mod", "go"),
    ("pyproject.toml", "python"),
    ("setup.py", "python"),
    ("requirements.txt", "python"),
    ("Gemfile", "ruby"),
    ("pom.xml", "java"),
    ("build.gradle", "java"),
]


def detect_project_type(cwd: str) -> str | None:
    """Guess the project type from marker files in `cwd`."""
    directory = Path(cwd)
    for marker, project_type in PROJECT_MARKERS:
        if (directory / marker).is_file():
            return project_type
    return None


@dataclass(frozen=True)
class CommandRecord:
    command: str
    exit_code: int
    cwd: str
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "exitCode": self.exit_code,
            "cwd": self.cwd,
            "timestamp": self.timestamp,
        }


@dataclass
class ShellContext:
    cwd: str
    git_branch: str | None = None
    git_dirty: bool = False
    last_command: str | None = None
    last_exit_code: int | None = None
    recent_commands: list[CommandRecord] = field(default_factory=list)
    project_type: str | None = None

    def to_dict(self) -> dict:
        return {
            "cwd": self.cwd,
            "gitBranch": self.git_branch,
            "gitDirty": self.git_dirty,
            "lastCommand": self.last_command,
            "lastExitCode": self.last_exit_code,
            "recentCommands": [c.to_dict() for c in self.recent_commands],
            "projectType": self.project_type,
        }


class ContextEngine:
    """Tracks one interactive shell's state between prompts.

    `preexec` remembers the command about to run; the following `precmd`
    records it with its exit code. `chpwd` moves the working directory and
    re-detects the project type.
    """

    def __init__(self, cwd: str | None = None) -> None:
        self._state = ShellContext(cwd=cwd or os.path.expanduser("~"))
        self._pending_command: str | None = None
        self._last_output: str | None = None

    def update(
        self,
        event: str,
        cwd: str,
        *,
        command: str | None = None,
        exit_code: int | None = None,
        git_branch: str | None = None,
        git_dirty: bool | None = None,
    ) -> CommandRecord | None:
        """Apply one shell event. Returns the command a `precmd` just recorded."""
        if event not in SHELL_EVENTS:
            raise ValueError(f"Unknown shell event: {event}")

        state = self._state
        state.cwd = cwd
        if git_branch is not None:
            state.git_branch = git_branch or None
        if git_dirty is not None:
            state.git_dirty = git_dirty

        if event == "preexec":
            self._pending_command = (command or "").strip() or None
        elif event == "precmd":
            if self._pending_command:
                code = exit_code if exit_code is not None else 0
                record = CommandRecord(self._pending_command, code, cwd)
                state.recent_commands.append(record)
                del state.recent_commands[:-MAX_RECENT_COMMANDS]
                state.last_command = record.command
                state.last_exit_code = code
                self._pending_command = None
                return record
        else:
            state.project_type = detect_project_type(cwd)
        return None

    def get_context(self) -> ShellContext:
        return self._state

    # ── Captured output ───────────────────────────────────────

    def store_output(self, output: str) -> None:
        if len(output) > MAX_OUTPUT_CHARS:
            output = "... (truncated)\n" + output[-MAX_OUTPUT_CHARS:]
        self._last_output = output

    def last_output(self) -> str | None:
        return self._last_output

    # ── Prompt rendering ──────────────────────────────────────

    def format_for_prompt(self) -> str:
        state = self._state
        lines = [f"Working directory: {state.cwd}"]

        if state.git_branch:
            dirty = " (dirty)" if state.git_dirty else ""
            lines.append(f"Git branch: {state.git_branch}{dirty}")

        if state.last_command:
            if state.last_exit_code == 0:
                outcome = "success"
            else:
                outcome = f"failed (exit {state.last_exit_code})"
            lines.append(f"Last command: `{state.last_command}` -> {outcome}")

        failures = [c for c in state.recent_commands if c.exit_code != 0][-FAILURES_IN_PROMPT:]
        if failures:
            lines.append("Recent failures:")
            lines.extend(f"  - `{c.command}` -> exit {c.exit_code}" for c in failures)

        if state.project_type:
            lines.append(f"Project type: {state.project_type}")

        return "\n".join(lines)

    def format_history(self, limit: int = HISTORY_IN_PROMPT) -> str:
        """Recent commands, newest last, one per line."""
        lines = []
        for record in self._state.recent_commands[-limit:]:
            if record.exit_code == 0:
                lines.append(f"  ok `{record.command}`")
            else:
                lines.append(f"  failed `{record.command}` (exit {record.exit_code})")
        return "\n".join(lines)
