"""Decide which finished shell commands are worth remembering."""

from __future__ import annotations

import re
from dataclasses import dataclass

from ambient.memory.models import EventType, Importance

COMMAND_PREVIEW = 120
COMMAND_NOT_FOUND = 127

PACKAGE_MANAGERS = {"npm", "pnpm", "yarn", "bun", "pip", "pip3", "cargo", "uv", "poetry"}
PACKAGE_VERBS = {"install", "add", "remove", "uninstall", "i"}
DOCKER_VERBS = {"build", "up", "down", "run", "compose"}
TERRAFORM_VERBS = {"apply", "plan", "destroy", "init"}

BUILD_RE = re.compile(r"\b(build|compile|tsc|webpack|vite|esbuild|rollup)\b", re.IGNORECASE)
TEST_RE = re.compile(r"\b(test|jest|vitest|mocha|pytest|tox|cargo\s+test|go\s+test)\b", re.IGNORECASE)
LINT_RE = re.compile(r"\b(lint|eslint|prettier|clippy|ruff|flake8|mypy)\b", re.IGNORECASE)


@dataclass(frozen=True)
class NotableCommand:
    type: EventType
    content: str
    importance: Importance


def _positional(words: list[str]) -> list[str]:
    return [w for w in words if not w.startswith("-")]


def _git(words: list[str], cmd: str) -> NotableCommand | None:
    sub = words[1].lower() if len(words) > 1 else ""
    preview = cmd[:COMMAND_PREVIEW]
    if sub in ("checkout", "switch"):
        targets = _positional(words[2:])
        if targets:
            return NotableCommand(
                EventType.TASK_UPDATE, f"Switched to branch: {targets[-1]}", Importance.MEDIUM
            )
        return None
    if sub == "commit":
        return NotableCommand(EventType.TASK_UPDATE, f"Committed: `{preview}`", Importance.LOW)
    if sub == "merge":
        return NotableCommand(EventType.TASK_UPDATE, f"Merged: `{preview}`", Importance.MEDIUM)
    if sub == "rebase":
        return NotableCommand(EventType.TASK_UPDATE, f"Rebased: `{preview}`", Importance.MEDIUM)
    if sub == "stash":
        return NotableCommand(EventType.TASK_UPDATE, "Stashed changes", Importance.LOW)
    return None


def _outcome(exit_code: int) -> str:
    return "succeeded" if exit_code == 0 else f"failed (exit {exit_code})"


def classify_command(command: str, exit_code: int) -> NotableCommand | None:
    """Map a finished command to a memory event, or None when it is routine.

    Branch switches, commits, dependency changes, container and
    infrastructure runs are always recorded. Builds and tests are recorded
    either way; other multi-word commands only when they fail.
    """
    cmd = command.strip()
    words = cmd.split()
    if not words:
        return None
    base = words[0].lower()
    sub = words[1].lower() if len(words) > 1 else ""
    preview = cmd[:COMMAND_PREVIEW]

    if base == "git":
        notable = _git(words, cmd)
        if notable:
            return notable

    if base in PACKAGE_MANAGERS and sub in PACKAGE_VERBS:
        packages = " ".join(_positional(words[2:]))
        if packages:
            verb = "Removed" if sub in ("remove", "uninstall") else "Installed"
            return NotableCommand(EventType.TASK_UPDATE, f"{verb}: {packages}", Importance.LOW)

    if base in ("docker", "docker-compose") and sub in DOCKER_VERBS:
        return NotableCommand(
            EventType.TASK_UPDATE,
            f"Docker {' '.join(words[1:4])} {_outcome(exit_code)}",
            Importance.LOW if exit_code == 0 else Importance.MEDIUM,
        )

    if base == "make" and exit_code != 0:
        target = words[1] if len(words) > 1 else "default"
        return NotableCommand(
            EventType.ERROR_RESOLUTION,
            f"make {target} failed (exit {exit_code})",
            Importance.MEDIUM,
        )

    if base in ("terraform", "tf") and sub in TERRAFORM_VERBS:
        return NotableCommand(
            EventType.TASK_UPDATE, f"terraform {sub} {_outcome(exit_code)}", Importance.MEDIUM
        )

    is_build = BUILD_RE.search(cmd) is not None
    is_test = TEST_RE.search(cmd) is not None
    is_lint = LINT_RE.search(cmd) is not None

    if exit_code != 0:
        if is_build:
            return NotableCommand(
                EventType.ERROR_RESOLUTION,
                f"Build failed: `{preview}` (exit {exit_code})",
                Importance.MEDIUM,
            )
        if is_test:
            return NotableCommand(
                EventType.ERROR_RESOLUTION,
                f"Tests failed: `{preview}` (exit {exit_code})",
                Importance.MEDIUM,
            )
        if is_lint:
            return NotableCommand(
                EventType.ERROR_RESOLUTION,
                f"Lint failed: `{preview}` (exit {exit_code})",
                Importance.LOW,
            )
        # Single words and unknown commands are usually typos
        if exit_code != COMMAND_NOT_FOUND and len(words) >= 2:
            return NotableCommand(
                EventType.ERROR_RESOLUTION,
                f"Command failed: `{preview}` (exit {exit_code})",
                Importance.LOW,
            )
        return None

    if is_build:
        return NotableCommand(EventType.TASK_UPDATE, f"Build passed: `{preview}`", Importance.LOW)
    if is_test:
        return NotableCommand(EventType.TASK_UPDATE, f"Tests passed: `{preview}`", Importance.LOW)
    return None
