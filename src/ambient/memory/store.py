"""Two-level memory store: project-wide and branch-scoped event lists.

Each JSON document is an aggregate root with its own atomic write path
(temp file + os.replace). Nothing spans files; a reader that loses a race
with a concurrent writer simply sees the previous version.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import time
from collections import Counter
from pathlib import Path
from typing import Literal

from ambient.memory.models import (
    EventType,
    Importance,
    MemoryEvent,
    MemoryKey,
    ProjectMemory,
    TaskMemory,
    format_time_ago,
    now_ms,
)
from ambient.memory.supersede import DEFAULT_SUPERSEDE_THRESHOLD, find_superseded_decision

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

MAX_PROJECT_EVENTS = 200
MAX_TASK_EVENTS = 500
MEMORY_TTL_DAYS = 90
ARCHIVE_TTL_DAYS = 7

DUPLICATE_PREFIX_LENGTH = 80

Scope = Literal["project", "task", "both"]


def trim_events(events: list[MemoryEvent], max_count: int) -> list[MemoryEvent]:
    """Trim to `max_count`: keep every high event, then the newest of the rest."""
    if len(events) <= max_count:
        return events

    high = [e for e in events if e.importance is Importance.HIGH]
    rest = [e for e in events if e.importance is not Importance.HIGH]

    room = max_count - len(high)
    kept_rest = rest[-room:] if room > 0 else []
    return sorted(high + kept_rest, key=lambda e: e.timestamp)


class MemoryStore:
    """Read/write access to project and task memory under `root`.

    Layout:
        <root>/projects/<projectKey>/project.json
        <root>/projects/<projectKey>/tasks/<taskKey>.json
        <root>/projects/<projectKey>/archived/<taskKey>.json
    """

    def __init__(
        self,
        root: Path,
        *,
        max_project_events: int = MAX_PROJECT_EVENTS,
        max_task_events: int = MAX_TASK_EVENTS,
        ttl_days: float = MEMORY_TTL_DAYS,
        archive_ttl_days: float = ARCHIVE_TTL_DAYS,
        supersede_threshold: float = DEFAULT_SUPERSEDE_THRESHOLD,
    ) -> None:
        self.root = root
        self.max_project_events = max_project_events
        self.max_task_events = max_task_events
        self.ttl_ms = int(ttl_days * DAY_MS)
        self.archive_ttl_ms = int(archive_ttl_days * DAY_MS)
        self.supersede_threshold = supersede_threshold
        self.projects_dir.mkdir(parents=True, exist_ok=True)

    # ── Paths ─────────────────────────────────────────────────

    @property
    def projects_dir(self) -> Path:
        return self.root / "projects"

    def project_dir(self, project_key: str) -> Path:
        return self.projects_dir / project_key

    def project_path(self, project_key: str) -> Path:
        return self.project_dir(project_key) / "project.json"

    def task_path(self, project_key: str, task_key: str) -> Path:
        return self.project_dir(project_key) / "tasks" / f"{task_key}.json"

    def archived_path(self, project_key: str, task_key: str) -> Path:
        return self.project_dir(project_key) / "archived" / f"{task_key}.json"

    # ── Raw document I/O ──────────────────────────────────────

    def _read_document(self, path: Path) -> dict | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed memory file: %s", path)
            return None
        if not isinstance(data, dict):
            logger.warning("Skipping malformed memory file: %s", path)
            return None
        return data

    def _write_document(self, path: Path, data: dict) -> None:
        """Write JSON atomically: temp file in the same directory, then replace."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _set_aside(self, path: Path) -> None:
        """Rename an undecodable document so a fresh write cannot replace it."""
        target = path.with_name(f"{path.name}.corrupt-{now_ms()}")
        os.replace(path, target)
        logger.warning("Unreadable memory file moved aside: %s -> %s", path, target.name)

    def _is_expired(self, last_active: int) -> bool:
        return now_ms() - last_active > self.ttl_ms

    def _decode_project(self, path: Path) -> ProjectMemory | None:
        data = self._read_document(path)
        if data is None:
            return None
        try:
            return ProjectMemory.from_dict(data)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Skipping malformed project memory %s: %s", path, e)
            return None

    def _decode_task(self, path: Path) -> TaskMemory | None:
        data = self._read_document(path)
        if data is None:
            return None
        try:
            return TaskMemory.from_dict(data)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Skipping malformed task memory %s: %s", path, e)
            return None

    # ── Project-level operations ──────────────────────────────

    def load_project(self, project_key: str) -> ProjectMemory | None:
        """Load project memory. Missing, unreadable or expired → None."""
        memory = self._decode_project(self.project_path(project_key))
        if memory is None or self._is_expired(memory.last_active):
            return None
        return memory

    def save_project(self, memory: ProjectMemory) -> None:
        self._write_document(self.project_path(memory.project_key), memory.to_dict())

    def add_project_event(
        self, project_key: str, project_name: str, origin: str, event: MemoryEvent
    ) -> ProjectMemory:
        memory = self.load_project(project_key)
        if memory is None:
            path = self.project_path(project_key)
            if path.exists() and self._decode_project(path) is None:
                self._set_aside(path)
            ts = now_ms()
            memory = ProjectMemory(
                project_key=project_key,
                project_name=project_name,
                origin=origin,
                created_at=ts,
                last_active=ts,
            )

        memory.events = self._insert(memory.events, event, self.max_project_events)
        memory.last_active = now_ms()
        self.save_project(memory)
        return memory

    # ── Task-level operations ─────────────────────────────────

    def load_task(self, project_key: str, task_key: str) -> TaskMemory | None:
        """Load task memory. Missing, unreadable or expired → None."""
        memory = self._decode_task(self.task_path(project_key, task_key))
        if memory is None or self._is_expired(memory.last_active):
            return None
        return memory

    def save_task(self, memory: TaskMemory) -> None:
        self._write_document(
            self.task_path(memory.project_key, memory.branch_key), memory.to_dict()
        )

    def add_task_event(
        self, project_key: str, task_key: str, branch_name: str, event: MemoryEvent
    ) -> TaskMemory:
        memory = self.load_task(project_key, task_key)
        if memory is None:
            path = self.task_path(project_key, task_key)
            if path.exists() and self._decode_task(path) is None:
                self._set_aside(path)
            ts = now_ms()
            memory = TaskMemory(
                branch_key=task_key,
                branch_name=branch_name,
                project_key=project_key,
                created_at=ts,
                last_active=ts,
            )

        memory.events = self._insert(memory.events, event, self.max_task_events)
        memory.last_active = now_ms()
        self.save_task(memory)
        return memory

    def _insert(
        self, events: list[MemoryEvent], event: MemoryEvent, max_count: int
    ) -> list[MemoryEvent]:
        """Append with supersession (decisions only), trim and chronological sort."""
        events = [e for e in events if e.id != event.id]
        if event.type is EventType.DECISION:
            superseded = find_superseded_decision(
                events, event.content, self.supersede_threshold
            )
            if superseded:
                logger.info("Decision %s superseded by %s", superseded, event.id)
                events = [e for e in events if e.id != superseded]
        events.append(event)
        events = trim_events(events, max_count)
        return sorted(events, key=lambda e: e.timestamp)

    # ── Cross-scope edits ─────────────────────────────────────

    def delete_event(self, key: MemoryKey, event_id: str) -> bool:
        """Remove an event from project and task scope. Unknown ids are a no-op."""
        deleted = False

        project = self.load_project(key.project_key)
        if project is not None:
            remaining = [e for e in project.events if e.id != event_id]
            if len(remaining) != len(project.events):
                project.events = remaining
                self.save_project(project)
                deleted = True

        task = self.load_task(key.project_key, key.task_key)
        if task is not None:
            remaining = [e for e in task.events if e.id != event_id]
            if len(remaining) != len(task.events):
                task.events = remaining
                self.save_task(task)
                deleted = True

        return deleted

    def update_event(self, key: MemoryKey, event_id: str, new_content: str) -> bool:
        """Replace an event's content in every scope holding it. False if not found."""
        updated = False

        project = self.load_project(key.project_key)
        if project is not None and any(e.id == event_id for e in project.events):
            project.events = [
                e.with_content(new_content) if e.id == event_id else e for e in project.events
            ]
            project.last_active = now_ms()
            self.save_project(project)
            updated = True

        task = self.load_task(key.project_key, key.task_key)
        if task is not None and any(e.id == event_id for e in task.events):
            task.events = [
                e.with_content(new_content) if e.id == event_id else e for e in task.events
            ]
            task.last_active = now_ms()
            self.save_task(task)
            updated = True

        return updated

    def is_duplicate_event(self, project_key: str, task_key: str, content: str) -> bool:
        """True if either scope already holds an event with the same leading text."""
        prefix = content[:DUPLICATE_PREFIX_LENGTH].lower()
        for memory in (self.load_task(project_key, task_key), self.load_project(project_key)):
            if memory is None:
                continue
            for event in memory.events:
                if event.content[:DUPLICATE_PREFIX_LENGTH].lower() == prefix:
                    return True
        return False

    # ── Listing ───────────────────────────────────────────────

    def list_projects(self) -> list[str]:
        if not self.projects_dir.is_dir():
            return []
        return sorted(p.name for p in self.projects_dir.iterdir() if p.is_dir())

    def list_task_keys(self, project_key: str) -> list[str]:
        tasks_dir = self.project_dir(project_key) / "tasks"
        if not tasks_dir.is_dir():
            return []
        return sorted(p.stem for p in tasks_dir.glob("*.json"))

    def list_archived_keys(self, project_key: str) -> list[str]:
        archived_dir = self.project_dir(project_key) / "archived"
        if not archived_dir.is_dir():
            return []
        return sorted(p.stem for p in archived_dir.glob("*.json"))

    def load_archived_task(self, project_key: str, task_key: str) -> TaskMemory | None:
        return self._decode_task(self.archived_path(project_key, task_key))

    # ── Lifecycle ─────────────────────────────────────────────

    def archive_task(self, project_key: str, task_key: str) -> bool:
        """Move a task out of the active set. Returns False if there was nothing to move."""
        src = self.task_path(project_key, task_key)
        if not src.exists():
            return False

        memory = self._decode_task(src)
        if memory is None:
            self._set_aside(src)
            return False
        memory.archived = True
        self._write_document(self.archived_path(project_key, task_key), memory.to_dict())
        try:
            src.unlink()
        except OSError as e:
            logger.warning("Failed to remove archived task %s/%s: %s", project_key, task_key, e)
            return False
        logger.info("Archived task %s/%s", project_key, task_key)
        return True

    def sweep_expired(self) -> int:
        """Delete expired project/task files and archived tasks past retention."""
        removed = 0
        now = now_ms()

        for project_key in self.list_projects():
            project_path = self.project_path(project_key)
            project = self._decode_project(project_path)
            if project is not None and now - project.last_active > self.ttl_ms:
                project_path.unlink(missing_ok=True)
                removed += 1

            for task_key in self.list_task_keys(project_key):
                task_path = self.task_path(project_key, task_key)
                task = self._decode_task(task_path)
                if task is not None and now - task.last_active > self.ttl_ms:
                    task_path.unlink(missing_ok=True)
                    removed += 1

            for task_key in self.list_archived_keys(project_key):
                archived_path = self.archived_path(project_key, task_key)
                try:
                    age_ms = (time.time() - archived_path.stat().st_mtime) * 1000
                except OSError:
                    continue
                if age_ms > self.archive_ttl_ms:
                    archived_path.unlink(missing_ok=True)
                    removed += 1

            project_dir = self.project_dir(project_key)
            if not any(p.is_file() for p in project_dir.rglob("*")):
                shutil.rmtree(project_dir, ignore_errors=True)

        if removed:
            logger.info("Swept %d expired memory file(s)", removed)
        return removed

    # ── Prompt formatting ─────────────────────────────────────

    def format_for_prompt(self, key: MemoryKey, scope: Scope = "both") -> str | None:
        """Scoped memory block for prompt injection. None when nothing is stored."""
        project = self.load_project(key.project_key) if scope in ("project", "both") else None
        task = self.load_task(key.project_key, key.task_key) if scope in ("task", "both") else None
        now = now_ms()
        lines: list[str] = []

        if project is not None and project.events:
            relevant = [e for e in project.events if e.importance is not Importance.LOW][-10:]
            if relevant:
                lines.append(f"[Project: {key.project_name}]")
                for event in relevant:
                    ago = format_time_ago(now - event.timestamp)
                    lines.append(f"- {event.content} ({event.type.value}, {ago})")

        if task is not None and task.events:
            if lines:
                lines.append("")
            lines.append(f"[Task: {key.branch_name}]")
            for event in task.events[-15:]:
                ago = format_time_ago(now - event.timestamp)
                lines.append(f"- {event.content} ({event.type.value}, {ago})")

        return "\n".join(lines) if lines else None

    # ── Stats ─────────────────────────────────────────────────

    def stats(self) -> dict:
        """Aggregate counts across every live project and task."""
        projects = tasks = archived = disk = 0
        by_type: Counter[str] = Counter()
        by_importance: Counter[str] = Counter()
        oldest: int | None = None
        newest: int | None = None

        def tally(events: list[MemoryEvent]) -> None:
            nonlocal oldest, newest
            for e in events:
                by_type[e.type.value] += 1
                by_importance[e.importance.value] += 1
                oldest = e.timestamp if oldest is None else min(oldest, e.timestamp)
                newest = e.timestamp if newest is None else max(newest, e.timestamp)

        for project_key in self.list_projects():
            for path in self.project_dir(project_key).rglob("*.json"):
                try:
                    disk += path.stat().st_size
                except OSError:
                    continue
            archived += len(self.list_archived_keys(project_key))

            project = self.load_project(project_key)
            if project is not None:
                projects += 1
                tally(project.events)
            for task_key in self.list_task_keys(project_key):
                task = self.load_task(project_key, task_key)
                if task is not None:
                    tasks += 1
                    tally(task.events)

        return {
            "projects": projects,
            "tasks": tasks,
            "archivedTasks": archived,
            "totalEvents": sum(by_type.values()),
            "byType": dict(by_type),
            "byImportance": dict(by_importance),
            "diskBytes": disk,
            "oldest": oldest,
            "newest": newest,
        }
