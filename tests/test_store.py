"""Tests for the two-level memory store."""

from __future__ import annotations

import json
import os
import time
from pathlib import Path

from ambient.memory.models import MemoryEvent, MemoryKey, ProjectMemory, TaskMemory, now_ms
from ambient.memory.store import MemoryStore, trim_events

DAY_MS = 86_400_000


def _event(content: str, importance: str = "medium", type: str = "task-update", ts: int | None = None):
    return MemoryEvent.create(type, content, importance, timestamp=ts)


def _add_task(store: MemoryStore, key: MemoryKey, event: MemoryEvent):
    return store.add_task_event(key.project_key, key.task_key, key.branch_name, event)


def _add_project(store: MemoryStore, key: MemoryKey, event: MemoryEvent):
    return store.add_project_event(key.project_key, key.project_name, key.origin, event)


class TestLayout:
    def test_paths(self, store: MemoryStore, key: MemoryKey):
        _add_project(store, key, _event("p"))
        _add_task(store, key, _event("t"))
        base = store.root / "projects" / key.project_key
        assert (base / "project.json").is_file()
        assert (base / "tasks" / f"{key.task_key}.json").is_file()

    def test_camel_case_on_disk(self, store: MemoryStore, key: MemoryKey):
        _add_task(store, key, _event("t"))
        data = json.loads(store.task_path(key.project_key, key.task_key).read_text())
        assert data["branchName"] == "feature/auth"
        assert data["archived"] is False
        assert data["events"][0]["content"] == "t"

    def test_no_temp_files_left(self, store: MemoryStore, key: MemoryKey):
        for i in range(5):
            _add_task(store, key, _event(f"t{i}"))
        tasks_dir = store.project_dir(key.project_key) / "tasks"
        assert [p.name for p in tasks_dir.iterdir()] == [f"{key.task_key}.json"]


class TestLoad:
    def test_missing_is_none(self, store: MemoryStore):
        assert store.load_project("nope") is None
        assert store.load_task("nope", "main") is None

    def test_malformed_is_none(self, store: MemoryStore, key: MemoryKey):
        path = store.project_path(key.project_key)
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        assert store.load_project(key.project_key) is None

    def test_wrong_shape_is_none(self, store: MemoryStore, key: MemoryKey):
        path = store.project_path(key.project_key)
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"projectKey": "x"}))
        assert store.load_project(key.project_key) is None

    def test_ttl_expiry(self, store: MemoryStore, key: MemoryKey):
        old = now_ms() - 91 * DAY_MS
        store.save_project(
            ProjectMemory(key.project_key, key.project_name, key.origin, old, old, [_event("x")])
        )
        store.save_task(
            TaskMemory(key.task_key, key.branch_name, key.project_key, old, old, events=[_event("y")])
        )
        assert store.project_path(key.project_key).exists()
        assert store.load_project(key.project_key) is None
        assert store.load_task(key.project_key, key.task_key) is None

    def test_bad_event_skipped_alone(self, store: MemoryStore, key: MemoryKey):
        for content in ("Use Postgres", "Deploy on Fly", "Auth via OAuth"):
            _add_project(store, key, _event(content, "high", "decision"))
        path = store.project_path(key.project_key)
        data = json.loads(path.read_text())
        data["events"].append({"id": "x1", "type": "preference", "timestamp": 1, "content": "?"})
        data["events"].append({"id": "x2", "type": "decision", "content": "no timestamp"})
        path.write_text(json.dumps(data))

        memory = store.load_project(key.project_key)
        assert len(memory.events) == 3

        _add_project(store, key, _event("new thing"))
        on_disk = [e["content"] for e in json.loads(path.read_text())["events"]]
        assert on_disk == ["Use Postgres", "Deploy on Fly", "Auth via OAuth", "new thing"]

    def test_unreadable_document_moved_aside(self, store: MemoryStore, key: MemoryKey):
        path = store.task_path(key.project_key, key.task_key)
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"branchKey": key.task_key, "events": []}))

        memory = _add_task(store, key, _event("fresh"))
        assert [e.content for e in memory.events] == ["fresh"]
        aside = list(path.parent.glob(f"{path.name}.corrupt-*"))
        assert len(aside) == 1
        assert json.loads(aside[0].read_text()) == {"branchKey": key.task_key, "events": []}
        assert store.list_task_keys(key.project_key) == [key.task_key]

    def test_unreadable_task_not_archived_away(self, store: MemoryStore, key: MemoryKey):
        path = store.task_path(key.project_key, key.task_key)
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        assert not store.archive_task(key.project_key, key.task_key)
        assert list(path.parent.glob(f"{path.name}.corrupt-*"))

    def test_expired_recreated_on_write(self, store: MemoryStore, key: MemoryKey):
        old = now_ms() - 91 * DAY_MS
        store.save_project(
            ProjectMemory(key.project_key, key.project_name, key.origin, old, old, [_event("stale")])
        )
        memory = _add_project(store, key, _event("fresh"))
        assert [e.content for e in memory.events] == ["fresh"]


class TestAddEvents:
    def test_lazy_create_and_bump(self, store: MemoryStore, key: MemoryKey):
        before = now_ms()
        memory = _add_task(store, key, _event("first"))
        assert memory.created_at >= before
        assert memory.last_active >= before
        assert store.load_task(key.project_key, key.task_key).events[0].content == "first"

    def test_chronological(self, store: MemoryStore, key: MemoryKey):
        now = now_ms()
        _add_task(store, key, _event("late", ts=now))
        _add_task(store, key, _event("early", ts=now - 10_000))
        events = store.load_task(key.project_key, key.task_key).events
        assert [e.content for e in events] == ["early", "late"]

    def test_eviction_protects_high(self, tmp_path: Path, key: MemoryKey):
        store = MemoryStore(tmp_path / "m", max_project_events=50)
        now = now_ms()
        high = _event("Core architecture decision", "high", ts=now - 100_000)
        _add_project(store, key, high)
        for i in range(55):
            _add_project(store, key, _event(f"low event {i}", "low", ts=now - 50_000 + i))

        events = store.load_project(key.project_key).events
        assert len(events) <= 50
        assert any(e.id == high.id for e in events)
        # Newest low events survive
        assert events[-1].content == "low event 54"

    def test_supersession(self, store: MemoryStore, key: MemoryKey):
        _add_task(store, key, _event("Use JWT tokens for authentication", type="decision"))
        _add_task(store, key, _event("Use JWT tokens with refresh for authentication", type="decision"))
        decisions = [
            e for e in store.load_task(key.project_key, key.task_key).events if e.type.value == "decision"
        ]
        assert len(decisions) == 1
        assert "refresh" in decisions[0].content

    def test_unrelated_decisions_coexist(self, store: MemoryStore, key: MemoryKey):
        _add_task(store, key, _event("Use PostgreSQL for storage", type="decision"))
        _add_task(store, key, _event("Use JWT tokens for authentication", type="decision"))
        assert len(store.load_task(key.project_key, key.task_key).events) == 2

    def test_supersession_only_for_decisions(self, store: MemoryStore, key: MemoryKey):
        _add_task(store, key, _event("Use JWT tokens for authentication", type="decision"))
        _add_task(store, key, _event("Use JWT tokens with refresh for authentication"))
        assert len(store.load_task(key.project_key, key.task_key).events) == 2


class TestTrim:
    def test_under_cap_untouched(self):
        events = [_event(str(i)) for i in range(3)]
        assert trim_events(events, 5) is events

    def test_high_exceeding_cap_all_kept(self):
        events = [_event(str(i), "high", ts=i) for i in range(4)] + [_event("m", ts=10)]
        trimmed = trim_events(events, 3)
        assert [e.content for e in trimmed] == ["0", "1", "2", "3"]


class TestDeleteUpdate:
    def test_delete_both_scopes(self, store: MemoryStore, key: MemoryKey):
        event = _event("shared", "high", type="decision")
        _add_project(store, key, event)
        _add_task(store, key, event)
        assert store.delete_event(key, event.id) is True
        assert store.load_project(key.project_key).events == []
        assert store.load_task(key.project_key, key.task_key).events == []

    def test_delete_unknown_is_noop(self, store: MemoryStore, key: MemoryKey):
        _add_project(store, key, _event("p"))
        _add_task(store, key, _event("t"))
        project_path = store.project_path(key.project_key)
        task_path = store.task_path(key.project_key, key.task_key)
        before = (project_path.read_bytes(), task_path.read_bytes())
        mtimes = (project_path.stat().st_mtime_ns, task_path.stat().st_mtime_ns)

        assert store.delete_event(key, "does-not-exist") is False

        assert (project_path.read_bytes(), task_path.read_bytes()) == before
        assert (project_path.stat().st_mtime_ns, task_path.stat().st_mtime_ns) == mtimes

    def test_delete_with_no_memory(self, store: MemoryStore, key: MemoryKey):
        assert store.delete_event(key, "anything") is False

    def test_update(self, store: MemoryStore, key: MemoryKey):
        event = _event("old content", "medium")
        _add_task(store, key, event)
        assert store.update_event(key, event.id, "new content") is True
        updated = store.load_task(key.project_key, key.task_key).events[0]
        assert updated.content == "new content"
        assert updated.id == event.id
        assert updated.timestamp == event.timestamp

    def test_update_truncates(self, store: MemoryStore, key: MemoryKey):
        event = _event("x")
        _add_task(store, key, event)
        store.update_event(key, event.id, "y" * 2000)
        assert len(store.load_task(key.project_key, key.task_key).events[0].content) == 1000

    def test_update_unknown(self, store: MemoryStore, key: MemoryKey):
        _add_task(store, key, _event("x"))
        assert store.update_event(key, "missing", "y") is False


class TestDuplicates:
    def test_prefix_match_case_insensitive(self, store: MemoryStore, key: MemoryKey):
        _add_task(store, key, _event("Switched to pnpm workspaces " + "a" * 100))
        assert store.is_duplicate_event(
            key.project_key, key.task_key, "SWITCHED TO PNPM WORKSPACES " + "A" * 100 + " extra"
        )

    def test_project_scope_checked(self, store: MemoryStore, key: MemoryKey):
        _add_project(store, key, _event("Chose Redis for caching"))
        assert store.is_duplicate_event(key.project_key, key.task_key, "Chose Redis for caching")

    def test_not_duplicate(self, store: MemoryStore, key: MemoryKey):
        _add_task(store, key, _event("Chose Redis"))
        assert not store.is_duplicate_event(key.project_key, key.task_key, "Chose Memcached")


class TestListingAndArchive:
    def test_list(self, store: MemoryStore, key: MemoryKey):
        _add_task(store, key, _event("a"))
        store.add_task_event(key.project_key, "main", "main", _event("b"))
        assert store.list_projects() == [key.project_key]
        assert store.list_task_keys(key.project_key) == ["feature--auth", "main"]

    def test_archive(self, store: MemoryStore, key: MemoryKey):
        _add_task(store, key, _event("a"))
        assert store.archive_task(key.project_key, key.task_key) is True
        assert store.list_task_keys(key.project_key) == []
        assert store.list_archived_keys(key.project_key) == [key.task_key]
        archived = store.load_archived_task(key.project_key, key.task_key)
        assert archived.archived is True
        assert archived.events[0].content == "a"

    def test_archive_missing(self, store: MemoryStore, key: MemoryKey):
        assert store.archive_task(key.project_key, "nope") is False


class TestSweep:
    def test_removes_expired_files(self, store: MemoryStore, key: MemoryKey):
        old = now_ms() - 91 * DAY_MS
        store.save_project(ProjectMemory(key.project_key, key.project_name, key.origin, old, old))
        store.save_task(TaskMemory(key.task_key, key.branch_name, key.project_key, old, old))
        assert store.sweep_expired() == 2
        assert not store.project_dir(key.project_key).exists()

    def test_keeps_live_files(self, store: MemoryStore, key: MemoryKey):
        _add_project(store, key, _event("p"))
        _add_task(store, key, _event("t"))
        assert store.sweep_expired() == 0
        assert store.load_project(key.project_key) is not None

    def test_archived_retention(self, store: MemoryStore, key: MemoryKey):
        _add_project(store, key, _event("p"))
        _add_task(store, key, _event("t"))
        store.archive_task(key.project_key, key.task_key)
        path = store.archived_path(key.project_key, key.task_key)

        assert store.sweep_expired() == 0
        eight_days_ago = time.time() - 8 * 86_400
        os.utime(path, (eight_days_ago, eight_days_ago))
        assert store.sweep_expired() == 1
        assert not path.exists()

    def test_skips_malformed(self, store: MemoryStore, key: MemoryKey):
        path = store.project_path(key.project_key)
        path.parent.mkdir(parents=True)
        path.write_text("garbage")
        assert store.sweep_expired() == 0
        assert path.exists()


class TestFormatForPrompt:
    def test_empty(self, store: MemoryStore, key: MemoryKey):
        assert store.format_for_prompt(key) is None

    def test_sections(self, store: MemoryStore, key: MemoryKey):
        _add_project(store, key, _event("Use Postgres", "high", type="decision"))
        _add_project(store, key, _event("noise", "low"))
        _add_task(store, key, _event("Wired login form"))
        text = store.format_for_prompt(key)
        assert text.startswith("[Project: api-server]")
        assert "- Use Postgres (decision, 0m ago)" in text
        assert "noise" not in text
        assert "[Task: feature/auth]" in text
        assert "- Wired login form (task-update, 0m ago)" in text

    def test_scope(self, store: MemoryStore, key: MemoryKey):
        _add_project(store, key, _event("Use Postgres", "high", type="decision"))
        _add_task(store, key, _event("Wired login form"))
        assert "[Task:" not in store.format_for_prompt(key, "project")
        assert "[Project:" not in store.format_for_prompt(key, "task")

    def test_task_limit(self, store: MemoryStore, key: MemoryKey):
        now = now_ms()
        for i in range(20):
            _add_task(store, key, _event(f"step {i}", ts=now - 20_000 + i))
        lines = [l for l in store.format_for_prompt(key).splitlines() if l.startswith("- ")]
        assert len(lines) == 15
        assert lines[-1].startswith("- step 19")


class TestStats:
    def test_counts(self, store: MemoryStore, key: MemoryKey):
        _add_project(store, key, _event("p", "high", type="decision"))
        _add_task(store, key, _event("t", "low"))
        _add_task(store, key, _event("u", "low", type="error-resolution"))
        stats = store.stats()
        assert stats["projects"] == 1
        assert stats["tasks"] == 1
        assert stats["totalEvents"] == 3
        assert stats["byType"]["decision"] == 1
        assert stats["byImportance"]["low"] == 2
        assert stats["diskBytes"] > 0
        assert stats["oldest"] <= stats["newest"]
