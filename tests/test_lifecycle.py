"""Tests for merged-branch promotion and archival."""

from __future__ import annotations

import pytest

from ambient.memory.lifecycle import LifecycleManager
from ambient.memory.models import MemoryEvent, MemoryKey
from ambient.memory.store import MemoryStore
from tests.conftest import FakeInspector


def _seed(store: MemoryStore, key: MemoryKey) -> None:
    for event in (
        MemoryEvent.create("decision", "Use JWT tokens for authentication", "high"),
        MemoryEvent.create("decision", "Name the login route /session", "medium"),
        MemoryEvent.create("task-update", "Login form wired up", "high"),
    ):
        store.add_task_event(key.project_key, key.task_key, key.branch_name, event)


class TestDetectMerged:
    @pytest.mark.asyncio
    async def test_matches_sanitized_keys(self, store: MemoryStore, key: MemoryKey):
        _seed(store, key)
        store.add_task_event(
            key.project_key, "wip", "wip", MemoryEvent.create("task-update", "still open")
        )
        manager = LifecycleManager(store, FakeInspector(merged=["feature/auth", "unrelated"]))
        assert await manager.detect_merged_branches("/repo", key.project_key) == ["feature--auth"]

    @pytest.mark.asyncio
    async def test_branch_with_stripped_characters(self, store: MemoryStore, key: MemoryKey):
        store.add_task_event(
            key.project_key, "fix--bug42", "fix/bug #42", MemoryEvent.create("task-update", "patched")
        )
        manager = LifecycleManager(store, FakeInspector(merged=["fix/bug #42"]))
        assert await manager.detect_merged_branches("/repo", key.project_key) == ["fix--bug42"]

    @pytest.mark.asyncio
    async def test_no_tasks(self, store: MemoryStore, key: MemoryKey):
        manager = LifecycleManager(store, FakeInspector(merged=["feature/auth"]))
        assert await manager.detect_merged_branches("/repo", key.project_key) == []


class TestPromote:
    def test_only_high_decisions(self, store: MemoryStore, key: MemoryKey):
        _seed(store, key)
        manager = LifecycleManager(store, FakeInspector())
        count = manager.promote_task_decisions(
            key.project_key, key.task_key, key.project_name, key.origin
        )
        assert count == 1
        project = store.load_project(key.project_key)
        assert [e.content for e in project.events] == ["Use JWT tokens for authentication"]
        assert project.events[0].metadata == {"promotedFrom": "feature/auth"}

    def test_promoted_copy_gets_new_id(self, store: MemoryStore, key: MemoryKey):
        _seed(store, key)
        manager = LifecycleManager(store, FakeInspector())
        manager.promote_task_decisions(key.project_key, key.task_key, key.project_name, key.origin)
        task_ids = {e.id for e in store.load_task(key.project_key, key.task_key).events}
        project_ids = {e.id for e in store.load_project(key.project_key).events}
        assert not task_ids & project_ids

    def test_already_present_not_duplicated(self, store: MemoryStore, key: MemoryKey):
        _seed(store, key)
        manager = LifecycleManager(store, FakeInspector())
        manager.promote_task_decisions(key.project_key, key.task_key, key.project_name, key.origin)
        again = manager.promote_task_decisions(
            key.project_key, key.task_key, key.project_name, key.origin
        )
        assert again == 0
        assert len(store.load_project(key.project_key).events) == 1

    def test_missing_task(self, store: MemoryStore, key: MemoryKey):
        manager = LifecycleManager(store, FakeInspector())
        assert manager.promote_task_decisions(key.project_key, "gone", "p", "o") == 0


class TestProcessMerged:
    @pytest.mark.asyncio
    async def test_promotes_then_archives(self, store: MemoryStore, key: MemoryKey):
        _seed(store, key)
        manager = LifecycleManager(store, FakeInspector(merged=["feature/auth"]))
        current = MemoryKey(key.project_key, "main", key.project_name, "main", key.origin)

        assert await manager.process_merged_branches("/repo", current) == 1
        assert store.load_task(key.project_key, key.task_key) is None
        archived = store.load_archived_task(key.project_key, key.task_key)
        assert archived is not None and archived.archived
        assert len(store.load_project(key.project_key).events) == 1

    @pytest.mark.asyncio
    async def test_nothing_merged(self, store: MemoryStore, key: MemoryKey):
        _seed(store, key)
        manager = LifecycleManager(store, FakeInspector(merged=[]))
        assert await manager.process_merged_branches("/repo", key) == 0
        assert store.load_task(key.project_key, key.task_key) is not None
