"""Branch lifecycle: promote decisions from merged branches, archive, sweep."""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import TYPE_CHECKING

from ambient.memory.models import EventType, Importance, MemoryKey
from ambient.memory.resolve import sanitize_branch_name

if TYPE_CHECKING:
    from ambient.memory.resolve import VCSInspector
    from ambient.memory.store import MemoryStore

logger = logging.getLogger(__name__)


class LifecycleManager:
    def __init__(self, store: MemoryStore, inspector: VCSInspector) -> None:
        self.store = store
        self.inspector = inspector

    async def detect_merged_branches(self, root: str, project_key: str) -> list[str]:
        """Task keys of this project whose branch is merged into the current one."""
        known = self.store.list_task_keys(project_key)
        if not known:
            return []

        merged = {sanitize_branch_name(b) for b in await self.inspector.merged_branches(root)}
        return [tk for tk in known if tk in merged]

    def promote_task_decisions(
        self, project_key: str, task_key: str, project_name: str, origin: str
    ) -> int:
        """Copy high-importance decisions not already in project scope. Returns the count."""
        task = self.store.load_task(project_key, task_key)
        if task is None:
            return 0

        project = self.store.load_project(project_key)
        existing = {e.content for e in project.events} if project else set()

        to_promote = [
            e
            for e in task.events
            if e.type is EventType.DECISION
            and e.importance is Importance.HIGH
            and e.content not in existing
        ]
        for event in to_promote:
            promoted = replace(
                event,
                id=str(uuid.uuid4()),
                metadata={**(event.metadata or {}), "promotedFrom": task.branch_name},
            )
            self.store.add_project_event(project_key, project_name, origin, promoted)
        return len(to_promote)

    async def process_merged_branches(self, root: str, key: MemoryKey) -> int:
        """Promote then archive every merged branch. Returns the number archived."""
        merged = await self.detect_merged_branches(root, key.project_key)
        archived = 0
        for task_key in merged:
            promoted = self.promote_task_decisions(
                key.project_key, task_key, key.project_name, key.origin
            )
            if promoted:
                logger.info(
                    "Promoted %d decision(s) from %s to project %s",
                    promoted,
                    task_key,
                    key.project_name,
                )
            if self.store.archive_task(key.project_key, task_key):
                archived += 1
        return archived

    def sweep(self) -> int:
        return self.store.sweep_expired()
