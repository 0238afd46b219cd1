"""One-time migration of flat per-directory memory files.

Older releases kept one `<memory dir>/<hash>.json` per working directory:

    {"directory": ..., "lastAgent": ..., "lastActive": ..., "summary": ..., "facts": [...]}

On startup each such file becomes a `session-summary` task event (from
`summary`) plus one project `decision` per fact, and is renamed to
`<name>.json.migrated` so it is never read again.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from ambient.memory.models import EventType, Importance, MemoryEvent, now_ms

if TYPE_CHECKING:
    from ambient.memory.resolve import KeyResolver
    from ambient.memory.store import MemoryStore

logger = logging.getLogger(__name__)

MIGRATED_SUFFIX = ".migrated"


@dataclass
class LegacyMemory:
    directory: str
    summary: str
    last_agent: str = "unknown"
    last_active: int = field(default_factory=now_ms)
    facts: list[str] = field(default_factory=list)


def load_legacy(path: Path) -> LegacyMemory | None:
    """Parse a flat memory file. None when it is not in the old format."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    if not isinstance(data.get("directory"), str) or not isinstance(data.get("summary"), str):
        return None

    facts = data.get("facts")
    last_active = data.get("lastActive")
    return LegacyMemory(
        directory=data["directory"],
        summary=data["summary"],
        last_agent=str(data.get("lastAgent") or "unknown"),
        last_active=int(last_active) if isinstance(last_active, (int, float)) else now_ms(),
        facts=[str(f) for f in facts if f] if isinstance(facts, list) else [],
    )


def legacy_files(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    return sorted(p for p in root.glob("*.json") if p.is_file())


async def migrate_legacy(store: MemoryStore, resolver: KeyResolver) -> int:
    """Move every flat memory file under the store root into the two-level layout."""
    migrated = 0
    for path in legacy_files(store.root):
        entry = load_legacy(path)
        if entry is None:
            continue

        try:
            await _migrate_one(store, resolver, entry)
        except OSError as e:
            logger.warning("Failed to migrate legacy memory file %s: %s", path, e)
            continue

        os.replace(path, path.with_name(path.name + MIGRATED_SUFFIX))
        migrated += 1

    if migrated:
        logger.info("Migrated %d legacy memory file(s) to the project/task layout", migrated)
    return migrated


async def _migrate_one(store: MemoryStore, resolver: KeyResolver, entry: LegacyMemory) -> None:
    key = await resolver.resolve(entry.directory)
    if entry.summary:
        store.add_task_event(
            key.project_key,
            key.task_key,
            key.branch_name,
            MemoryEvent.create(
                EventType.SESSION_SUMMARY,
                f"[Migrated from {entry.last_agent}] {entry.summary}",
                Importance.LOW,
                timestamp=entry.last_active,
            ),
        )
    for fact in entry.facts:
        store.add_project_event(
            key.project_key,
            key.project_name,
            key.origin,
            MemoryEvent.create(
                EventType.DECISION, fact, Importance.MEDIUM, timestamp=entry.last_active
            ),
        )
