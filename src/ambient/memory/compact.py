"""Compaction: fold the oldest non-high events into one summary event.

With no summarizer (or a failed call) only low-importance events of the
batch are dropped; medium and high content is never discarded silently.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ambient.memory.models import EventType, Importance, MemoryEvent

if TYPE_CHECKING:
    from ambient.engines.base import Summarizer
    from ambient.memory.store import MemoryStore

logger = logging.getLogger(__name__)

PROJECT_COMPACT_THRESHOLD = 150
TASK_COMPACT_THRESHOLD = 400
PROJECT_COMPACT_BATCH = 120
TASK_COMPACT_BATCH = 300

SUMMARY_PROMPT_TEMPLATE = """\
Summarize these memory events from {label} into a concise paragraph (max 200 words). \
Preserve all important decisions and error resolutions. \
Focus on what matters for continuing work.

Events:
{events}

Output only the summary paragraph, nothing else."""


def build_summary_prompt(events: list[MemoryEvent], label: str) -> str:
    formatted = "\n".join(f"- [{e.type.value}] {e.content}" for e in events)
    return SUMMARY_PROMPT_TEMPLATE.format(label=label, events=formatted)


async def compact_events(
    events: list[MemoryEvent],
    label: str,
    batch: int,
    summarizer: Summarizer | None,
) -> list[MemoryEvent] | None:
    """Return the compacted event list, or None when nothing changed."""
    protected = [e for e in events if e.importance is Importance.HIGH]
    candidates = [e for e in events if e.importance is not Importance.HIGH]
    if len(candidates) < batch:
        return None

    to_compact = candidates[:batch]
    to_keep = candidates[batch:]

    summary: str | None = None
    if summarizer is not None:
        summary = await summarizer.complete(build_summary_prompt(to_compact, label), max_tokens=400)

    if summary:
        summary_event = MemoryEvent.create(
            EventType.SESSION_SUMMARY,
            summary,
            Importance.MEDIUM,
            metadata={"compacted": str(len(to_compact))},
        )
        logger.info("Compacted %d events from %s into a summary", len(to_compact), label)
        return sorted([*protected, summary_event, *to_keep], key=lambda e: e.timestamp)

    kept = [e for e in to_compact if e.importance is not Importance.LOW]
    dropped = len(to_compact) - len(kept)
    if not dropped:
        logger.debug("Nothing safe to drop from %s, skipping compaction", label)
        return None

    logger.info("Summarizer unavailable, dropped %d low-importance events from %s", dropped, label)
    return sorted([*protected, *kept, *to_keep], key=lambda e: e.timestamp)


class Compactor:
    """Opportunistic compaction, triggered after writes rather than on a timer."""

    def __init__(
        self,
        store: MemoryStore,
        summarizer: Summarizer | None = None,
        *,
        project_threshold: int = PROJECT_COMPACT_THRESHOLD,
        task_threshold: int = TASK_COMPACT_THRESHOLD,
        project_batch: int = PROJECT_COMPACT_BATCH,
        task_batch: int = TASK_COMPACT_BATCH,
    ) -> None:
        self.store = store
        self.summarizer = summarizer
        self.project_threshold = project_threshold
        self.task_threshold = task_threshold
        self.project_batch = project_batch
        self.task_batch = task_batch

    async def compact_project_if_needed(self, project_key: str) -> bool:
        memory = self.store.load_project(project_key)
        if memory is None or len(memory.events) < self.project_threshold:
            return False

        compacted = await compact_events(
            memory.events,
            f"project: {memory.project_name}",
            self.project_batch,
            self.summarizer,
        )
        if compacted is None:
            return False

        # Re-read so events added while the summarizer ran are not lost
        current = self.store.load_project(project_key) or memory
        known = {e.id for e in memory.events}
        arrived = [e for e in current.events if e.id not in known]
        current.events = sorted(compacted + arrived, key=lambda e: e.timestamp)
        self.store.save_project(current)
        return True

    async def compact_task_if_needed(self, project_key: str, task_key: str) -> bool:
        memory = self.store.load_task(project_key, task_key)
        if memory is None or len(memory.events) < self.task_threshold:
            return False

        compacted = await compact_events(
            memory.events,
            f"task: {memory.branch_name}",
            self.task_batch,
            self.summarizer,
        )
        if compacted is None:
            return False

        current = self.store.load_task(project_key, task_key) or memory
        known = {e.id for e in memory.events}
        arrived = [e for e in current.events if e.id not in known]
        current.events = sorted(compacted + arrived, key=lambda e: e.timestamp)
        self.store.save_task(current)
        return True
