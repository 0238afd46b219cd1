"""Memory extraction: mine new events from agent turns and passive activity.

The summarizer answers in JSON lines, one candidate memory per line.
Malformed lines are skipped individually; a JSON object embedded in prose
is still recovered.
"""

from __future__ import annotations

import json
import logging
import re
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ambient.memory.models import EventType, Importance, MemoryEvent, MemoryKey, now_ms
from ambient.memory.store import DUPLICATE_PREFIX_LENGTH

if TYPE_CHECKING:
    from ambient.engines.base import Summarizer
    from ambient.memory.store import MemoryStore
    from ambient.sessions import ActivityEntry

logger = logging.getLogger(__name__)

MIN_RESPONSE_LENGTH = 200
MIN_ACTIVITY_ENTRIES = 3
MAX_RECENT_EXTRACTIONS = 20

TURN_TYPES = (
    EventType.DECISION,
    EventType.ERROR_RESOLUTION,
    EventType.TASK_UPDATE,
    EventType.FILE_CONTEXT,
)
ACTIVITY_TYPES = (EventType.DECISION, EventType.ERROR_RESOLUTION, EventType.TASK_UPDATE)

TURN_PROMPT_TEMPLATE = """\
You are a memory extraction system. Given a user's prompt and an AI agent's response, \
extract discrete facts worth remembering across sessions.

User asked: "{prompt}"

Agent responded:
{response}

Extract memories as JSON-lines. Each line must be a valid JSON object:
- "type": "decision" | "error-resolution" | "task-update" | "file-context"
- "content": concise 1-2 sentence fact
- "importance": importance level (see rules)

Importance rules (STRICT):
- "high": ONLY for architecture/framework/database/auth strategy decisions that affect \
the whole project. Most sessions produce 0 high items.
- "medium": error fixes, config changes, dependency additions, non-trivial patterns
- "low": file touched, test passed, minor context

Rules:
- Only extract facts useful in future sessions
- Each memory must be atomic and self-contained
- Skip greetings, pleasantries, meta-commentary, obvious codebase facts
- Output NOTHING if there's nothing worth remembering
- Maximum 5 items

Output only JSON-lines, no other text."""

ACTIVITY_PROMPT_TEMPLATE = """\
You are a memory extraction system. A coding agent just performed these actions:

{activity}

Extract ONLY memories useful in a future session:
- Architecture decisions or library choices explicitly made
- Error patterns: what broke and how it was fixed
- Significant changes: major refactors, new features, dependency changes

Output JSON-lines: {{"type":"decision"|"error-resolution"|"task-update","content":"...",\
"importance":"high"|"medium"|"low"}}

Importance rules (STRICT):
- "high": ONLY for architecture/framework/database decisions. Almost never.
- "medium": error resolutions, significant code changes
- "low": everything else worth noting

Output NOTHING (empty response) if all actions are routine.
Routine = reading files, running passing tests, minor edits, exploration, formatting.
Maximum 3 items only if something genuinely notable happened.

Output only JSON-lines, no other text."""


@dataclass
class ExtractedMemory:
    type: EventType
    content: str
    importance: Importance = Importance.MEDIUM


def build_turn_prompt(user_prompt: str, response: str) -> str:
    return TURN_PROMPT_TEMPLATE.format(prompt=user_prompt[:500], response=response[:6000])


def format_activity(entries: Iterable[ActivityEntry]) -> list[str]:
    lines = []
    for entry in entries:
        if entry.file_path:
            lines.append(f"- {entry.tool}: {entry.file_path}")
        elif entry.command:
            cmd = entry.command if len(entry.command) <= 120 else entry.command[:120] + "..."
            desc = f" ({entry.description})" if entry.description else ""
            lines.append(f"- Bash: {cmd}{desc}")
        else:
            lines.append(f"- {entry.tool}")
    return lines


def build_activity_prompt(entries: list[ActivityEntry], reasoning: str | None = None) -> str | None:
    """None when there is neither activity nor reasoning to describe."""
    blocks = []
    lines = format_activity(entries)
    if lines:
        blocks.append("Actions performed:\n" + "\n".join(lines))
    if reasoning:
        blocks.append(f"The agent explained:\n{reasoning[:3000]}")
    if not blocks:
        return None
    return ACTIVITY_PROMPT_TEMPLATE.format(activity="\n".join(blocks))


def _to_memory(data: object, valid_types: tuple[EventType, ...]) -> ExtractedMemory | None:
    if not isinstance(data, dict):
        return None
    content = data.get("content")
    raw_type = data.get("type")
    if not content or not raw_type or not isinstance(content, str):
        return None
    try:
        event_type = EventType(raw_type)
    except ValueError:
        return None
    if event_type not in valid_types:
        return None
    try:
        importance = Importance(data.get("importance", "medium"))
    except ValueError:
        importance = Importance.MEDIUM
    return ExtractedMemory(type=event_type, content=content, importance=importance)


def parse_memory_lines(
    text: str, valid_types: tuple[EventType, ...] = TURN_TYPES
) -> list[ExtractedMemory]:
    """Parse a JSON-lines answer into candidate memories."""
    items: list[ExtractedMemory] = []
    for line in text.strip().splitlines():
        line = line.strip()
        if not line or line.startswith("//") or line.startswith("#"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            # Try to extract JSON from the line
            match = re.search(r"\{.*\}", line)
            if not match:
                continue
            try:
                data = json.loads(match.group())
            except json.JSONDecodeError:
                logger.warning("Skipping malformed memory line: %s", line[:120])
                continue
        item = _to_memory(data, valid_types)
        if item is not None:
            items.append(item)
    return items


def store_extracted(
    store: MemoryStore,
    key: MemoryKey,
    items: list[ExtractedMemory],
    metadata: dict[str, str] | None = None,
) -> int:
    """Dedupe and store. High importance goes to both scopes, the rest to the task."""
    seen: set[str] = set()
    stored = 0
    for item in items:
        prefix = item.content[:DUPLICATE_PREFIX_LENGTH].lower()
        if prefix in seen:
            continue
        if store.is_duplicate_event(key.project_key, key.task_key, item.content):
            continue
        seen.add(prefix)

        event = MemoryEvent.create(item.type, item.content, item.importance, metadata=metadata)
        if item.importance is Importance.HIGH:
            store.add_project_event(key.project_key, key.project_name, key.origin, event)
        store.add_task_event(key.project_key, key.task_key, key.branch_name, event)
        stored += 1
    return stored


@dataclass
class ExtractionRecord:
    source: str
    stored: int
    timestamp: int


class Extractor:
    """Turn and activity extraction through the summarizer."""

    def __init__(
        self,
        store: MemoryStore,
        summarizer: Summarizer | None,
        *,
        privacy_filter: Callable[[str], str] | None = None,
    ) -> None:
        self.store = store
        self.summarizer = summarizer
        self.privacy_filter = privacy_filter
        self.extractions_active = 0
        self.extractions_passive = 0
        self.recent: deque[ExtractionRecord] = deque(maxlen=MAX_RECENT_EXTRACTIONS)

    def _record(self, source: str, stored: int) -> None:
        if source == "active":
            self.extractions_active += 1
        else:
            self.extractions_passive += 1
        self.recent.append(ExtractionRecord(source=source, stored=stored, timestamp=now_ms()))

    async def extract_turn(self, key: MemoryKey, user_prompt: str, response: str) -> int:
        """Mine one agent turn. Short responses are skipped."""
        if self.summarizer is None or len(response) < MIN_RESPONSE_LENGTH:
            return 0

        result = await self.summarizer.complete(
            build_turn_prompt(user_prompt, response), max_tokens=1000
        )
        if not result:
            return 0

        stored = store_extracted(self.store, key, parse_memory_lines(result, TURN_TYPES))
        if stored:
            self._record("active", stored)
            logger.info(
                "Extracted %d memories from agent response for %s:%s",
                stored,
                key.project_name,
                key.branch_name,
            )
        return stored

    async def extract_activity(
        self,
        key: MemoryKey,
        entries: list[ActivityEntry],
        reasoning: str | None = None,
    ) -> int:
        """Mine buffered tool calls. Needs a few entries, or reasoning text."""
        if self.summarizer is None:
            return 0
        if len(entries) < MIN_ACTIVITY_ENTRIES and not reasoning:
            return 0

        if self.privacy_filter is not None:
            entries = [e.filtered(self.privacy_filter) for e in entries]
            if reasoning:
                reasoning = self.privacy_filter(reasoning)

        prompt = build_activity_prompt(entries, reasoning)
        if prompt is None:
            return 0

        result = await self.summarizer.complete(prompt, max_tokens=500)
        if not result:
            return 0

        stored = store_extracted(
            self.store,
            key,
            parse_memory_lines(result, ACTIVITY_TYPES),
            metadata={"source": "passive"},
        )
        if stored:
            self._record("passive", stored)
            logger.info(
                "Passive monitoring: extracted %d memories from %d tool calls for %s:%s",
                stored,
                len(entries),
                key.project_name,
                key.branch_name,
            )
        return stored
