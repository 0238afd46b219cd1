"""Memory entities: events, project/task aggregates, and the resolved key.

Timestamps are epoch milliseconds. On-disk documents use camelCase field
names; `to_dict()` / `from_dict()` translate in both directions.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1000


class EventType(str, Enum):
    DECISION = "decision"
    ERROR_RESOLUTION = "error-resolution"
    TASK_UPDATE = "task-update"
    FILE_CONTEXT = "file-context"
    SESSION_SUMMARY = "session-summary"


class Importance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def now_ms() -> int:
    return int(time.time() * 1000)


def format_time_ago(ms: int) -> str:
    """Render an age in milliseconds as '5m ago', '3h ago' or '2d ago'."""
    minutes = max(ms, 0) // 60_000
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


@dataclass(frozen=True)
class MemoryEvent:
    """A single remembered fact. Content is capped at 1000 characters."""

    id: str
    type: EventType
    timestamp: int
    content: str
    importance: Importance = Importance.MEDIUM
    metadata: dict[str, str] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", EventType(self.type))
        object.__setattr__(self, "importance", Importance(self.importance))
        if len(self.content) > MAX_CONTENT_LENGTH:
            object.__setattr__(self, "content", self.content[:MAX_CONTENT_LENGTH])

    @classmethod
    def create(
        cls,
        type: EventType | str,
        content: str,
        importance: Importance | str = Importance.MEDIUM,
        metadata: dict[str, str] | None = None,
        timestamp: int | None = None,
    ) -> MemoryEvent:
        return cls(
            id=str(uuid.uuid4()),
            type=EventType(type),
            timestamp=timestamp if timestamp is not None else now_ms(),
            content=content,
            importance=Importance(importance),
            metadata=dict(metadata) if metadata else None,
        )

    def with_content(self, content: str) -> MemoryEvent:
        return replace(self, content=content)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "content": self.content,
            "importance": self.importance.value,
        }
        if self.metadata is not None:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> MemoryEvent:
        metadata = data.get("metadata")
        return cls(
            id=str(data["id"]),
            type=EventType(data["type"]),
            timestamp=int(data["timestamp"]),
            content=str(data["content"]),
            importance=Importance(data.get("importance", "medium")),
            metadata=(
                {str(k): str(v) for k, v in metadata.items()} if metadata is not None else None
            ),
        )


def _events_from_list(raw: list) -> list[MemoryEvent]:
    """Decode events one by one. A malformed event is dropped, not the whole list."""
    events = []
    for item in raw:
        try:
            events.append(MemoryEvent.from_dict(item))
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Skipping malformed memory event %r: %s", item, e)
    return events


@dataclass
class ProjectMemory:
    """Project-level memory, shared across all branches."""

    project_key: str
    project_name: str
    origin: str
    created_at: int
    last_active: int
    events: list[MemoryEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "projectKey": self.project_key,
            "projectName": self.project_name,
            "origin": self.origin,
            "createdAt": self.created_at,
            "lastActive": self.last_active,
            "events": [e.to_dict() for e in self.events],
        }

    @classmethod
    def from_dict(cls, data: dict) -> ProjectMemory:
        return cls(
            project_key=str(data["projectKey"]),
            project_name=str(data["projectName"]),
            origin=str(data.get("origin", "")),
            created_at=int(data["createdAt"]),
            last_active=int(data["lastActive"]),
            events=_events_from_list(data.get("events", [])),
        )


@dataclass
class TaskMemory:
    """Task-level memory, scoped to a single branch."""

    branch_key: str
    branch_name: str
    project_key: str
    created_at: int
    last_active: int
    archived: bool = False
    events: list[MemoryEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "branchKey": self.branch_key,
            "branchName": self.branch_name,
            "projectKey": self.project_key,
            "createdAt": self.created_at,
            "lastActive": self.last_active,
            "archived": self.archived,
            "events": [e.to_dict() for e in self.events],
        }

    @classmethod
    def from_dict(cls, data: dict) -> TaskMemory:
        return cls(
            branch_key=str(data["branchKey"]),
            branch_name=str(data["branchName"]),
            project_key=str(data["projectKey"]),
            created_at=int(data["createdAt"]),
            last_active=int(data["lastActive"]),
            archived=bool(data.get("archived", False)),
            events=_events_from_list(data.get("events", [])),
        )


@dataclass(frozen=True)
class MemoryKey:
    """Resolved two-level key. Recomputed from the caller's cwd, never stored."""

    project_key: str
    task_key: str
    project_name: str
    branch_name: str
    origin: str

    @property
    def session_key(self) -> str:
        return f"{self.project_key}:{self.task_key}"
