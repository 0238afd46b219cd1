"""Per-(project, task) session state and passive activity buffers."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace

from ambient.memory.models import MemoryKey, now_ms

ACTIVITY_FLUSH_THRESHOLD = 30
ACTIVITY_BUFFER_MAX = 50


@dataclass
class SessionState:
    agent_name: str
    query_count: int = 0
    last_response: str = ""
    started_at: int = field(default_factory=now_ms)
    last_used: int = field(default_factory=now_ms)


class SessionRegistry:
    """Live sessions keyed by `MemoryKey.session_key`.

    A session is created on the first query for a key and ends on an explicit
    reset, an agent switch, or daemon shutdown.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionState] = {}
        self._keys: dict[str, MemoryKey] = {}
        self.created = 0

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_key: str) -> bool:
        return session_key in self._sessions

    def get(self, key: MemoryKey) -> SessionState | None:
        return self._sessions.get(key.session_key)

    def start(self, key: MemoryKey, agent_name: str) -> SessionState:
        session = SessionState(agent_name=agent_name)
        self._sessions[key.session_key] = session
        self._keys[key.session_key] = key
        self.created += 1
        return session

    def end(self, key: MemoryKey) -> SessionState | None:
        self._keys.pop(key.session_key, None)
        return self._sessions.pop(key.session_key, None)

    def touch(self, key: MemoryKey, response: str) -> SessionState | None:
        session = self._sessions.get(key.session_key)
        if session is None:
            return None
        session.query_count += 1
        session.last_response = response
        session.last_used = now_ms()
        return session

    def items(self) -> Iterator[tuple[MemoryKey, SessionState]]:
        for session_key, session in list(self._sessions.items()):
            yield self._keys[session_key], session

    def agents_in_use(self) -> list[str]:
        return sorted({s.agent_name for s in self._sessions.values()})


@dataclass(frozen=True)
class ActivityEntry:
    """One tool call reported by an external monitor."""

    tool: str
    file_path: str | None = None
    command: str | None = None
    description: str | None = None
    timestamp: int = field(default_factory=now_ms)

    def filtered(self, fn: Callable[[str], str]) -> ActivityEntry:
        return replace(
            self,
            command=fn(self.command) if self.command else self.command,
            description=fn(self.description) if self.description else self.description,
        )


class ActivityBuffers:
    """Bounded ring buffer of activity per session."""

    def __init__(
        self,
        *,
        flush_threshold: int = ACTIVITY_FLUSH_THRESHOLD,
        max_entries: int = ACTIVITY_BUFFER_MAX,
    ) -> None:
        self.flush_threshold = flush_threshold
        self.max_entries = max_entries
        self._buffers: dict[str, deque[ActivityEntry]] = {}
        self._keys: dict[str, MemoryKey] = {}

    def __len__(self) -> int:
        return len(self._buffers)

    def size(self, key: MemoryKey) -> int:
        buffer = self._buffers.get(key.session_key)
        return len(buffer) if buffer else 0

    def append(self, key: MemoryKey, entry: ActivityEntry) -> bool:
        """Buffer an entry. Returns True once the flush threshold is reached."""
        buffer = self._buffers.get(key.session_key)
        if buffer is None:
            buffer = self._buffers[key.session_key] = deque(maxlen=self.max_entries)
            self._keys[key.session_key] = key
        buffer.append(entry)
        return len(buffer) >= self.flush_threshold

    def take(self, key: MemoryKey) -> list[ActivityEntry]:
        """Remove and return everything buffered for `key`."""
        self._keys.pop(key.session_key, None)
        return list(self._buffers.pop(key.session_key, ()))

    def take_all(self) -> list[tuple[MemoryKey, list[ActivityEntry]]]:
        drained = [(self._keys[sk], list(buf)) for sk, buf in self._buffers.items()]
        self._buffers.clear()
        self._keys.clear()
        return drained
