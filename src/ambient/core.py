"""Ambient orchestrator, the daemon's request dispatcher.

Responsibilities:
1. Resolve the memory key for every request from the caller's cwd
2. Session management: (project, task) → active agent, last response
3. Memory injection: scoped memory plus a cross-project search on fresh turns
4. Shell context: the terminal's cwd, git state and recent commands ride along
   with every query; notable commands become task memory
5. Agent routing: stream the agent's output back to the caller
6. Deferred maintenance: extraction, compaction, lifecycle and context-file
   work is queued only after the final "done" frame was sent
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import TYPE_CHECKING

from ambient.agents.router import AgentRouter
from ambient.config import AmbientConfig
from ambient.memory.compact import Compactor
from ambient.memory.context_file import ContextFileGenerator
from ambient.memory.extraction import Extractor
from ambient.memory.lifecycle import LifecycleManager
from ambient.memory.migrate import migrate_legacy
from ambient.memory.models import EventType, Importance, MemoryEvent, MemoryKey, now_ms
from ambient.memory.resolve import KeyResolver
from ambient.memory.search import format_search_results, search_memory
from ambient.memory.store import MemoryStore
from ambient.memory.vcs import GitInspector
from ambient.protocol import Request, RequestType, Response
from ambient.scheduler.queue import Job, WorkQueue
from ambient.sessions import ActivityBuffers, ActivityEntry, SessionRegistry, SessionState
from ambient.shell.classify import classify_command
from ambient.shell.context import SHELL_EVENTS, ContextEngine

if TYPE_CHECKING:
    from ambient.engines.base import Summarizer

logger = logging.getLogger(__name__)

SendFn = Callable[[Response], Awaitable[None]]

CROSS_PROJECT_HITS = 10
DEFAULT_SEARCH_EVENTS = 25
MAX_SEARCH_EVENTS = 100
PREVIOUS_RESPONSE_LIMIT = 2000
SESSION_SUMMARY_LIMIT = 1000


class RequestError(Exception):
    """A request that cannot be served; answered with an error frame."""


class ClientGone(ConnectionError):
    """The caller closed its end of the connection."""


@dataclass
class RequestContext:
    send: SendFn
    deferred: list[Job] = field(default_factory=list)

    def defer(self, name: str, fn: Callable[[], object]) -> None:
        """Queue `fn` to run after the reply is complete."""
        self.deferred.append(Job(name, fn))


@dataclass
class DaemonMetrics:
    started_at: int = field(default_factory=now_ms)
    queries_total: int = 0
    queries_today: int = 0
    query_today_date: str = field(default_factory=lambda: date.today().isoformat())
    memory_stores_total: int = 0
    sessions_reset: int = 0

    def record_query(self) -> None:
        today = date.today().isoformat()
        if today != self.query_today_date:
            self.queries_today = 0
            self.query_today_date = today
        self.queries_total += 1
        self.queries_today += 1


def _build_summarizer(config: AmbientConfig) -> Summarizer | None:
    if not config.summarizer.enabled:
        return None
    from ambient.engines.anthropic_api import AnthropicSummarizer

    return AnthropicSummarizer(model=config.summarizer.model, timeout=config.summarizer.timeout)


class Orchestrator:
    """Routes typed requests to the memory engine and the agent router."""

    def __init__(
        self,
        config: AmbientConfig,
        *,
        store: MemoryStore | None = None,
        resolver: KeyResolver | None = None,
        router: AgentRouter | None = None,
        summarizer: Summarizer | None = None,
        queue: WorkQueue | None = None,
        privacy_filter: Callable[[str], str] | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        self.config = config
        mem = config.memory
        self.store = store or MemoryStore(
            config.memory_dir,
            max_project_events=mem.max_project_events,
            max_task_events=mem.max_task_events,
            ttl_days=mem.ttl_days,
            archive_ttl_days=mem.archive_ttl_days,
            supersede_threshold=mem.supersede_threshold,
        )
        self.resolver = resolver or KeyResolver(GitInspector(), branch_ttl=mem.branch_cache_ttl)
        self.router = router or AgentRouter()
        self.summarizer = summarizer if summarizer is not None else _build_summarizer(config)
        self.queue = queue or WorkQueue()
        self.shutdown_event = shutdown_event or asyncio.Event()

        self.compactor = Compactor(
            self.store,
            self.summarizer,
            project_threshold=mem.project_compact_threshold,
            task_threshold=mem.task_compact_threshold,
            project_batch=mem.project_compact_batch,
            task_batch=mem.task_compact_batch,
        )
        self.lifecycle = LifecycleManager(self.store, self.resolver.inspector)
        self.extractor = Extractor(self.store, self.summarizer, privacy_filter=privacy_filter)
        self.context_files = ContextFileGenerator(self.store)
        self.shell = ContextEngine()

        self.sessions = SessionRegistry()
        self.activity = ActivityBuffers(
            flush_threshold=config.daemon.activity_flush_threshold,
            max_entries=config.daemon.activity_buffer_max,
        )
        self.metrics = DaemonMetrics()

        self._handlers: dict[RequestType, Callable[[Request, RequestContext], Awaitable[str]]] = {
            RequestType.QUERY: self._query,
            RequestType.NEW_SESSION: self._new_session,
            RequestType.MEMORY_STORE: self._memory_store,
            RequestType.MEMORY_READ: self._memory_read,
            RequestType.MEMORY_SEARCH: self._memory_search,
            RequestType.MEMORY_DELETE: self._memory_delete,
            RequestType.MEMORY_UPDATE: self._memory_update,
            RequestType.ACTIVITY: self._activity,
            RequestType.ACTIVITY_FLUSH: self._activity_flush,
            RequestType.CONTEXT_UPDATE: self._context_update,
            RequestType.CONTEXT_READ: self._context_read,
            RequestType.CAPTURE: self._capture,
            RequestType.OUTPUT_READ: self._output_read,
            RequestType.STATUS: self._status,
            RequestType.PING: self._ping,
            RequestType.SHUTDOWN: self._shutdown,
        }

    # ── Lifecycle ─────────────────────────────────────────────

    async def startup(self) -> None:
        """Migrate legacy files, sweep expired memory and start the work queue.

        Runs before the socket opens.
        """
        await migrate_legacy(self.store, self.resolver)
        removed = self.lifecycle.sweep()
        logger.info("Startup sweep removed %d expired file(s)", removed)
        self.queue.start()

    async def shutdown(self) -> None:
        """Persist sessions, flush activity, then drain deferred work."""
        for key, session in self.sessions.items():
            self.sessions.end(key)
            try:
                self._persist_session(key, session)
            except Exception as e:
                logger.warning("Failed to save session %s: %s", key.session_key, e)

        for key, entries in self.activity.take_all():
            try:
                await self.extractor.extract_activity(key, entries)
            except Exception as e:
                logger.warning("Activity flush failed for %s: %s", key.session_key, e)

        self.context_files.flush()
        await self.queue.drain()
        logger.info("Orchestrator flushed.")

    # ── Dispatch ──────────────────────────────────────────────

    async def handle(self, request: Request, send: SendFn) -> None:
        """Serve one request. Always ends with "done" unless the client is gone."""
        ctx = RequestContext(send=send)
        handler = self._handlers[request.type]
        try:
            try:
                done = await handler(request, ctx)
            except RequestError as e:
                await send(Response.error(str(e)))
                done = ""
            except ClientGone:
                raise
            except Exception as e:
                logger.exception("Request handler failed: %s", request.type.value)
                await send(Response.error(str(e) or type(e).__name__))
                done = ""
            await send(Response.done(done))
        except ClientGone:
            logger.info("Client disconnected during %s", request.type.value)
        finally:
            # Deferred work survives a vanished or cancelled caller
            for job in ctx.deferred:
                self.queue.submit(job)

    @staticmethod
    def _require(request: Request, name: str) -> str:
        value = request.payload.get(name)
        if value is None or value == "":
            raise RequestError(f"{request.type.value} requires {name}")
        return str(value)

    async def _context_root(self, cwd: str) -> str | None:
        if not self.config.daemon.context_file:
            return None
        return await self.resolver.git_root(os.path.abspath(cwd))

    # ── Sessions ──────────────────────────────────────────────

    def _persist_session(self, key: MemoryKey, session: SessionState) -> None:
        """Save the session's last response as a low-importance summary."""
        if not session.last_response or session.query_count < 1:
            return
        summary = session.last_response[:SESSION_SUMMARY_LIMIT].rstrip()
        self.store.add_task_event(
            key.project_key,
            key.task_key,
            key.branch_name,
            MemoryEvent.create(EventType.SESSION_SUMMARY, summary, Importance.LOW),
        )
        logger.info("Saved memory for %s:%s", key.project_name, key.branch_name)

    def _build_context_block(
        self, key: MemoryKey, prompt: str, session: SessionState | None, agent_name: str
    ) -> str:
        blocks = [self.shell.format_for_prompt()]
        history = self.shell.format_history()
        if history:
            blocks.append(f"[Command history]\n{history}")

        if session is None:
            scoped = self.store.format_for_prompt(key)
            if scoped:
                blocks.append(f"[Long-term memory]\n{scoped}")
            cross = format_search_results(search_memory(self.store, prompt, CROSS_PROJECT_HITS))
            if cross:
                blocks.append(f"[Other projects]\n{cross}")
        else:
            agent = self.router.get(agent_name)
            native = agent is not None and agent.supports_continuation
            if not native and session.last_response:
                previous = session.last_response
                if len(previous) > PREVIOUS_RESPONSE_LIMIT:
                    previous = previous[:PREVIOUS_RESPONSE_LIMIT] + "\n... (truncated)"
                blocks.append(f"Previous assistant response:\n{previous}")
        return "\n\n".join(blocks)

    async def _query(self, request: Request, ctx: RequestContext) -> str:
        prompt = self._require(request, "prompt")
        cwd = os.path.abspath(self._require(request, "cwd"))
        self.metrics.record_query()

        agent_name = request.get_str("agent") or self.config.daemon.default_agent
        key = await self.resolver.resolve(cwd)
        self.shell.update("chpwd", cwd)
        session = self.sessions.get(key)

        if request.payload.get("newSession") or (session and session.agent_name != agent_name):
            if session:
                self._persist_session(key, session)
            self.sessions.end(key)
            session = None

        context_block = self._build_context_block(key, prompt, session, agent_name)
        continuing = session is not None

        pipe_input = request.get_str("pipeInput")
        if pipe_input:
            prompt = f"{pipe_input}\n\n---\n\n{prompt}"

        logger.info(
            "Routing to '%s' [%s:%s]%s: %s",
            agent_name,
            key.project_name,
            key.branch_name,
            " (continuing)" if continuing else "",
            prompt[:100],
        )

        result = await self.router.route(
            prompt,
            agent_name,
            context_block,
            ctx.send,
            continue_session=continuing,
            cwd=cwd,
        )

        if session is None:
            self.sessions.start(key, agent_name)
        self.sessions.touch(key, result.full_response)

        if result.full_response:
            response = result.full_response
            ctx.defer("extract-turn", lambda: self._extract_turn(key, prompt, response))

        root = await self._context_root(cwd)
        if root and not continuing:
            ctx.defer("merged-branches", lambda: self.lifecycle.process_merged_branches(root, key))
        return ""

    async def _extract_turn(self, key: MemoryKey, prompt: str, response: str) -> None:
        stored = await self.extractor.extract_turn(key, prompt, response)
        if stored:
            await self.compactor.compact_task_if_needed(key.project_key, key.task_key)
            await self.compactor.compact_project_if_needed(key.project_key)

    async def _new_session(self, request: Request, ctx: RequestContext) -> str:
        cwd = self._require(request, "cwd")
        key = await self.resolver.resolve(cwd)
        self.metrics.sessions_reset += 1

        session = self.sessions.end(key)
        if session:
            self._persist_session(key, session)

        entries = self.activity.take(key)
        if entries:
            ctx.defer("activity-flush", lambda: self.extractor.extract_activity(key, entries))

        root = await self._context_root(cwd)
        if root:
            ctx.defer("context-file", lambda: self.context_files.regenerate_now(root, key))

        logger.info("Session reset for %s:%s", key.project_name, key.branch_name)
        return "ok"

    # ── Memory requests ───────────────────────────────────────

    async def _memory_store(self, request: Request, ctx: RequestContext) -> str:
        cwd = self._require(request, "cwd")
        content = self._require(request, "content")
        raw_type = self._require(request, "eventType")
        try:
            event_type = EventType(raw_type)
        except ValueError:
            raise RequestError(f"Invalid eventType: {raw_type}")
        raw_importance = request.get_str("importance") or Importance.MEDIUM.value
        try:
            importance = Importance(raw_importance)
        except ValueError:
            raise RequestError(f"Invalid importance: {raw_importance}")

        metadata = request.payload.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise RequestError("metadata must be an object")

        self.metrics.memory_stores_total += 1
        key = await self.resolver.resolve(cwd)
        event = MemoryEvent.create(
            event_type,
            content,
            importance,
            metadata={str(k): str(v) for k, v in metadata.items()} if metadata else None,
        )

        if importance is Importance.HIGH:
            self.store.add_project_event(key.project_key, key.project_name, key.origin, event)
        self.store.add_task_event(key.project_key, key.task_key, key.branch_name, event)

        ctx.defer(
            "compact-task",
            lambda: self.compactor.compact_task_if_needed(key.project_key, key.task_key),
        )
        if importance is Importance.HIGH:
            ctx.defer("compact-project", lambda: self.compactor.compact_project_if_needed(key.project_key))
        root = await self._context_root(cwd)
        if root:
            ctx.defer("context-file", lambda: self.context_files.schedule_regeneration(root, key))

        logger.info(
            "Memory stored (%s/%s) for %s:%s",
            event_type.value,
            importance.value,
            key.project_name,
            key.branch_name,
        )
        return "ok"

    async def _memory_read(self, request: Request, ctx: RequestContext) -> str:
        cwd = self._require(request, "cwd")
        key = await self.resolver.resolve(cwd)
        await ctx.send(Response.status(self.store.format_for_prompt(key) or ""))
        return ""

    async def _memory_search(self, request: Request, ctx: RequestContext) -> str:
        query = self._require(request, "query")
        try:
            max_events = int(request.payload.get("maxEvents") or DEFAULT_SEARCH_EVENTS)
        except (TypeError, ValueError):
            raise RequestError("maxEvents must be a number")
        max_events = max(1, min(max_events, MAX_SEARCH_EVENTS))

        hits = search_memory(self.store, query, max_events)
        await ctx.send(Response.status(format_search_results(hits) or "No matching memories found."))
        return ""

    async def _memory_delete(self, request: Request, ctx: RequestContext) -> str:
        cwd = self._require(request, "cwd")
        event_id = self._require(request, "eventId")
        key = await self.resolver.resolve(cwd)

        if self.store.delete_event(key, event_id):
            logger.info("Memory deleted: %s", event_id)
            root = await self._context_root(cwd)
            if root:
                ctx.defer("context-file", lambda: self.context_files.schedule_regeneration(root, key))
        # Unknown ids are not an error
        return "ok"

    async def _memory_update(self, request: Request, ctx: RequestContext) -> str:
        cwd = self._require(request, "cwd")
        event_id = self._require(request, "eventId")
        new_content = self._require(request, "newContent")
        key = await self.resolver.resolve(cwd)

        if not self.store.update_event(key, event_id, new_content):
            raise RequestError(f"Event not found: {event_id}")

        logger.info("Memory updated: %s", event_id)
        root = await self._context_root(cwd)
        if root:
            ctx.defer("context-file", lambda: self.context_files.schedule_regeneration(root, key))
        return "ok"

    # ── Passive activity ──────────────────────────────────────

    async def _activity(self, request: Request, ctx: RequestContext) -> str:
        cwd = self._require(request, "cwd")
        tool = self._require(request, "tool")
        if not self.config.daemon.passive_monitoring:
            return "ok"

        key = await self.resolver.resolve(cwd)
        entry = ActivityEntry(
            tool=tool,
            file_path=request.get_str("filePath") or None,
            command=request.get_str("command") or None,
            description=request.get_str("description") or None,
        )
        if self.activity.append(key, entry):
            entries = self.activity.take(key)
            ctx.defer("activity-flush", lambda: self.extractor.extract_activity(key, entries))
        return "ok"

    async def _activity_flush(self, request: Request, ctx: RequestContext) -> str:
        cwd = self._require(request, "cwd")
        if not self.config.daemon.passive_monitoring:
            return "ok"

        key = await self.resolver.resolve(cwd)
        entries = self.activity.take(key)
        reasoning = request.get_str("reasoning") or None
        ctx.defer(
            "activity-flush", lambda: self.extractor.extract_activity(key, entries, reasoning)
        )
        return "ok"

    # ── Shell context ─────────────────────────────────────────

    async def _context_update(self, request: Request, ctx: RequestContext) -> str:
        event = self._require(request, "event")
        if event not in SHELL_EVENTS:
            raise RequestError(f"Invalid event: {event}")
        cwd = os.path.abspath(self._require(request, "cwd"))

        exit_code = request.payload.get("exitCode")
        if exit_code is not None:
            try:
                exit_code = int(exit_code)
            except (TypeError, ValueError):
                raise RequestError("exitCode must be a number")
        git_dirty = request.payload.get("gitDirty")

        record = self.shell.update(
            event,
            cwd,
            command=request.get_str("command"),
            exit_code=exit_code,
            git_branch=request.get_str("gitBranch"),
            git_dirty=bool(git_dirty) if git_dirty is not None else None,
        )

        root = await self.resolver.git_root(cwd)
        if root is None:
            return "ok"
        if record is not None and record.command.split()[0] == "git":
            # A checkout may have moved HEAD
            self.resolver.invalidate_branch(root)
        key = await self.resolver.resolve(cwd)
        context_root = root if self.config.daemon.context_file else None

        if event == "chpwd":
            if context_root:
                ctx.defer("context-file", lambda: self.context_files.regenerate_now(context_root, key))
            ctx.defer("merged-branches", lambda: self.lifecycle.process_merged_branches(root, key))
        elif record is not None:
            if context_root:
                ctx.defer(
                    "context-file", lambda: self.context_files.schedule_regeneration(context_root, key)
                )
            notable = classify_command(record.command, record.exit_code)
            if notable:
                memory = MemoryEvent.create(
                    notable.type, notable.content, notable.importance, metadata={"source": "shell"}
                )
                ctx.defer(
                    "shell-event",
                    lambda: self.store.add_task_event(
                        key.project_key, key.task_key, key.branch_name, memory
                    ),
                )
        return "ok"

    async def _context_read(self, request: Request, ctx: RequestContext) -> str:
        cwd = request.get_str("cwd") or self.shell.get_context().cwd
        key = await self.resolver.resolve(cwd)
        payload = {
            "context": self.shell.get_context().to_dict(),
            "formattedContext": self.shell.format_for_prompt(),
            "memory": self.store.format_for_prompt(key),
        }
        await ctx.send(Response.status(json.dumps(payload)))
        return ""

    async def _capture(self, request: Request, ctx: RequestContext) -> str:
        output = self._require(request, "output")
        self.shell.store_output(output)
        logger.info("Captured %d chars of command output", len(output))
        return "ok"

    async def _output_read(self, request: Request, ctx: RequestContext) -> str:
        await ctx.send(Response.status(self.shell.last_output() or ""))
        return ""

    # ── Daemon control ────────────────────────────────────────

    async def _status(self, request: Request, ctx: RequestContext) -> str:
        extractor = self.extractor
        status = {
            "daemon": {
                "pid": os.getpid(),
                "uptime": (now_ms() - self.metrics.started_at) / 1000,
                "startedAt": self.metrics.started_at,
                "socketPath": str(self.config.daemon.socket_path),
            },
            "memory": self.store.stats(),
            "sessions": {
                "active": len(self.sessions),
                "created": self.sessions.created,
                "reset": self.metrics.sessions_reset,
                "queriesTotal": self.metrics.queries_total,
                "queriesToday": self.metrics.queries_today,
                "memoryStoresTotal": self.metrics.memory_stores_total,
                "agentsUsed": self.sessions.agents_in_use(),
            },
            "extractions": {
                "total": extractor.extractions_active + extractor.extractions_passive,
                "active": extractor.extractions_active,
                "passive": extractor.extractions_passive,
                "recent": [asdict(r) for r in list(extractor.recent)[-5:]],
            },
            "queue": {
                "pending": self.queue.pending,
                "completed": self.queue.completed,
                "failed": self.queue.failed,
            },
            "config": {
                "defaultAgent": self.config.daemon.default_agent,
                "summarizer": self.summarizer.name if self.summarizer else None,
                "agents": sorted(self.router.agents),
            },
        }
        await ctx.send(Response.status(json.dumps(status)))
        return ""

    async def _ping(self, request: Request, ctx: RequestContext) -> str:
        return "pong"

    async def _shutdown(self, request: Request, ctx: RequestContext) -> str:
        logger.info("Shutdown requested")
        self.shutdown_event.set()
        return "shutting down"
