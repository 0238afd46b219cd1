"""Tests for turn and activity extraction."""

from __future__ import annotations

import json

import pytest

from ambient.memory.extraction import (
    ACTIVITY_TYPES,
    ExtractedMemory,
    Extractor,
    build_activity_prompt,
    build_turn_prompt,
    format_activity,
    parse_memory_lines,
    store_extracted,
)
from ambient.memory.models import EventType, Importance, MemoryKey
from ambient.memory.store import MemoryStore
from ambient.sessions import ActivityEntry
from tests.conftest import MockSummarizer

LONG_RESPONSE = "I switched the session layer to JWT tokens with a refresh rotation. " * 5


def _line(type_: str, content: str, importance: str = "medium") -> str:
    return json.dumps({"type": type_, "content": content, "importance": importance})


class TestParseMemoryLines:
    def test_json_lines(self):
        text = "\n".join(
            [
                _line("decision", "Use JWT", "high"),
                _line("error-resolution", "Fixed CORS by adding origin header"),
            ]
        )
        items = parse_memory_lines(text)
        assert [i.type for i in items] == [EventType.DECISION, EventType.ERROR_RESOLUTION]
        assert items[0].importance is Importance.HIGH

    def test_comments_and_blank_lines_skipped(self):
        text = "// header\n\n# note\n" + _line("task-update", "Login done")
        assert len(parse_memory_lines(text)) == 1

    def test_object_embedded_in_prose(self):
        text = "Here you go: " + _line("decision", "Use Redis for cache") + " thanks"
        items = parse_memory_lines(text)
        assert items == [ExtractedMemory(EventType.DECISION, "Use Redis for cache")]

    def test_malformed_lines_skipped_individually(self):
        text = "{not json}\n" + _line("decision", "Keep this")
        assert [i.content for i in parse_memory_lines(text)] == ["Keep this"]

    def test_disallowed_type_dropped(self):
        text = _line("file-context", "src/app.py holds routes")
        assert parse_memory_lines(text, ACTIVITY_TYPES) == []

    def test_unknown_importance_defaults_to_medium(self):
        items = parse_memory_lines(_line("decision", "x", "urgent"))
        assert items[0].importance is Importance.MEDIUM

    def test_missing_content_dropped(self):
        assert parse_memory_lines(json.dumps({"type": "decision"})) == []


class TestPrompts:
    def test_turn_prompt_truncates(self):
        prompt = build_turn_prompt("p" * 1000, "r" * 10000)
        assert "p" * 500 in prompt and "p" * 501 not in prompt
        assert "r" * 6000 in prompt and "r" * 6001 not in prompt

    def test_format_activity(self):
        lines = format_activity(
            [
                ActivityEntry(tool="Edit", file_path="src/app.py"),
                ActivityEntry(tool="Bash", command="pytest -q", description="run tests"),
                ActivityEntry(tool="WebSearch"),
            ]
        )
        assert lines == ["- Edit: src/app.py", "- Bash: pytest -q (run tests)", "- WebSearch"]

    def test_long_command_truncated(self):
        lines = format_activity([ActivityEntry(tool="Bash", command="x" * 200)])
        assert lines == ["- Bash: " + "x" * 120 + "..."]

    def test_activity_prompt_empty(self):
        assert build_activity_prompt([], None) is None

    def test_activity_prompt_with_reasoning_only(self):
        prompt = build_activity_prompt([], "Chose SQLite over Postgres for the CLI cache")
        assert "The agent explained:" in prompt
        assert "Actions performed" not in prompt


class TestStoreExtracted:
    def test_high_goes_to_both_scopes(self, store: MemoryStore, key: MemoryKey):
        items = [
            ExtractedMemory(EventType.DECISION, "Use JWT tokens for authentication", Importance.HIGH),
            ExtractedMemory(EventType.TASK_UPDATE, "Login form done", Importance.LOW),
        ]
        assert store_extracted(store, key, items) == 2
        project = store.load_project(key.project_key)
        task = store.load_task(key.project_key, key.task_key)
        assert [e.content for e in project.events] == ["Use JWT tokens for authentication"]
        assert len(task.events) == 2

    def test_duplicates_within_batch(self, store: MemoryStore, key: MemoryKey):
        items = [
            ExtractedMemory(EventType.TASK_UPDATE, "Login form done"),
            ExtractedMemory(EventType.TASK_UPDATE, "LOGIN FORM DONE"),
        ]
        assert store_extracted(store, key, items) == 1

    def test_duplicates_against_store(self, store: MemoryStore, key: MemoryKey):
        item = [ExtractedMemory(EventType.TASK_UPDATE, "Login form done")]
        store_extracted(store, key, item)
        assert store_extracted(store, key, item) == 0

    def test_metadata_attached(self, store: MemoryStore, key: MemoryKey):
        store_extracted(
            store, key, [ExtractedMemory(EventType.TASK_UPDATE, "x")], metadata={"source": "passive"}
        )
        task = store.load_task(key.project_key, key.task_key)
        assert task.events[0].metadata == {"source": "passive"}


class TestExtractor:
    @pytest.mark.asyncio
    async def test_short_response_skipped(self, store: MemoryStore, key: MemoryKey):
        summarizer = MockSummarizer(_line("decision", "x"))
        extractor = Extractor(store, summarizer)
        assert await extractor.extract_turn(key, "hi", "hello!") == 0
        assert summarizer.prompts == []

    @pytest.mark.asyncio
    async def test_no_summarizer(self, store: MemoryStore, key: MemoryKey):
        assert await Extractor(store, None).extract_turn(key, "q", LONG_RESPONSE) == 0

    @pytest.mark.asyncio
    async def test_turn_extraction(self, store: MemoryStore, key: MemoryKey):
        summarizer = MockSummarizer(_line("decision", "Use JWT with refresh rotation", "high"))
        extractor = Extractor(store, summarizer)
        assert await extractor.extract_turn(key, "how should auth work?", LONG_RESPONSE) == 1
        assert extractor.extractions_active == 1
        assert extractor.recent[-1].source == "active"
        assert store.load_project(key.project_key) is not None

    @pytest.mark.asyncio
    async def test_empty_answer(self, store: MemoryStore, key: MemoryKey):
        extractor = Extractor(store, MockSummarizer(""))
        assert await extractor.extract_turn(key, "q", LONG_RESPONSE) == 0
        assert extractor.extractions_active == 0

    @pytest.mark.asyncio
    async def test_too_few_activity_entries(self, store: MemoryStore, key: MemoryKey):
        summarizer = MockSummarizer(_line("task-update", "x"))
        extractor = Extractor(store, summarizer)
        entries = [ActivityEntry(tool="Read", file_path="a.py")]
        assert await extractor.extract_activity(key, entries) == 0
        assert summarizer.prompts == []

    @pytest.mark.asyncio
    async def test_reasoning_alone_is_enough(self, store: MemoryStore, key: MemoryKey):
        summarizer = MockSummarizer(_line("decision", "Chose SQLite for the local cache"))
        extractor = Extractor(store, summarizer)
        assert await extractor.extract_activity(key, [], "SQLite keeps the CLI dependency-free") == 1

    @pytest.mark.asyncio
    async def test_activity_marked_passive(self, store: MemoryStore, key: MemoryKey):
        summarizer = MockSummarizer(_line("error-resolution", "Fixed import cycle in models"))
        extractor = Extractor(store, summarizer)
        entries = [ActivityEntry(tool="Edit", file_path=f"f{i}.py") for i in range(3)]
        assert await extractor.extract_activity(key, entries) == 1
        task = store.load_task(key.project_key, key.task_key)
        assert task.events[0].metadata == {"source": "passive"}
        assert extractor.extractions_passive == 1

    @pytest.mark.asyncio
    async def test_privacy_filter_applied(self, store: MemoryStore, key: MemoryKey):
        summarizer = MockSummarizer("")
        extractor = Extractor(
            store, summarizer, privacy_filter=lambda s: s.replace("hunter2", "[REDACTED]")
        )
        entries = [ActivityEntry(tool="Bash", command="login --password hunter2")] * 3
        await extractor.extract_activity(key, entries, "used hunter2 to log in")
        assert "hunter2" not in summarizer.prompts[0]
        assert "[REDACTED]" in summarizer.prompts[0]
