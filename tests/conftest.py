"""Shared fixtures and mock collaborators."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from ambient.agents.router import RouteResult
from ambient.memory.models import MemoryKey
from ambient.memory.resolve import KeyResolver
from ambient.memory.store import MemoryStore
from ambient.protocol import Response


class FakeInspector:
    """Version-control inspector backed by plain attributes."""

    def __init__(
        self,
        root: str | None = None,
        remote: str | None = None,
        branch: str | None = "main",
        merged: list[str] | None = None,
    ) -> None:
        self._root = root
        self._remote = remote
        self._branch = branch
        self.merged = merged or []
        self.calls: dict[str, int] = {"root": 0, "remote": 0, "branch": 0}

    async def root(self, cwd: str) -> str | None:
        self.calls["root"] += 1
        if self._root and os.path.abspath(cwd).startswith(self._root):
            return self._root
        return None

    async def remote(self, root: str) -> str | None:
        self.calls["remote"] += 1
        return self._remote

    async def branch(self, root: str) -> str | None:
        self.calls["branch"] += 1
        return self._branch

    async def merged_branches(self, root: str) -> list[str]:
        return list(self.merged)


class MockSummarizer:
    def __init__(self, reply: str | None = "Summary of earlier work.") -> None:
        self.reply = reply
        self.prompts: list[str] = []

    @property
    def name(self) -> str:
        return "mock"

    async def complete(self, prompt, *, max_tokens=1024, system=None):
        self.prompts.append(prompt)
        return self.reply


class MockRouter:
    """Agent router that replays a canned response."""

    def __init__(self, response: str = "Mock agent response", continuation: bool = False) -> None:
        self.response = response
        self.continuation = continuation
        self.calls: list[dict] = []
        self.agents = {"claude": object(), "codex": object()}

    def get(self, name):
        if name not in self.agents:
            return None
        return _AgentStub(self.continuation)

    async def route(self, prompt, agent_name, context_block, on_chunk, *, continue_session=False, cwd=None):
        self.calls.append(
            {
                "prompt": prompt,
                "agent": agent_name,
                "context": context_block,
                "continue": continue_session,
            }
        )
        await on_chunk(Response.chunk(self.response))
        return RouteResult(full_response=self.response, exit_code=0)


class _AgentStub:
    def __init__(self, continuation: bool) -> None:
        self.supports_continuation = continuation


@pytest.fixture
def store(tmp_path: Path) -> MemoryStore:
    return MemoryStore(tmp_path / "memory")


@pytest.fixture
def key() -> MemoryKey:
    return MemoryKey(
        project_key="abc123def4567890",
        task_key="feature--auth",
        project_name="api-server",
        branch_name="feature/auth",
        origin="git@github.com:acme/api-server.git",
    )


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    (root / "src" / "pkg").mkdir(parents=True)
    return root


@pytest.fixture
def inspector(repo: Path) -> FakeInspector:
    return FakeInspector(root=str(repo), remote="git@github.com:acme/api-server.git")


@pytest.fixture
def resolver(inspector: FakeInspector) -> KeyResolver:
    return KeyResolver(inspector)
