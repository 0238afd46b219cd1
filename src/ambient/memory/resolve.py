"""Working directory → (project, task) memory key."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import time
from typing import Protocol

from ambient.memory.models import MemoryKey
from ambient.memory.vcs import GitInspector

logger = logging.getLogger(__name__)

BRANCH_CACHE_TTL = 5.0
MAX_TASK_KEY_LENGTH = 100
DETACHED_BRANCH = "detached"
DEFAULT_BRANCH = "default"

_UNSAFE = re.compile(r"[^a-zA-Z0-9._-]")
_REPO_NAME = re.compile(r"[/:]([\w.-]+?)(?:\.git)?$")


class VCSInspector(Protocol):
    async def root(self, cwd: str) -> str | None: ...

    async def remote(self, root: str) -> str | None: ...

    async def branch(self, root: str) -> str | None: ...

    async def merged_branches(self, root: str) -> list[str]: ...


def sanitize_branch_name(branch: str) -> str:
    """Make a branch name safe to use as a filename.

    >>> sanitize_branch_name("feature/auth-flow")
    'feature--auth-flow'
    """
    key = _UNSAFE.sub("", branch.replace("/", "--"))[:MAX_TASK_KEY_LENGTH]
    return key or DEFAULT_BRANCH


def hash_origin(origin: str) -> str:
    return hashlib.sha256(origin.encode("utf-8")).hexdigest()[:16]


def extract_repo_name(remote: str) -> str | None:
    """Repository name from an SSH or HTTPS remote URL."""
    match = _REPO_NAME.search(remote.rstrip("/"))
    return match.group(1) if match else None


class KeyResolver:
    """Resolve memory keys, caching git lookups.

    Root and remote are cached for the life of the process; the branch is
    cached for a few seconds since it changes during active work.
    """

    def __init__(
        self,
        inspector: VCSInspector | None = None,
        *,
        branch_ttl: float = BRANCH_CACHE_TTL,
    ) -> None:
        self.inspector = inspector or GitInspector()
        self.branch_ttl = branch_ttl
        self._roots: dict[str, str | None] = {}
        self._remotes: dict[str, str | None] = {}
        self._branches: dict[str, tuple[str, float]] = {}

    async def git_root(self, cwd: str) -> str | None:
        if cwd not in self._roots:
            self._roots[cwd] = await self.inspector.root(cwd)
        else:
            logger.debug("Root cache hit for %s", cwd)
        return self._roots[cwd]

    async def _remote(self, root: str) -> str | None:
        if root not in self._remotes:
            self._remotes[root] = await self.inspector.remote(root)
        return self._remotes[root]

    async def _branch(self, root: str) -> str:
        cached = self._branches.get(root)
        now = time.monotonic()
        if cached and now - cached[1] < self.branch_ttl:
            return cached[0]
        branch = await self.inspector.branch(root) or DETACHED_BRANCH
        self._branches[root] = (branch, now)
        return branch

    def invalidate_branch(self, root: str) -> None:
        self._branches.pop(root, None)

    async def resolve(self, cwd: str) -> MemoryKey:
        cwd = os.path.abspath(cwd)
        root = await self.git_root(cwd)
        remote = await self._remote(root) if root else None
        origin = remote or root or cwd

        name = (extract_repo_name(remote) if remote else None) or os.path.basename(
            root or cwd
        )
        branch = await self._branch(root) if root else DEFAULT_BRANCH

        return MemoryKey(
            project_key=hash_origin(origin),
            task_key=sanitize_branch_name(branch),
            project_name=name or origin,
            branch_name=branch,
            origin=origin,
        )
