"""Version-control inspection via short-lived `git` subprocesses.

Every lookup is best-effort: a missing binary, a non-repository directory,
a timeout or a non-zero exit all degrade to None (or an empty list).
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 1.0
MERGED_TIMEOUT = 2.0


class GitInspector:
    """Async wrapper around the handful of git queries the resolver needs."""

    def __init__(self, binary: str = "git") -> None:
        self.binary = binary

    async def _git(self, args: list[str], cwd: str, timeout: float = GIT_TIMEOUT) -> str | None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug("git %s unavailable in %s: %s", args[0], cwd, e)
            return None

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.debug("git %s timed out in %s", args[0], cwd)
            return None

        if proc.returncode != 0:
            return None
        return stdout.decode("utf-8", errors="replace").strip()

    async def root(self, cwd: str) -> str | None:
        out = await self._git(["rev-parse", "--show-toplevel"], cwd)
        return out or None

    async def remote(self, root: str) -> str | None:
        out = await self._git(["remote", "get-url", "origin"], root)
        return out or None

    async def branch(self, root: str) -> str | None:
        """Current branch name, or None on detached HEAD / outside a repository."""
        out = await self._git(["symbolic-ref", "--short", "HEAD"], root)
        return out or None

    async def merged_branches(self, root: str) -> list[str]:
        """Branches merged into HEAD, excluding the checked-out one."""
        out = await self._git(["branch", "--merged"], root, timeout=MERGED_TIMEOUT)
        if not out:
            return []
        merged = []
        for line in out.splitlines():
            line = line.strip()
            # "* main" marks the current branch; "+ name" a worktree checkout
            if not line or line.startswith("*"):
                continue
            if line.startswith("+ "):
                line = line[2:]
            merged.append(line.strip())
        return merged
