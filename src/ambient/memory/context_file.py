"""Per-repository context file at `<root>/.ambient/context.md`.

Agents that read files rather than prompts see the same scoped memory the
daemon injects. The file is markdown with YAML frontmatter describing which
key it was rendered for.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import frontmatter

if TYPE_CHECKING:
    from ambient.memory.models import MemoryKey
    from ambient.memory.store import MemoryStore

logger = logging.getLogger(__name__)

CONTEXT_DIR = ".ambient"
CONTEXT_FILENAME = "context.md"
DEBOUNCE_SECONDS = 2.0

_EMPTY_BODY = "_No memories recorded yet for this branch._"


def context_path(root: str | Path) -> Path:
    return Path(root) / CONTEXT_DIR / CONTEXT_FILENAME


def read_context_metadata(root: str | Path) -> dict:
    """Frontmatter of an existing context file, {} when missing or unparsable."""
    path = context_path(root)
    try:
        post = frontmatter.load(str(path))
    except (OSError, ValueError) as e:
        logger.debug("No readable context file at %s: %s", path, e)
        return {}
    return dict(post.metadata)


class ContextFileGenerator:
    def __init__(self, store: MemoryStore, *, debounce: float = DEBOUNCE_SECONDS) -> None:
        self.store = store
        self.debounce = debounce
        self._pending: dict[str, asyncio.TimerHandle] = {}

    def render(self, key: MemoryKey) -> str:
        project = self.store.load_project(key.project_key)
        task = self.store.load_task(key.project_key, key.task_key)
        body = self.store.format_for_prompt(key, "both") or _EMPTY_BODY

        post = frontmatter.Post(
            f"# Ambient memory\n\n{body}\n",
            project=key.project_name,
            branch=key.branch_name,
            projectKey=key.project_key,
            taskKey=key.task_key,
            updated=datetime.now().isoformat(timespec="seconds"),
            projectEvents=len(project.events) if project else 0,
            taskEvents=len(task.events) if task else 0,
        )
        return frontmatter.dumps(post) + "\n"

    def regenerate_now(self, root: str | Path, key: MemoryKey) -> Path:
        path = context_path(root)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".md.tmp")
        tmp.write_text(self.render(key), encoding="utf-8")
        os.replace(tmp, path)
        logger.debug("Context file written: %s", path)
        return path

    def schedule_regeneration(self, root: str | Path, key: MemoryKey) -> None:
        """Regenerate after a quiet period; repeated calls restart the timer."""
        root_key = str(root)
        handle = self._pending.pop(root_key, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._pending[root_key] = loop.call_later(self.debounce, self._fire, root_key, key)

    def _fire(self, root: str, key: MemoryKey) -> None:
        self._pending.pop(root, None)
        try:
            self.regenerate_now(root, key)
        except OSError as e:
            logger.warning("Failed to write context file in %s: %s", root, e)

    def flush(self) -> None:
        """Cancel pending timers. Shutdown writes nothing further."""
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
