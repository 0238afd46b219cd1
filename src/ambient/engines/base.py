"""Summarizer protocol shared by compaction and extraction."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Summarizer(Protocol):
    """A fast text-completion backend.

    Implementations never raise for service problems: unavailable, timed
    out or errored calls return None and the caller treats that as
    "try again later".
    """

    @property
    def name(self) -> str: ...

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int = 1024,
        system: str | None = None,
    ) -> str | None:
        """Return the completion text, or None on failure."""
        ...
