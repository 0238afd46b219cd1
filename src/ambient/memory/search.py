"""Cross-project retrieval: TF-IDF keyword relevance blended with recency decay."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ambient.memory.models import Importance, MemoryEvent, format_time_ago, now_ms
from ambient.memory.supersede import extract_keywords

if TYPE_CHECKING:
    from ambient.memory.store import MemoryStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 50
HIGH_IMPORTANCE_BOOST = 1.5
_MIN_MAX_TFIDF = 0.001


@dataclass
class SearchHit:
    event: MemoryEvent
    project_name: str
    branch_name: str | None
    search_text: str
    score: float = 0.0

    @property
    def label(self) -> str:
        if self.branch_name:
            return f"{self.project_name} ({self.branch_name})"
        return self.project_name


def recency_score(timestamp: int, now: int | None = None) -> float:
    """≈1.0 for now, ≈0.5 at 24h, decaying slowly after."""
    hours_ago = max((now if now is not None else now_ms()) - timestamp, 0) / 3_600_000
    return 1 / (1 + hours_ago / 24)


def compute_idf(texts: list[str], keywords: list[str]) -> dict[str, float]:
    """Smoothed IDF: log((1+N)/(1+df)), df counted by substring presence."""
    n = len(texts)
    idf = {}
    for kw in keywords:
        df = sum(1 for text in texts if kw in text)
        idf[kw] = math.log((1 + n) / (1 + df))
    return idf


def score_tfidf(text: str, keywords: list[str], idf: dict[str, float]) -> float:
    return sum(idf.get(kw, 0.0) for kw in keywords if kw in text)


def collect_corpus(store: MemoryStore) -> list[SearchHit]:
    """Every live event across every project and task.

    High-importance events live in both scopes under one id; the project copy wins.
    """
    corpus: list[SearchHit] = []
    seen: set[str] = set()
    for project_key in store.list_projects():
        project = store.load_project(project_key)
        project_name = project.project_name if project else project_key
        if project is not None:
            for event in project.events:
                seen.add(event.id)
                corpus.append(
                    SearchHit(
                        event=event,
                        project_name=project_name,
                        branch_name=None,
                        search_text=f"{project_name} {event.content}".lower(),
                    )
                )
        for task_key in store.list_task_keys(project_key):
            task = store.load_task(project_key, task_key)
            if task is None:
                continue
            for event in task.events:
                if event.id in seen:
                    continue
                seen.add(event.id)
                corpus.append(
                    SearchHit(
                        event=event,
                        project_name=project_name,
                        branch_name=task.branch_name,
                        search_text=f"{project_name} {task.branch_name} {event.content}".lower(),
                    )
                )
    return corpus


def rank(hits: list[SearchHit], query: str, now: int | None = None) -> list[SearchHit]:
    """Score hits in place and return them best-first.

    With at least one query keyword the score is an even blend of recency and
    normalized TF-IDF; a query of only stop words scores on recency alone.
    """
    now = now if now is not None else now_ms()
    keywords = extract_keywords(query)

    if not keywords:
        for hit in hits:
            hit.score = recency_score(hit.event.timestamp, now)
        return sorted(hits, key=lambda h: h.score, reverse=True)

    idf = compute_idf([h.search_text for h in hits], keywords)
    raw: list[float] = []
    for hit in hits:
        tfidf = score_tfidf(hit.search_text, keywords, idf)
        if hit.event.importance is Importance.HIGH:
            tfidf *= HIGH_IMPORTANCE_BOOST
        raw.append(tfidf)

    max_tfidf = max([*raw, _MIN_MAX_TFIDF])
    for hit, tfidf in zip(hits, raw):
        hit.score = 0.5 * recency_score(hit.event.timestamp, now) + 0.5 * tfidf / max_tfidf
    return sorted(hits, key=lambda h: h.score, reverse=True)


def search_memory(
    store: MemoryStore, query: str, max_events: int = DEFAULT_MAX_EVENTS
) -> list[SearchHit]:
    corpus = collect_corpus(store)
    if not corpus:
        return []
    ranked = rank(corpus, query)[:max_events]
    logger.debug("Search %r: %d of %d events", query, len(ranked), len(corpus))
    return ranked


def format_search_results(hits: list[SearchHit], now: int | None = None) -> str | None:
    """Group hits by source label, chronological within each group."""
    if not hits:
        return None
    now = now if now is not None else now_ms()

    groups: dict[str, list[SearchHit]] = {}
    for hit in hits:
        groups.setdefault(hit.label, []).append(hit)

    sections = []
    for label, group in groups.items():
        lines = [f"[{label}]"]
        for hit in sorted(group, key=lambda h: h.event.timestamp):
            ago = format_time_ago(now - hit.event.timestamp)
            lines.append(f"- {hit.event.content} ({hit.event.type.value}, {ago})")
        sections.append("\n".join(lines))
    return "\n\n".join(sections)
