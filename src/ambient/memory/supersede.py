"""Keyword extraction and decision supersession.

A new decision whose keywords overlap an existing decision's keywords above
the Jaccard threshold replaces it: the conclusion evolved, it is not a
second unrelated fact.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from ambient.memory.models import EventType, MemoryEvent

DEFAULT_SUPERSEDE_THRESHOLD = 0.4

# New content with fewer keywords than this is too vague to supersede anything
MIN_SUPERSEDE_KEYWORDS = 2

STOP_WORDS = frozenset(
    """
    a an the is are was were be been being have has had do does did will would
    could should may might shall can need dare ought i me my you your we our
    they them their it its he she him her his this that these those what which
    who whom where when how why and or but not no if then else so than too very
    just about above after again all also am any as at back because before
    between both by came come each even for from get got go going here in into
    know let like look make many more most much of on only other out over re
    really right said same see some still such take tell through to up us use
    want way well with yes yet remember memories memory everything anything
    something hey hi hello please thanks
    """.split()
)

_NON_WORD = re.compile(r"[^a-z0-9\s-]")


def extract_keywords(text: str) -> list[str]:
    """Lowercase, strip punctuation, drop short words and stop words."""
    words = _NON_WORD.sub(" ", text.lower()).split()
    return [w for w in words if len(w) > 2 and w not in STOP_WORDS]


def jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def find_superseded_decision(
    events: Iterable[MemoryEvent],
    new_content: str,
    threshold: float = DEFAULT_SUPERSEDE_THRESHOLD,
) -> str | None:
    """Return the id of the decision most similar to `new_content`, if any exceeds `threshold`."""
    new_keywords = set(extract_keywords(new_content))
    if len(new_keywords) < MIN_SUPERSEDE_KEYWORDS:
        return None

    best_id: str | None = None
    best_score = threshold
    for event in events:
        if event.type is not EventType.DECISION:
            continue
        existing = set(extract_keywords(event.content))
        if not existing:
            continue
        score = jaccard(new_keywords, existing)
        if score > best_score:
            best_id = event.id
            best_score = score
    return best_id
