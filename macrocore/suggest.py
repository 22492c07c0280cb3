"""
Suggestion ranker — "did you mean" candidates for an unresolved name.

Candidates qualify by a bounded Levenshtein distance (the bound grows with
the name's length) as long as they keep some resemblance to the name.
Longer candidates may also qualify as partial matches: for names of at
least ``min_partial_match_length`` characters by one name containing the
other, and for any name of three or more characters by a close match
against the candidate's head or tail of the same length (``FOX`` reaches
``EXPSUGG_FOO``).  Full-name matches rank first; within each group the
order is similarity, then smaller distance, then longer shared prefix,
then lexical order.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from macrocore.config import EngineConfig, resolve

logger = logging.getLogger(__name__)

_MIN_AFFIX_LENGTH = 3


@dataclass(frozen=True)
class Candidate:
    name: str
    distance: int
    similarity: float
    prefix: int
    partial: bool = False

    @property
    def sort_key(self):
        return (self.partial, -self.similarity, self.distance, -self.prefix, self.name)


def edit_distance(a: str, b: str, bound: Optional[int] = None) -> int:
    """Levenshtein distance; stops early and returns ``bound + 1`` once exceeded."""
    if len(a) < len(b):
        a, b = b, a
    if bound is not None and len(a) - len(b) > bound:
        return bound + 1
    if not b:
        return len(a)

    prev_row = list(range(len(b) + 1))
    for i, c1 in enumerate(a):
        curr_row = [i + 1]
        for j, c2 in enumerate(b):
            insertions = prev_row[j + 1] + 1
            deletions = curr_row[j] + 1
            substitutions = prev_row[j] + (c1 != c2)
            curr_row.append(min(insertions, deletions, substitutions))
        if bound is not None and min(curr_row) > bound:
            return bound + 1
        prev_row = curr_row
    return prev_row[-1]


def distance_bound(name: str, config: Optional[EngineConfig] = None) -> int:
    config = resolve(config)
    return max(config.max_suggestion_distance, len(name) // 5)


def affix_bound(name: str) -> int:
    """Edits allowed when matching ``name`` against a same-length head or tail."""
    return max(1, len(name) // 4)


def _shared_prefix(a: str, b: str) -> int:
    n = 0
    for x, y in zip(a, b):
        if x != y:
            break
        n += 1
    return n


def _full_match(name: str, candidate: str, bound: int, floor: float) -> Optional[Candidate]:
    distance = edit_distance(name, candidate, bound)
    if distance > bound or distance >= len(name):
        return None
    similarity = 1.0 - distance / max(len(name), len(candidate))
    if similarity <= floor:
        return None
    return Candidate(candidate, distance, similarity, _shared_prefix(name, candidate))


def _substring_match(name: str, candidate: str, min_partial: int) -> Optional[Candidate]:
    if len(name) < min_partial or len(candidate) < min_partial:
        return None
    if name not in candidate and candidate not in name:
        return None
    distance = edit_distance(name, candidate)
    similarity = 1.0 - distance / max(len(name), len(candidate))
    return Candidate(candidate, distance, similarity, _shared_prefix(name, candidate), partial=True)


def _affix_match(name: str, candidate: str, floor: float) -> Optional[Candidate]:
    if len(name) < _MIN_AFFIX_LENGTH or len(candidate) <= len(name):
        return None
    bound = affix_bound(name)
    width = len(name)
    distance = min(edit_distance(name, candidate[:width], bound),
                   edit_distance(name, candidate[-width:], bound))
    if distance > bound:
        return None
    similarity = 1.0 - distance / width
    if similarity <= floor:
        return None
    return Candidate(candidate, distance, similarity, _shared_prefix(name, candidate), partial=True)


def rank_candidates(name: str, known_names: Iterable[str],
                    config: Optional[EngineConfig] = None) -> List[Candidate]:
    """All qualifying candidates for ``name``, best first."""
    config = resolve(config)
    bound = distance_bound(name, config)
    floor = config.min_suggestion_similarity
    ranked: List[Candidate] = []
    for candidate in set(known_names):
        if candidate == name or not name:
            continue
        found = (_full_match(name, candidate, bound, floor)
                 or _substring_match(name, candidate, config.min_partial_match_length)
                 or _affix_match(name, candidate, floor))
        if found is not None:
            ranked.append(found)
    ranked.sort(key=lambda c: c.sort_key)
    return ranked


def suggest(name: str, known_names: Iterable[str],
            config: Optional[EngineConfig] = None) -> List[str]:
    """Up to ``max_suggestions`` candidate names for ``name``; empty when none is close."""
    config = resolve(config)
    ranked = rank_candidates(name, known_names, config)
    picked = [c.name for c in ranked[:config.max_suggestions]]
    if picked:
        logger.debug("Suggestions for %s: %s", name, picked)
    return picked
