from __future__ import annotations

import logging
from typing import Iterable, Protocol, Sequence

from .models import SkillMetadata

log = logging.getLogger(__name__)


class SearchSource(Protocol):
    def search(self, query: str = "") -> list[SkillMetadata]: ...


def relevance(skill: SkillMetadata, query: str) -> int:
    """5 exact name, 4 name prefix, 3 name substring, 2 description, 1 tag, 0 otherwise."""
    q = query.strip().lower()
    if not q:
        return 0
    name = skill.name.lower()
    if name == q:
        return 5
    if name.startswith(q):
        return 4
    if q in name:
        return 3
    if q in skill.description.lower():
        return 2
    if any(q in t.lower() for t in skill.tags):
        return 1
    return 0


def filter_by_tags(skills: Iterable[SkillMetadata], tags: Sequence[str]) -> list[SkillMetadata]:
    """Keep skills that carry every tag in `tags` (case-insensitive)."""
    wanted = {t.strip().lower() for t in tags if t.strip()}
    if not wanted:
        return list(skills)
    return [s for s in skills if wanted <= {t.lower() for t in s.tags}]


def sort_by_relevance(skills: Iterable[SkillMetadata], query: str) -> list[SkillMetadata]:
    # sorted() is stable, so equal scores keep registry order.
    return sorted(skills, key=lambda s: relevance(s, query), reverse=True)


def search_skills(source: SearchSource, query: str, *, tags: Sequence[str] = ()) -> list[SkillMetadata]:
    results = source.search(query)
    filtered = filter_by_tags(results, tags)
    log.debug("search %r: %d results, %d after tag filter", query, len(results), len(filtered))
    return sort_by_relevance(filtered, query)
