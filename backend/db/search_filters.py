"""
Filtering and scoring helpers for `MemoryStore.search_memory`.

The same filter set is expressed twice: once as SQL conditions for the
candidate queries, and once as an in-process predicate that every
strategy re-applies to the rows it scored.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, or_

from memory.models import MemoryItem, Scope, SearchQuery, SearchResult

VECTOR_WEIGHT = 0.5
TAG_WEIGHT = 0.3
KEYWORD_WEIGHT = 0.2

TAG_QUERY_COVERAGE_WEIGHT = 0.7
TAG_OVERLAP_WEIGHT = 0.3


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_unix(value: datetime) -> int:
    """Whole unix seconds for a datetime, the resolution of stored timestamps."""
    return int(as_utc(value).timestamp())


def normalize_tag(tag: str) -> str:
    return str(tag or "").strip().lower()


def build_filter_conditions(record_cls, query: SearchQuery) -> List:
    """SQL conditions equivalent to `passes_filters` for `record_cls` rows."""
    conditions = []

    if query.agent_id is not None:
        agent_clause = and_(
            record_cls.scope == Scope.AGENT.value,
            record_cls.agent_id == query.agent_id,
        )
        if query.include_global:
            conditions.append(or_(agent_clause, record_cls.scope == Scope.GLOBAL.value))
        else:
            conditions.append(agent_clause)
    elif query.include_global:
        conditions.append(record_cls.scope == Scope.GLOBAL.value)

    if query.types:
        conditions.append(record_cls.type.in_([str(getattr(t, "value", t)) for t in query.types]))
    if query.memory_types:
        conditions.append(record_cls.memory_type.in_(list(query.memory_types)))
    if query.min_importance > 0:
        conditions.append(record_cls.importance >= query.min_importance)
    if query.after is not None:
        conditions.append(record_cls.created_at >= as_utc(query.after).timestamp())
    if query.before is not None:
        conditions.append(record_cls.created_at <= as_utc(query.before).timestamp())
    return conditions


def passes_filters(
    item: MemoryItem, query: SearchQuery, logger: Optional[logging.Logger] = None
) -> bool:
    reason = _filter_rejection(item, query)
    if reason is None:
        return True
    if logger is not None:
        logger.debug("search filter rejected item id=%s: %s", item.id, reason)
    return False


def _filter_rejection(item: MemoryItem, query: SearchQuery) -> Optional[str]:
    if query.agent_id is not None:
        if item.scope == Scope.AGENT:
            if item.agent_id != query.agent_id:
                return "agent id mismatch"
        elif not (query.include_global and item.scope == Scope.GLOBAL):
            return "scope not visible to agent"
    elif query.include_global and item.scope != Scope.GLOBAL:
        return "not global scope"

    if query.types:
        allowed = {str(getattr(t, "value", t)) for t in query.types}
        if item.type.value not in allowed:
            return "type mismatch"
    if query.memory_types and item.memory_type not in set(query.memory_types):
        return "memory type mismatch"
    if query.min_importance > 0 and item.importance < query.min_importance:
        return "importance below floor"

    created = as_utc(item.created_at)
    if query.after is not None and created < as_utc(query.after):
        return "created before range"
    if query.before is not None and created > as_utc(query.before):
        return "created after range"
    return None


def tag_overlap_score(item_tags: Iterable[str], query_tags: Iterable[str]) -> float:
    """
    Blend of query coverage and Jaccard overlap:
        0.7 * matches / |query| + 0.3 * matches / (|item| + |query| - matches)
    Tags match case-insensitively and each distinct tag counts once as a
    match, but |query| and |item| are the list lengths as given, so a
    repeated query tag lowers coverage. Returns 0 for no overlap.
    """
    query_list = [t for t in (normalize_tag(tag) for tag in query_tags) if t]
    item_list = [t for t in (normalize_tag(tag) for tag in item_tags) if t]
    if not query_list or not item_list:
        return 0.0
    matches = len(set(query_list) & set(item_list))
    if matches == 0:
        return 0.0
    coverage = matches / len(query_list)
    jaccard = matches / (len(item_list) + len(query_list) - matches)
    return TAG_QUERY_COVERAGE_WEIGHT * coverage + TAG_OVERLAP_WEIGHT * jaccard


def select_first_non_empty(
    by_vector: Sequence[SearchResult],
    by_tags: Sequence[SearchResult],
    by_keyword: Sequence[SearchResult],
    limit: int,
) -> List[SearchResult]:
    for results in (by_vector, by_tags, by_keyword):
        if results:
            return list(results[:limit])
    return []


def fuse_results(
    by_vector: Sequence[SearchResult],
    by_tags: Sequence[SearchResult],
    by_keyword: Sequence[SearchResult],
    limit: int,
) -> List[SearchResult]:
    """Weighted score fusion keyed by item id, highest merged score first."""
    merged: Dict[int, SearchResult] = {}
    for results, weight in (
        (by_vector, VECTOR_WEIGHT),
        (by_tags, TAG_WEIGHT),
        (by_keyword, KEYWORD_WEIGHT),
    ):
        for result in results:
            existing = merged.get(result.item.id)
            if existing is None:
                merged[result.item.id] = SearchResult(
                    item=result.item, score=result.score * weight
                )
            else:
                existing.score += result.score * weight

    ranked = sorted(merged.values(), key=lambda r: r.score, reverse=True)
    return ranked[:limit]
