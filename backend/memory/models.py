"""
Domain types for the memory engine.

These are plain value objects returned by the store; the SQLAlchemy rows
they are built from live in `db.memory_store`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable


class Scope(str, Enum):
    AGENT = "agent"
    GLOBAL = "global"


class MemoryType(str, Enum):
    FACT = "fact"
    EPISODE = "episode"
    PROFILE = "profile"
    DOC_REF = "doc_ref"


ALLOWED_SCOPES = frozenset(scope.value for scope in Scope)
ALLOWED_MEMORY_TYPES = frozenset(kind.value for kind in MemoryType)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class MemoryItem:
    """A single stored memory (fact, episode, profile statement or doc ref).

    `agent_id` is set iff `scope` is agent. `raw_content`, `memory_type`
    and `tags` are only populated for profile items written through the
    personal-memory path.
    """

    id: int
    scope: Scope
    type: MemoryType
    content: str
    created_at: datetime
    updated_at: datetime
    agent_id: Optional[str] = None
    thread_id: Optional[str] = None
    embedding: Optional[List[float]] = None
    metadata: Optional[Any] = None
    importance: float = 0.0
    raw_content: Optional[str] = None
    memory_type: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "agent_id": self.agent_id,
            "thread_id": self.thread_id,
            "scope": self.scope.value,
            "type": self.type.value,
            "content": self.content,
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "importance": self.importance,
            "raw_content": self.raw_content,
            "memory_type": self.memory_type,
            "tags": list(self.tags),
        }
        if include_embedding:
            payload["embedding"] = (
                list(self.embedding) if self.embedding is not None else None
            )
        return payload


@dataclass
class Artifact:
    """A durable document. Never indexed for search."""

    id: int
    scope: Scope
    body: str
    created_at: datetime
    updated_at: datetime
    title: Optional[str] = None
    agent_id: Optional[str] = None
    thread_id: Optional[str] = None
    metadata: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "thread_id": self.thread_id,
            "scope": self.scope.value,
            "title": self.title,
            "body": self.body,
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class SearchQuery:
    """Parameters for `MemoryStore.search_memory`.

    Scope selection:
    - agent_id set, include_global False: that agent's items only
    - agent_id set, include_global True: that agent's items plus global ones
    - agent_id None, include_global True: global items only
    - agent_id None, include_global False: no scope restriction

    `use_fts` is tri-state: None runs keyword search whenever the query
    text is non-blank, False disables it.
    """

    query_text: str = ""
    query_embedding: Optional[Sequence[float]] = None
    types: Sequence[MemoryType] = ()
    memory_types: Sequence[str] = ()
    tags: Sequence[str] = ()
    min_importance: float = 0.0
    after: Optional[datetime] = None
    before: Optional[datetime] = None
    agent_id: Optional[str] = None
    include_global: bool = False
    limit: int = 20
    use_hybrid: bool = False
    use_fts: Optional[bool] = None


@dataclass
class SearchResult:
    item: MemoryItem
    score: float


@runtime_checkable
class Summarizer(Protocol):
    """Distills a chronological batch of episodes into durable prose."""

    async def summarize_episodes(self, episodes: Sequence[MemoryItem]) -> str: ...
