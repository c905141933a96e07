"""
Scope-aware facade agents use instead of the raw store.

Each entry point fixes the scope and default importance for its kind of
memory; queries go through hybrid search.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import SummarizerUnavailableError
from .models import (
    Artifact,
    MemoryItem,
    MemoryType,
    Scope,
    SearchQuery,
    SearchResult,
    Summarizer,
)
from .reflection import reflect_thread

EPISODE_IMPORTANCE = 0.3
AGENT_FACT_IMPORTANCE = 0.7
GLOBAL_FACT_IMPORTANCE = 0.9


@dataclass
class ReflectionMarker:
    """Caller-owned record of the last successful reflection for one thread."""

    last_reflected: Optional[datetime] = None


class MemoryRouter:
    def __init__(
        self,
        store,
        summarizer: Optional[Summarizer] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.summarizer = summarizer
        self._logger = logger or logging.getLogger(__name__)
        # (agent_id, thread_id) -> [lock, callers holding or waiting on it]
        self._reflect_locks: Dict[Tuple[str, str], List[Any]] = {}

    # =========================================================================
    # Writes
    # =========================================================================

    async def add_episode(
        self, agent_id: str, thread_id: str, content: str, metadata: Any = None
    ) -> MemoryItem:
        return await self.store.remember_agent_episode(
            agent_id, thread_id, content, EPISODE_IMPORTANCE, metadata
        )

    async def add_observation(
        self, agent_id: str, thread_id: str, content: str, metadata: Any = None
    ) -> MemoryItem:
        return await self.add_episode(agent_id, thread_id, content, metadata)

    async def add_agent_fact(
        self, agent_id: str, content: str, metadata: Any = None
    ) -> MemoryItem:
        return await self.store.remember_agent_fact(
            agent_id, content, AGENT_FACT_IMPORTANCE, metadata
        )

    async def add_global_fact(self, content: str, metadata: Any = None) -> MemoryItem:
        return await self.store.remember_global_fact(
            content, GLOBAL_FACT_IMPORTANCE, metadata
        )

    async def add_artifact(
        self,
        agent_id: Optional[str],
        title: Optional[str],
        body: str,
        metadata: Any = None,
    ) -> Artifact:
        """Shared document, attributed to the creating agent when known."""
        return await self.store.create_artifact(
            Scope.GLOBAL, agent_id, None, title, body, metadata
        )

    async def store_personal_memory(
        self,
        agent_id: str,
        raw_text: str,
        normalized_text: str,
        memory_type: str,
        tags: Optional[Sequence[str]] = None,
        thread_id: Optional[str] = None,
        importance: float = 0.0,
        metadata: Any = None,
    ) -> MemoryItem:
        return await self.store.store_personal_memory(
            agent_id,
            raw_text,
            normalized_text,
            memory_type,
            tags,
            thread_id=thread_id,
            importance=importance,
            metadata=metadata,
        )

    # =========================================================================
    # Reflection
    # =========================================================================

    async def reflect(self, agent_id: str, thread_id: str) -> MemoryItem:
        if self.summarizer is None:
            raise SummarizerUnavailableError("MemoryRouter: no summarizer configured")
        return await reflect_thread(
            self.store, agent_id, thread_id, self.summarizer, logger=self._logger
        )

    def _acquire_reflect_slot(self, key: Tuple[str, str]) -> asyncio.Lock:
        slot = self._reflect_locks.get(key)
        if slot is None:
            # Built inside the running loop so it binds to the caller's loop.
            slot = [asyncio.Lock(), 0]
            self._reflect_locks[key] = slot
        slot[1] += 1
        return slot[0]

    def _release_reflect_slot(self, key: Tuple[str, str]) -> None:
        slot = self._reflect_locks[key]
        slot[1] -= 1
        if slot[1] == 0:
            del self._reflect_locks[key]

    async def auto_reflect(
        self,
        agent_id: str,
        thread_id: str,
        marker: Optional[ReflectionMarker],
        min_interval: timedelta,
    ) -> Optional[MemoryItem]:
        """
        Reflect unless the marker says the last reflection is too recent.

        Returns None when skipped. The marker advances only after a
        successful reflection; a None marker always reflects. Calls for the
        same (agent_id, thread_id) on this router run one at a time. A naive
        `last_reflected` is read as UTC.
        """
        key = (agent_id, thread_id)
        lock = self._acquire_reflect_slot(key)
        try:
            async with lock:
                if marker is not None and marker.last_reflected is not None:
                    last = marker.last_reflected
                    if last.tzinfo is None:
                        last = last.replace(tzinfo=timezone.utc)
                    elapsed = self.store.utc_now() - last
                    if elapsed < min_interval:
                        self._logger.debug(
                            "auto_reflect skipped for agent_id=%s thread_id=%s: %ss since last run",
                            agent_id,
                            thread_id,
                            int(elapsed.total_seconds()),
                        )
                        return None

                item = await self.reflect(agent_id, thread_id)
                if marker is not None:
                    marker.last_reflected = self.store.utc_now()
                return item
        finally:
            self._release_reflect_slot(key)

    # =========================================================================
    # Queries
    # =========================================================================

    async def query_agent_memory(
        self,
        agent_id: str,
        text: str,
        embedding: Optional[Sequence[float]] = None,
        include_global: bool = False,
        limit: int = 20,
        types: Sequence[MemoryType] = (),
    ) -> List[SearchResult]:
        results = await self.store.search_memory(
            SearchQuery(
                agent_id=agent_id,
                include_global=include_global,
                query_text=text,
                query_embedding=embedding,
                limit=limit,
                use_hybrid=True,
                types=types,
            )
        )
        self._logger.info(
            "query_agent_memory agent_id=%s include_global=%s results=%s",
            agent_id,
            include_global,
            len(results),
        )
        return results

    async def query_global_memory(
        self,
        text: str,
        embedding: Optional[Sequence[float]] = None,
        limit: int = 20,
        types: Sequence[MemoryType] = (),
    ) -> List[SearchResult]:
        return await self.store.search_memory(
            SearchQuery(
                include_global=True,
                query_text=text,
                query_embedding=embedding,
                limit=limit,
                use_hybrid=True,
                types=types,
            )
        )

    async def query_all_memory(
        self,
        text: str,
        embedding: Optional[Sequence[float]] = None,
        limit: int = 20,
        types: Sequence[MemoryType] = (),
    ) -> List[SearchResult]:
        return await self.store.search_memory(
            SearchQuery(
                query_text=text,
                query_embedding=embedding,
                limit=limit,
                use_hybrid=True,
                types=types,
            )
        )

    async def query_personal_memory(
        self,
        agent_id: str,
        text: str,
        tags: Sequence[str] = (),
        limit: int = 20,
        memory_types: Sequence[str] = (),
    ) -> List[SearchResult]:
        """Profile items of one agent, ranked by vector, tag and keyword signals."""
        embedding = None
        if text:
            try:
                embedding = await self.store.embed_text(text)
            except Exception as exc:
                self._logger.debug(
                    "query_personal_memory: continuing without embedding: %s", exc
                )
                embedding = None

        return await self.store.search_memory(
            SearchQuery(
                agent_id=agent_id,
                include_global=False,
                query_text=text,
                query_embedding=embedding,
                tags=tags,
                limit=limit,
                use_hybrid=True,
                types=(MemoryType.PROFILE,),
                memory_types=memory_types,
                use_fts=None,
            )
        )
