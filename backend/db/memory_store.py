"""
SQLite memory store.

This module owns the persisted schema and implements:
- Transactional writes that keep `memory_items` and its FTS5 shadow table
  (`memory_items_fts`, rowid = memory_items.id) in lockstep
- Personal (profile) memories carrying raw text, a memory type and tags
- Artifacts: durable documents retrieved by id or scope, never searched
- Hybrid retrieval over keyword, vector and tag strategies
"""

import asyncio
import json
import logging
import os
import re
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    Index,
    Integer,
    LargeBinary,
    Text,
    column,
    delete,
    func,
    select,
    table,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import env_int
from memory.errors import EmbedderUnavailableError, MemoryValidationError
from memory.models import (
    ALLOWED_MEMORY_TYPES,
    ALLOWED_SCOPES,
    Artifact,
    MemoryItem,
    MemoryType,
    Scope,
    SearchQuery,
    SearchResult,
)
from .embedding import (
    Embedder,
    build_embedder_from_env,
    cosine_similarity,
    decode_embedding,
    encode_embedding,
)
from .migration_runner import apply_pending_migrations
from .search_filters import (
    build_filter_conditions,
    fuse_results,
    passes_filters,
    select_first_non_empty,
    tag_overlap_score,
    to_unix,
)

Base = declarative_base()

DEFAULT_SEARCH_LIMIT = 20
DEFAULT_CANDIDATE_WINDOW = 500
KEYWORD_CANDIDATE_MULTIPLIER = 3
PERSONAL_MEMORY_DEFAULT_IMPORTANCE = 0.8

_fts_table = table("memory_items_fts", column("rowid"), column("content"))


# =============================================================================
# ORM Models
# =============================================================================


class MemoryItemRecord(Base):
    """Primary row of a memory item. Rows are written once and never updated."""

    __tablename__ = "memory_items"
    __table_args__ = (
        CheckConstraint("scope IN ('agent','global')", name="ck_memory_items_scope"),
        CheckConstraint(
            "type IN ('fact','episode','profile','doc_ref')", name="ck_memory_items_type"
        ),
        Index("idx_memory_items_scope_agent_created", "scope", "agent_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(Text, nullable=True)
    thread_id = Column(Text, nullable=True)
    scope = Column(Text, nullable=False)
    type = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    embedding = Column(LargeBinary, nullable=True)
    metadata_json = Column("metadata", Text, nullable=True)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)
    importance = Column(Float, nullable=False, default=0.0, server_default=text("0.0"))
    # Normalization fields for personal memories
    raw_content = Column(Text, nullable=True)
    memory_type = Column(Text, nullable=True)
    tags_json = Column(Text, nullable=True)


class ArtifactRecord(Base):
    """A durable document with its own lifecycle."""

    __tablename__ = "artifacts"
    __table_args__ = (
        CheckConstraint("scope IN ('agent','global')", name="ck_artifacts_scope"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(Text, nullable=True)
    thread_id = Column(Text, nullable=True)
    scope = Column(Text, nullable=False)
    title = Column(Text, nullable=True)
    body = Column(Text, nullable=False)
    metadata_json = Column("metadata", Text, nullable=True)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)


def _from_unix(value: int) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _load_json(raw: Optional[str]) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def _dump_json(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise MemoryValidationError(f"{field_name} is not JSON serializable: {exc}") from exc


def _preview(value: Optional[str], limit: int = 40) -> str:
    value = value or ""
    return value if len(value) <= limit else value[:limit] + "..."


def _record_to_item(row: MemoryItemRecord) -> MemoryItem:
    tags = _load_json(row.tags_json)
    if not isinstance(tags, list):
        tags = []
    return MemoryItem(
        id=row.id,
        agent_id=row.agent_id,
        thread_id=row.thread_id,
        scope=Scope(row.scope),
        type=MemoryType(row.type),
        content=row.content,
        embedding=decode_embedding(row.embedding),
        metadata=_load_json(row.metadata_json),
        created_at=_from_unix(row.created_at),
        updated_at=_from_unix(row.updated_at),
        importance=float(row.importance or 0.0),
        raw_content=row.raw_content,
        memory_type=row.memory_type,
        tags=[str(tag) for tag in tags],
    )


def _record_to_artifact(row: ArtifactRecord) -> Artifact:
    return Artifact(
        id=row.id,
        agent_id=row.agent_id,
        thread_id=row.thread_id,
        scope=Scope(row.scope),
        title=row.title,
        body=row.body,
        metadata=_load_json(row.metadata_json),
        created_at=_from_unix(row.created_at),
        updated_at=_from_unix(row.updated_at),
    )


def _fts_match_expression(query_text: str) -> str:
    """Quote each word so user punctuation cannot break the FTS5 grammar."""
    terms = re.findall(r"\w+", query_text or "", flags=re.UNICODE)
    return " ".join(f'"{term}"' for term in terms)


# =============================================================================
# Memory Store
# =============================================================================


class MemoryStore:
    """
    Async memory store over SQLite.

    Core operations:
    - remember / store_personal_memory: item row + FTS row in one transaction
    - create_artifact / get_artifact / list_artifacts
    - search_memory: keyword, vector and tag strategies with optional fusion
    - clear_memory / dump_memory: bulk maintenance
    """

    def __init__(
        self,
        database_url: str,
        embedder: Optional[Embedder] = None,
        *,
        logger: Optional[logging.Logger] = None,
        candidate_window: int = DEFAULT_CANDIDATE_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///memory.db"
            embedder: Optional embedding adapter. None disables vector
                      enrichment on writes and the vector strategy on reads.
            candidate_window: Most-recent rows scanned by the vector and
                              tag strategies.
            clock: Source of unix time for created_at/updated_at.
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.embedder = embedder
        self.candidate_window = max(1, int(candidate_window))
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_env(cls, logger: Optional[logging.Logger] = None) -> "MemoryStore":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable is not set. Please check your .env file."
            )
        return cls(
            database_url,
            embedder=build_embedder_from_env(logger=logger),
            logger=logger,
            candidate_window=env_int(
                "MEMORY_SEARCH_CANDIDATE_WINDOW", DEFAULT_CANDIDATE_WINDOW, minimum=1
            ),
        )

    async def init_db(self) -> None:
        """Create tables and the FTS5 index, then apply pending migrations."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await apply_pending_migrations(self.database_url, logger=self._logger)
        async with self.engine.begin() as conn:
            await conn.run_sync(self._setup_fts_index)

    @staticmethod
    def _setup_fts_index(connection) -> None:
        try:
            connection.execute(
                text(
                    "CREATE VIRTUAL TABLE IF NOT EXISTS memory_items_fts "
                    "USING fts5(content)"
                )
            )
        except Exception as exc:
            raise RuntimeError(
                "SQLite FTS5 is required for memory_items_fts but is unavailable"
            ) from exc
        # Rows written before the index existed (legacy databases).
        connection.execute(
            text(
                "INSERT INTO memory_items_fts(rowid, content) "
                "SELECT id, content FROM memory_items "
                "WHERE id NOT IN (SELECT rowid FROM memory_items_fts)"
            )
        )

    async def close(self) -> None:
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session that commits on success and rolls back on error."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def _now(self) -> int:
        return int(self._clock())

    # =========================================================================
    # Embeddings
    # =========================================================================

    async def embed_text(self, text_value: str) -> List[float]:
        if self.embedder is None:
            raise EmbedderUnavailableError("no embedder configured")
        return await self.embedder.embed(text_value)

    async def _try_embed(self, text_value: str, operation: str) -> Optional[bytes]:
        """
        Embed and pack `text_value` for storage.

        Embedding is enrichment: a failed call or a vector that cannot be
        packed as float32 degrades the write to no vector.
        """
        if self.embedder is None:
            return None
        try:
            return encode_embedding(await self.embedder.embed(text_value))
        except Exception as exc:
            self._logger.warning(
                "%s: embedding failed, saving without embedding: %s", operation, exc
            )
            return None

    # =========================================================================
    # Write Operations
    # =========================================================================

    async def remember_global_fact(
        self, content: str, importance: float, metadata: Any = None
    ) -> MemoryItem:
        """Store a long-term fact shared by every agent."""
        return await self.remember(
            MemoryType.FACT, Scope.GLOBAL, None, None, content, importance, metadata
        )

    async def remember_agent_fact(
        self, agent_id: str, content: str, importance: float, metadata: Any = None
    ) -> MemoryItem:
        return await self.remember(
            MemoryType.FACT, Scope.AGENT, agent_id, None, content, importance, metadata
        )

    async def remember_agent_episode(
        self,
        agent_id: str,
        thread_id: str,
        content: str,
        importance: float,
        metadata: Any = None,
    ) -> MemoryItem:
        return await self.remember(
            MemoryType.EPISODE, Scope.AGENT, agent_id, thread_id, content, importance, metadata
        )

    async def remember(
        self,
        memory_type: MemoryType,
        scope: Scope,
        agent_id: Optional[str],
        thread_id: Optional[str],
        content: str,
        importance: float = 0.0,
        metadata: Any = None,
    ) -> MemoryItem:
        """
        Persist one memory item and its full-text entry atomically.

        Validation happens before any side effect. The embedding call (if an
        embedder is configured) runs before the transaction opens.
        """
        if not (content or "").strip():
            self._logger.warning("remember: rejected empty content")
            raise MemoryValidationError("content is empty")
        scope_value = str(getattr(scope, "value", scope))
        if scope_value not in ALLOWED_SCOPES:
            raise MemoryValidationError(f"invalid scope: {scope!r}")
        type_value = str(getattr(memory_type, "value", memory_type))
        if type_value not in ALLOWED_MEMORY_TYPES:
            raise MemoryValidationError(f"invalid memory type: {memory_type!r}")
        if scope_value == Scope.AGENT.value and not agent_id:
            raise MemoryValidationError("agent_id is required for agent scope")
        if scope_value == Scope.GLOBAL.value and agent_id is not None:
            raise MemoryValidationError("global memories cannot carry an agent_id")
        metadata_json = _dump_json(metadata, "metadata")

        embedding = await self._try_embed(content, "remember")

        now_ts = self._now()
        record = MemoryItemRecord(
            agent_id=agent_id,
            thread_id=thread_id,
            scope=scope_value,
            type=type_value,
            content=content,
            embedding=embedding,
            metadata_json=metadata_json,
            created_at=now_ts,
            updated_at=now_ts,
            importance=float(importance),
        )
        async with self.session() as session:
            session.add(record)
            await session.flush()
            await self._index_content(session, record.id, content)

        self._logger.info(
            "remembered memory item id=%s type=%s scope=%s agent_id=%s thread_id=%s content=%r",
            record.id,
            type_value,
            scope_value,
            agent_id,
            thread_id,
            _preview(content),
        )
        return _record_to_item(record)

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
        """
        Persist a normalized personal memory (type=profile, scope=agent).

        The normalized text is what gets indexed and embedded; it falls back
        to the raw text when blank. An importance of 0 defaults to 0.8.
        """
        raw_text = (raw_text or "").strip()
        normalized_text = (normalized_text or "").strip()
        if not raw_text and not normalized_text:
            self._logger.warning("store_personal_memory: rejected empty raw and normalized text")
            raise MemoryValidationError("raw and normalized text cannot both be empty")
        if not agent_id:
            raise MemoryValidationError("agent_id is required for personal memories")
        if not normalized_text:
            normalized_text = raw_text
        if importance == 0:
            importance = PERSONAL_MEMORY_DEFAULT_IMPORTANCE
        tag_list = [str(tag) for tag in tags] if tags is not None else None
        metadata_json = _dump_json(metadata, "metadata")
        tags_json = _dump_json(tag_list, "tags")

        embedding = await self._try_embed(normalized_text, "store_personal_memory")

        now_ts = self._now()
        record = MemoryItemRecord(
            agent_id=agent_id,
            thread_id=thread_id,
            scope=Scope.AGENT.value,
            type=MemoryType.PROFILE.value,
            content=normalized_text,
            embedding=embedding,
            metadata_json=metadata_json,
            created_at=now_ts,
            updated_at=now_ts,
            importance=float(importance),
            raw_content=raw_text,
            memory_type=memory_type,
            tags_json=tags_json,
        )
        async with self.session() as session:
            session.add(record)
            await session.flush()
            await self._index_content(session, record.id, normalized_text)

        self._logger.info(
            "stored personal memory id=%s agent_id=%s memory_type=%s tags=%s",
            record.id,
            agent_id,
            memory_type,
            tag_list,
        )
        return _record_to_item(record)

    async def _index_content(self, session: AsyncSession, item_id: int, content: str) -> None:
        await session.execute(
            text(
                "INSERT INTO memory_items_fts(rowid, content) "
                "VALUES (:rowid, :content)"
            ),
            {"rowid": item_id, "content": content},
        )

    async def create_artifact(
        self,
        scope: Scope,
        agent_id: Optional[str],
        thread_id: Optional[str],
        title: Optional[str],
        body: str,
        metadata: Any = None,
    ) -> Artifact:
        """Store a durable document. Artifacts are not full-text indexed."""
        if not (body or "").strip():
            self._logger.warning("create_artifact: rejected empty body")
            raise MemoryValidationError("body is empty")
        scope_value = str(getattr(scope, "value", scope))
        if scope_value not in ALLOWED_SCOPES:
            raise MemoryValidationError(f"invalid scope: {scope!r}")
        metadata_json = _dump_json(metadata, "metadata")

        now_ts = self._now()
        record = ArtifactRecord(
            agent_id=agent_id,
            thread_id=thread_id,
            scope=scope_value,
            title=title,
            body=body,
            metadata_json=metadata_json,
            created_at=now_ts,
            updated_at=now_ts,
        )
        async with self.session() as session:
            session.add(record)

        self._logger.info(
            "created artifact id=%s scope=%s agent_id=%s title=%r",
            record.id,
            scope_value,
            agent_id,
            _preview(title),
        )
        return _record_to_artifact(record)

    async def clear_memory(self) -> int:
        """Delete every memory item and its index entry. Artifacts are kept."""
        async with self.session() as session:
            await session.execute(text("DELETE FROM memory_items_fts"))
            result = await session.execute(delete(MemoryItemRecord))
            deleted = int(result.rowcount or 0)
        self._logger.info("cleared memory: deleted=%s", deleted)
        return deleted

    # =========================================================================
    # Read Operations
    # =========================================================================

    async def get_memory_item(self, item_id: int) -> Optional[MemoryItem]:
        async with self.session() as session:
            row = await session.get(MemoryItemRecord, int(item_id))
            return _record_to_item(row) if row is not None else None

    async def count_memory_items(self) -> int:
        async with self.session() as session:
            result = await session.execute(select(func.count(MemoryItemRecord.id)))
            return int(result.scalar_one())

    async def get_artifact(self, artifact_id: int) -> Optional[Artifact]:
        async with self.session() as session:
            row = await session.get(ArtifactRecord, int(artifact_id))
            return _record_to_artifact(row) if row is not None else None

    async def list_artifacts(
        self,
        scope: Optional[Scope] = None,
        agent_id: Optional[str] = None,
        thread_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Artifact]:
        """List artifacts newest first, optionally narrowed by attribution."""
        stmt = select(ArtifactRecord)
        if scope is not None:
            scope_value = str(getattr(scope, "value", scope))
            if scope_value not in ALLOWED_SCOPES:
                raise MemoryValidationError(f"invalid scope: {scope!r}")
            stmt = stmt.where(ArtifactRecord.scope == scope_value)
        if agent_id is not None:
            stmt = stmt.where(ArtifactRecord.agent_id == agent_id)
        if thread_id is not None:
            stmt = stmt.where(ArtifactRecord.thread_id == thread_id)
        stmt = stmt.order_by(ArtifactRecord.created_at.desc(), ArtifactRecord.id.desc())
        stmt = stmt.limit(max(1, int(limit)))
        async with self.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_record_to_artifact(row) for row in rows]

    async def list_thread_episodes(
        self, agent_id: str, thread_id: str, since: datetime
    ) -> List[MemoryItem]:
        """Agent-scoped episodes of one thread created at or after `since`, oldest first."""
        since_ts = to_unix(since)
        stmt = (
            select(MemoryItemRecord)
            .where(MemoryItemRecord.type == MemoryType.EPISODE.value)
            .where(MemoryItemRecord.scope == Scope.AGENT.value)
            .where(MemoryItemRecord.agent_id == agent_id)
            .where(MemoryItemRecord.thread_id == thread_id)
            .where(MemoryItemRecord.created_at >= since_ts)
            .order_by(MemoryItemRecord.created_at.asc(), MemoryItemRecord.id.asc())
        )
        async with self.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_record_to_item(row) for row in rows]

    def utc_now(self) -> datetime:
        return _from_unix(self._now())

    async def dump_memory(self, file_path: str) -> int:
        """Write every memory item, oldest first and without embeddings, as JSON."""
        stmt = select(MemoryItemRecord).order_by(
            MemoryItemRecord.created_at.asc(), MemoryItemRecord.id.asc()
        )
        async with self.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        items = [_record_to_item(row).to_dict() for row in rows]

        target = Path(file_path).expanduser()
        payload = json.dumps(items, ensure_ascii=False, indent=2)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(payload, encoding="utf-8")

        await asyncio.to_thread(_write)
        self._logger.info("dumped %s memory items to %s", len(items), target)
        return len(items)

    async def get_index_status(self) -> Dict[str, Any]:
        async with self.session() as session:
            items = (await session.execute(select(func.count(MemoryItemRecord.id)))).scalar_one()
            fts_rows = (
                await session.execute(text("SELECT COUNT(*) FROM memory_items_fts"))
            ).scalar_one()
            artifacts = (await session.execute(select(func.count(ArtifactRecord.id)))).scalar_one()
        return {
            "memory_items": int(items),
            "fts_rows": int(fts_rows),
            "artifacts": int(artifacts),
            "index_consistent": int(items) == int(fts_rows),
            "embedder": type(self.embedder).__name__ if self.embedder is not None else None,
            "candidate_window": self.candidate_window,
        }

    # =========================================================================
    # Search Operations
    # =========================================================================

    async def search_memory(self, query: SearchQuery) -> List[SearchResult]:
        """
        Run keyword, vector and tag retrieval and combine them.

        Non-hybrid: the first non-empty result set in the order
        vector, tag, keyword. Hybrid: per-item weighted sum
        0.5 * vector + 0.3 * tag + 0.2 * keyword, best first.
        """
        limit = query.limit if query.limit and query.limit > 0 else DEFAULT_SEARCH_LIMIT
        candidate_limit = limit * KEYWORD_CANDIDATE_MULTIPLIER
        query_text = (query.query_text or "").strip()
        use_fts = bool(query_text)
        if query.use_fts is not None:
            use_fts = bool(query.use_fts) and bool(query_text)
        run_vector = bool(query.query_embedding)
        run_tags = bool(query.tags)

        self._logger.info(
            "search_memory: text=%r fts=%s vector=%s tags=%s agent_id=%s include_global=%s "
            "hybrid=%s limit=%s",
            _preview(query_text),
            use_fts,
            run_vector,
            run_tags,
            query.agent_id,
            query.include_global,
            query.use_hybrid,
            limit,
        )

        async def _skip() -> List[SearchResult]:
            return []

        by_keyword, by_vector, by_tags = await asyncio.gather(
            self._search_by_keyword(query, query_text, candidate_limit) if use_fts else _skip(),
            self._search_by_vector(query, candidate_limit) if run_vector else _skip(),
            self._search_by_tags(query, candidate_limit) if run_tags else _skip(),
        )

        if not query.use_hybrid:
            results = select_first_non_empty(by_vector, by_tags, by_keyword, limit)
        else:
            results = fuse_results(by_vector, by_tags, by_keyword, limit)
        self._logger.info(
            "search_memory: keyword=%s vector=%s tags=%s returning=%s",
            len(by_keyword),
            len(by_vector),
            len(by_tags),
            len(results),
        )
        return results

    async def _search_by_keyword(
        self, query: SearchQuery, query_text: str, candidate_limit: int
    ) -> List[SearchResult]:
        match_expression = _fts_match_expression(query_text)
        if not match_expression:
            return []
        stmt = (
            select(MemoryItemRecord)
            .select_from(_fts_table)
            .join(MemoryItemRecord, MemoryItemRecord.id == _fts_table.c.rowid)
            .where(
                text("memory_items_fts MATCH :fts_query").bindparams(
                    fts_query=match_expression
                )
            )
            .where(*build_filter_conditions(MemoryItemRecord, query))
            .order_by(text("bm25(memory_items_fts)"))
            .limit(candidate_limit)
        )
        async with self.session() as session:
            rows = (await session.execute(stmt)).scalars().all()

        results: List[SearchResult] = []
        for row in rows:
            item = _record_to_item(row)
            if not passes_filters(item, query, self._logger):
                continue
            results.append(SearchResult(item=item, score=1.0))
        return results

    async def _load_candidate_window(self, query: SearchQuery) -> List[MemoryItem]:
        stmt = (
            select(MemoryItemRecord)
            .where(*build_filter_conditions(MemoryItemRecord, query))
            .order_by(MemoryItemRecord.created_at.desc(), MemoryItemRecord.id.desc())
            .limit(self.candidate_window)
        )
        async with self.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_record_to_item(row) for row in rows]

    async def _search_by_vector(
        self, query: SearchQuery, candidate_limit: int
    ) -> List[SearchResult]:
        candidates = await self._load_candidate_window(query)
        results: List[SearchResult] = []
        skipped = 0
        for item in candidates:
            if not item.embedding:
                skipped += 1
                continue
            similarity = cosine_similarity(query.query_embedding, item.embedding)
            if similarity <= 0:
                skipped += 1
                continue
            if not passes_filters(item, query, self._logger):
                continue
            results.append(SearchResult(item=item, score=similarity))

        results.sort(key=lambda r: r.score, reverse=True)
        self._logger.debug(
            "vector search scanned=%s skipped=%s matched=%s",
            len(candidates),
            skipped,
            len(results),
        )
        return results[:candidate_limit]

    async def _search_by_tags(
        self, query: SearchQuery, candidate_limit: int
    ) -> List[SearchResult]:
        candidates = await self._load_candidate_window(query)
        results: List[SearchResult] = []
        for item in candidates:
            if not item.tags or not passes_filters(item, query, self._logger):
                continue
            score = tag_overlap_score(item.tags, query.tags)
            if score <= 0:
                continue
            results.append(SearchResult(item=item, score=score))

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:candidate_limit]


# =============================================================================
# Global Singleton
# =============================================================================

_memory_store: Optional[MemoryStore] = None


def get_memory_store() -> MemoryStore:
    """Get the process-wide MemoryStore built from the environment."""
    global _memory_store
    if _memory_store is None:
        _memory_store = MemoryStore.from_env()
    return _memory_store


async def close_memory_store() -> None:
    """Close the process-wide MemoryStore connection."""
    global _memory_store
    if _memory_store:
        await _memory_store.close()
        _memory_store = None
