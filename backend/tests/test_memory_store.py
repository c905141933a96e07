import json
import sqlite3
from datetime import timedelta
from pathlib import Path
from typing import List

import pytest

from db.embedding import HashEmbedder
from db.memory_store import MemoryStore
from memory.errors import EmbedderUnavailableError, MemoryValidationError
from memory.models import MemoryType, Scope, SearchQuery


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


class _Clock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


class _FailingEmbedder:
    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        raise RuntimeError("embedding backend down")


async def _open_store(tmp_path: Path, name: str = "memory.db", **kwargs) -> MemoryStore:
    kwargs.setdefault("clock", _Clock())
    store = MemoryStore(_sqlite_url(tmp_path / name), **kwargs)
    await store.init_db()
    return store


def _fts_rows(db_path: Path) -> int:
    with sqlite3.connect(db_path) as conn:
        return conn.execute("SELECT COUNT(*) FROM memory_items_fts").fetchone()[0]


@pytest.mark.asyncio
async def test_global_fact_is_found_by_keyword_search(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    fact = await store.remember_global_fact(
        "Adam prefers Ruby over Python for core systems.", 0.9
    )

    results = await store.search_memory(
        SearchQuery(query_text="Ruby core systems", include_global=True)
    )
    await store.close()

    assert fact.id in [r.item.id for r in results]
    assert all(r.score == 1.0 for r in results)
    assert fact.scope == Scope.GLOBAL
    assert fact.agent_id is None
    assert fact.created_at == fact.updated_at


@pytest.mark.asyncio
async def test_keyword_search_tolerates_fts_syntax_in_query(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    fact = await store.remember_global_fact(
        "Adam prefers Ruby over Python for core systems.", 0.9
    )

    results = await store.search_memory(
        SearchQuery(query_text='Ruby* (core) -"systems', include_global=True)
    )
    disabled = await store.search_memory(
        SearchQuery(query_text="Ruby", include_global=True, use_fts=False)
    )
    blank = await store.search_memory(SearchQuery(query_text="  ", include_global=True))
    await store.close()

    assert [r.item.id for r in results] == [fact.id]
    assert disabled == []
    assert blank == []


@pytest.mark.asyncio
async def test_remember_writes_item_and_index_row_together(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    store = await _open_store(tmp_path)

    first = await store.remember_agent_fact("alpha-agent", "Prefers tabs", 0.7, {"k": [1, 2]})
    second = await store.remember_agent_episode("alpha-agent", "t-1", "Opened the repo", 0.3)

    loaded = await store.get_memory_item(first.id)
    status = await store.get_index_status()
    await store.close()

    assert second.id > first.id
    assert loaded is not None
    assert loaded.metadata == {"k": [1, 2]}
    assert loaded.type == MemoryType.FACT
    assert second.thread_id == "t-1"
    assert status["memory_items"] == 2
    assert status["fts_rows"] == 2
    assert status["index_consistent"] is True
    assert _fts_rows(db_path) == 2


@pytest.mark.asyncio
async def test_remember_rejects_invalid_input_without_side_effects(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)

    with pytest.raises(MemoryValidationError):
        await store.remember(MemoryType.FACT, Scope.GLOBAL, None, None, "   ")
    with pytest.raises(MemoryValidationError):
        await store.remember(MemoryType.FACT, "team", None, None, "content")
    with pytest.raises(MemoryValidationError):
        await store.remember(MemoryType.FACT, Scope.AGENT, None, None, "content")
    with pytest.raises(MemoryValidationError):
        await store.remember("note", Scope.GLOBAL, None, None, "content")
    with pytest.raises(MemoryValidationError):
        await store.remember_global_fact("content", 0.5, {"bad": object()})

    count = await store.count_memory_items()
    await store.close()
    assert count == 0


@pytest.mark.asyncio
async def test_failed_index_insert_rolls_back_primary_row(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    db_path = tmp_path / "memory.db"
    store = await _open_store(tmp_path)

    async def _broken_index(self, session, item_id, content):
        raise RuntimeError("simulated fts failure")

    monkeypatch.setattr(MemoryStore, "_index_content", _broken_index)

    with pytest.raises(RuntimeError, match="simulated fts failure"):
        await store.remember_global_fact("Never half written", 0.9)
    with pytest.raises(RuntimeError, match="simulated fts failure"):
        await store.store_personal_memory("agent-a", "raw", "The user is raw.", "other", ["x"])

    count = await store.count_memory_items()
    await store.close()
    assert count == 0
    assert _fts_rows(db_path) == 0


@pytest.mark.asyncio
async def test_embedding_failure_degrades_write_to_no_vector(tmp_path: Path) -> None:
    embedder = _FailingEmbedder()
    store = await _open_store(tmp_path, embedder=embedder)

    item = await store.remember_agent_fact("agent-a", "Likes green tea", 0.7)
    loaded = await store.get_memory_item(item.id)
    await store.close()

    assert embedder.calls == 1
    assert loaded is not None
    assert loaded.embedding is None


class _OutOfRangeEmbedder:
    async def embed(self, text: str) -> List[float]:
        return [1e39, 1.0]


@pytest.mark.asyncio
async def test_unpackable_vector_degrades_write_to_no_vector(tmp_path: Path) -> None:
    store = await _open_store(tmp_path, embedder=_OutOfRangeEmbedder())

    fact = await store.remember_global_fact("Office closes at six", 0.5)
    personal = await store.store_personal_memory(
        "agent-a", "tea", "The user drinks tea.", "habit", ["tea"]
    )
    loaded = await store.get_memory_item(fact.id)
    count = await store.count_memory_items()
    await store.close()

    assert loaded is not None
    assert loaded.embedding is None
    assert personal.embedding is None
    assert count == 2


@pytest.mark.asyncio
async def test_embed_text_requires_configured_embedder(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    with pytest.raises(EmbedderUnavailableError):
        await store.embed_text("anything")
    await store.close()

    hashed = await _open_store(tmp_path, name="hashed.db", embedder=HashEmbedder(dim=16))
    vector = await hashed.embed_text("anything")
    await hashed.close()
    assert len(vector) == 16


@pytest.mark.asyncio
async def test_store_personal_memory_requires_some_text(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    before = await store.count_memory_items()

    with pytest.raises(MemoryValidationError):
        await store.store_personal_memory("agent-a", "", "   ", "preference", ["music"])

    after = await store.count_memory_items()
    await store.close()
    assert before == after == 0


@pytest.mark.asyncio
async def test_store_personal_memory_indexes_normalized_text(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)

    item = await store.store_personal_memory(
        agent_id="agent-a",
        raw_text="i luv jazz lol",
        normalized_text="The user enjoys jazz music.",
        memory_type="preference",
        tags=["music", "jazz"],
        thread_id="t-9",
    )
    fallback = await store.store_personal_memory(
        "agent-a", "Runs every morning", "", "habit", None
    )
    by_normalized = await store.search_memory(
        SearchQuery(query_text="enjoys jazz", agent_id="agent-a")
    )
    by_raw = await store.search_memory(SearchQuery(query_text="luv", agent_id="agent-a"))
    await store.close()

    assert item.type == MemoryType.PROFILE
    assert item.scope == Scope.AGENT
    assert item.importance == pytest.approx(0.8)
    assert item.raw_content == "i luv jazz lol"
    assert item.content == "The user enjoys jazz music."
    assert item.memory_type == "preference"
    assert item.tags == ["music", "jazz"]
    assert fallback.content == "Runs every morning"
    assert fallback.tags == []
    assert [r.item.id for r in by_normalized] == [item.id]
    assert by_raw == []


@pytest.mark.asyncio
async def test_agent_scoped_search_never_leaks_other_scopes(tmp_path: Path) -> None:
    store = await _open_store(tmp_path, embedder=HashEmbedder(dim=32))
    await store.remember_agent_fact("alpha", "deploy pipeline uses blue green", 0.7)
    await store.remember_agent_fact("beta", "deploy pipeline uses canary", 0.7)
    await store.remember_global_fact("deploy pipeline is owned by platform", 0.9)
    await store.store_personal_memory(
        "beta", "deploy", "The user cares about the deploy pipeline.", "project", ["deploy"]
    )

    query_vector = await store.embed_text("deploy pipeline")
    for hybrid in (False, True):
        results = await store.search_memory(
            SearchQuery(
                query_text="deploy pipeline",
                query_embedding=query_vector,
                tags=["deploy"],
                agent_id="alpha",
                include_global=False,
                use_hybrid=hybrid,
            )
        )
        assert results
        for result in results:
            assert result.item.scope == Scope.AGENT
            assert result.item.agent_id == "alpha"

    with_global = await store.search_memory(
        SearchQuery(query_text="deploy pipeline", agent_id="alpha", include_global=True)
    )
    global_only = await store.search_memory(
        SearchQuery(query_text="deploy pipeline", include_global=True)
    )
    await store.close()

    assert {(r.item.scope, r.item.agent_id) for r in with_global} == {
        (Scope.AGENT, "alpha"),
        (Scope.GLOBAL, None),
    }
    assert {r.item.scope for r in global_only} == {Scope.GLOBAL}


@pytest.mark.asyncio
async def test_vector_search_ranks_by_cosine_similarity(tmp_path: Path) -> None:
    store = await _open_store(tmp_path, embedder=HashEmbedder(dim=64))
    target = await store.remember_global_fact("kubernetes cluster upgrade runbook", 0.9)
    await store.remember_global_fact("grocery list eggs milk", 0.9)

    query_vector = await store.embed_text("kubernetes cluster upgrade runbook")
    results = await store.search_memory(
        SearchQuery(query_embedding=query_vector, include_global=True)
    )
    await store.close()

    assert results[0].item.id == target.id
    assert results[0].score == pytest.approx(1.0, abs=1e-5)
    assert all(r.score > 0 for r in results)


@pytest.mark.asyncio
async def test_tag_search_scores_and_filters(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    both = await store.store_personal_memory(
        "agent-a", "r", "The user plays jazz piano.", "habit", ["music", "piano"]
    )
    one = await store.store_personal_memory(
        "agent-a", "r", "The user listens to jazz.", "preference", ["music", "jazz", "radio"]
    )
    await store.store_personal_memory(
        "agent-a", "r", "The user runs daily.", "habit", ["running"]
    )

    results = await store.search_memory(
        SearchQuery(tags=["Music", "piano"], agent_id="agent-a", types=[MemoryType.PROFILE])
    )
    habits_only = await store.search_memory(
        SearchQuery(tags=["music"], agent_id="agent-a", memory_types=["habit"])
    )
    await store.close()

    assert [r.item.id for r in results] == [both.id, one.id]
    assert results[0].score == pytest.approx(1.0)
    # one of two query tags, 1 shared out of 4 distinct tags
    assert results[1].score == pytest.approx(0.7 * 0.5 + 0.3 * 0.25)
    assert [r.item.id for r in habits_only] == [both.id]


@pytest.mark.asyncio
async def test_candidate_window_bounds_vector_and_tag_scans(tmp_path: Path) -> None:
    store = await _open_store(tmp_path, candidate_window=2)
    oldest = await store.store_personal_memory("agent-a", "r", "first", "other", ["shared"])
    await store.store_personal_memory("agent-a", "r", "second", "other", ["shared"])
    await store.store_personal_memory("agent-a", "r", "third", "other", ["shared"])

    results = await store.search_memory(SearchQuery(tags=["shared"], agent_id="agent-a"))
    await store.close()

    assert len(results) == 2
    assert oldest.id not in [r.item.id for r in results]


@pytest.mark.asyncio
async def test_importance_and_time_filters(tmp_path: Path) -> None:
    clock = _Clock()
    store = await _open_store(tmp_path, clock=clock)
    low = await store.remember_global_fact("release notes draft", 0.2)
    high = await store.remember_global_fact("release notes final", 0.95)

    important = await store.search_memory(
        SearchQuery(query_text="release notes", include_global=True, min_importance=0.5)
    )
    recent = await store.search_memory(
        SearchQuery(query_text="release notes", include_global=True, after=high.created_at)
    )
    older = await store.search_memory(
        SearchQuery(query_text="release notes", include_global=True, before=low.created_at)
    )
    await store.close()

    assert [r.item.id for r in important] == [high.id]
    assert [r.item.id for r in recent] == [high.id]
    assert [r.item.id for r in older] == [low.id]


@pytest.mark.asyncio
async def test_time_filters_compare_sub_second_bounds(tmp_path: Path) -> None:
    store = await _open_store(tmp_path, embedder=HashEmbedder(dim=16))
    item = await store.remember_global_fact("quarterly planning notes", 0.5)
    just_after = item.created_at + timedelta(milliseconds=500)
    just_before = item.created_at - timedelta(milliseconds=500)

    results = {}
    for hybrid in (False, True):
        results[hybrid] = await store.search_memory(
            SearchQuery(
                query_text="quarterly planning",
                query_embedding=await store.embed_text("quarterly planning"),
                after=just_after,
                use_hybrid=hybrid,
            )
        )
    earlier_bound = await store.search_memory(
        SearchQuery(query_text="quarterly planning", before=just_before)
    )
    inside = await store.search_memory(
        SearchQuery(query_text="quarterly planning", after=just_before, before=just_after)
    )
    await store.close()

    assert results == {False: [], True: []}
    assert earlier_bound == []
    assert [r.item.id for r in inside] == [item.id]


@pytest.mark.asyncio
async def test_search_limit_applies_after_selection(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    for index in range(5):
        await store.remember_global_fact(f"weekly sync notes {index}", 0.5)

    limited = await store.search_memory(
        SearchQuery(query_text="weekly sync", include_global=True, limit=2)
    )
    defaulted = await store.search_memory(
        SearchQuery(query_text="weekly sync", include_global=True, limit=0)
    )
    await store.close()

    assert len(limited) == 2
    assert len(defaulted) == 5


@pytest.mark.asyncio
async def test_artifacts_are_stored_but_not_searchable(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    artifact = await store.create_artifact(
        Scope.GLOBAL, "writer", None, "Design doc", "Hybrid retrieval design", {"v": 1}
    )
    await store.create_artifact(Scope.AGENT, "writer", "t-1", None, "Scratch notes")

    loaded = await store.get_artifact(artifact.id)
    listed_global = await store.list_artifacts(scope=Scope.GLOBAL)
    listed_writer = await store.list_artifacts(agent_id="writer")
    missing = await store.get_artifact(999)
    results = await store.search_memory(SearchQuery(query_text="Hybrid retrieval"))

    with pytest.raises(MemoryValidationError):
        await store.create_artifact(Scope.GLOBAL, None, None, "empty", " ")
    await store.close()

    assert loaded is not None
    assert loaded.title == "Design doc"
    assert loaded.metadata == {"v": 1}
    assert [a.id for a in listed_global] == [artifact.id]
    assert len(listed_writer) == 2
    assert listed_writer[0].title is None
    assert missing is None
    assert results == []


@pytest.mark.asyncio
async def test_clear_memory_keeps_artifacts_and_never_reuses_ids(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    store = await _open_store(tmp_path)
    first = await store.remember_global_fact("to be cleared", 0.9)
    await store.remember_agent_fact("agent-a", "also cleared", 0.7)
    await store.create_artifact(Scope.GLOBAL, None, None, "keep", "artifact body")

    deleted = await store.clear_memory()
    after_clear = await store.count_memory_items()
    fresh = await store.remember_global_fact("written after clear", 0.9)
    artifacts = await store.list_artifacts()
    await store.close()

    assert deleted == 2
    assert after_clear == 0
    assert fresh.id > first.id + 1
    assert len(artifacts) == 1
    assert _fts_rows(db_path) == 1


@pytest.mark.asyncio
async def test_dump_memory_writes_items_oldest_first(tmp_path: Path) -> None:
    store = await _open_store(tmp_path, embedder=HashEmbedder(dim=16))
    await store.remember_global_fact("first fact", 0.9)
    await store.remember_agent_episode("agent-a", "t-1", "second episode", 0.3, {"n": 2})

    target = tmp_path / "out" / "dump.json"
    written = await store.dump_memory(str(target))
    await store.close()

    payload = json.loads(target.read_text(encoding="utf-8"))
    assert written == 2
    assert [row["content"] for row in payload] == ["first fact", "second episode"]
    assert payload[1]["metadata"] == {"n": 2}
    assert "embedding" not in payload[0]


@pytest.mark.asyncio
async def test_list_thread_episodes_filters_and_orders(tmp_path: Path) -> None:
    clock = _Clock()
    store = await _open_store(tmp_path, clock=clock)
    old = await store.remember_agent_episode("agent-a", "t-1", "old episode", 0.3)
    clock.now += 10 * 24 * 3600
    first = await store.remember_agent_episode("agent-a", "t-1", "recent one", 0.3)
    second = await store.remember_agent_episode("agent-a", "t-1", "recent two", 0.3)
    await store.remember_agent_episode("agent-a", "t-2", "other thread", 0.3)
    await store.remember_agent_episode("agent-b", "t-1", "other agent", 0.3)
    await store.remember_agent_fact("agent-a", "a fact, not an episode", 0.7)

    episodes = await store.list_thread_episodes(
        "agent-a", "t-1", first.created_at - timedelta(days=1)
    )
    await store.close()

    assert [e.id for e in episodes] == [first.id, second.id]


@pytest.mark.asyncio
async def test_memory_store_singleton_reads_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    from db import memory_store as memory_store_module

    monkeypatch.setattr(memory_store_module, "_memory_store", None)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(ValueError, match="DATABASE_URL"):
        memory_store_module.get_memory_store()

    monkeypatch.setenv("DATABASE_URL", _sqlite_url(tmp_path / "env.db"))
    monkeypatch.setenv("MEMORY_EMBEDDING_BACKEND", "hash")
    monkeypatch.setenv("MEMORY_SEARCH_CANDIDATE_WINDOW", "25")
    store = memory_store_module.get_memory_store()
    assert memory_store_module.get_memory_store() is store
    assert isinstance(store.embedder, HashEmbedder)
    assert store.candidate_window == 25

    await memory_store_module.close_memory_store()
    assert memory_store_module._memory_store is None
