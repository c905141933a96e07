"""Consolidation of recent thread episodes into a durable global fact."""

import logging
from datetime import timedelta
from typing import Optional

from .errors import MemoryNotFoundError, MemoryValidationError
from .models import MemoryItem, Summarizer

REFLECTION_WINDOW = timedelta(days=7)
REFLECTION_IMPORTANCE = 0.7


async def reflect_thread(
    store,
    agent_id: str,
    thread_id: str,
    summarizer: Summarizer,
    *,
    window: timedelta = REFLECTION_WINDOW,
    logger: Optional[logging.Logger] = None,
) -> MemoryItem:
    """
    Summarize the last `window` of an agent's episodes on one thread and
    store the summary as a global fact.

    Episodes are left in place. Summarizer errors propagate unchanged.
    """
    logger = logger or logging.getLogger(__name__)
    if not agent_id:
        raise MemoryValidationError("agent_id is empty")
    if not thread_id:
        raise MemoryValidationError("thread_id is empty")

    since = store.utc_now() - window
    episodes = await store.list_thread_episodes(agent_id, thread_id, since)
    if not episodes:
        raise MemoryNotFoundError(
            f"no episodes found for agent {agent_id!r} thread {thread_id!r}"
        )

    summary = await summarizer.summarize_episodes(episodes)
    fact = await store.remember_global_fact(
        summary,
        REFLECTION_IMPORTANCE,
        {"thread_id": thread_id, "agent_id": agent_id, "source": "reflection"},
    )
    logger.info(
        "reflected %s episodes for agent_id=%s thread_id=%s into fact id=%s",
        len(episodes),
        agent_id,
        thread_id,
        fact.id,
    )
    return fact
