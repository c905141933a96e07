"""Episode summarizer used by reflection."""

import logging
from typing import Optional, Sequence

import httpx

from config import env_float, env_int, first_env
from .errors import MemoryValidationError, TransportError
from .messages_client import DEFAULT_API_BASE, DEFAULT_MAX_TOKENS, DEFAULT_MODEL, MessagesClient
from .models import MemoryItem

SUMMARIZER_SYSTEM_PROMPT = """You are an AI assistant that summarizes an agent's recent work into concise, durable facts suitable for long-term memory in a multi-agent system.

Your goals:
- Extract only stable, reusable information (decisions, conclusions, preferences, important facts, open questions).
- Ignore transient details, tool errors, or irrelevant side tracks.
- Write in third person, not as the agent or user.
- Be concise but specific.
- Prefer bullet points or short paragraphs.
- Do NOT mention that you are summarizing episodes; just state the distilled knowledge."""


def format_transcript(episodes: Sequence[MemoryItem]) -> str:
    parts = []
    for index, episode in enumerate(episodes, start=1):
        parts.append(
            f"Episode {index} ({episode.created_at.isoformat()}):\n{episode.content}\n\n"
        )
    return "".join(parts)


def _require_text(reply: str) -> str:
    summary = (reply or "").strip()
    if not summary:
        raise TransportError("summarizer: empty summary text")
    return summary


class EpisodeSummarizer:
    """`Summarizer` backed by the hosted Messages API."""

    def __init__(
        self,
        model: str,
        api_key: str,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        *,
        client: Optional[MessagesClient] = None,
        api_base: str = DEFAULT_API_BASE,
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self.client = client or MessagesClient(
            api_key,
            model,
            max_tokens=max_tokens,
            api_base=api_base,
            timeout_sec=timeout_sec,
            transport=transport,
            logger=self._logger,
        )

    @classmethod
    def from_env(cls, logger: Optional[logging.Logger] = None) -> "EpisodeSummarizer":
        return cls(
            model=first_env(["MEMORY_SUMMARIZER_MODEL"], default=DEFAULT_MODEL),
            api_key=first_env(["ANTHROPIC_API_KEY"]),
            max_tokens=env_int("MEMORY_LLM_MAX_TOKENS", DEFAULT_MAX_TOKENS, minimum=1),
            api_base=first_env(["MEMORY_LLM_API_BASE"], default=DEFAULT_API_BASE),
            timeout_sec=env_float("MEMORY_REMOTE_TIMEOUT_SEC", 30.0, minimum=1.0),
            logger=logger,
        )

    async def summarize_episodes(self, episodes: Sequence[MemoryItem]) -> str:
        self.client.check_configured("summarizer")
        if not episodes:
            raise MemoryValidationError("summarizer: no episodes provided")

        user_prompt = (
            "Here are chronological notes and episodes from a single agent's recent work.\n\n"
            "Please produce a concise summary of the key facts, decisions, and knowledge "
            "that should be stored as long-term memory for the whole system to use.\n\n"
            f"Episodes:\n{format_transcript(episodes)}"
        )
        summary = await self.client.complete(
            SUMMARIZER_SYSTEM_PROMPT,
            user_prompt,
            temperature=0.1,
            parse=_require_text,
            description="summarizer",
        )
        self._logger.info(
            "summarized %s episodes into %s chars", len(episodes), len(summary)
        )
        return summary
