"""
Personal-memory normalization.

Turns a free-form statement ("I usually run 5k before work") into a
third-person sentence, one of seven memory types and a short tag list.
Whatever the model returns, the result is forced into that contract
before it leaves this module.
"""

import logging
import re
from typing import Any, Iterable, List, NamedTuple, Optional

import httpx

from config import env_float, env_int, first_env
from .errors import MemoryValidationError, TransportError
from .messages_client import (
    DEFAULT_API_BASE,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL,
    MessagesClient,
    parse_json_object,
)

ALLOWED_PERSONAL_TYPES = (
    "preference",
    "biographical",
    "habit",
    "goal",
    "value",
    "project",
    "other",
)
MAX_TAGS = 8
FALLBACK_TAGS = ("misc",)

_TAG_INVALID_CHARS = re.compile(r"[^a-z0-9_-]+")
_SECRET_LIKE = re.compile(r"(?i)(api[_-]?key|secret|token|password|sk-[a-z0-9]{10,})")

NORMALIZER_SYSTEM_PROMPT = """You are a memory normalization module for a personal AI assistant.

You must convert a single raw user or agent statement into a structured memory JSON object.

Output MUST be valid JSON with this exact shape and no extra keys:
{
  "normalized": string,
  "type": string,
  "tags": string[]
}

Requirements:
- "normalized" must be a third-person, self-contained sentence or short paragraph.
- Prefer to begin with "The user ..." when describing the user.
- "type" must be exactly one of:
  "preference", "biographical", "habit", "goal", "value", "project", "other"
- "tags" must be 3-8 short, lowercase tokens without spaces.
  - Examples: "music", "running", "programming_languages", "sleep_schedule".
- Do NOT include secrets (API keys, passwords, tokens) in "normalized" or "tags".
- If the input is not suitable as a long-term memory, still respond with best-effort JSON.

You must output ONLY the JSON object. Do not include explanations, comments, or surrounding text."""


class NormalizedMemory(NamedTuple):
    normalized: str
    memory_type: str
    tags: List[str]


def sanitize_memory_type(value: Any) -> str:
    candidate = str(value or "").strip().lower()
    return candidate if candidate in ALLOWED_PERSONAL_TYPES else "other"


def sanitize_tags(tags: Optional[Iterable[Any]]) -> List[str]:
    """Lowercase `[a-z0-9_-]+` tokens, at most 8, `["misc"]` when nothing survives."""
    cleaned: List[str] = []
    for tag in tags or ():
        token = str(tag if tag is not None else "").strip().lower()
        token = _TAG_INVALID_CHARS.sub("_", token).strip("_-")
        if token:
            cleaned.append(token)
        if len(cleaned) >= MAX_TAGS:
            break
    return cleaned or list(FALLBACK_TAGS)


def strip_secrets(value: str) -> str:
    return _SECRET_LIKE.sub("[redacted]", value or "")


def _reply_fields(reply: str) -> NormalizedMemory:
    parsed = parse_json_object(reply)
    if parsed is None:
        raise TransportError("normalizer: model reply is not a JSON object")
    tags = parsed.get("tags")
    if isinstance(tags, str):
        tags = [tags]
    elif not isinstance(tags, list):
        tags = []
    return NormalizedMemory(
        normalized=str(parsed.get("normalized") or ""),
        memory_type=str(parsed.get("type") or ""),
        tags=[str(tag) for tag in tags],
    )


class Normalizer:
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
    def from_env(cls, logger: Optional[logging.Logger] = None) -> "Normalizer":
        return cls(
            model=first_env(["MEMORY_NORMALIZER_MODEL"], default=DEFAULT_MODEL),
            api_key=first_env(["ANTHROPIC_API_KEY"]),
            max_tokens=env_int("MEMORY_LLM_MAX_TOKENS", DEFAULT_MAX_TOKENS, minimum=1),
            api_base=first_env(["MEMORY_LLM_API_BASE"], default=DEFAULT_API_BASE),
            timeout_sec=env_float("MEMORY_REMOTE_TIMEOUT_SEC", 30.0, minimum=1.0),
            logger=logger,
        )

    async def normalize(self, raw_text: str) -> NormalizedMemory:
        raw_text = (raw_text or "").strip()
        if not raw_text:
            raise MemoryValidationError("normalizer: raw text is empty")
        self.client.check_configured("normalizer")

        user_prompt = (
            "Normalize the following statement into a structured personal memory:\n\n"
            f"{raw_text}"
        )
        reply = await self.client.complete(
            NORMALIZER_SYSTEM_PROMPT,
            user_prompt,
            temperature=0.0,
            parse=_reply_fields,
            description="normalizer",
        )

        normalized = reply.normalized.strip() or raw_text
        # Redact before sanitizing so "[redacted]" survives as a plain tag.
        tags = sanitize_tags(strip_secrets(tag) for tag in reply.tags)
        result = NormalizedMemory(
            normalized=strip_secrets(normalized),
            memory_type=sanitize_memory_type(reply.memory_type),
            tags=tags,
        )
        self._logger.info(
            "normalized personal memory: type=%s tags=%s", result.memory_type, result.tags
        )
        return result
