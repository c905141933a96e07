"""
Minimal client for a hosted Messages-style text-completion API.

One `complete()` call is one logical request: every attempt posts the
same payload and, when given, runs `parse` on the reply text inside the
retry loop, so a malformed model reply is retried like a 5xx.
"""

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from .errors import MemoryValidationError, TransportError
from .retry import BackoffPolicy, retry_async

T = TypeVar("T")

DEFAULT_API_BASE = "https://api.anthropic.com/v1"
DEFAULT_MODEL = "claude-3-5-haiku-latest"
DEFAULT_MAX_TOKENS = 256
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_RATE_LIMIT_DELAY = 60.0


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> float:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    raw = (value or "").strip()
    if not raw:
        return DEFAULT_RATE_LIMIT_DELAY
    try:
        seconds = float(raw)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds > 0 else DEFAULT_RATE_LIMIT_DELAY
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return DEFAULT_RATE_LIMIT_DELAY
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    remaining = (when - (now or datetime.now(timezone.utc))).total_seconds()
    return remaining if remaining > 0 else DEFAULT_RATE_LIMIT_DELAY


def parse_json_object(raw_text: str) -> Optional[Dict[str, Any]]:
    """JSON object from a model reply: bare, fenced, or the outermost {...} span."""
    candidate = (raw_text or "").strip()
    if not candidate:
        return None

    attempts = [candidate]
    if candidate.startswith("```"):
        unfenced = re.sub(r"^```(?:json)?\s*", "", candidate, flags=re.IGNORECASE)
        attempts.append(re.sub(r"\s*```$", "", unfenced).strip())
    start = candidate.find("{")
    end = candidate.rfind("}")
    if 0 <= start < end:
        attempts.append(candidate[start : end + 1])

    for item in attempts:
        try:
            parsed = json.loads(item)
        except (TypeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error.get("message"))
    return json.dumps(body)[:200]


class MessagesClient:
    """Messages API caller shared by the normalizer and the episode summarizer."""

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        api_base: str = DEFAULT_API_BASE,
        timeout_sec: float = 30.0,
        policy: Optional[BackoffPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.api_key = api_key or ""
        self.model = model or ""
        self.max_tokens = max_tokens if max_tokens and max_tokens > 0 else DEFAULT_MAX_TOKENS
        self.api_base = (api_base or DEFAULT_API_BASE).rstrip("/")
        self.timeout_sec = max(1.0, float(timeout_sec))
        self.policy = policy or BackoffPolicy()
        self._transport = transport
        self._sleep = sleep
        self._logger = logger or logging.getLogger(__name__)

    def check_configured(self, component: str) -> None:
        if not self.api_key:
            raise MemoryValidationError(f"{component}: missing API key")
        if not self.model:
            raise MemoryValidationError(f"{component}: model name is required")

    async def complete(
        self,
        system: str,
        user: str,
        *,
        temperature: float,
        parse: Optional[Callable[[str], T]] = None,
        description: str = "messages request",
    ) -> Any:
        """Send one prompt and return the reply text, or `parse(text)` when given."""
        self.check_configured(description)
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": temperature,
            "system": system,
            "messages": [{"role": "user", "content": user}],
        }
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_sec), transport=self._transport
        ) as client:

            async def _attempt():
                reply = await self._post(client, payload, headers, description)
                return parse(reply) if parse is not None else reply

            return await retry_async(
                _attempt,
                self.policy,
                description=description,
                logger=self._logger,
                sleep=self._sleep,
            )

    async def _post(
        self,
        client: httpx.AsyncClient,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        description: str,
    ) -> str:
        try:
            response = await client.post(
                f"{self.api_base}/messages", json=payload, headers=headers
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"{description}: request failed: {exc}") from exc

        status = response.status_code
        if status == 429:
            raise TransportError(
                f"{description}: rate limited: {_error_detail(response)}",
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        if 400 <= status < 500:
            raise TransportError(
                f"{description}: API error {status}: {_error_detail(response)}",
                status_code=status,
                permanent=True,
            )
        if status >= 500:
            raise TransportError(
                f"{description}: server error {status}: {_error_detail(response)}",
                status_code=status,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TransportError(f"{description}: response is not JSON") from exc
        content = body.get("content") if isinstance(body, dict) else None
        if not isinstance(content, list) or not content or not isinstance(content[0], dict):
            raise TransportError(f"{description}: empty content in response")
        return str(content[0].get("text") or "").strip()
