"""
llm.py: thin async clients for the two language models the pipeline uses.

Claude is the primary model: its failure is fatal to a run, so exhausted
retries surface as LLMError. Perplexity is the web-connected secondary model;
callers decide whether its errors matter.
"""

import asyncio
import json
import logging
import re
from typing import Optional, Union

import anthropic
import httpx
from anthropic import AsyncAnthropic

from config import Settings
from errors import LLMError
from http_client import fetch_with_retry

logger = logging.getLogger("intel-report.llm")

PERPLEXITY_URL = "https://api.perplexity.ai/chat/completions"

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


# ---------------------------------------------------------------------------
# JSON extraction from model output
# ---------------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    """Return the body of the first ``` block, or the text unchanged."""
    match = _FENCE_RE.search(text or "")
    return match.group(1).strip() if match else (text or "").strip()


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index of the bracket closing text[start], skipping string contents."""
    opener = text[start]
    closer = "}" if opener == "{" else "]"
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return i
    return None


def _close_truncated(fragment: str) -> Optional[Union[dict, list]]:
    """Best effort for output cut off by max_tokens: close open strings and brackets."""
    open_stack: list[str] = []
    in_string = False
    escaped = False
    for ch in fragment:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            open_stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and open_stack:
            open_stack.pop()

    repaired = fragment + ('"' if in_string else "")
    repaired = repaired.rstrip().rstrip(",")
    repaired += "".join(reversed(open_stack))
    try:
        return json.loads(repaired)
    except json.JSONDecodeError:
        return None


def extract_json(text: str) -> Optional[Union[dict, list]]:
    """
    Pull a JSON object or array out of model output.
    Handles code fences, chatty preambles and truncated tails.
    Returns None when nothing parseable is found.
    """
    body = strip_code_fences(text)
    if not body:
        return None
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        pass

    starts = [i for i in (body.find("{"), body.find("[")) if i != -1]
    if not starts:
        return None
    start = min(starts)

    end = _balanced_end(body, start)
    if end is not None:
        try:
            return json.loads(body[start:end + 1])
        except json.JSONDecodeError:
            return None
    return _close_truncated(body[start:])


# ---------------------------------------------------------------------------
# Claude (primary)
# ---------------------------------------------------------------------------

def _retryable(error: Exception) -> bool:
    if isinstance(error, (anthropic.APIConnectionError, anthropic.APITimeoutError)):
        return True
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code == 429 or error.status_code >= 500
    return False


class ClaudeClient:
    provider = "claude"

    def __init__(self, settings: Settings, client: Optional[AsyncAnthropic] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            if not self.settings.anthropic_api_key:
                raise LLMError("Anthropic API key missing")
            self._client = AsyncAnthropic(api_key=self.settings.anthropic_api_key)
        return self._client

    async def complete(self, system: str, prompt: str, max_tokens: int = 2000) -> str:
        """Return the text of Claude's reply. Raises LLMError once retries are spent."""
        retries = max(1, self.settings.llm_retries)
        last_error: Optional[Exception] = None

        for attempt in range(1, retries + 1):
            try:
                response = await self.client.messages.create(
                    model=self.settings.claude_model,
                    max_tokens=max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": prompt}],
                )
                return "".join(
                    block.text for block in response.content if getattr(block, "type", "") == "text"
                )
            except anthropic.APIError as e:
                last_error = e
                if not _retryable(e) or attempt == retries:
                    break
                is_rate_limit = isinstance(e, anthropic.RateLimitError)
                wait = self.settings.llm_backoff_seconds * (15 if is_rate_limit else attempt)
                logger.warning(f"Claude call attempt {attempt}/{retries} failed, retrying in {wait:.1f}s: {e}")
                await asyncio.sleep(wait)

        logger.error(f"Claude call failed after {attempt} attempt(s): {last_error}")
        raise LLMError(f"Anthropic request failed: {last_error}")


# ---------------------------------------------------------------------------
# Perplexity (secondary, web-connected)
# ---------------------------------------------------------------------------

class PerplexityClient:
    provider = "perplexity"

    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http

    @property
    def configured(self) -> bool:
        return bool(self.settings.perplexity_api_key)

    async def chat(self, prompt: str) -> str:
        if not self.configured:
            raise LLMError("Perplexity API key missing")
        resp = await fetch_with_retry(
            lambda: self.http.post(
                PERPLEXITY_URL,
                json={
                    "model": self.settings.perplexity_model,
                    "messages": [{"role": "user", "content": prompt}],
                },
                headers={"Authorization": f"Bearer {self.settings.perplexity_api_key}"},
                timeout=60.0,
            ),
            retries=self.settings.http_retries,
            backoff=self.settings.http_backoff_seconds,
        )
        choices = resp.json().get("choices") or []
        if not choices:
            return ""
        return ((choices[0].get("message") or {}).get("content") or "").strip()
