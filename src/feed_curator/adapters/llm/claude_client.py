"""Claude API client used as the relevance/usefulness scoring oracle."""

import asyncio
import json
import logging
import re
from typing import Optional

import httpx

from feed_curator.core.entities import Judgment
from feed_curator.core.errors import OracleError, TransientOracleError
from feed_curator.core.interfaces import ScoringOracle
from feed_curator.core.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

DEFAULT_TAGS = [
    "code-search", "semantic-search", "agent", "context", "devex", "devops",
    "enterprise", "research", "infra", "off-topic",
]

SYSTEM_PROMPT = """You are an expert evaluator of technical content for a developer-focused digest.

Evaluate the item for:
1. **Relevance** (0-{scale}): How relevant is it to code tooling, code search, semantic search, agents, developer productivity, context management for LLMs and complex enterprise codebases?
2. **Usefulness** (0-{scale}): How useful is this for a senior developer or tech lead?
3. **Tags**: Assign relevant domain tags from: {tags}

Return JSON with exactly this structure:
{{
  "relevance": <number 0-{scale}>,
  "usefulness": <number 0-{scale}>,
  "tags": ["tag1", "tag2"]
}}

Be objective. Mid-scale is average. Items with only a title and no content should be scored conservatively."""


class ClaudeClient(ScoringOracle):
    """Claude Messages API implementation of ``ScoringOracle``."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 512,
        temperature: float = 0.0,
        timeout: float = 60.0,
        request_delay: float = 0.5,
        tags: Optional[list[str]] = None,
        scale_max: int = 10,
        retry_policy: Optional[RetryPolicy] = None,
        base_url: str = "https://api.anthropic.com/v1",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.request_delay = request_delay
        self.tags = tags or list(DEFAULT_TAGS)
        self.scale_max = scale_max
        self.retry_policy = retry_policy or RetryPolicy()
        self.base_url = base_url
        self._last_request_time = 0.0
        self._rate_lock = asyncio.Lock()

    async def judge(self, text: str) -> Judgment:
        """Rate ``text``; raises ``OracleError`` on API failure or unparseable output."""
        system = SYSTEM_PROMPT.format(scale=self.scale_max, tags=", ".join(self.tags))
        response = await retry_async(
            lambda: self._call_api(prompt=f"Evaluate this item:\n\n{text[:8000]}", system=system),
            self.retry_policy,
            description="Claude judgment",
        )
        return self._parse_judgment(response)

    def _parse_judgment(self, response: str) -> Judgment:
        json_text = self._extract_json(response)
        try:
            data = json.loads(json_text)
            relevance = data["relevance"]
            usefulness = data["usefulness"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning("Claude returned invalid judgment JSON: %s", response[:200])
            raise OracleError(f"Failed to parse judgment: {type(e).__name__}: {e}") from e

        tags = data.get("tags") or []
        if not isinstance(tags, list):
            tags = [tags]
        allowed = set(self.tags)
        return Judgment(
            relevance=self._clamp(relevance),
            usefulness=self._clamp(usefulness),
            tags=[str(t) for t in tags if str(t) in allowed],
        )

    def _clamp(self, value: object) -> int:
        try:
            number = int(round(float(value)))  # type: ignore[arg-type]
        except (TypeError, ValueError) as e:
            raise OracleError(f"Non-numeric score {value!r}") from e
        return min(self.scale_max, max(0, number))

    async def _call_api(self, prompt: str, system: str) -> str:
        """One Messages API request with client-side rate limiting."""
        async with self._rate_lock:
            loop = asyncio.get_running_loop()
            time_since_last_request = loop.time() - self._last_request_time
            if time_since_last_request < self.request_delay:
                await asyncio.sleep(self.request_delay - time_since_last_request)
            self._last_request_time = loop.time()

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/messages",
                    headers={
                        "x-api-key": self.api_key,
                        "anthropic-version": "2023-06-01",
                        "content-type": "application/json",
                    },
                    json={
                        "model": self.model,
                        "max_tokens": self.max_tokens,
                        "temperature": self.temperature,
                        "system": system,
                        "messages": [
                            {"role": "user", "content": prompt}
                        ],
                    },
                )
        except httpx.TimeoutException as e:
            raise TransientOracleError(f"Claude request timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransientOracleError(f"Network error: {e}") from e

        if response.status_code == 200:
            try:
                data = response.json()
                return data["content"][0]["text"]
            except (ValueError, KeyError, IndexError, TypeError) as e:
                raise OracleError(f"Unexpected Claude response shape: {e}") from e

        if response.status_code == 429:
            raise TransientOracleError("Claude rate limit hit (429)", retry_after=self._get_retry_after(response))
        if response.status_code >= 500:
            raise TransientOracleError(f"Claude server error {response.status_code}")
        raise OracleError(f"Claude API error {response.status_code}: {response.text[:200]}")

    def _get_retry_after(self, response: httpx.Response) -> Optional[float]:
        """Retry-After header in seconds, if present."""
        retry_after = response.headers.get("retry-after")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return None

    def _fix_json(self, text: str) -> str:
        """Try to fix common JSON issues."""
        # Remove trailing commas before } or ]
        return re.sub(r',(\s*[}\]])', r'\1', text)

    def _extract_json(self, text: str) -> str:
        """Extract JSON from markdown code block or raw text."""
        code_block_match = re.search(r'```(?:json)?\s*\n(.*?)\n```', text, re.DOTALL)
        if code_block_match:
            return self._fix_json(code_block_match.group(1).strip())

        # Prefer an object carrying the required field
        with_fields = re.search(r'\{[^{}]*"relevance"\s*:[^{}]*\}', text, re.DOTALL)
        if with_fields:
            candidate = self._fix_json(with_fields.group(0))
            try:
                json.loads(candidate)
                return candidate
            except json.JSONDecodeError:
                pass

        any_object = re.search(r'\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}', text, re.DOTALL)
        if any_object:
            candidate = self._fix_json(any_object.group(0))
            try:
                json.loads(candidate)
                return candidate
            except json.JSONDecodeError:
                pass

        return self._fix_json(text.strip())
