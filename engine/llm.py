"""
LLM Client - OpenAI-compatible chat completion for intent analysis.

Any OpenAI-compatible endpoint works (DashScope compatible mode by default).
Callers treat every failure here as recoverable: an unconfigured client,
a network error or unparseable output all raise LLMError, and the caller
falls back to its neutral result.
"""

import json
import logging
import re
from typing import Any, Optional

from openai import AsyncOpenAI

logger = logging.getLogger("silene.llm")

DEFAULT_BASE_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"
DEFAULT_MODEL = "qwen-plus"


class LLMError(Exception):
    """LLM unavailable or returned unusable output."""


def extract_json(text: str) -> Any:
    """
    Parse a JSON object or array out of model output.

    Models sometimes wrap JSON in prose or ```json fences; fall back to the
    outermost {...} or [...] span.
    """
    text = (text or "").strip()
    if not text:
        raise LLMError("empty LLM response")
    try:
        return json.loads(text)
    except ValueError:
        pass
    for pattern in (r"\{.*\}", r"\[.*\]"):
        match = re.search(pattern, text, re.DOTALL)
        if match:
            try:
                return json.loads(match.group())
            except ValueError:
                continue
    raise LLMError(f"no JSON in LLM response: {text[:120]}")


class LLMClient:
    """Thin wrapper over AsyncOpenAI. Lazy client, one per instance."""

    def __init__(
        self,
        api_key: str = "",
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = 60.0,  # default is 600s, too long for a request path
    ):
        self.api_key = api_key
        self.base_url = base_url or DEFAULT_BASE_URL
        self.model = model or DEFAULT_MODEL
        self.timeout = timeout
        self._client: Optional[AsyncOpenAI] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.api_key, base_url=self.base_url, timeout=self.timeout
            )
        return self._client

    async def complete(
        self,
        system: str,
        user: str,
        json_mode: bool = True,
        max_tokens: int = 1500,
        temperature: float = 0.3,
    ) -> str:
        if not self.configured:
            raise LLMError("LLM_API_KEY not set")

        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = await self._get_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
                **kwargs,
            )
        except Exception as e:
            raise LLMError(f"{type(e).__name__}: {e}") from e

        text = response.choices[0].message.content or ""
        usage = response.usage
        if usage:
            logger.debug(
                f"LLM {self.model}: {usage.prompt_tokens} in / {usage.completion_tokens} out"
            )
        return text

    async def complete_json(self, system: str, user: str, **kwargs) -> Any:
        return extract_json(await self.complete(system, user, json_mode=True, **kwargs))
