from __future__ import annotations
from typing import AsyncIterator, Optional

import httpx

from cuecard.cancellation import CancellationToken
from cuecard.config import Config
from cuecard.errors import NotReadyError
from cuecard.providers.base import GenerationProvider, parse_sse_data


class GroqProvider(GenerationProvider):
    """Groq chat completions over the OpenAI-compatible streaming endpoint."""

    name = "groq"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ):
        super().__init__(client)
        self.api_key = (api_key if api_key is not None else Config.GROQ_API_KEY or "").strip()
        self.model = model or Config.GROQ_MODEL
        self.base_url = (base_url or Config.GROQ_BASE_URL).rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens

    def is_ready(self) -> bool:
        return bool(self.api_key)

    async def stream(self, prompt: str, token: CancellationToken) -> AsyncIterator[str]:
        if not self.is_ready():
            raise NotReadyError(["GROQ_API_KEY"])
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": True,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async for line in self._stream_lines(
            "POST", f"{self.base_url}/chat/completions", token, json=body, headers=headers
        ):
            obj = parse_sse_data(line)
            if obj is None:
                continue
            choices = obj.get("choices") or [{}]
            content = ((choices[0] or {}).get("delta") or {}).get("content")
            if content:
                yield content
