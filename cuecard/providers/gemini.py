from __future__ import annotations
from typing import AsyncIterator, Optional

import httpx

from cuecard.cancellation import CancellationToken
from cuecard.config import Config
from cuecard.errors import NotReadyError
from cuecard.providers.base import GenerationProvider, parse_sse_data

# Gemini Developer API (AI Studio) REST base
DEFAULT_GEMINI_BASE = "https://generativelanguage.googleapis.com"


class GeminiProvider(GenerationProvider):
    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: str = DEFAULT_GEMINI_BASE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(client)
        self.api_key = (api_key if api_key is not None else Config.GEMINI_API_KEY or "").strip()
        self.model = (model or Config.GEMINI_MODEL).strip()
        self.base_url = base_url.rstrip("/")

    def is_ready(self) -> bool:
        return bool(self.api_key)

    async def stream(self, prompt: str, token: CancellationToken) -> AsyncIterator[str]:
        if not self.is_ready():
            raise NotReadyError(["GEMINI_API_KEY"])
        # POST /v1beta/models/{model}:streamGenerateContent, SSE framing
        url = f"{self.base_url}/v1beta/models/{self.model}:streamGenerateContent?alt=sse"
        body = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        headers = {"x-goog-api-key": self.api_key}

        async for line in self._stream_lines("POST", url, token, json=body, headers=headers):
            obj = parse_sse_data(line)
            if obj is None:
                continue
            candidates = obj.get("candidates") or [{}]
            parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
            text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
            if text:
                yield text
