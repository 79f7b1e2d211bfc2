from __future__ import annotations
import json
import logging
from typing import AsyncIterator, Optional

import httpx

from cuecard.cancellation import CancellationToken
from cuecard.config import Config
from cuecard.providers.base import GenerationProvider

logger = logging.getLogger(__name__)


class OllamaProvider(GenerationProvider):
    """Local Ollama server via /api/chat. No API key needed."""

    name = "ollama"

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        stream: bool = True,
    ):
        super().__init__(client)
        self.base_url = (base_url or Config.OLLAMA_URL).rstrip("/")
        self.model = model or Config.OLLAMA_MODEL
        self.streaming = stream

    def is_ready(self) -> bool:
        return bool(self.base_url and self.model)

    async def stream(self, prompt: str, token: CancellationToken) -> AsyncIterator[str]:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": self.streaming,
        }
        url = f"{self.base_url}/api/chat"

        if not self.streaming:
            async with self._http() as client:
                try:
                    r = await client.post(url, json=payload)
                except httpx.HTTPError as e:
                    raise self._transport_error(e) from e
                await self._check_status(r)
                data = r.json()
            if token.cancelled:
                return
            content = (data.get("message") or {}).get("content", "") or ""
            if content:
                yield content
            return

        # NDJSON: one object per line, final one has done=true
        async for line in self._stream_lines("POST", url, token, json=payload):
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("[Suggest] Skipping unparsable Ollama line: %.80s", line)
                continue
            if not isinstance(obj, dict):
                continue
            content = (obj.get("message") or {}).get("content")
            if content:
                yield content
            if obj.get("done"):
                return
