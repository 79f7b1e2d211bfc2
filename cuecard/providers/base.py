"""Abstract base class for streaming generation providers."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from cuecard.cancellation import CancellationToken
from cuecard.errors import GenerationError

logger = logging.getLogger(__name__)


def http_error(provider: str, status_code: int, detail: str = "") -> GenerationError:
    """Map an HTTP failure to a readable GenerationError."""
    if status_code in (401, 403):
        msg = f"Invalid {provider} API key. Check the key in your .env file."
    elif status_code == 429:
        msg = f"{provider} rate limit exceeded. Please try again later."
    elif status_code == 404:
        msg = f"{provider} model not found. Check the configured model name."
    else:
        msg = f"{provider} API error (HTTP {status_code})"
        if detail:
            msg += f": {detail}"
    return GenerationError(msg, status_code=status_code)


class GenerationProvider(ABC):
    """Turns a prompt into a stream of text increments."""

    name = "base"

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 90.0):
        self._client = client
        self.timeout = timeout

    @abstractmethod
    def is_ready(self) -> bool:
        """True when the provider has everything it needs to make a request."""
        pass

    @abstractmethod
    def stream(self, prompt: str, token: CancellationToken) -> AsyncIterator[str]:
        """Yield text increments until the reply is complete or `token` is cancelled."""
        pass

    async def complete(self, prompt: str, token: Optional[CancellationToken] = None) -> str:
        token = token or CancellationToken()
        parts = []
        async for piece in self.stream(prompt, token):
            parts.append(piece)
        return "".join(parts)

    @asynccontextmanager
    async def _http(self):
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def _check_status(self, r: httpx.Response) -> None:
        if r.status_code < 400:
            return
        body = await r.aread()
        detail = body.decode("utf-8", errors="replace").strip()[:200]
        logger.warning("[Suggest] %s returned HTTP %s: %s", self.name, r.status_code, detail)
        raise http_error(self.name, r.status_code, detail)

    def _transport_error(self, e: Exception) -> GenerationError:
        if isinstance(e, httpx.ConnectError):
            return GenerationError(f"Cannot connect to {self.name}. Is the service reachable?")
        if isinstance(e, httpx.TimeoutException):
            return GenerationError(f"{self.name} request timed out")
        return GenerationError(f"{self.name} request failed: {e}")

    async def _stream_lines(self, method: str, url: str, token: CancellationToken, **kwargs) -> AsyncIterator[str]:
        """POST and yield non-empty response lines, mapping transport failures."""
        async with self._http() as client:
            try:
                async with client.stream(method, url, **kwargs) as r:
                    await self._check_status(r)
                    async for line in r.aiter_lines():
                        if token.cancelled:
                            return
                        line = line.strip()
                        if line:
                            yield line
            except httpx.HTTPError as e:
                raise self._transport_error(e) from e


def parse_sse_data(line: str) -> Optional[Dict[str, Any]]:
    """Decode one `data: {...}` line. Returns None for comments, [DONE] and junk."""
    if not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        obj = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("[Suggest] Skipping unparsable stream line: %.80s", payload)
        return None
    return obj if isinstance(obj, dict) else None
