"""Optional message rewriting through an OpenAI compatible endpoint."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx

from tgrelay.config import RewriteConfig
from tgrelay.logging import get_logger

__all__ = ["RewriteClient", "RewriteError"]

logger = get_logger(__name__)


class RewriteError(RuntimeError):
    """Raised when the rewrite endpoint fails or answers with an unusable payload."""


class RewriteClient:
    def __init__(
        self,
        config: RewriteConfig,
        *,
        http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._config = config
        self._http_client_factory = http_client_factory

    def _client(self) -> httpx.AsyncClient:
        if self._http_client_factory is not None:
            return self._http_client_factory()
        return httpx.AsyncClient(timeout=self._config.timeout_seconds)

    async def rewrite(self, text: str, *, prompt: str) -> str:
        if not self._config.api_token:
            raise RewriteError("rewrite endpoint is not configured")
        body: dict[str, Any] = {
            "model": self._config.model,
            "messages": [
                {"role": "system", "content": prompt},
                {"role": "user", "content": text},
            ],
        }
        headers = {"Authorization": f"Bearer {self._config.api_token}"}
        url = f"{self._config.base_url}/chat/completions"
        try:
            async with self._client() as client:
                response = await client.post(url, json=body, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise RewriteError(f"rewrite endpoint returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise RewriteError(f"rewrite request failed: {exc}") from exc
        except ValueError as exc:
            raise RewriteError("rewrite endpoint returned invalid JSON") from exc

        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise RewriteError("rewrite response has no choices") from exc
        rewritten = str(content or "").strip()
        if not rewritten:
            raise RewriteError("rewrite response was empty")
        return rewritten
