"""HTTP client for an OpenAI-compatible chat-completions endpoint."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .errors import ClassificationError

logger = logging.getLogger(__name__)


class ChatCompletionsClient:
    """Sends one prompt per call and returns the raw message content."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 10.0,
        temperature: float = 0.3,
        max_tokens: int = 500,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = http_client or httpx.Client(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_config(cls, config) -> "ChatCompletionsClient":
        return cls(
            config.api_key,
            model=config.model,
            base_url=config.base_url,
            timeout=config.timeout_secs,
        )

    def complete(
        self, system_prompt: str, user_prompt: str, *, timeout: Optional[float] = None
    ) -> str:
        timeout = self.timeout if timeout is None else timeout
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }
        try:
            response = self._client.post(
                f"{self.base_url}/chat/completions",
                json=body,
                headers=self._headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise ClassificationError(f"Model request timed out after {timeout}s") from exc
        except httpx.HTTPError as exc:
            raise ClassificationError(f"Model request failed: {exc}") from exc

        if response.status_code != 200:
            raise ClassificationError(
                f"Model endpoint returned HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ClassificationError(f"Malformed completion payload: {exc}") from exc
        if not isinstance(content, str):
            raise ClassificationError("Completion has no text content")
        logger.debug("Model response: %s", content)
        return content

    def is_reachable(self) -> bool:
        """Cheap connectivity probe; any HTTP answer counts as reachable."""
        try:
            self._client.get(f"{self.base_url}/models", headers=self._headers, timeout=min(self.timeout, 3.0))
        except httpx.HTTPError as exc:
            logger.debug("Model endpoint unreachable: %s", exc)
            return False
        return True

    def close(self) -> None:
        self._client.close()
