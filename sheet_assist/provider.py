from __future__ import annotations

import logging
from typing import Any

import requests

from sheet_assist.config import Settings
from sheet_assist.errors import TransportError

logger = logging.getLogger(__name__)


def build_request_body(prompt: str, *, model: str, temperature: float, max_tokens: int) -> dict[str, Any]:
    return {
        "model": model,
        "messages": [{"role": "user", "content": prompt}],
        "temperature": temperature,
        "max_tokens": max_tokens,
    }


def completion_text(payload: Any) -> str:
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise TransportError("Completion provider returned no message content") from exc
    if not isinstance(content, str):
        raise TransportError("Completion provider returned non-text message content")
    return content


class CompletionProvider:
    """Single-attempt chat completion client. No retries."""

    def __init__(self, settings: Settings, session: requests.Session | None = None) -> None:
        self.settings = settings
        self.session = session

    def _post(self, url: str, **kwargs: Any) -> requests.Response:
        if self.session is not None:
            return self.session.post(url, **kwargs)
        return requests.post(url, **kwargs)

    def complete(self, prompt: str, *, max_tokens: int) -> str:
        api_key = self.settings.require_api_key()
        body = build_request_body(
            prompt,
            model=self.settings.model,
            temperature=self.settings.temperature,
            max_tokens=max_tokens,
        )
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.settings.referer,
            "X-Title": self.settings.title,
        }
        try:
            response = self._post(
                self.settings.provider_url,
                json=body,
                headers=headers,
                timeout=self.settings.provider_timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Completion provider request failed: %s", exc)
            raise TransportError(f"OpenRouter API request failed: {exc}") from exc

        if not response.ok:
            logger.warning("Completion provider answered %s", response.status_code)
            raise TransportError(f"OpenRouter API error: {response.text}", status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportError("Completion provider returned invalid JSON") from exc
        return completion_text(payload)
