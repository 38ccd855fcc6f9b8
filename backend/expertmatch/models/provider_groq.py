from __future__ import annotations

import logging
from typing import Any, Dict

import requests

from .provider import SYSTEM_PROMPT, ReasoningModel

logger = logging.getLogger(__name__)


class GroqHostedProvider(ReasoningModel):
    """Adapter for Groq's OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        api_key: str | None,
        model_name: str,
        timeout_sec: int,
        api_url: str = "https://api.groq.com/openai/v1/chat/completions",
        max_tokens: int = 1024,
    ) -> None:
        if not api_key:
            raise ValueError("GROQ_API_KEY must be set for the hosted reasoning model")
        self._api_key = api_key
        self._model_name = model_name or "llama-3.1-8b-instant"
        self._timeout = timeout_sec
        self._api_url = api_url.rstrip("/")
        self._max_tokens = max_tokens

    def name(self) -> str:
        return "hosted-groq"

    def complete(self, prompt: str) -> str:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        payload: Dict[str, Any] = {
            "model": self._model_name,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0,
            "max_tokens": self._max_tokens,
        }
        try:
            response = requests.post(self._api_url, headers=headers, json=payload, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:  # pragma: no cover - network dependent
            logger.warning("Groq chat completion failed: %s", exc)
            raise RuntimeError("hosted provider request failed") from exc

        content = _first_choice_content(data)
        if not content:
            logger.warning("Groq response missing choice content: %s", data)
            raise RuntimeError("hosted provider response missing content")
        return content.strip()


def _first_choice_content(data: Any) -> str | None:
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    return None
