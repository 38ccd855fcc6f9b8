from __future__ import annotations

import logging
from typing import Any, Dict

import requests

from .provider import SYSTEM_PROMPT, ReasoningModel

logger = logging.getLogger(__name__)


class OllamaProvider(ReasoningModel):
    """Adapter for the Ollama chat endpoint."""

    def __init__(self, model_name: str, host: str, timeout_sec: int, max_tokens: int = 1024) -> None:
        self._model = model_name
        self._host = host.rstrip("/") or "http://localhost:11434"
        self._timeout = timeout_sec
        self._max_tokens = max_tokens

    def name(self) -> str:
        return "ollama"

    def complete(self, prompt: str) -> str:
        """Send a single non-streaming chat turn and return the assistant message."""

        payload: Dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "stream": False,
            "options": {"temperature": 0, "num_predict": self._max_tokens},
        }
        try:
            response = requests.post(f"{self._host}/api/chat", json=payload, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:  # pragma: no cover - network failure path
            logger.warning("Ollama chat request failed: %s", exc)
            raise RuntimeError("ollama request failed") from exc

        message = data.get("message") if isinstance(data, dict) else None
        text = message.get("content") if isinstance(message, dict) else None
        if not isinstance(text, str) or not text.strip():
            logger.warning("Ollama chat response missing message content: %s", data)
            raise RuntimeError("ollama response missing text")
        return text.strip()
