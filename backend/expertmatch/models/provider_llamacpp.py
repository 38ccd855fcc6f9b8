from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from .provider import SYSTEM_PROMPT, ReasoningModel

logger = logging.getLogger(__name__)


class LlamaCppProvider(ReasoningModel):
    """Adapter for a llama.cpp server's raw completion endpoint."""

    def __init__(self, host: str, model: Optional[str], timeout_sec: int, max_tokens: int = 1024) -> None:
        self._host = host.rstrip("/") or "http://localhost:8080"
        self._model = model
        self._timeout = timeout_sec
        self._max_tokens = max_tokens

    def name(self) -> str:
        return "llamacpp"

    def complete(self, prompt: str) -> str:
        payload: Dict[str, Any] = {
            "prompt": f"{SYSTEM_PROMPT}\n\n{prompt}\n",
            "temperature": 0,
            "stream": False,
            "n_predict": self._max_tokens,
        }
        if self._model:
            payload["model"] = self._model

        try:
            response = requests.post(f"{self._host}/completion", json=payload, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:  # pragma: no cover - network failure
            logger.warning("llama.cpp completion failed: %s", exc)
            raise RuntimeError("llama.cpp request failed") from exc

        text = data.get("content") if isinstance(data, dict) else None
        if not isinstance(text, str) or not text.strip():
            logger.warning("llama.cpp response missing content: %s", data)
            raise RuntimeError("llama.cpp response missing text")
        return text.strip()
