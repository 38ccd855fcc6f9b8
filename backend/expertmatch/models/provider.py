from typing import Protocol

SYSTEM_PROMPT = (
    "You evaluate how well expert candidates match a staffing request. "
    "Reply with JSON only, no prose and no markdown."
)


class ReasoningModel(Protocol):
    """Protocol implemented by every reasoning model adapter."""

    def name(self) -> str:
        """Return the provider identifier (e.g. stub, ollama)."""

    def complete(self, prompt: str) -> str:
        """Return the model's completion for the supplied prompt."""
