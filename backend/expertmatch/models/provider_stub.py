from .provider import ReasoningModel

STUB_COMPLETION = "[]"


class StubProvider(ReasoningModel):
    """Deterministic provider used for tests and offline fallbacks."""

    def __init__(self, completion: str = STUB_COMPLETION) -> None:
        self._completion = completion

    def name(self) -> str:
        """Return the provider identifier."""
        return "stub"

    def complete(self, prompt: str) -> str:
        """Ignore the prompt and return the canned completion (an empty JSON array by default)."""
        return self._completion
