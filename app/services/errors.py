"""
Domain errors for prompt orchestration. Routers translate these to HTTPException;
services never raise HTTP types themselves.
"""


class UnknownProvider(ValueError):
    def __init__(self, provider_id: str):
        super().__init__(f"Unknown provider: {provider_id}")
        self.provider_id = provider_id


class UpstreamError(Exception):
    """A provider call failed. status_code mirrors the provider's HTTP status when known."""

    RATE_LIMIT_MESSAGE = "Rate limited. Please wait and try again."

    def __init__(self, message: str, status_code: int = 500, provider: str | None = None):
        if status_code == 429:
            message = self.RATE_LIMIT_MESSAGE
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider = provider

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429


class GenerationInProgress(Exception):
    """Another request holds the reservation for this (prompt, provider) and did not finish in time."""

    def __init__(self, prompt_id: str, provider: str):
        super().__init__(f"A response for prompt {prompt_id} from {provider} is already being generated")
        self.prompt_id = prompt_id
        self.provider = provider


class PersistenceError(Exception):
    """Writing the terminal response failed after every attempt."""
