"""Storybook error hierarchy.

Every error carries the HTTP status it maps to when it escapes a request
handler; errors raised inside background page generation are recorded on the
page instead of being surfaced.
"""

from typing import Optional


class StorybookError(Exception):
    """Base exception for storybook errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(StorybookError):
    """Bad input shape or range."""

    status_code = 400


class ConfigurationMissingError(StorybookError):
    """A required API key has not been configured."""

    status_code = 400

    def __init__(self, missing: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Please configure the {missing} API key in settings first")
        self.missing = missing


class NotFoundError(StorybookError):
    status_code = 404

    def __init__(self, resource: str, resource_id) -> None:
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class UnknownProviderError(StorybookError):
    status_code = 400

    def __init__(self, provider: str) -> None:
        super().__init__(f"Unsupported image provider: {provider}")
        self.provider = provider


class ProviderError(StorybookError):
    """An image vendor call failed."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        http_status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.http_status = http_status


class EmptyResponseError(ProviderError):
    """The vendor answered with an empty body."""


class MalformedResponseError(ProviderError):
    """The vendor answered with something that is not JSON."""

    def __init__(self, message: str, snippet: str = "", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.snippet = snippet


class UnrecognizedResponseShapeError(ProviderError):
    """The vendor answered with JSON that holds no image we know how to read."""


class GenerationTimeoutError(ProviderError):
    """A submitted task never reached a terminal state."""

    def __init__(self, message: str, attempts: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.attempts = attempts


class StoryGenerationError(StorybookError):
    """The LLM call failed or was not configured."""


class StoryParseError(StoryGenerationError):
    """The LLM reply could not be coerced into JSON."""

    def __init__(self, message: str, snippet: str = "") -> None:
        super().__init__(message)
        self.snippet = snippet


class StoryFormatError(StoryGenerationError):
    """The LLM reply parsed but is not a usable story."""
