"""
Shared exceptions for AI service modules.
"""


class AIServiceError(Exception):
    """Raised when AI service operations fail."""

    pass


class AIUnavailableError(AIServiceError):
    """Raised when transient failures outlast the retry budget."""

    pass


class ClassificationError(AIServiceError):
    """
    Raised when a page could not be classified.

    `unreachable` is True when the cause was the AI service itself being
    unavailable (timeouts, connection errors, rate limits) rather than a bad
    response for this particular page.
    """

    def __init__(self, message: str, unreachable: bool = False):
        super().__init__(message)
        self.unreachable = unreachable


class ImageGenerationError(AIServiceError):
    """Raised when a recipe image could not be generated."""

    pass
