"""Error taxonomy surfaced by recommendation generation."""

from __future__ import annotations

GENERIC_FAILURE_MESSAGE = "Failed to generate recommendations. Please try again."


class RecommendationError(Exception):
    """Base class for failures reported to the caller of the engine."""

    code: str = "recommendation_error"
    status: int = 400

    def __init__(self, message: str = "", *, code: str | None = None, status: int | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code
        if status:
            self.status = status

    def to_payload(self) -> dict[str, object]:
        return {"error": self.code, "description": self.message}


class EligibilityError(RecommendationError):
    """The watchlist holds too few qualifying items to generate from."""

    code = "not_eligible"
    status = 422

    def __init__(self, found: int, required: int):
        self.found = found
        self.required = required
        super().__init__(
            f"Need at least {required} items in the list with details to "
            f"generate recommendations. Found {found}."
        )

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload.update({"found": self.found, "required": self.required})
        return payload


class GenerationFailedError(RecommendationError):
    """Generation could not complete; the caller should offer a retry."""

    code = "generation_failed"
    status = 502

    def __init__(self, message: str = GENERIC_FAILURE_MESSAGE):
        super().__init__(message)


class MetadataLookupError(Exception):
    """A single metadata request failed or returned an unusable payload."""


class GenerationCancelledError(RecommendationError):
    """A newer request for the same watchlist replaced this generation."""

    code = "generation_cancelled"
    status = 409

    def __init__(self) -> None:
        super().__init__("Recommendation generation was superseded by a newer request.")
