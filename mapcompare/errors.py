"""Typed failures raised by the comparison engine.

Every error carries a stable ``code`` and optional structured ``details``
so the API layer can render or translate it without parsing messages.
"""


class ComparisonError(Exception):
    """Base class for all comparison engine failures."""

    code = "COMPARISON_ERROR"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class TopicMismatch(ComparisonError):
    """A selected map belongs to a different topic than the one requested."""

    code = "TOPIC_MISMATCH"


class MapNotFound(ComparisonError):
    code = "MAP_NOT_FOUND"


class ComparisonNotFound(ComparisonError):
    code = "COMPARISON_NOT_FOUND"


class PermissionDenied(ComparisonError):
    """Caller may not view a comparison or manage its permissions."""

    code = "PERMISSION_DENIED"


class NoMapsSelected(ComparisonError):
    """Mode preconditions unmet (e.g. fewer than two maps for all-vs-all)."""

    code = "NO_MAPS_SELECTED"


class NormalizationUnavailable(ComparisonError):
    """The text-normalization service failed after exhausting retries."""

    code = "NORMALIZATION_UNAVAILABLE"
