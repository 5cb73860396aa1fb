"""
Error taxonomy for the resize engine.

Validation errors are rejected before any state is touched, vision model
errors are recovered locally by the orchestrator, and storage errors are
surfaced to the caller without disturbing in-memory registries.
"""


class InvalidInputError(ValueError):
    """Raised for malformed elements, non-positive dimensions or bad ratings."""


class SessionNotFoundError(KeyError):
    """Raised when a resize session id is unknown."""


class VariantNotFoundError(KeyError):
    """Raised when a prompt variant id is unknown."""


class SessionStorageError(RuntimeError):
    """Raised when a storage operation fails in a non-recoverable way."""


class VisionModelError(RuntimeError):
    """Base class for failures of the external vision model."""


class ModelUnavailableError(VisionModelError):
    """The model is not configured, rate limited, or could not be reached."""


class MalformedModelResponseError(VisionModelError):
    """The model answered, but not with a usable placement set."""
