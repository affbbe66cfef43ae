"""Error taxonomy shared by the core components and the API."""

from __future__ import annotations

__all__ = [
    "RideKeeperError",
    "ValidationError",
    "NotFoundError",
    "NoContactError",
    "ConflictError",
    "OfferAlreadySentError",
    "RideExistsError",
    "RideStateError",
    "TransportError",
    "ProviderError",
    "InferenceError",
]


class RideKeeperError(Exception):
    """Base class. ``error_code`` is the machine-readable reason."""

    error_code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RideKeeperError):
    """Missing or malformed input. Rejected before any side effect."""

    error_code = "INVALID_REQUEST"
    status_code = 400


class NotFoundError(RideKeeperError):
    error_code = "NOT_FOUND"
    status_code = 404


class NoContactError(RideKeeperError):
    """Patient has no phone and no proxy contact. Needs a human, not a retry."""

    error_code = "NO_CONTACT"
    status_code = 422

    def __init__(self, appointment_id: str) -> None:
        super().__init__(
            f"No phone number available for patient or proxy (appointment {appointment_id})"
        )
        self.appointment_id = appointment_id


class ConflictError(RideKeeperError):
    """Request conflicts with current state. State is left unchanged."""

    error_code = "CONFLICT"
    status_code = 409


class OfferAlreadySentError(ConflictError):
    error_code = "OFFER_ALREADY_SENT"


class RideExistsError(ConflictError):
    error_code = "RIDE_EXISTS"


class RideStateError(ConflictError):
    error_code = "RIDE_STATE_CONFLICT"


class TransportError(RideKeeperError):
    """Message gateway rejected or failed the send."""

    error_code = "SMS_FAILED"
    status_code = 502


class ProviderError(RideKeeperError):
    """Ride provider call failed or timed out."""

    error_code = "PROVIDER_ERROR"
    status_code = 502


class InferenceError(RideKeeperError):
    """Inference provider unavailable or returned unusable output.

    Never surfaced to callers: both inference integrations fall back to
    their deterministic path when this is raised.
    """

    error_code = "INFERENCE_UNAVAILABLE"
    status_code = 503
