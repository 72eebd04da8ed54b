"""
Error Taxonomy for Face Authentication

Every failure the enrollment/verification pipeline can produce is a
FaceAuthError subclass. Each class carries:

- kind: a stable identifier used by clients and tests
- retryable: whether the flow resets to Ready and lets the user try again
- message: the default human-readable reason shown to the user

Collaborator exceptions (botocore, sqlite3, httpx, cryptography) are
translated into these classes at the boundary where they occur.
"""

from typing import Optional


class FaceAuthError(Exception):
    """Base class for all face authentication failures."""

    kind = "face_auth_error"
    retryable = False
    message = "Face authentication failed."

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """User-facing representation. The internal detail is not included."""
        return {"kind": self.kind, "retryable": self.retryable, "message": self.message}


class CameraUnavailable(FaceAuthError):
    kind = "camera_unavailable"
    message = "Camera access denied or not available."


class NoFaceDetected(FaceAuthError):
    kind = "no_face_detected"
    retryable = True
    message = "No face detected. Please look directly at the camera."


class AmbiguousFace(FaceAuthError):
    kind = "ambiguous_face"
    retryable = True
    message = "More than one face detected. Make sure only you are in the frame."


class SimilarityBelowThreshold(FaceAuthError):
    kind = "similarity_below_threshold"
    retryable = True
    message = "Face does not match. Please try again."

    def __init__(self, confidence: float = 0.0, message: Optional[str] = None):
        super().__init__(message)
        self.confidence = confidence


class NoManagedMatch(FaceAuthError):
    kind = "no_managed_match"
    retryable = True
    message = "No matching face found. Please register first."


class ServiceError(FaceAuthError):
    kind = "service_error"
    retryable = True
    message = "The recognition service is temporarily unavailable. Please try again."


class SessionExchangeError(ServiceError):
    # Surfaced to the user, never retried automatically
    kind = "session_exchange_error"
    retryable = False
    message = "Signing you in failed. Please start again."


class PersistenceError(FaceAuthError):
    kind = "persistence_error"
    message = "Failed to save face registration. Please try again."


class NotFound(FaceAuthError):
    kind = "not_found"
    message = "No face authentication registered for this user. Please enroll first."


class TooManyAttempts(FaceAuthError):
    kind = "too_many_attempts"
    message = "Too many failed attempts. Please sign in with your password."


class InvalidTransition(FaceAuthError):
    """Raised when a caller drives the flow from a state that does not allow it."""

    kind = "invalid_transition"
    message = "This action is not allowed right now."
