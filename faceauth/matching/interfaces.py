"""
Matching Interfaces Module

This module defines the contract shared by the two matching backends:

1. LocalEmbeddingMatcher - extracts a face descriptor on this host and
   compares it against the user's stored descriptor (1:1).
2. ManagedRecognitionClient - delegates indexing and search to an external
   face collection, which returns the matched subject (1:N).

The backend is chosen once from configuration when the service is built
(see faceauth.matching.create_backend). Callers only ever see
MatchingBackend.

Usage:
    from faceauth.matching.interfaces import VerifyScope

    decision = await backend.verify(frame, VerifyScope.for_user("usr_123"))
    if decision.matched:
        ...
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from faceauth.capture import CaptureFrame
from faceauth.errors import FaceAuthError, NoManagedMatch, SimilarityBelowThreshold


class BackendKind(str, enum.Enum):
    LOCAL = "local"
    MANAGED = "managed"


@dataclass(frozen=True)
class VerifyScope:
    """
    What a verification compares against.

    Attributes:
        user_id: Compare only against this user's active reference. None means
                 search the whole collection and trust the returned subject.
    """

    user_id: Optional[str] = None

    @classmethod
    def for_user(cls, user_id: str) -> "VerifyScope":
        return cls(user_id=user_id)

    @classmethod
    def collection(cls) -> "VerifyScope":
        return cls(user_id=None)

    @property
    def is_collection(self) -> bool:
        return self.user_id is None


@dataclass
class MatchDecision:
    """
    Result of a verification.

    Attributes:
        matched: True if the capture is accepted as the subject.
        confidence: 0.0-1.0 for the local backend, 0-100 for the managed backend.
        subject_id: The user the capture was matched to. The managed backend
                    fills it from the collection; the local backend echoes the
                    scope's user.
        backend_kind: Which backend produced the decision.
        details: Backend-specific values for logging and debugging. Never
                 contains reference material.
    """

    matched: bool
    confidence: float
    subject_id: Optional[str] = None
    backend_kind: BackendKind = BackendKind.LOCAL
    details: Dict[str, Any] = field(default_factory=dict)

    def rejection(self) -> FaceAuthError:
        """The error to report for a rejected decision."""
        if self.backend_kind == BackendKind.MANAGED and self.subject_id is None:
            return NoManagedMatch()
        return SimilarityBelowThreshold(confidence=self.confidence)


class MatchingBackend(ABC):
    """
    Abstract base class for a face matching backend.

    Implementations raise FaceAuthError subclasses:
        NoFaceDetected, AmbiguousFace, ServiceError (retryable) and
        NotFound (no enrollment to verify against).
    A below-threshold comparison is not an exception; it is a MatchDecision
    with matched=False.
    """

    kind: BackendKind

    async def start(self) -> None:
        """One-time startup work. Called once by the composition root."""

    @abstractmethod
    async def enroll(self, user_id: str, frame: CaptureFrame) -> bytes:
        """
        Derive a reference for user_id from the frame.

        Returns:
            The encoded reference to hand to the credential store.
        """

    @abstractmethod
    async def verify(self, frame: CaptureFrame, scope: VerifyScope) -> MatchDecision:
        """Compare the frame against the scope."""

    async def discard(self, user_id: str, reference: bytes) -> None:
        """Undo an enroll() whose result will not be persisted."""

    async def remove(self, user_id: str, reference: bytes) -> None:
        """Remove any remote state behind a stored reference (user opt-out)."""
