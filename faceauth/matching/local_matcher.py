"""
Local Embedding Matcher: compare face descriptors on this host.

Implementation of the MatchingBackend interface defined in interfaces.py.

Enrollment extracts a descriptor from the frame and returns it encoded for
the credential store. Verification extracts a fresh descriptor C, loads the
user's active stored descriptor E and computes

    similarity = 1 - euclidean_distance(E, C)

The capture is accepted iff similarity >= threshold (0.6 by default).
Only 1:1 verification is supported: the scope must name a user.
"""

import asyncio
import logging

import numpy as np

from faceauth.capture import CaptureFrame
from faceauth.errors import PersistenceError
from faceauth.matching.embedder import FaceEmbedder
from faceauth.matching.interfaces import (
    BackendKind,
    MatchDecision,
    MatchingBackend,
    VerifyScope,
)

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.6

_EMBEDDING_DTYPE = np.dtype("<f8")


def encode_embedding(embedding: np.ndarray) -> bytes:
    """Serialize a descriptor to little-endian float64 bytes."""
    return np.asarray(embedding, dtype=_EMBEDDING_DTYPE).ravel().tobytes()


def decode_embedding(data: bytes) -> np.ndarray:
    """
    Inverse of encode_embedding.

    Raises:
        PersistenceError: If the bytes are not a whole number of float64 values.
    """
    if not data or len(data) % _EMBEDDING_DTYPE.itemsize != 0:
        raise PersistenceError(detail=f"stored descriptor has invalid length {len(data)}")
    return np.frombuffer(data, dtype=_EMBEDDING_DTYPE).astype(np.float64)


def similarity(reference: np.ndarray, candidate: np.ndarray) -> float:
    """
    1 minus the Euclidean distance between two descriptors.

    Pure and deterministic; computed in float64.

    Raises:
        ValueError: If the descriptors differ in length.
    """
    reference = np.asarray(reference, dtype=np.float64).ravel()
    candidate = np.asarray(candidate, dtype=np.float64).ravel()

    if reference.shape[0] != candidate.shape[0]:
        raise ValueError(
            f"Embedding dimension mismatch: reference={reference.shape[0]}, "
            f"candidate={candidate.shape[0]}"
        )

    return 1.0 - float(np.linalg.norm(reference - candidate))


class LocalEmbeddingMatcher(MatchingBackend):
    """
    Descriptor matching against the user's stored reference.

    Args:
        embedder: Object with extract(image) -> ndarray (FaceEmbedder).
        references: Credential store used to read the active reference.
        threshold: Minimum similarity to accept.
    """

    kind = BackendKind.LOCAL

    def __init__(
        self,
        embedder: FaceEmbedder,
        references,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ):
        self.embedder = embedder
        self.references = references
        self.threshold = threshold

    @classmethod
    def from_config(cls, config: dict, references) -> "LocalEmbeddingMatcher":
        return cls(
            embedder=FaceEmbedder(config),
            references=references,
            threshold=config.get("similarity_threshold", DEFAULT_SIMILARITY_THRESHOLD),
        )

    def is_accepted(self, score: float) -> bool:
        return score >= self.threshold

    async def _extract(self, frame: CaptureFrame) -> np.ndarray:
        return await asyncio.to_thread(self.embedder.extract, frame.image)

    async def enroll(self, user_id: str, frame: CaptureFrame) -> bytes:
        embedding = await self._extract(frame)
        logger.info(f"Extracted enrollment descriptor for user {user_id}")
        return encode_embedding(embedding)

    async def verify(self, frame: CaptureFrame, scope: VerifyScope) -> MatchDecision:
        if scope.is_collection:
            raise ValueError("The local backend verifies against a single user")

        candidate = await self._extract(frame)
        stored = await asyncio.to_thread(
            self.references.fetch_active, scope.user_id, BackendKind.LOCAL
        )
        reference = decode_embedding(stored)

        score = similarity(reference, candidate)
        matched = self.is_accepted(score)

        logger.info(
            f"Local verification for {scope.user_id}: similarity={score:.3f} "
            f"threshold={self.threshold} matched={matched}"
        )

        return MatchDecision(
            matched=matched,
            confidence=score,
            subject_id=scope.user_id,
            backend_kind=self.kind,
            details={"method": "euclidean", "threshold": self.threshold},
        )