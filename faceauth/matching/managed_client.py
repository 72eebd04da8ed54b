"""
Managed Recognition Client: delegate matching to an external face collection.

Implementation of the MatchingBackend interface defined in interfaces.py.

- enroll() indexes the frame under external id == user id and returns the
  collection's face id as the reference.
- verify() searches the whole collection and accepts the best hit iff its
  confidence >= threshold (90 on a 0-100 scale by default).

The collection's external id is only a lookup key. A hit is accepted only if
the credential store holds an active managed enrollment for that user whose
reference is the face id the collection returned.
"""

import asyncio
import logging
from typing import Optional

from faceauth.capture import CaptureFrame
from faceauth.errors import FaceAuthError, NotFound
from faceauth.matching.interfaces import (
    BackendKind,
    MatchDecision,
    MatchingBackend,
    VerifyScope,
)
from faceauth.matching.recognition_service import RecognitionService

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 90.0


class ManagedRecognitionClient(MatchingBackend):
    """
    Face collection backed matcher.

    Args:
        service: RecognitionService adapter (e.g. RekognitionService).
        references: Credential store used to confirm matched subjects.
        collection_id: Name of the face collection.
        threshold: Minimum confidence (0-100) to accept.
        max_faces: Number of search hits requested.
        jpeg_quality: Quality used when encoding frames for upload.
    """

    kind = BackendKind.MANAGED

    def __init__(
        self,
        service: RecognitionService,
        references,
        collection_id: str,
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        max_faces: int = 1,
        jpeg_quality: int = 95,
    ):
        self.service = service
        self.references = references
        self.collection_id = collection_id
        self.threshold = threshold
        self.max_faces = max_faces
        self.jpeg_quality = jpeg_quality
        self._collection_ready = False
        self._start_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: dict,
        service: RecognitionService,
        references,
        jpeg_quality: int = 95,
    ) -> "ManagedRecognitionClient":
        return cls(
            service=service,
            references=references,
            collection_id=config["collection_id"],
            threshold=config.get("confidence_threshold", DEFAULT_CONFIDENCE_THRESHOLD),
            max_faces=config.get("max_faces", 1),
            jpeg_quality=jpeg_quality,
        )

    @property
    def collection_ready(self) -> bool:
        return self._collection_ready

    async def start(self) -> None:
        """Ensure the collection exists. Only the first call reaches the service."""
        async with self._start_lock:
            if self._collection_ready:
                return
            await asyncio.to_thread(self.service.create_collection_if_absent, self.collection_id)
            self._collection_ready = True

    def is_accepted(self, confidence: float) -> bool:
        return confidence >= self.threshold

    async def enroll(self, user_id: str, frame: CaptureFrame) -> bytes:
        image_bytes = frame.to_jpeg(self.jpeg_quality)
        indexing = asyncio.ensure_future(
            asyncio.to_thread(self.service.index_face, self.collection_id, user_id, image_bytes)
        )
        try:
            indexed = await asyncio.shield(indexing)
        except asyncio.CancelledError:
            await self._undo_index(user_id, indexing)
            raise
        logger.info(f"Indexed face for user {user_id} in '{self.collection_id}'")
        return indexed.reference_id.encode("utf-8")

    async def _undo_index(self, user_id: str, indexing: asyncio.Future) -> None:
        """Remove a face whose IndexFaces call outlived a cancelled enrollment."""
        try:
            indexed = await indexing
        except FaceAuthError:
            return
        try:
            await asyncio.to_thread(
                self.service.delete_face, self.collection_id, indexed.reference_id
            )
        except FaceAuthError as e:
            logger.error(f"Failed to remove abandoned face for {user_id}: {e.detail or e}")
            return
        logger.info(f"Removed face indexed for {user_id} after cancelled enrollment")

    def _reject(self, confidence: float, reason: str, subject_id: Optional[str] = None) -> MatchDecision:
        return MatchDecision(
            matched=False,
            confidence=confidence,
            subject_id=subject_id,
            backend_kind=self.kind,
            details={"reason": reason, "threshold": self.threshold},
        )

    async def verify(self, frame: CaptureFrame, scope: VerifyScope) -> MatchDecision:
        image_bytes = frame.to_jpeg(self.jpeg_quality)
        matches = await asyncio.to_thread(
            self.service.search_face,
            self.collection_id,
            image_bytes,
            self.threshold,
            self.max_faces,
        )

        if not matches:
            logger.info("Managed search returned no match")
            return self._reject(0.0, "no_match")

        top = matches[0]
        if not top.external_id:
            logger.warning("Managed match without an external id")
            return self._reject(top.confidence, "missing_external_id")

        if not self.is_accepted(top.confidence):
            logger.info(f"Managed match below threshold: confidence={top.confidence:.2f}")
            return self._reject(top.confidence, "below_threshold")

        if not scope.is_collection and top.external_id != scope.user_id:
            logger.info("Managed match belongs to a different user than requested")
            return self._reject(top.confidence, "different_subject")

        try:
            stored = await asyncio.to_thread(
                self.references.fetch_active, top.external_id, BackendKind.MANAGED
            )
        except NotFound:
            logger.warning(f"Managed match for {top.external_id} has no active enrollment")
            return self._reject(top.confidence, "stale_mapping")

        if top.reference_id is not None and stored.decode("utf-8") != top.reference_id:
            logger.warning(f"Managed match for {top.external_id} is not the active reference")
            return self._reject(top.confidence, "stale_mapping")

        logger.info(
            f"Managed verification matched {top.external_id}: confidence={top.confidence:.2f}"
        )
        return MatchDecision(
            matched=True,
            confidence=top.confidence,
            subject_id=top.external_id,
            backend_kind=self.kind,
            details={"threshold": self.threshold},
        )

    async def discard(self, user_id: str, reference: bytes) -> None:
        await asyncio.to_thread(
            self.service.delete_face, self.collection_id, reference.decode("utf-8")
        )
        logger.info(f"Discarded unconfirmed face for user {user_id}")

    async def remove(self, user_id: str, reference: bytes) -> None:
        await asyncio.to_thread(
            self.service.delete_face, self.collection_id, reference.decode("utf-8")
        )
