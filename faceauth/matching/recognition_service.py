"""
Managed Recognition Service

Vendor-neutral contract for an external face collection, plus an adapter for
Amazon Rekognition built on boto3.

Contract (all synchronous, called from a worker thread):
    create_collection_if_absent(collection_id) -> bool (True if created)
    index_face(collection_id, external_id, image_bytes) -> IndexedFace
    search_face(collection_id, image_bytes, confidence_threshold, max_faces) -> [FaceMatch]
    delete_face(collection_id, reference_id)

Provider errors are translated to NoFaceDetected, AmbiguousFace or
ServiceError here so nothing above this module sees botocore types.

The client is constructed once from explicit configuration and injected into
ManagedRecognitionClient; there is no module-level client.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from faceauth.errors import AmbiguousFace, NoFaceDetected, ServiceError

logger = logging.getLogger(__name__)


@dataclass
class IndexedFace:
    """A face template stored in the collection."""

    reference_id: str
    external_id: str
    confidence: float = 0.0


@dataclass
class FaceMatch:
    """One search hit. confidence is on a 0-100 scale."""

    external_id: Optional[str]
    confidence: float
    reference_id: Optional[str] = None


class RecognitionService(ABC):
    """Abstract external face collection."""

    @abstractmethod
    def create_collection_if_absent(self, collection_id: str) -> bool:
        """Create the collection unless it exists. Returns True if it was created."""

    @abstractmethod
    def index_face(self, collection_id: str, external_id: str, image_bytes: bytes) -> IndexedFace:
        """Index the single face in the image under external_id."""

    @abstractmethod
    def search_face(
        self,
        collection_id: str,
        image_bytes: bytes,
        confidence_threshold: float,
        max_faces: int = 1,
    ) -> List[FaceMatch]:
        """Search the collection, best match first."""

    @abstractmethod
    def delete_face(self, collection_id: str, reference_id: str) -> None:
        """Delete one indexed face."""


class RekognitionService(RecognitionService):
    """
    Amazon Rekognition face collections.

    Args:
        client: A boto3 "rekognition" client. Use from_config() to build one.
        quality_filter: Rekognition QualityFilter for IndexFaces.
    """

    # Error codes that mean the request itself was fine but no usable face was found
    _NO_FACE_CODES = {"InvalidParameterException", "InvalidImageFormatException"}

    def __init__(self, client, quality_filter: str = "AUTO"):
        self.client = client
        self.quality_filter = quality_filter

    @classmethod
    def from_config(cls, config: Dict[str, Any], timeout_sec: float = 10.0) -> "RekognitionService":
        """
        Build the boto3 client from the "managed" config section.

        Credentials come from the standard AWS environment / profile chain.
        """
        client = boto3.client(
            "rekognition",
            region_name=config.get("region"),
            endpoint_url=config.get("endpoint_url"),
            config=BotoConfig(
                connect_timeout=timeout_sec,
                read_timeout=timeout_sec,
                retries={"max_attempts": 2, "mode": "standard"},
            ),
        )
        return cls(client, quality_filter=config.get("quality_filter", "AUTO"))

    def _translate(self, error: Exception, operation: str) -> Exception:
        if isinstance(error, ClientError):
            code = error.response.get("Error", {}).get("Code", "")
            if code in self._NO_FACE_CODES:
                return NoFaceDetected(detail=f"{operation}: {code}")
            logger.error(f"Rekognition {operation} failed: {code}")
            return ServiceError(detail=f"{operation}: {code}")
        logger.error(f"Rekognition {operation} failed: {error}")
        return ServiceError(detail=f"{operation}: {error}")

    def _collection_exists(self, collection_id: str) -> bool:
        kwargs: Dict[str, Any] = {}
        while True:
            response = self.client.list_collections(**kwargs)
            if collection_id in response.get("CollectionIds", []):
                return True
            next_token = response.get("NextToken")
            if not next_token:
                return False
            kwargs["NextToken"] = next_token

    def create_collection_if_absent(self, collection_id: str) -> bool:
        try:
            if self._collection_exists(collection_id):
                logger.info(f"Face collection '{collection_id}' already exists")
                return False
            self.client.create_collection(CollectionId=collection_id)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceAlreadyExistsException":
                return False
            raise self._translate(e, "CreateCollection") from e
        except BotoCoreError as e:
            raise self._translate(e, "CreateCollection") from e

        logger.info(f"Face collection '{collection_id}' created")
        return True

    def index_face(self, collection_id: str, external_id: str, image_bytes: bytes) -> IndexedFace:
        try:
            response = self.client.index_faces(
                CollectionId=collection_id,
                Image={"Bytes": image_bytes},
                ExternalImageId=external_id,
                DetectionAttributes=["DEFAULT"],
                MaxFaces=1,
                QualityFilter=self.quality_filter,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, "IndexFaces") from e

        records = response.get("FaceRecords", [])
        unindexed = response.get("UnindexedFaces", [])

        if records and unindexed:
            exceeded = any(
                "EXCEEDS_MAX_FACES" in face.get("Reasons", []) for face in unindexed
            )
            if exceeded:
                # A face was indexed but others were present; undo and reject
                self.delete_face(collection_id, records[0]["Face"]["FaceId"])
                raise AmbiguousFace()

        if not records:
            raise NoFaceDetected()

        face = records[0].get("Face", {})
        face_id = face.get("FaceId")
        if not face_id:
            raise ServiceError(detail="IndexFaces returned a record without FaceId")

        return IndexedFace(
            reference_id=face_id,
            external_id=face.get("ExternalImageId", external_id),
            confidence=float(face.get("Confidence", 0.0)),
        )

    def search_face(
        self,
        collection_id: str,
        image_bytes: bytes,
        confidence_threshold: float,
        max_faces: int = 1,
    ) -> List[FaceMatch]:
        try:
            response = self.client.search_faces_by_image(
                CollectionId=collection_id,
                Image={"Bytes": image_bytes},
                MaxFaces=max_faces,
                FaceMatchThreshold=confidence_threshold,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, "SearchFacesByImage") from e

        matches = []
        for match in response.get("FaceMatches", []):
            face = match.get("Face", {})
            matches.append(
                FaceMatch(
                    external_id=face.get("ExternalImageId"),
                    confidence=float(match.get("Similarity", 0.0)),
                    reference_id=face.get("FaceId"),
                )
            )

        matches.sort(key=lambda m: m.confidence, reverse=True)
        return matches

    def delete_face(self, collection_id: str, reference_id: str) -> None:
        try:
            self.client.delete_faces(CollectionId=collection_id, FaceIds=[reference_id])
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, "DeleteFaces") from e
        logger.info(f"Deleted face {reference_id} from '{collection_id}'")
