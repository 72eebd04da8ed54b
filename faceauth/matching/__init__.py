"""
Matching Module for Face Authentication

Two interchangeable backends implement one contract (MatchingBackend):

    - local_matcher: on-host 128-d descriptors, 1 - Euclidean distance >= 0.6
    - managed_client: external face collection search, confidence >= 90

create_backend() picks one from the "matching.backend" config value at
construction time.

Usage:
    from faceauth.matching import create_backend, BackendKind

    backend = create_backend(BackendKind.LOCAL, config, references=store)
"""

from typing import Any, Dict, Optional, Union

from faceauth.matching.interfaces import (
    BackendKind,
    MatchDecision,
    MatchingBackend,
    VerifyScope,
)
from faceauth.matching.local_matcher import (
    LocalEmbeddingMatcher,
    decode_embedding,
    encode_embedding,
    similarity,
)
from faceauth.matching.managed_client import ManagedRecognitionClient
from faceauth.matching.recognition_service import (
    FaceMatch,
    IndexedFace,
    RecognitionService,
    RekognitionService,
)


def create_backend(
    kind: Union[BackendKind, str],
    config: Dict[str, Any],
    references,
    recognition_service: Optional[RecognitionService] = None,
) -> MatchingBackend:
    """
    Build the configured matching backend.

    Args:
        kind: "local" or "managed".
        config: Full configuration dict.
        references: Credential store shared with the flow.
        recognition_service: Injected service for the managed backend. Built
                             from the "managed" section when omitted.

    Raises:
        ValueError: For an unknown backend kind.
    """
    kind = BackendKind(kind)
    jpeg_quality = config.get("capture", {}).get("jpeg_quality", 95)

    if kind == BackendKind.LOCAL:
        return LocalEmbeddingMatcher.from_config(config.get("matching", {}), references)

    managed_config = config["managed"]
    if recognition_service is None:
        timeout = config.get("flow", {}).get("request_timeout_sec", 10.0)
        recognition_service = RekognitionService.from_config(managed_config, timeout_sec=timeout)

    return ManagedRecognitionClient.from_config(
        managed_config,
        service=recognition_service,
        references=references,
        jpeg_quality=jpeg_quality,
    )


__all__ = [
    "BackendKind",
    "MatchDecision",
    "MatchingBackend",
    "VerifyScope",
    "LocalEmbeddingMatcher",
    "ManagedRecognitionClient",
    "RecognitionService",
    "RekognitionService",
    "FaceMatch",
    "IndexedFace",
    "create_backend",
    "encode_embedding",
    "decode_embedding",
    "similarity",
]
