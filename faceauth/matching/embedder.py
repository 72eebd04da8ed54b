"""
Face Descriptor Extractor

Extracts 128-dimensional face descriptors with dlib's ResNet face
recognition model through the face_recognition package. Descriptors of the
same person lie within roughly 0.6 Euclidean distance of each other, which is
what the local matcher's similarity threshold is calibrated against.

Exactly one face must be present: zero faces raises NoFaceDetected, more than
one raises AmbiguousFace.

Usage:
    from faceauth.matching.embedder import FaceEmbedder

    embedder = FaceEmbedder(config)
    descriptor = embedder.extract(frame.image)  # (128,) float64
"""

import logging
from typing import Optional

import cv2
import numpy as np

from faceauth.errors import AmbiguousFace, NoFaceDetected

logger = logging.getLogger(__name__)

EMBEDDING_DIM = 128


class FaceEmbedder:
    """
    Extract identity descriptors from BGR frames.

    Args:
        config: Dictionary with keys:
            - detection_model: "hog" (CPU, default) or "cnn" (dlib CUDA build)
            - upsample: Times to upsample the image when looking for faces
            - num_jitters: Re-samplings per descriptor (higher = slower, steadier)
    """

    def __init__(self, config: Optional[dict] = None):
        if config is None:
            config = {}

        self.detection_model = config.get("detection_model", "hog")
        self.upsample = config.get("upsample", 1)
        self.num_jitters = config.get("num_jitters", 1)

        self._api = None
        self.is_loaded = False

    def load_model(self) -> None:
        """Load the dlib models. Called lazily by extract()."""
        if self.is_loaded:
            return

        import face_recognition

        self._api = face_recognition
        self.is_loaded = True
        logger.info(f"FaceEmbedder loaded (detector={self.detection_model})")

    def extract(self, image: np.ndarray) -> np.ndarray:
        """
        Extract the descriptor of the single face in a BGR image.

        Returns:
            Descriptor as float64 ndarray of shape (128,).

        Raises:
            NoFaceDetected: No face in the image.
            AmbiguousFace: More than one face in the image.
        """
        if not self.is_loaded:
            self.load_model()

        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

        locations = self._api.face_locations(
            rgb,
            number_of_times_to_upsample=self.upsample,
            model=self.detection_model,
        )

        if not locations:
            raise NoFaceDetected()
        if len(locations) > 1:
            logger.info(f"Rejected frame with {len(locations)} faces")
            raise AmbiguousFace()

        encodings = self._api.face_encodings(
            rgb, known_face_locations=locations, num_jitters=self.num_jitters
        )
        if not encodings:
            raise NoFaceDetected()

        return np.asarray(encodings[0], dtype=np.float64)
