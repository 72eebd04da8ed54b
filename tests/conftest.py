"""
Shared fixtures and in-memory collaborators for the face authentication tests.

Nothing here touches a camera, the network or the dlib models.
"""

import os
import shutil
import sys
import tempfile
import time
import uuid

import httpx
import numpy as np
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faceauth.capture import CameraHandle, CaptureController, CaptureFrame
from faceauth.credential_store import CredentialStore
from faceauth.crypto import EnvelopeCipher
from faceauth.errors import CameraUnavailable, NoFaceDetected
from faceauth.matching.recognition_service import FaceMatch, IndexedFace, RecognitionService
from faceauth.session_bridge import SessionBridge


# ============================================================
# In-memory collaborators
# ============================================================

class FakeEmbedder:
    """Returns queued descriptors (or raises queued errors) in order."""

    def __init__(self):
        self.results = []
        self.calls = 0

    def push(self, *results):
        self.results.extend(results)

    def extract(self, image):
        self.calls += 1
        if not self.results:
            raise NoFaceDetected(detail="no result queued")
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeCamera(CaptureController):
    """Camera that always produces a blank frame."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.acquired = 0
        self.released = 0
        self.frames = 0

    @property
    def is_open(self) -> bool:
        return self.acquired > self.released

    async def acquire(self, constraints):
        if self.fail:
            raise CameraUnavailable(detail="NotAllowedError")
        self.acquired += 1
        return CameraHandle(constraints=constraints)

    async def capture_frame(self, handle):
        if handle.released:
            raise CameraUnavailable(detail="released")
        self.frames += 1
        return CaptureFrame(image=np.zeros((8, 8, 3), dtype=np.uint8))

    async def release(self, handle):
        if handle.released:
            return
        handle.released = True
        self.released += 1


class FakeRecognitionService(RecognitionService):
    """Face collection kept in a dict. search_face returns whatever is queued."""

    def __init__(self):
        self.collections = set()
        self.faces = {}
        self.create_calls = 0
        self.search_results = []
        self.deleted = []
        self.index_error = None
        self.index_delay = 0.0

    def create_collection_if_absent(self, collection_id):
        self.create_calls += 1
        created = collection_id not in self.collections
        self.collections.add(collection_id)
        return created

    def index_face(self, collection_id, external_id, image_bytes):
        if self.index_delay:
            time.sleep(self.index_delay)
        if self.index_error is not None:
            raise self.index_error
        reference_id = str(uuid.uuid4())
        self.faces[reference_id] = external_id
        return IndexedFace(reference_id=reference_id, external_id=external_id, confidence=99.9)

    def queue_match(self, external_id, confidence, reference_id):
        self.search_results.append(
            [FaceMatch(external_id=external_id, confidence=confidence, reference_id=reference_id)]
        )

    def search_face(self, collection_id, image_bytes, confidence_threshold, max_faces=1):
        if not self.search_results:
            return []
        return self.search_results.pop(0)

    def delete_face(self, collection_id, reference_id):
        self.deleted.append(reference_id)
        self.faces.pop(reference_id, None)


class FakeIdentityProvider:
    """httpx.MockTransport handler standing in for the face-login endpoint."""

    def __init__(self):
        self.calls = []
        self.status_code = 200
        self.payload = {
            "success": True,
            "session": {
                "access_token": "access-123",
                "refresh_token": "refresh-456",
                "user": {"id": "usr_alice"},
            },
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        return httpx.Response(self.status_code, json=self.payload)

    def bridge(self) -> SessionBridge:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self))
        return SessionBridge("https://idp.test/functions/v1/face-login", "idp-key", client)


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def master_key():
    return os.urandom(32)


@pytest.fixture
def cipher(master_key):
    return EnvelopeCipher(master_key)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test data."""
    dirpath = tempfile.mkdtemp()
    yield dirpath
    shutil.rmtree(dirpath, ignore_errors=True)


@pytest.fixture
def store(temp_dir, cipher):
    """CredentialStore backed by a temporary SQLite file."""
    credential_store = CredentialStore(os.path.join(temp_dir, "faceauth.sqlite"), cipher)
    yield credential_store
    credential_store.close()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def camera():
    return FakeCamera()


@pytest.fixture
def denied_camera():
    """Camera whose acquisition is refused (permission denied)."""
    return FakeCamera(fail=True)


@pytest.fixture
def recognition_service():
    return FakeRecognitionService()


@pytest.fixture
def idp():
    return FakeIdentityProvider()


@pytest.fixture
def test_config(temp_dir):
    """Full configuration with fast timings."""
    return {
        "capture": {"width": 640, "height": 480, "jpeg_quality": 90, "client_frame_timeout_sec": 2.0},
        "matching": {"backend": "local", "similarity_threshold": 0.6},
        "managed": {
            "collection_id": "test-faces",
            "region": "eu-central-1",
            "confidence_threshold": 90.0,
            "max_faces": 1,
        },
        "storage": {"db_path": os.path.join(temp_dir, "faceauth.sqlite")},
        "encryption": {"master_key_env": "FACEAUTH_TEST_MASTER_KEY"},
        "session": {"exchange_url": "https://idp.test/face-login", "api_key_env": None},
        "flow": {
            "reset_delay_sec": 0.0,
            "success_delay_sec": 0.5,
            "request_timeout_sec": 2.0,
            "max_attempts": 5,
            "require_enrollment_choice": True,
        },
        "api": {"cors_origins": ["*"]},
    }
