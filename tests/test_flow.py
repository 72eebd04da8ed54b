"""
Tests for the enrollment/verification state machine.

This test suite verifies:
- End-to-end verification with the local and managed backends
- Retryable failures return to Ready, fatal failures are terminal
- The enrollment choice step (enable / skip)
- Camera lifetime (released on success, fatal failure and cancel)
- Retry limit, backend timeout and cancellation of in-flight work
- The session exchange happens exactly once per successful verification

Run with: pytest tests/test_flow.py -v
"""

import asyncio
import threading
import time
from unittest.mock import MagicMock

import numpy as np
import pytest

from faceauth.capture import OpenCVCaptureController
from faceauth.errors import InvalidTransition, NoFaceDetected, PersistenceError
from faceauth.flow import FaceAuthFlow, FlowMode, FlowSettings, FlowState
from faceauth.matching import (
    BackendKind,
    LocalEmbeddingMatcher,
    ManagedRecognitionClient,
    MatchDecision,
    MatchingBackend,
    encode_embedding,
)
from faceauth.session_bridge import AmbientSession


# ============================================================
# Test Fixtures
# ============================================================

class EventRecorder:
    """Flow listener that keeps every event."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    @property
    def states(self):
        return [e.state for e in self.events if e.type == "state"]

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]

    @property
    def last_failure(self):
        failures = self.of_type("failure")
        return failures[-1] if failures else None


class SlowBackend(MatchingBackend):
    """Backend whose calls block until cancelled."""

    kind = BackendKind.LOCAL

    def __init__(self):
        self.entered = None
        self.cancelled = False

    async def _block(self):
        self.entered.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.cancelled = True
            raise

    async def enroll(self, user_id, frame):
        await self._block()
        return b""

    async def verify(self, frame, scope):
        await self._block()
        return MatchDecision(matched=True, confidence=1.0, subject_id=scope.user_id)


def offset_embedding(distance):
    embedding = np.zeros(128)
    embedding[0] = distance
    return embedding


async def wait_for_state(flow, state, timeout=2.0):
    """Poll until the flow reaches the given state."""
    async def poll():
        while flow.state != state:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def settings():
    return FlowSettings(
        reset_delay_sec=0.0,
        success_delay_sec=1.5,
        request_timeout_sec=2.0,
        max_attempts=5,
        require_enrollment_choice=True,
    )


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def local_backend(embedder, store):
    return LocalEmbeddingMatcher(embedder, store, threshold=0.6)


@pytest.fixture
def managed_backend(recognition_service, store):
    return ManagedRecognitionClient(
        recognition_service, store, collection_id="test-faces", threshold=90.0
    )


@pytest.fixture
def make_flow(store, camera, idp, settings, recorder):
    def factory(backend, capture=None, flow_settings=None):
        return FaceAuthFlow(
            backend=backend,
            store=store,
            capture=capture or camera,
            bridge=idp.bridge(),
            settings=flow_settings or settings,
            session=AmbientSession(),
            listener=recorder,
        )
    return factory


@pytest.fixture
def alice_enrolled(store):
    """usr_alice enrolled on the local backend with the zero descriptor."""
    store.upsert("usr_alice", BackendKind.LOCAL, encode_embedding(np.zeros(128)))
    return "usr_alice"


# ============================================================
# Verification
# ============================================================

class TestLocalVerification:
    """Verification with the on-host matcher."""

    def test_successful_verification(
        self, make_flow, local_backend, embedder, alice_enrolled, recorder, idp, camera, store
    ):
        """A close capture signs the user in and releases the camera."""
        embedder.push(offset_embedding(0.1))
        flow = make_flow(local_backend)

        async def scenario():
            await flow.start_verification(alice_enrolled)
            await flow.capture()

        asyncio.run(scenario())

        assert flow.state == FlowState.SUCCESS
        assert recorder.states == [
            FlowState.CAMERA_INITIALIZING,
            FlowState.READY,
            FlowState.CAPTURING,
            FlowState.PROCESSING,
            FlowState.SUCCESS,
        ]
        success = recorder.of_type("success")[0]
        assert success.user_id == "usr_alice"
        assert success.confidence == pytest.approx(0.9)
        assert success.data["success_delay_sec"] == 1.5

        assert len(idp.calls) == 1
        assert flow.session.is_authenticated
        assert flow.session.tokens.access_token == "access-123"

        assert camera.acquired == 1
        assert camera.released == 1
        assert not flow.camera_open
        assert store.get_active_record("usr_alice", BackendKind.LOCAL).last_used_at is not None

    def test_below_threshold_is_retryable(
        self, make_flow, local_backend, embedder, alice_enrolled, recorder, idp, camera
    ):
        """Similarity 0.599 shows a retryable failure and returns to Ready."""
        embedder.push(offset_embedding(0.401))
        flow = make_flow(local_backend)

        async def scenario():
            await flow.start_verification(alice_enrolled)
            await flow.capture()

        asyncio.run(scenario())

        assert flow.state == FlowState.READY
        assert recorder.states[-3:] == [
            FlowState.PROCESSING,
            FlowState.RETRYABLE_FAILURE,
            FlowState.READY,
        ]
        failure = recorder.last_failure
        assert failure.error["kind"] == "similarity_below_threshold"
        assert failure.error["retryable"] is True
        assert failure.confidence == pytest.approx(0.599)
        assert idp.calls == []
        assert camera.is_open
        assert flow.camera_open
        assert not flow.is_busy
        assert not flow.fallback_available

    def test_retry_after_failure_succeeds(
        self, make_flow, local_backend, embedder, alice_enrolled, idp
    ):
        """A second capture after a rejected one can succeed."""
        embedder.push(NoFaceDetected(), offset_embedding(0.2))
        flow = make_flow(local_backend)

        async def scenario():
            await flow.start_verification(alice_enrolled)
            await flow.capture()
            assert flow.state == FlowState.READY
            await flow.capture()

        asyncio.run(scenario())

        assert flow.state == FlowState.SUCCESS
        assert len(idp.calls) == 1

    def test_unenrolled_user_is_not_found(self, make_flow, local_backend, recorder, camera):
        """Verifying a user without enrollment fails before opening the camera."""
        flow = make_flow(local_backend)

        asyncio.run(flow.start_verification("usr_nobody"))

        assert flow.state == FlowState.FATAL_FAILURE
        assert recorder.last_failure.error["kind"] == "not_found"
        assert camera.acquired == 0

    def test_local_backend_requires_user(self, make_flow, local_backend):
        flow = make_flow(local_backend)
        with pytest.raises(ValueError):
            asyncio.run(flow.start_verification(None))
        assert flow.state == FlowState.IDLE

    def test_session_exchange_failure_is_fatal(
        self, make_flow, local_backend, embedder, alice_enrolled, recorder, idp, camera, store
    ):
        """A failed token exchange ends the flow without retrying it."""
        idp.status_code = 500
        idp.payload = {"success": False, "error": "provider down"}
        embedder.push(offset_embedding(0.1))
        flow = make_flow(local_backend)

        async def scenario():
            await flow.start_verification(alice_enrolled)
            await flow.capture()

        asyncio.run(scenario())

        assert flow.state == FlowState.FATAL_FAILURE
        assert recorder.last_failure.error["kind"] == "session_exchange_error"
        assert recorder.last_failure.error["retryable"] is False
        assert len(idp.calls) == 1
        assert not flow.session.is_authenticated
        assert not camera.is_open
        assert store.get_active_record("usr_alice", BackendKind.LOCAL).last_used_at is None

    def test_last_used_write_failure_keeps_session(
        self, make_flow, local_backend, embedder, alice_enrolled, store, monkeypatch
    ):
        """Once tokens are issued, a failed lastUsedAt write does not undo the sign-in."""
        def failing_touch(*args, **kwargs):
            raise PersistenceError(detail="database is locked")

        monkeypatch.setattr(store, "touch_last_used", failing_touch)
        embedder.push(offset_embedding(0.1))
        flow = make_flow(local_backend)

        async def scenario():
            await flow.start_verification(alice_enrolled)
            await flow.capture()

        asyncio.run(scenario())

        assert flow.state == FlowState.SUCCESS
        assert flow.session.is_authenticated


class TestManagedVerification:
    """Verification against the face collection."""

    def test_collection_search_signs_in_matched_subject(
        self, make_flow, managed_backend, recognition_service, store, recorder, idp
    ):
        """Without a user id the subject comes from the collection match."""
        store.upsert("usr_bob", BackendKind.MANAGED, b"face-bob")
        recognition_service.queue_match("usr_bob", 97.5, "face-bob")
        flow = make_flow(managed_backend)

        async def scenario():
            await flow.start_verification()
            await flow.capture()

        asyncio.run(scenario())

        assert flow.state == FlowState.SUCCESS
        success = recorder.of_type("success")[0]
        assert success.user_id == "usr_bob"
        assert success.confidence == 97.5
        assert flow.user_id == "usr_bob"
        assert len(idp.calls) == 1
        assert b'"userId":"usr_bob"' in idp.calls[0].content.replace(b" ", b"")

    def test_no_match_is_retryable(self, make_flow, managed_backend, recorder, idp):
        flow = make_flow(managed_backend)

        async def scenario():
            await flow.start_verification()
            await flow.capture()

        asyncio.run(scenario())

        assert flow.state == FlowState.READY
        assert recorder.last_failure.error["kind"] == "no_managed_match"
        assert idp.calls == []


# ============================================================
# Enrollment
# ============================================================

class TestEnrollment:
    """Enrollment with and without the choice step."""

    def test_enable_persists_reference(
        self, make_flow, local_backend, embedder, recorder, camera, store
    ):
        """Capture, then enable: the descriptor becomes the active reference."""
        embedder.push(offset_embedding(0.3))
        flow = make_flow(local_backend)

        async def scenario():
            await flow.start_enrollment("usr_alice", device_info={"platform": "test"})
            await flow.capture()
            assert flow.state == FlowState.AWAITING_CHOICE
            assert not camera.is_open
            await flow.choose(True)

        asyncio.run(scenario())

        assert flow.state == FlowState.SUCCESS
        assert recorder.of_type("success")[0].enrolled is True
        stored = store.fetch_active("usr_alice", BackendKind.LOCAL)
        assert stored == encode_embedding(offset_embedding(0.3))
        assert store.get_active_record("usr_alice", BackendKind.LOCAL).device_info == {
            "platform": "test"
        }

    def test_skip_persists_nothing(self, make_flow, local_backend, embedder, recorder, store):
        embedder.push(offset_embedding(0.3))
        flow = make_flow(local_backend)

        async def scenario():
            await flow.start_enrollment("usr_alice")
            await flow.capture()
            await flow.choose(False)

        asyncio.run(scenario())

        assert flow.state == FlowState.SUCCESS
        assert recorder.of_type("success")[0].enrolled is False
        assert not store.is_enabled("usr_alice", BackendKind.LOCAL)

    def test_managed_skip_deletes_indexed_face(
        self, make_flow, managed_backend, recognition_service, store
    ):
        """Skipping after a managed capture removes the face from the collection."""
        flow = make_flow(managed_backend)

        async def scenario():
            await flow.start_enrollment("usr_bob")
            await flow.capture()
            await flow.choose(False)

        asyncio.run(scenario())

        assert len(recognition_service.deleted) == 1
        assert recognition_service.faces == {}
        assert not store.is_enabled("usr_bob", BackendKind.MANAGED)

    def test_managed_enable_stores_face_id(
        self, make_flow, managed_backend, recognition_service, store
    ):
        flow = make_flow(managed_backend)

        async def scenario():
            await flow.start_enrollment("usr_bob")
            await flow.capture()
            await flow.choose(True)

        asyncio.run(scenario())

        face_id = store.fetch_active("usr_bob", BackendKind.MANAGED).decode()
        assert recognition_service.faces[face_id] == "usr_bob"

    def test_without_choice_step(self, make_flow, local_backend, embedder, recorder, store):
        """With the choice step disabled, a good capture is persisted directly."""
        embedder.push(offset_embedding(0.3))
        flow = make_flow(
            local_backend,
            flow_settings=FlowSettings(reset_delay_sec=0.0, require_enrollment_choice=False),
        )

        async def scenario():
            await flow.start_enrollment("usr_alice")
            await flow.capture()

        asyncio.run(scenario())

        assert flow.state == FlowState.SUCCESS
        assert FlowState.AWAITING_CHOICE not in recorder.states
        assert store.is_enabled("usr_alice", BackendKind.LOCAL)

    def test_persistence_failure_is_fatal(
        self, make_flow, managed_backend, recognition_service, store, recorder, monkeypatch
    ):
        """A failed write ends the flow and removes the orphaned managed face."""
        def failing_upsert(*args, **kwargs):
            raise PersistenceError(detail="disk full")

        monkeypatch.setattr(store, "upsert", failing_upsert)
        flow = make_flow(managed_backend)

        async def scenario():
            await flow.start_enrollment("usr_bob")
            await flow.capture()
            await flow.choose(True)

        asyncio.run(scenario())

        assert flow.state == FlowState.FATAL_FAILURE
        assert recorder.last_failure.error["kind"] == "persistence_error"
        assert recognition_service.faces == {}

    def test_enrollment_requires_user(self, make_flow, local_backend):
        flow = make_flow(local_backend)
        with pytest.raises(ValueError):
            asyncio.run(flow.start_enrollment(""))


# ============================================================
# Camera, limits, timeouts and cancellation
# ============================================================

class TestFailurePaths:
    """Fatal failures, retry limit and timeouts."""

    def test_camera_denied_is_fatal(
        self, make_flow, local_backend, embedder, recorder, denied_camera
    ):
        """No camera: fatal failure, fallback offered, backend never called."""
        flow = make_flow(local_backend, capture=denied_camera)

        asyncio.run(flow.start_enrollment("usr_alice"))

        assert flow.state == FlowState.FATAL_FAILURE
        assert recorder.states == [FlowState.CAMERA_INITIALIZING, FlowState.FATAL_FAILURE]
        failure = recorder.last_failure
        assert failure.error["kind"] == "camera_unavailable"
        assert failure.data["fallback_available"] is True
        assert flow.fallback_available
        assert embedder.calls == 0

    def test_too_many_attempts(
        self, make_flow, local_backend, embedder, alice_enrolled, recorder, camera
    ):
        """Reaching max_attempts failed attempts is fatal."""
        embedder.push(NoFaceDetected(), NoFaceDetected())
        flow = make_flow(
            local_backend, flow_settings=FlowSettings(reset_delay_sec=0.0, max_attempts=2)
        )

        async def scenario():
            await flow.start_verification(alice_enrolled)
            await flow.capture()
            assert flow.state == FlowState.READY
            await flow.capture()

        asyncio.run(scenario())

        assert flow.state == FlowState.FATAL_FAILURE
        assert recorder.last_failure.error["kind"] == "too_many_attempts"
        assert not camera.is_open

    def test_unlimited_attempts(self, make_flow, local_backend, embedder, alice_enrolled):
        """max_attempts=0 never gives up."""
        embedder.push(*[NoFaceDetected() for _ in range(8)])
        flow = make_flow(
            local_backend, flow_settings=FlowSettings(reset_delay_sec=0.0, max_attempts=0)
        )

        async def scenario():
            await flow.start_verification(alice_enrolled)
            for _ in range(8):
                await flow.capture()

        asyncio.run(scenario())

        assert flow.state == FlowState.READY
        assert flow.failed_attempts == 8

    def test_backend_timeout_is_service_error(self, make_flow, alice_enrolled, recorder):
        """A backend call exceeding request_timeout_sec is a retryable service error."""
        backend = SlowBackend()
        flow = make_flow(
            backend,
            flow_settings=FlowSettings(reset_delay_sec=0.0, request_timeout_sec=0.05),
        )

        async def scenario():
            backend.entered = asyncio.Event()
            await flow.start_verification(alice_enrolled)
            await flow.capture()

        asyncio.run(scenario())

        assert flow.state == FlowState.READY
        assert recorder.last_failure.error["kind"] == "service_error"
        assert backend.cancelled


class TestCancellation:
    """Closing the capture view."""

    def test_cancel_during_processing(self, make_flow, alice_enrolled, recorder, camera, idp):
        """cancel() aborts the backend call, releases the camera and returns to Idle."""
        backend = SlowBackend()
        flow = make_flow(backend)

        async def scenario():
            backend.entered = asyncio.Event()
            await flow.start_verification(alice_enrolled)
            capture = asyncio.create_task(flow.capture())
            await backend.entered.wait()
            assert flow.state == FlowState.PROCESSING
            assert flow.is_busy
            await flow.cancel()
            await capture

        asyncio.run(scenario())

        assert flow.state == FlowState.IDLE
        assert backend.cancelled
        assert not camera.is_open
        assert len(recorder.of_type("cancelled")) == 1
        assert recorder.of_type("success") == []
        assert idp.calls == []

    def test_cancel_awaiting_choice_discards_face(
        self, make_flow, managed_backend, recognition_service, store
    ):
        flow = make_flow(managed_backend)

        async def scenario():
            await flow.start_enrollment("usr_bob")
            await flow.capture()
            await flow.cancel()

        asyncio.run(scenario())

        assert flow.state == FlowState.IDLE
        assert recognition_service.faces == {}
        assert not store.is_enabled("usr_bob", BackendKind.MANAGED)

    def test_cancel_during_camera_initialization(
        self, make_flow, local_backend, alice_enrolled, recorder
    ):
        """A device that finishes opening after cancel() is closed before the flow goes Idle."""
        device = MagicMock()
        device.isOpened.return_value = True
        opening = threading.Event()

        def slow_device(device_id):
            opening.set()
            time.sleep(0.2)
            return device

        flow = make_flow(local_backend, capture=OpenCVCaptureController(slow_device))

        async def scenario():
            start = asyncio.create_task(flow.start_verification(alice_enrolled))
            await asyncio.to_thread(opening.wait, 1.0)
            assert flow.state == FlowState.CAMERA_INITIALIZING
            await flow.cancel()
            await start

        asyncio.run(scenario())

        assert flow.state == FlowState.IDLE
        device.release.assert_called_once()
        assert not flow.camera_open
        assert len(recorder.of_type("cancelled")) == 1

    def test_cancel_during_managed_enrollment_removes_face(
        self, make_flow, managed_backend, recognition_service, store, camera
    ):
        """A face indexed after cancel() is deleted from the collection."""
        recognition_service.index_delay = 0.2
        flow = make_flow(managed_backend)

        async def scenario():
            await flow.start_enrollment("usr_bob")
            capture = asyncio.create_task(flow.capture())
            await wait_for_state(flow, FlowState.PROCESSING)
            await asyncio.sleep(0.05)
            await flow.cancel()
            await capture

        asyncio.run(scenario())

        assert flow.state == FlowState.IDLE
        assert recognition_service.faces == {}
        assert len(recognition_service.deleted) == 1
        assert not store.is_enabled("usr_bob", BackendKind.MANAGED)
        assert not camera.is_open

    def test_managed_enrollment_timeout_removes_face(
        self, make_flow, managed_backend, recognition_service, recorder
    ):
        """A timed-out IndexFaces call leaves no face behind; the attempt is retryable."""
        recognition_service.index_delay = 0.2
        flow = make_flow(
            managed_backend,
            flow_settings=FlowSettings(reset_delay_sec=0.0, request_timeout_sec=0.05),
        )

        async def scenario():
            await flow.start_enrollment("usr_bob")
            await flow.capture()

        asyncio.run(scenario())

        assert flow.state == FlowState.READY
        assert recorder.last_failure.error["kind"] == "service_error"
        assert recognition_service.faces == {}

    def test_cancel_when_idle_is_noop(self, make_flow, local_backend, recorder):
        flow = make_flow(local_backend)
        asyncio.run(flow.cancel())
        assert flow.state == FlowState.IDLE
        assert recorder.events == []


class TestTransitions:
    """Guards on caller-driven transitions."""

    def test_capture_requires_ready(self, make_flow, local_backend):
        flow = make_flow(local_backend)
        with pytest.raises(InvalidTransition):
            asyncio.run(flow.capture())

    def test_no_second_success(self, make_flow, local_backend, embedder, alice_enrolled, idp):
        """After Success, further captures are refused and no second exchange happens."""
        embedder.push(offset_embedding(0.1), offset_embedding(0.1))
        flow = make_flow(local_backend)

        async def scenario():
            await flow.start_verification(alice_enrolled)
            await flow.capture()
            with pytest.raises(InvalidTransition):
                await flow.capture()

        asyncio.run(scenario())

        assert len(idp.calls) == 1

    def test_choose_requires_awaiting_choice(self, make_flow, local_backend):
        flow = make_flow(local_backend)
        with pytest.raises(InvalidTransition):
            asyncio.run(flow.choose(True))

    def test_start_twice_is_refused(self, make_flow, local_backend, alice_enrolled):
        flow = make_flow(local_backend)

        async def scenario():
            await flow.start_verification(alice_enrolled)
            with pytest.raises(InvalidTransition):
                await flow.start_verification(alice_enrolled)

        asyncio.run(scenario())

    def test_reset_from_terminal_state(self, make_flow, local_backend, alice_enrolled):
        """reset() leaves a terminal state; a new flow run can start."""
        flow = make_flow(local_backend)

        async def scenario():
            await flow.start_verification("usr_nobody")
            assert flow.state == FlowState.FATAL_FAILURE
            await flow.reset()
            assert flow.state == FlowState.IDLE
            await flow.start_verification(alice_enrolled)

        asyncio.run(scenario())

        assert flow.state == FlowState.READY
        assert flow.mode == FlowMode.VERIFICATION

    def test_reset_refused_mid_flow(self, make_flow, local_backend, alice_enrolled):
        flow = make_flow(local_backend)

        async def scenario():
            await flow.start_verification(alice_enrolled)
            with pytest.raises(InvalidTransition):
                await flow.reset()

        asyncio.run(scenario())


class TestRetryDelay:
    """A retryable failure stays on screen for reset_delay_sec."""

    def test_stays_in_retryable_failure_until_delay_elapses(
        self, make_flow, local_backend, embedder, alice_enrolled
    ):
        embedder.push(NoFaceDetected())
        flow = make_flow(local_backend, flow_settings=FlowSettings(reset_delay_sec=0.2))

        async def scenario():
            await flow.start_verification(alice_enrolled)
            loop = asyncio.get_running_loop()
            started = loop.time()
            capture = asyncio.create_task(flow.capture())
            await wait_for_state(flow, FlowState.RETRYABLE_FAILURE)
            await asyncio.sleep(0.05)
            assert flow.state == FlowState.RETRYABLE_FAILURE
            assert not capture.done()
            await capture
            return loop.time() - started

        elapsed = asyncio.run(scenario())

        assert flow.state == FlowState.READY
        assert elapsed >= 0.19

    def test_cancel_during_reset_delay(
        self, make_flow, local_backend, embedder, alice_enrolled, recorder, camera
    ):
        """cancel() cuts the delay short and the flow never returns to Ready."""
        embedder.push(NoFaceDetected())
        flow = make_flow(local_backend, flow_settings=FlowSettings(reset_delay_sec=5.0))

        async def scenario():
            await flow.start_verification(alice_enrolled)
            capture = asyncio.create_task(flow.capture())
            await wait_for_state(flow, FlowState.RETRYABLE_FAILURE)
            await asyncio.wait_for(flow.cancel(), 1.0)
            await capture

        asyncio.run(scenario())

        assert flow.state == FlowState.IDLE
        assert recorder.states[-2:] == [FlowState.RETRYABLE_FAILURE, FlowState.IDLE]
        assert len(recorder.of_type("cancelled")) == 1
        assert not camera.is_open
