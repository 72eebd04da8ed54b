"""
Enrollment/Verification State Machine

Sequences capture -> match -> decision -> retry/terminate, independent of
which matching backend is active.

States:
    Idle -> CameraInitializing -> Ready -> Capturing -> Processing
         -> {Success | RetryableFailure | FatalFailure}

Enrollment with a choice step adds AwaitingChoice between Processing and
Success: the captured reference is kept in memory until the user enables
(persist) or skips (discard) face login.

Rules:
- One capture/match attempt is in flight at a time; capture() is only
  accepted in Ready.
- RetryableFailure shows its reason, then returns to Ready after
  reset_delay_sec. After max_attempts failed attempts the flow goes to
  FatalFailure with TooManyAttempts.
- Success and FatalFailure are terminal. Only reset() or cancel() leave them.
- The camera is acquired once per flow and released on success, on fatal
  failure, on cancel() and when the choice step is reached.
- cancel() aborts the in-flight attempt task (and the backend call inside it).

Usage:
    flow = FaceAuthFlow(backend, store, camera, bridge, listener=on_event)
    await flow.start_verification(user_id="usr_abc123")
    await flow.capture()
"""

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from faceauth.capture import CameraHandle, CaptureConstraints, CaptureController
from faceauth.credential_store import CredentialStore
from faceauth.errors import (
    FaceAuthError,
    InvalidTransition,
    NotFound,
    PersistenceError,
    ServiceError,
    TooManyAttempts,
)
from faceauth.matching.interfaces import BackendKind, MatchingBackend, VerifyScope
from faceauth.session_bridge import AmbientSession, SessionBridge

logger = logging.getLogger(__name__)


class FlowState(str, enum.Enum):
    IDLE = "idle"
    CAMERA_INITIALIZING = "camera_initializing"
    READY = "ready"
    CAPTURING = "capturing"
    PROCESSING = "processing"
    AWAITING_CHOICE = "awaiting_choice"
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


class FlowMode(str, enum.Enum):
    ENROLLMENT = "enrollment"
    VERIFICATION = "verification"


TERMINAL_STATES = {FlowState.SUCCESS, FlowState.FATAL_FAILURE}

TRANSITIONS = {
    FlowState.IDLE: {FlowState.CAMERA_INITIALIZING, FlowState.FATAL_FAILURE},
    FlowState.CAMERA_INITIALIZING: {FlowState.READY, FlowState.FATAL_FAILURE, FlowState.IDLE},
    FlowState.READY: {FlowState.CAPTURING, FlowState.IDLE},
    FlowState.CAPTURING: {
        FlowState.PROCESSING,
        FlowState.RETRYABLE_FAILURE,
        FlowState.FATAL_FAILURE,
        FlowState.IDLE,
    },
    FlowState.PROCESSING: {
        FlowState.SUCCESS,
        FlowState.AWAITING_CHOICE,
        FlowState.RETRYABLE_FAILURE,
        FlowState.FATAL_FAILURE,
        FlowState.IDLE,
    },
    FlowState.AWAITING_CHOICE: {FlowState.SUCCESS, FlowState.FATAL_FAILURE, FlowState.IDLE},
    FlowState.RETRYABLE_FAILURE: {FlowState.READY, FlowState.FATAL_FAILURE, FlowState.IDLE},
    FlowState.SUCCESS: {FlowState.IDLE},
    FlowState.FATAL_FAILURE: {FlowState.IDLE},
}


@dataclass
class FlowSettings:
    reset_delay_sec: float = 2.5
    success_delay_sec: float = 2.0
    request_timeout_sec: float = 10.0
    max_attempts: int = 5
    require_enrollment_choice: bool = True

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "FlowSettings":
        return cls(
            reset_delay_sec=config.get("reset_delay_sec", 2.5),
            success_delay_sec=config.get("success_delay_sec", 2.0),
            request_timeout_sec=config.get("request_timeout_sec", 10.0),
            max_attempts=config.get("max_attempts", 5),
            require_enrollment_choice=config.get("require_enrollment_choice", True),
        )


@dataclass
class FlowEvent:
    """
    Notification for the host UI.

    type is one of "state", "success", "failure", "cancelled".
    """

    type: str
    state: FlowState
    mode: Optional[FlowMode] = None
    user_id: Optional[str] = None
    confidence: Optional[float] = None
    enrolled: Optional[bool] = None
    error: Optional[Dict[str, Any]] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "state": self.state.value}
        if self.mode is not None:
            payload["mode"] = self.mode.value
        for key in ("user_id", "confidence", "enrolled", "error"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        payload.update(self.data)
        return payload


Listener = Callable[[FlowEvent], Union[None, Awaitable[None]]]


class FaceAuthFlow:
    """
    One enrollment or verification session (one capture view lifetime).

    Args:
        backend: Active MatchingBackend.
        store: CredentialStore for enrollment records.
        capture: CaptureController owning the camera.
        bridge: SessionBridge used after a successful verification.
        constraints: Requested camera stream.
        settings: Timing and retry policy.
        session: AmbientSession that receives the issued tokens.
        listener: Callable (sync or async) receiving every FlowEvent.
    """

    def __init__(
        self,
        backend: MatchingBackend,
        store: CredentialStore,
        capture: CaptureController,
        bridge: SessionBridge,
        constraints: Optional[CaptureConstraints] = None,
        settings: Optional[FlowSettings] = None,
        session: Optional[AmbientSession] = None,
        listener: Optional[Listener] = None,
    ):
        self.backend = backend
        self.store = store
        self.capture_controller = capture
        self.bridge = bridge
        self.constraints = constraints or CaptureConstraints()
        self.settings = settings or FlowSettings()
        self.session = session or AmbientSession()
        self.listener = listener

        self.state = FlowState.IDLE
        self.mode: Optional[FlowMode] = None
        self.user_id: Optional[str] = None
        self.device_info: Optional[Dict[str, Any]] = None
        self.failed_attempts = 0
        self.last_error: Optional[FaceAuthError] = None

        self._handle: Optional[CameraHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._pending_reference: Optional[bytes] = None

    # ------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------

    @property
    def is_busy(self) -> bool:
        """True while a capture/match attempt is in flight."""
        return self.state in (FlowState.CAPTURING, FlowState.PROCESSING)

    @property
    def fallback_available(self) -> bool:
        """True when the host should offer the non-biometric path."""
        return self.state == FlowState.FATAL_FAILURE

    @property
    def camera_open(self) -> bool:
        return self._handle is not None

    async def start_enrollment(
        self, user_id: str, device_info: Optional[Dict[str, Any]] = None
    ) -> None:
        """Begin enrolling an already identified user."""
        if not user_id:
            raise ValueError("Enrollment requires an identified user")
        self._require_state(FlowState.IDLE)
        self.mode = FlowMode.ENROLLMENT
        self.user_id = user_id
        self.device_info = device_info
        await self._run(self._open_camera())

    async def start_verification(self, user_id: Optional[str] = None) -> None:
        """
        Begin verification.

        The local backend needs the user to verify against. The managed
        backend searches the whole collection when user_id is None.
        """
        self._require_state(FlowState.IDLE)
        if user_id is None and self.backend.kind == BackendKind.LOCAL:
            raise ValueError("The local backend verifies a known user; pass user_id")

        self.mode = FlowMode.VERIFICATION
        self.user_id = user_id

        if user_id is not None:
            enabled = await asyncio.to_thread(self.store.is_enabled, user_id, self.backend.kind)
            if not enabled:
                logger.info(f"No active enrollment for {user_id}")
                await self._fatal(NotFound())
                return

        await self._run(self._open_camera())

    async def capture(self) -> None:
        """
        Run one capture/match attempt. Returns when the attempt settles
        (Success, AwaitingChoice, FatalFailure, or back in Ready after a
        retryable failure).
        """
        self._require_state(FlowState.READY)
        await self._run(self._attempt())

    async def choose(self, enable: bool) -> None:
        """Enrollment choice step: persist (enable) or discard (skip) the reference."""
        self._require_state(FlowState.AWAITING_CHOICE)
        reference = self._pending_reference
        self._pending_reference = None

        try:
            if enable:
                await self._persist(reference)
            else:
                await self.backend.discard(self.user_id, reference)
                logger.info(f"User {self.user_id} skipped face login enrollment")
        except FaceAuthError as e:
            await self._fatal(e)
            return

        await self._transition(FlowState.SUCCESS)
        await self._emit_success(enrolled=enable)

    async def cancel(self) -> None:
        """Close the capture view: abort in-flight work, release the camera, go Idle."""
        if self.state == FlowState.IDLE and self._handle is None:
            return

        was_active = self.state not in TERMINAL_STATES

        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        self._task = None

        if self._pending_reference is not None:
            reference = self._pending_reference
            self._pending_reference = None
            try:
                await self.backend.discard(self.user_id, reference)
            except FaceAuthError as e:
                logger.error(f"Failed to discard unconfirmed reference: {e.detail or e}")

        await self._release_camera()
        await self._transition(FlowState.IDLE)

        if was_active:
            logger.info(f"{self.mode.value if self.mode else 'flow'} cancelled")
            await self._emit(FlowEvent(type="cancelled", state=self.state, mode=self.mode))

    async def reset(self) -> None:
        """Leave a terminal state so the flow can be started again."""
        if self.state not in TERMINAL_STATES:
            raise InvalidTransition(detail=f"reset from {self.state.value}")
        await self._release_camera()
        self.failed_attempts = 0
        self.last_error = None
        self.mode = None
        self.user_id = None
        await self._transition(FlowState.IDLE)

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    def _require_state(self, expected: FlowState) -> None:
        if self.state != expected:
            raise InvalidTransition(
                detail=f"expected {expected.value}, flow is {self.state.value}"
            )

    async def _emit(self, event: FlowEvent) -> None:
        if self.listener is None:
            return
        result = self.listener(event)
        if inspect.isawaitable(result):
            await result

    async def _emit_success(
        self, confidence: Optional[float] = None, enrolled: Optional[bool] = None
    ) -> None:
        await self._emit(
            FlowEvent(
                type="success",
                state=self.state,
                mode=self.mode,
                user_id=self.user_id,
                confidence=confidence,
                enrolled=enrolled,
                data={"success_delay_sec": self.settings.success_delay_sec},
            )
        )

    async def _transition(self, new_state: FlowState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(detail=f"{self.state.value} -> {new_state.value}")
        logger.debug(f"Flow state {self.state.value} -> {new_state.value}")
        self.state = new_state
        await self._emit(FlowEvent(type="state", state=new_state, mode=self.mode))

    async def _run(self, coro) -> None:
        """Run camera/backend work as a task that cancel() can abort."""
        task = asyncio.create_task(coro)
        self._task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not task.cancelled():
            task.result()

    async def _open_camera(self) -> None:
        await self._transition(FlowState.CAMERA_INITIALIZING)
        try:
            self._handle = await self.capture_controller.acquire(self.constraints)
        except FaceAuthError as e:
            await self._fatal(e)
            return
        await self._transition(FlowState.READY)

    async def _release_camera(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await self.capture_controller.release(handle)
        except Exception as e:
            logger.warning(f"Failed to release camera: {e}")

    async def _call(self, awaitable):
        """Await a backend call under the configured timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.request_timeout_sec)
        except asyncio.TimeoutError as e:
            logger.warning(
                f"Backend call timed out after {self.settings.request_timeout_sec}s"
            )
            raise ServiceError(detail="request timed out") from e

    def _scope(self) -> VerifyScope:
        if self.user_id is None:
            return VerifyScope.collection()
        return VerifyScope.for_user(self.user_id)

    async def _attempt(self) -> None:
        try:
            await self._transition(FlowState.CAPTURING)
            frame = await self.capture_controller.capture_frame(self._handle)
            await self._transition(FlowState.PROCESSING)

            if self.mode == FlowMode.ENROLLMENT:
                await self._process_enrollment(frame)
            else:
                await self._process_verification(frame)
        except FaceAuthError as e:
            if e.retryable:
                await self._retryable(e)
            else:
                await self._fatal(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Unexpected error during face authentication attempt")
            await self._fatal(FaceAuthError(detail=str(e)))

    async def _process_enrollment(self, frame) -> None:
        reference = await self._call(self.backend.enroll(self.user_id, frame))

        if self.settings.require_enrollment_choice:
            self._pending_reference = reference
            await self._release_camera()
            await self._transition(FlowState.AWAITING_CHOICE)
            return

        await self._persist(reference)
        await self._release_camera()
        await self._transition(FlowState.SUCCESS)
        await self._emit_success(enrolled=True)

    async def _persist(self, reference: bytes) -> None:
        try:
            await asyncio.to_thread(
                self.store.upsert,
                self.user_id,
                self.backend.kind,
                reference,
                self.device_info,
            )
        except FaceAuthError:
            # The reference would be orphaned in a managed collection
            try:
                await self.backend.discard(self.user_id, reference)
            except FaceAuthError as discard_error:
                logger.error(
                    f"Failed to discard reference after persistence error: "
                    f"{discard_error.detail or discard_error}"
                )
            raise

    async def _process_verification(self, frame) -> None:
        decision = await self._call(self.backend.verify(frame, self._scope()))

        if not decision.matched:
            raise decision.rejection()

        subject_id = decision.subject_id
        await self.bridge.exchange(subject_id, self.session)
        try:
            await asyncio.to_thread(self.store.touch_last_used, subject_id, self.backend.kind)
        except PersistenceError as e:
            # The session is already issued
            logger.error(f"Failed to record last use for {subject_id}: {e.detail or e}")

        self.user_id = subject_id
        await self._release_camera()
        await self._transition(FlowState.SUCCESS)
        await self._emit_success(confidence=decision.confidence)

    async def _retryable(self, error: FaceAuthError) -> None:
        self.failed_attempts += 1
        self.last_error = error
        logger.info(
            f"Attempt {self.failed_attempts} failed: {error.kind}"
            + (f" ({error.detail})" if error.detail else "")
        )

        max_attempts = self.settings.max_attempts
        if max_attempts and self.failed_attempts >= max_attempts:
            await self._fatal(TooManyAttempts())
            return

        await self._transition(FlowState.RETRYABLE_FAILURE)
        confidence = getattr(error, "confidence", None)
        await self._emit(
            FlowEvent(
                type="failure",
                state=self.state,
                mode=self.mode,
                user_id=self.user_id,
                confidence=confidence,
                error=error.to_dict(),
            )
        )

        await asyncio.sleep(self.settings.reset_delay_sec)
        await self._transition(FlowState.READY)

    async def _fatal(self, error: FaceAuthError) -> None:
        self.last_error = error
        if error.detail:
            logger.error(f"Flow failed: {error.kind} ({error.detail})")
        else:
            logger.error(f"Flow failed: {error.kind}")

        await self._release_camera()
        await self._transition(FlowState.FATAL_FAILURE)
        await self._emit(
            FlowEvent(
                type="failure",
                state=self.state,
                mode=self.mode,
                user_id=self.user_id,
                error=error.to_dict(),
                data={"fallback_available": True},
            )
        )
