"""
Browser-side camera over a WebSocket.

In the web deployment the physical camera belongs to the browser. The
server drives it with messages and receives frames back:

    server -> client   {"type": "camera_request", "constraints": {...}}
    client -> server   {"type": "camera_ready"} | {"type": "camera_error", "error": "NotAllowedError"}
    server -> client   {"type": "capture_request"}
    client -> server   {"type": "frame", "data": "<base64 JPEG>"}
    server -> client   {"type": "camera_release"}

ClientStreamCaptureController implements the CaptureController contract on
top of that exchange, so FaceAuthFlow runs unchanged. FlowSocket owns one
WebSocket connection: it feeds incoming messages to the controller, turns
client commands into flow calls and forwards flow events to the client.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from api.schemas import (
    CameraReleaseMessage,
    CameraRequestMessage,
    CaptureRequestMessage,
    ClientMessage,
    ErrorMessage,
    FailureMessage,
    SessionPayload,
    StateMessage,
    SuccessMessage,
)
from faceauth.bootstrap import FaceAuthComponents
from faceauth.capture import (
    CameraHandle,
    CaptureConstraints,
    CaptureController,
    CaptureFrame,
    decode_base64_frame,
)
from faceauth.errors import CameraUnavailable, FaceAuthError, NoFaceDetected
from faceauth.flow import FlowEvent, FlowMode
from faceauth.session_bridge import AmbientSession

logger = logging.getLogger(__name__)

CAMERA_MESSAGE_TYPES = {"camera_ready", "camera_error", "frame"}

Sender = Callable[[Dict[str, Any]], Awaitable[None]]


class ClientStreamCaptureController(CaptureController):
    """
    Camera living in the connected client.

    Args:
        send: Coroutine function that delivers a JSON message to the client.
        frame_timeout_sec: How long to wait for the client to answer a
                           camera or capture request.
    """

    def __init__(self, send: Sender, frame_timeout_sec: float = 10.0):
        self._send = send
        self.frame_timeout_sec = frame_timeout_sec
        self._inbox: asyncio.Queue = asyncio.Queue()

    def feed(self, message: ClientMessage) -> None:
        """Hand a camera-related client message to whoever is waiting for it."""
        self._inbox.put_nowait(message)

    def _drain(self) -> None:
        while not self._inbox.empty():
            self._inbox.get_nowait()

    async def _receive(self, expected: str, waiting_for: str) -> ClientMessage:
        try:
            while True:
                message = await asyncio.wait_for(self._inbox.get(), self.frame_timeout_sec)
                if message.type == "camera_error":
                    raise CameraUnavailable(detail=message.error or "client camera error")
                if message.type == expected:
                    return message
                logger.debug(f"Ignoring '{message.type}' while waiting for {waiting_for}")
        except asyncio.TimeoutError as e:
            raise CameraUnavailable(detail=f"client did not answer {waiting_for}") from e

    async def acquire(self, constraints: CaptureConstraints) -> CameraHandle:
        self._drain()
        handle = CameraHandle(constraints=constraints)
        try:
            await self._send(CameraRequestMessage(constraints=constraints.to_dict()).model_dump())
            await self._receive("camera_ready", "camera request")
        except asyncio.CancelledError:
            # The client may already be opening its camera
            await self.release(handle)
            raise
        logger.info("Client camera ready")
        return handle

    async def capture_frame(self, handle: CameraHandle) -> CaptureFrame:
        if handle.released:
            raise CameraUnavailable(detail="camera handle already released")

        self._drain()
        await self._send(CaptureRequestMessage().model_dump())
        message = await self._receive("frame", "capture request")

        image = decode_base64_frame(message.data or "")
        if image is None:
            raise NoFaceDetected(detail="frame could not be decoded")
        return CaptureFrame(image=image)

    async def release(self, handle: CameraHandle) -> None:
        if handle.released:
            return
        handle.released = True
        await self._send(CameraReleaseMessage().model_dump())
        logger.info("Client camera released")


class FlowSocket:
    """
    Runs one FaceAuthFlow over one WebSocket connection.

    Flow operations that wait on the client (start, capture) run as
    background tasks so the receive loop keeps feeding frames to the camera.
    """

    def __init__(self, websocket: WebSocket, components: FaceAuthComponents):
        self.websocket = websocket
        self.components = components
        self.session = AmbientSession()
        frame_timeout = components.config.get("capture", {}).get("client_frame_timeout_sec", 10.0)
        self.camera = ClientStreamCaptureController(self.send, frame_timeout)
        self.flow = components.new_flow(self.camera, listener=self.on_event, session=self.session)
        self._closed = False
        self._actions: set = set()

    async def send(self, payload: Dict[str, Any]) -> None:
        if self._closed:
            return
        await self.websocket.send_json(payload)

    async def send_error(self, error: str, code: str = "PROTOCOL_ERROR") -> None:
        await self.send(ErrorMessage(error=error, code=code).model_dump())

    async def on_event(self, event: FlowEvent) -> None:
        mode = event.mode.value if event.mode else None

        if event.type == "success":
            message = SuccessMessage(
                mode=mode,
                user_id=event.user_id,
                confidence=event.confidence,
                enrolled=event.enrolled,
                success_delay_sec=event.data.get("success_delay_sec"),
            )
            tokens = self.session.tokens
            if event.mode == FlowMode.VERIFICATION and tokens is not None:
                message.session = SessionPayload(
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    user=tokens.user,
                )
            await self.send(message.model_dump(exclude_none=True))
        elif event.type == "failure":
            message = FailureMessage(
                kind=event.error["kind"],
                retryable=event.error["retryable"],
                message=event.error["message"],
                confidence=event.confidence,
                fallback_available=event.data.get("fallback_available", False),
            )
            await self.send(message.model_dump(exclude_none=True))
        else:
            await self.send(
                StateMessage(type=event.type, state=event.state.value, mode=mode).model_dump(
                    exclude_none=True
                )
            )

    def spawn(self, coro) -> None:
        task = asyncio.create_task(self._guard(coro))
        self._actions.add(task)
        task.add_done_callback(self._actions.discard)

    async def _guard(self, coro) -> None:
        try:
            await coro
        except FaceAuthError as e:
            # Caller-side mistakes (e.g. capture while busy); flow state is unchanged
            logger.warning(f"Rejected client action: {e.kind} ({e.detail})")
            await self.send_error(e.message, code=e.kind.upper())
        except ValueError as e:
            await self.send_error(str(e), code="INVALID_REQUEST")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Flow action failed")

    async def handle(self, raw: Dict[str, Any]) -> None:
        try:
            message = ClientMessage.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Invalid client message: {e}")
            await self.send_error("Invalid message", code="INVALID_MESSAGE")
            return

        if message.type in CAMERA_MESSAGE_TYPES:
            if message.type == "camera_ready" and message.device_info:
                self.flow.device_info = message.device_info
            self.camera.feed(message)
        elif message.type == "capture":
            self.spawn(self.flow.capture())
        elif message.type == "choose":
            self.spawn(self.flow.choose(bool(message.enable)))
        elif message.type == "cancel":
            await self.flow.cancel()
        else:
            logger.warning(f"Unknown message type: {message.type}")
            await self.send_error(f"Unknown message type: {message.type}", code="UNKNOWN_TYPE")

    async def run(self, start: Optional[Awaitable[None]] = None) -> None:
        """
        Serve the connection until the client disconnects.

        Args:
            start: The flow's start coroutine (start_enrollment/start_verification).
        """
        if start is not None:
            self.spawn(start)

        try:
            while True:
                raw = await self.websocket.receive_json()
                await self.handle(raw)
        except WebSocketDisconnect:
            logger.info("Client disconnected")
        finally:
            self._closed = True
            self.flow.listener = None
            await self.flow.cancel()
            for task in list(self._actions):
                task.cancel()
