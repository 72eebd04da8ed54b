"""
Capture Controller

Owns the camera resource and produces still frames on demand.

The contract is three async operations:
    handle = await controller.acquire(constraints)
    frame = await controller.capture_frame(handle)
    await controller.release(handle)

acquire() fails with CameraUnavailable (permission denied, no device). That is
fatal for the current flow; callers offer a non-biometric fallback.

The handle is a scoped resource. Use camera_session() so that it is released
on every exit path, including cancellation:

    async with camera_session(controller, constraints) as handle:
        frame = await controller.capture_frame(handle)

Two controllers exist: OpenCVCaptureController for a camera attached to this
host, and api.client_camera.ClientStreamCaptureController for a camera that
lives in a browser and streams frames over a WebSocket.
"""

import asyncio
import base64
import itertools
import logging
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import cv2
import numpy as np

from faceauth.errors import CameraUnavailable

logger = logging.getLogger(__name__)

_handle_ids = itertools.count(1)


@dataclass
class CaptureConstraints:
    """Requested video stream properties."""

    width: int = 1280
    height: int = 720
    facing_mode: str = "user"
    device_id: int = 0
    fps: int = 30

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "CaptureConstraints":
        return cls(
            width=config.get("width", 1280),
            height=config.get("height", 720),
            facing_mode=config.get("facing_mode", "user"),
            device_id=config.get("device_id", 0),
            fps=config.get("fps", 30),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"width": self.width, "height": self.height, "facingMode": self.facing_mode}


@dataclass
class CaptureFrame:
    """
    A single still image taken from the camera. Never persisted.

    Attributes:
        image: BGR pixel buffer, shape (H, W, 3), dtype uint8.
        captured_at: Unix timestamp of the capture.
    """

    image: np.ndarray
    captured_at: float = field(default_factory=time.time)

    @property
    def shape(self):
        return self.image.shape

    def to_jpeg(self, quality: int = 95) -> bytes:
        return encode_jpeg(self.image, quality)


@dataclass
class CameraHandle:
    """Opaque token for an acquired camera. Released exactly once."""

    constraints: CaptureConstraints
    handle_id: int = field(default_factory=lambda: next(_handle_ids))
    released: bool = False
    resource: Any = None


def encode_jpeg(image: np.ndarray, quality: int = 95) -> bytes:
    """
    Encode a BGR image as JPEG bytes.

    Raises:
        ValueError: If OpenCV cannot encode the image.
    """
    success, buffer = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not success:
        raise ValueError("Failed to encode frame")
    return buffer.tobytes()


def decode_jpeg(data: bytes) -> Optional[np.ndarray]:
    """Decode JPEG/PNG bytes to a BGR array, or None if the bytes are not an image."""
    np_arr = np.frombuffer(data, np.uint8)
    if np_arr.size == 0:
        return None
    return cv2.imdecode(np_arr, cv2.IMREAD_COLOR)


def decode_base64_frame(frame_b64: str) -> Optional[np.ndarray]:
    """
    Decode a base64-encoded image (optionally a data: URL) to a BGR array.

    Returns:
        BGR numpy array or None if decoding fails.
    """
    if "," in frame_b64 and frame_b64.startswith("data:"):
        frame_b64 = frame_b64.split(",", 1)[1]
    try:
        img_bytes = base64.b64decode(frame_b64, validate=True)
    except ValueError as e:
        logger.warning(f"Failed to decode frame: {e}")
        return None
    return decode_jpeg(img_bytes)


class CaptureController(ABC):
    """Abstract camera owner. Implementations must make release() idempotent."""

    @abstractmethod
    async def acquire(self, constraints: CaptureConstraints) -> CameraHandle:
        """Open the camera. Raises CameraUnavailable."""

    @abstractmethod
    async def capture_frame(self, handle: CameraHandle) -> CaptureFrame:
        """Extract one still image from an acquired camera."""

    @abstractmethod
    async def release(self, handle: CameraHandle) -> None:
        """Stop the stream and free the device."""


@asynccontextmanager
async def camera_session(controller: CaptureController, constraints: CaptureConstraints):
    """Acquire a camera and guarantee its release when the block exits."""
    handle = await controller.acquire(constraints)
    try:
        yield handle
    finally:
        await controller.release(handle)


class OpenCVCaptureController(CaptureController):
    """
    Camera attached to this host, read through cv2.VideoCapture.

    OpenCV has no notion of facing mode; the configured device_id selects
    the camera instead.
    """

    def __init__(self, video_capture_factory=None):
        self._factory = video_capture_factory or cv2.VideoCapture

    async def acquire(self, constraints: CaptureConstraints) -> CameraHandle:
        opening = asyncio.ensure_future(asyncio.to_thread(self._open, constraints))
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; close whatever it opens
            try:
                handle = await opening
            except CameraUnavailable:
                raise asyncio.CancelledError()
            await self.release(handle)
            raise

    def _open(self, constraints: CaptureConstraints) -> CameraHandle:
        cap = self._factory(constraints.device_id)
        if cap is None or not cap.isOpened():
            if cap is not None:
                cap.release()
            logger.error(f"Failed to open camera {constraints.device_id}")
            raise CameraUnavailable(detail=f"device {constraints.device_id} could not be opened")

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        cap.set(cv2.CAP_PROP_FPS, constraints.fps)

        logger.info(
            f"Opened camera {constraints.device_id} at {constraints.width}x{constraints.height}"
        )
        return CameraHandle(constraints=constraints, resource=cap)

    async def capture_frame(self, handle: CameraHandle) -> CaptureFrame:
        if handle.released or handle.resource is None:
            raise CameraUnavailable(detail="camera handle already released")
        return await asyncio.to_thread(self._read, handle)

    def _read(self, handle: CameraHandle) -> CaptureFrame:
        ret, image = handle.resource.read()
        if not ret or image is None:
            raise CameraUnavailable(detail="camera returned no frame")
        return CaptureFrame(image=image)

    async def release(self, handle: CameraHandle) -> None:
        if handle.released:
            return
        handle.released = True
        if handle.resource is not None:
            handle.resource.release()
            handle.resource = None
        logger.info(f"Camera {handle.constraints.device_id} closed")
