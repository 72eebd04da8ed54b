"""
Pydantic Schemas for API Request/Response Models

This module defines the data models used between the browser client and the
face authentication service:

- WebSocket messages for the enrollment and verification flows
- REST responses for enrollment status, opt-out and health checks

Enrollment references, embeddings and keys never appear in any schema.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ============================================================
# WebSocket: client -> server
# ============================================================

CLIENT_MESSAGE_TYPES = ["camera_ready", "camera_error", "frame", "capture", "choose", "cancel"]


class ClientMessage(BaseModel):
    """Any message sent by the client over a flow WebSocket."""
    type: str = Field(..., description=f"One of {CLIENT_MESSAGE_TYPES}")
    data: Optional[str] = Field(None, description="Base64-encoded JPEG (type='frame')")
    enable: Optional[bool] = Field(None, description="Enrollment choice (type='choose')")
    error: Optional[str] = Field(None, description="Browser error name (type='camera_error')")
    device_info: Optional[Dict[str, Any]] = Field(
        None, description="User agent / platform details (type='camera_ready', enrollment only)"
    )


# ============================================================
# WebSocket: server -> client
# ============================================================

class CameraRequestMessage(BaseModel):
    """Asks the client to open its camera with these constraints."""
    type: str = Field(default="camera_request")
    constraints: Dict[str, Any] = Field(..., description="getUserMedia video constraints")


class CaptureRequestMessage(BaseModel):
    """Asks the client to grab one still frame and send it back."""
    type: str = Field(default="capture_request")


class CameraReleaseMessage(BaseModel):
    """Tells the client to stop every track of its stream."""
    type: str = Field(default="camera_release")


class StateMessage(BaseModel):
    """Flow state change."""
    type: str = Field(default="state")
    state: str = Field(..., description="New flow state")
    mode: Optional[str] = Field(None, description="'enrollment' or 'verification'")


class SessionPayload(BaseModel):
    """Tokens issued after a successful verification."""
    access_token: str
    refresh_token: str
    user: Dict[str, Any] = Field(default_factory=dict)


class SuccessMessage(BaseModel):
    """Terminal success of a flow."""
    type: str = Field(default="success")
    mode: Optional[str] = None
    user_id: Optional[str] = Field(None, description="Enrolled or verified user")
    confidence: Optional[float] = Field(None, description="Match score of the accepted capture")
    enrolled: Optional[bool] = Field(None, description="False when the user skipped enrollment")
    success_delay_sec: Optional[float] = Field(
        None, description="How long the client shows the success state before moving on"
    )
    session: Optional[SessionPayload] = Field(None, description="Verification only")


class FailureMessage(BaseModel):
    """A failed attempt (retryable) or a failed flow (fatal)."""
    type: str = Field(default="failure")
    kind: str = Field(..., description="Stable error identifier")
    retryable: bool
    message: str = Field(..., description="Human-readable reason")
    confidence: Optional[float] = None
    fallback_available: bool = Field(False, description="Offer the password sign-in path")


class ErrorMessage(BaseModel):
    """Protocol error (bad message, action not allowed in the current state)."""
    type: str = Field(default="error")
    error: str = Field(..., description="Error message")
    code: str = Field(default="PROTOCOL_ERROR", description="Error code")


# ============================================================
# REST
# ============================================================

class EnrollmentStatusResponse(BaseModel):
    """Whether face login is enabled for a user."""
    user_id: str
    backend_kind: str
    enabled: bool
    created_at: Optional[str] = None
    last_used_at: Optional[str] = None


class DeleteEnrollmentResponse(BaseModel):
    """Result of an opt-out."""
    success: bool
    user_id: str
    records_deleted: int
    message: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(..., description="'healthy' or 'degraded'")
    backend_kind: str
    collection_ready: Optional[bool] = Field(None, description="Managed backend only")
    enrolled_users: int = Field(..., description="Active enrollments on the configured backend")


class RootResponse(BaseModel):
    name: str
    version: str
    docs: str = "/docs"
    health: str = "/health"
    endpoints: List[str] = Field(default_factory=list)
