"""
Authentication API Routes

WebSocket endpoint for signing in with a face.

With ?user_id=... the capture is compared against that user's enrollment
(required by the local backend). Without it the managed backend searches the
whole face collection and signs in whoever it matches.

On success the server has exchanged the verified user id with the identity
provider; the "success" message carries the issued session tokens.
"""

import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.client_camera import FlowSocket

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["authentication"])


@router.websocket("/verify")
async def websocket_verify(websocket: WebSocket, user_id: Optional[str] = None):
    """
    WebSocket endpoint for face verification.

    Protocol:
    1. Server sends {"type": "camera_request", "constraints": {...}}
    2. Client replies {"type": "camera_ready"} or {"type": "camera_error", "error": "..."}
    3. Client sends {"type": "capture"}; server answers with "capture_request"
    4. Client sends {"type": "frame", "data": "<base64>"}
    5. Server sends "success" (with "session") or "failure"; after a
       retryable failure the flow returns to "ready" and the client may capture again

    Args:
        websocket: The WebSocket connection.
        user_id: Optional user to verify against.
    """
    await websocket.accept()
    components = websocket.app.state.components

    logger.info(f"Verification session opened (user={user_id or 'any'})")
    socket = FlowSocket(websocket, components)

    try:
        await socket.run(socket.flow.start_verification(user_id))
    except WebSocketDisconnect:
        logger.info("Client disconnected during verification")
    except Exception as e:
        logger.error(f"Unexpected error during verification: {e}")
        await websocket.close(code=1011)
