"""
Enrollment API Routes

WebSocket endpoint for enrolling an already signed-in user.

The client owns the camera; see api.client_camera for the message exchange.
The flow ends in a "success" message (enrolled true/false) or a fatal
"failure" message; retryable failures are followed by a return to "ready".
"""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.client_camera import FlowSocket

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["enrollment"])


@router.websocket("/enroll/{user_id}")
async def websocket_enroll(websocket: WebSocket, user_id: str):
    """
    WebSocket endpoint for face enrollment.

    Protocol:
    1. Server sends {"type": "camera_request", "constraints": {...}}
    2. Client opens its camera and replies {"type": "camera_ready", "device_info": {...}}
       or {"type": "camera_error", "error": "..."}
    3. Client sends {"type": "capture"} when the user presses the capture button
    4. Server sends {"type": "capture_request"}; client replies {"type": "frame", "data": "<base64>"}
    5. On a good capture the server sends {"type": "state", "state": "awaiting_choice"}
    6. Client sends {"type": "choose", "enable": true|false}
    7. Server sends {"type": "success", "user_id": ..., "enrolled": true|false}

    Args:
        websocket: The WebSocket connection.
        user_id: The signed-in user being enrolled.
    """
    await websocket.accept()
    components = websocket.app.state.components

    logger.info(f"Enrollment session opened for {user_id}")
    socket = FlowSocket(websocket, components)

    try:
        await socket.run(socket.flow.start_enrollment(user_id))
    except WebSocketDisconnect:
        logger.info(f"Client disconnected during enrollment: {user_id}")
    except Exception as e:
        logger.error(f"Unexpected error during enrollment: {e}")
        await websocket.close(code=1011)
