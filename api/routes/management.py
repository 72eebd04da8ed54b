"""
Enrollment Management API Routes

REST endpoints for a user's face login settings:
- GET /enrollments/{user_id}: Whether face login is enabled
- DELETE /enrollments/{user_id}: Opt out (removes every stored record and
  any managed collection entry)
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from api.schemas import DeleteEnrollmentResponse, EnrollmentStatusResponse
from faceauth.errors import FaceAuthError, NotFound, PersistenceError, ServiceError
from faceauth.matching import BackendKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/enrollments", tags=["enrollments"])


def error_status(error: FaceAuthError) -> int:
    """HTTP status for a face authentication error."""
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, ServiceError):
        return 502
    if isinstance(error, PersistenceError):
        return 500
    return 400


@router.get("/{user_id}", response_model=EnrollmentStatusResponse)
async def get_enrollment(
    request: Request,
    user_id: str,
    backend: Optional[BackendKind] = Query(None, description="Defaults to the configured backend"),
):
    """
    Get a user's face login status.

    The stored reference is never returned.
    """
    components = request.app.state.components
    try:
        status = await asyncio.to_thread(components.enrollment_status, user_id, backend)
    except FaceAuthError as e:
        raise HTTPException(status_code=error_status(e), detail=e.message)
    return EnrollmentStatusResponse(**status)


@router.delete("/{user_id}", response_model=DeleteEnrollmentResponse)
async def delete_enrollment(request: Request, user_id: str):
    """
    Disable face login for a user.

    Raises:
        404: If the user has no enrollment records.
        502: If the managed collection could not be updated.
    """
    components = request.app.state.components

    records = await asyncio.to_thread(components.store.list_records, user_id)
    if not records:
        raise HTTPException(status_code=404, detail=f"No face enrollment for user {user_id}")

    try:
        count = await components.opt_out(user_id)
    except FaceAuthError as e:
        logger.error(f"Opt-out failed for {user_id}: {e.detail or e}")
        raise HTTPException(status_code=error_status(e), detail=e.message)

    return DeleteEnrollmentResponse(
        success=True,
        user_id=user_id,
        records_deleted=count,
        message=f"Face login disabled for {user_id}",
    )
