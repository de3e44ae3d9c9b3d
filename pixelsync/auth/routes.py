"""
Authentication API routes for the sync backend.
"""
from fastapi import APIRouter, Depends, HTTPException, status
import structlog

from pixelsync.auth.models import LoginRequest, LoginResponse
from pixelsync.remote_db import ServerDatabase, get_server_db


logger = structlog.get_logger()
router = APIRouter(prefix="/api/auth", tags=["authentication"])


@router.post("/login", response_model=LoginResponse)
async def login(
    request: LoginRequest,
    server_db: ServerDatabase = Depends(get_server_db),
):
    """
    Verify email and password against the user directory.

    Devices call this only after local authentication failed; the returned
    user is stored on the device for later offline logins.
    """
    try:
        user = await server_db.authenticate(request.email, request.password)
    except Exception as e:
        logger.error("login_database_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database error",
        )

    if user is None:
        logger.warning("login_rejected", email=request.email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    logger.info("login_accepted", user_id=user["id"])
    return LoginResponse(user=user)
