"""
Pydantic models for authentication and sessions.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    """Credentials posted to the login endpoint."""
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

    class Config:
        json_schema_extra = {
            "example": {"email": "user@example.com", "password": "secret"}
        }


class LoginResponse(BaseModel):
    """Authenticated user without the password field."""
    user: Dict[str, Any]


class Session(BaseModel):
    """
    Logged-in session persisted on the device.

    Stored with camelCase keys so every application instance sharing the
    key-value store reads the same shape.
    """
    user: Dict[str, Any]
    device_id: str = Field(..., alias="deviceId")
    login_time: str = Field(..., alias="loginTime")
    expires_at: str = Field(..., alias="expiresAt")
    auth_token: str = Field(..., alias="authToken")

    class Config:
        populate_by_name = True

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class DeviceInfo(BaseModel):
    device_id: str
    user_id: Optional[str] = None
    timestamp: str
