"""
Result DTOs returned by the OTP operations.

DeliveryResult: RequestOTP / ResendOTP
VerifyResult: VerifyOTP
OtpStatus: GetOTPStatus (status only, never the code value)
PostActionToken: what a successful verification hands back, per purpose
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class DeliveryResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    expires_at: datetime
    provider_used: str
    channel: str
    code_id: Optional[str] = None


class SessionTokens(BaseModel):
    """Access + refresh pair issued after a login code is verified."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class PostActionToken(BaseModel):
    """Purpose-specific artefact of a successful verification.

    kind is ``"session"`` (login), ``"reset_grant"`` (passwordReset) or
    ``"contact_verified"`` (verification, no secret attached).
    """

    kind: str
    session: Optional[SessionTokens] = None
    reset_grant: Optional[str] = None
    expires_at: Optional[datetime] = None


class VerifyResult(BaseModel):
    success: bool
    attempts_left: int
    post_action_token: Optional[PostActionToken] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class OtpStatus(BaseModel):
    exists: bool
    expires_at: Optional[datetime] = None
    attempts: int = 0
    is_used: bool = False
