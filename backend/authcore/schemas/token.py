"""Refresh token schemas"""

from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.models.security import MANUAL_REVOCATION_REASONS, RevocationReason


class DeviceInfo(BaseModel):
    """Descriptive client metadata; never used for authorization"""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    device: Optional[str] = None


class IssueTokenRequest(BaseModel):
    """Start a new token family for an authenticated principal"""
    owner_id: str = Field(..., min_length=1, max_length=128)
    tenant_id: Optional[str] = Field(None, max_length=128)
    device_info: Optional[DeviceInfo] = None


class RotateTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class RevokeTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)
    reason: RevocationReason = RevocationReason.LOGOUT

    @field_validator('reason')
    @classmethod
    def reason_is_manual(cls, v):
        """Only reasons a caller may record by hand"""
        if v not in MANUAL_REVOCATION_REASONS:
            raise ValueError('reason must be logout or security')
        return v


class RevokeAllRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=128)
    tenant_id: Optional[str] = Field(None, max_length=128)
    reason: RevocationReason = RevocationReason.SECURITY

    @field_validator('reason')
    @classmethod
    def reason_is_manual(cls, v):
        """Only reasons a caller may record by hand"""
        if v not in MANUAL_REVOCATION_REASONS:
            raise ValueError('reason must be logout or security')
        return v


class TokenPair(BaseModel):
    """Access credential plus the bearer secret of the newest family link"""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    owner_id: str
    tenant_id: Optional[str] = None
    family: str


class RefreshTokenSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    tenant_id: Optional[str] = None
    family: str
    rotated_from_id: Optional[int] = None
    issued_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    revoked: bool
    revoked_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    device_info: Optional[Dict[str, Any]] = None


class TokenStats(BaseModel):
    owner_id: str
    active_count: int
    family_count: int
    tokens: List[RefreshTokenSummary] = Field(default_factory=list)


class CleanupResult(BaseModel):
    """Outcome of one retention sweep"""
    marked_expired: int = 0
    deleted: int = 0
    batches: int = 0
    complete: bool = True
