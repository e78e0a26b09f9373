"""Pydantic schemas for API validation"""

from authcore.schemas.token import (
    DeviceInfo,
    IssueTokenRequest,
    RotateTokenRequest,
    RevokeTokenRequest,
    RevokeAllRequest,
    TokenPair,
    RefreshTokenSummary,
    TokenStats,
    CleanupResult,
)
from authcore.schemas.audit import (
    AuditEventCreate,
    AuditRecordResponse,
    RecordVerification,
    ChainError,
    ChainVerification,
    ComplianceReport,
)
from authcore.schemas.response import ErrorResponse, HealthResponse

__all__ = [
    "DeviceInfo", "IssueTokenRequest", "RotateTokenRequest", "RevokeTokenRequest", "RevokeAllRequest",
    "TokenPair", "RefreshTokenSummary", "TokenStats", "CleanupResult",
    "AuditEventCreate", "AuditRecordResponse", "RecordVerification", "ChainError",
    "ChainVerification", "ComplianceReport",
    "ErrorResponse", "HealthResponse",
]
