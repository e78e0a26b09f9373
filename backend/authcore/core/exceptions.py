"""Custom exception classes for the credential authority"""

from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    code: Optional[str] = None

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=401, details=details)


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token is malformed, badly signed or past its signed expiry"""
    code = "INVALID_REFRESH_TOKEN"

    def __init__(self, message: str = "Invalid refresh token"):
        super().__init__(message)


class RefreshTokenNotFoundError(AuthenticationError):
    """Structurally valid refresh token with no stored record"""
    code = "REFRESH_TOKEN_NOT_FOUND"

    def __init__(self):
        super().__init__("Refresh token not recognized")


class TokenReuseDetectedError(AuthenticationError):
    """A superseded refresh token was presented again"""
    code = "TOKEN_REUSE_DETECTED"

    def __init__(self, family: str, revoked_count: int):
        super().__init__(
            "Refresh token reuse detected; all sessions in this family were revoked",
            details={"family": family, "revoked_count": revoked_count},
        )


class RefreshTokenRevokedError(AuthenticationError):
    """Refresh token was revoked (logout, security action, cleanup)"""
    code = "REFRESH_TOKEN_REVOKED"

    def __init__(self, reason: Optional[str] = None):
        super().__init__("Refresh token has been revoked", details={"reason": reason})


class RefreshTokenExpiredError(AuthenticationError):
    """Stored refresh token record is past its expiry"""
    code = "REFRESH_TOKEN_EXPIRED"

    def __init__(self):
        super().__init__("Refresh token has expired")


class OwnerNotFoundError(AuthenticationError):
    """Token owner no longer exists or is inactive"""
    code = "USER_NOT_FOUND"

    def __init__(self, owner_id: str):
        super().__init__("Token owner not found or inactive", details={"owner_id": owner_id})


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


# Validation Errors
class ValidationError(BaseAPIException):
    """Validation error"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details)


# System Errors
class DatabaseError(BaseAPIException):
    """Database operation failed"""
    def __init__(self, message: str = "Database operation failed"):
        super().__init__(message, status_code=500)
