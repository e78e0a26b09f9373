"""Signing primitives - hashing, keyed-MAC and JWT credentials.

A single Signer instance holds the service secret and is handed to both the
token authority and the audit ledger, so tests can construct one with a
deterministic key.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
import hashlib
import hmac
import secrets

from jose import JWTError, jwt

from authcore.config import settings

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if dt is not None and dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def generate_family_id() -> str:
    """Fresh random identifier for a new rotation chain."""
    return secrets.token_urlsafe(24)


class Signer:
    """Holds the service secret and performs every keyed operation."""

    hash_algorithm = "sha256"

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        if not secret_key:
            raise ValueError("Signer requires a non-empty secret key")
        self._secret_key = secret_key
        self._key_bytes = secret_key.encode("utf-8")
        self.algorithm = algorithm

    # Content hashing and MAC

    def hash(self, value: str) -> str:
        """
        One-way SHA-256 digest

        Args:
            value: Text to hash

        Returns:
            str: Hex digest
        """
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    def sign(self, value: str) -> str:
        """
        Keyed-MAC of a value under the service secret

        Args:
            value: Text to authenticate

        Returns:
            str: Hex HMAC-SHA256
        """
        return hmac.new(self._key_bytes, value.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify(self, value: str, signature: Optional[str]) -> bool:
        """Constant-time check of a MAC produced by sign()."""
        if not signature:
            return False
        return hmac.compare_digest(self.sign(value), signature)

    # JWT credentials

    def _encode(self, data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        now = datetime.now(timezone.utc)
        to_encode = data.copy()
        to_encode.update({
            "typ": token_type,
            "iat": now,
            "exp": now + expires_delta,
            "jti": secrets.token_urlsafe(32)  # Unique token ID
        })
        return jwt.encode(to_encode, self._secret_key, algorithm=self.algorithm)

    def create_access_token(self, data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        """
        Create JWT access token

        Args:
            data: Claims to encode in token
            expires_delta: Token expiration time

        Returns:
            str: Encoded JWT token
        """
        if expires_delta is None:
            expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        return self._encode(data, ACCESS_TOKEN_TYPE, expires_delta)

    def create_refresh_token(
        self,
        data: Dict[str, Any],
        *,
        family_id: str,
        expires_delta: Optional[timedelta] = None,
    ) -> str:
        """
        Create JWT refresh token bound to a rotation family

        Args:
            data: Claims to encode in token
            family_id: Rotation chain identifier
            expires_delta: Token expiration time

        Returns:
            str: Encoded JWT token
        """
        if expires_delta is None:
            expires_delta = timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
        claims = dict(data)
        claims["fam"] = family_id
        return self._encode(claims, REFRESH_TOKEN_TYPE, expires_delta)

    def decode_token(
        self,
        token: str,
        expected_type: Optional[str] = None,
        verify_exp: bool = True,
    ) -> Dict[str, Any]:
        """
        Decode and verify a JWT

        Raises:
            JWTError: On bad signature, expiry, or a type mismatch
        """
        payload = jwt.decode(
            token,
            self._secret_key,
            algorithms=[self.algorithm],
            options={"verify_exp": verify_exp},
        )
        if expected_type and payload.get("typ") != expected_type:
            raise JWTError(f"Token is not a {expected_type} token")
        return payload

    def decode_access_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Decode an access token, returning None if invalid."""
        try:
            return self.decode_token(token, ACCESS_TOKEN_TYPE)
        except JWTError:
            return None


def get_signer() -> Signer:
    """Signer built from process configuration."""
    return Signer(settings.SECRET_KEY, settings.ALGORITHM)
