"""Refresh token rotation and revocation service."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, NoReturn, Optional, Tuple, Union
import logging

from jose import JWTError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from authcore.config import settings
from authcore.core.exceptions import (
    AuthenticationError,
    InvalidRefreshTokenError,
    OwnerNotFoundError,
    RefreshTokenExpiredError,
    RefreshTokenNotFoundError,
    RefreshTokenRevokedError,
    TokenReuseDetectedError,
    ValidationError,
)
from authcore.core.metrics import (
    TOKEN_REUSE_DETECTED,
    TOKENS_ISSUED,
    TOKENS_RECLAIMED,
    TOKENS_REVOKED,
    TOKENS_ROTATED,
)
from authcore.core.security import (
    REFRESH_TOKEN_TYPE,
    Signer,
    generate_family_id,
    get_signer,
    naive_utc,
    utcnow,
)
from authcore.models.security import MANUAL_REVOCATION_REASONS, RefreshToken, RevocationReason
from authcore.schemas.token import CleanupResult, DeviceInfo, RefreshTokenSummary, TokenPair, TokenStats
from authcore.services.audit_service import AuditLedger, audit_ledger

logger = logging.getLogger(__name__)

# (owner_id, tenant_id) -> access credential
AccessTokenFactory = Callable[[str, Optional[str]], str]
# (db, owner_id) -> owner exists and is active
OwnerValidator = Callable[[Session, str], bool]

DeviceInfoInput = Union[DeviceInfo, Dict[str, Any], None]

# A retired token revoked for one of these reasons was superseded, so
# presenting it again is reuse rather than a plain revoked-token rejection.
_SUPERSEDED_REASONS = (RevocationReason.REFRESH.value, RevocationReason.REUSE_DETECTED.value)


class TokenService:
    """Manage refresh-token family lifecycle.

    Every rotation creates the successor and revokes the presented token in
    one transaction. The revoke is a conditional update on ``revoked = false``,
    so of two concurrent rotations of the same token only one can claim it;
    the other is handled exactly like a replay of a superseded token.
    """

    def __init__(
        self,
        signer: Signer,
        ledger: AuditLedger,
        *,
        access_token_factory: Optional[AccessTokenFactory] = None,
        owner_validator: Optional[OwnerValidator] = None,
        refresh_token_ttl: Optional[timedelta] = None,
        access_token_ttl: Optional[timedelta] = None,
        retention: Optional[timedelta] = None,
    ) -> None:
        self._signer = signer
        self._ledger = ledger
        self._access_token_factory = access_token_factory or self._default_access_token
        self._owner_validator = owner_validator
        self._refresh_ttl = refresh_token_ttl or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
        self._access_ttl = access_token_ttl or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        self._retention = retention if retention is not None else timedelta(days=settings.REFRESH_TOKEN_RETENTION_DAYS)

    # Helpers

    def _default_access_token(self, owner_id: str, tenant_id: Optional[str]) -> str:
        claims: Dict[str, Any] = {"sub": owner_id}
        if tenant_id:
            claims["tid"] = tenant_id
        return self._signer.create_access_token(claims, self._access_ttl)

    @staticmethod
    def _device_dict(device_info: DeviceInfoInput) -> Dict[str, Any]:
        if device_info is None:
            return {}
        if isinstance(device_info, DeviceInfo):
            return device_info.model_dump(exclude_none=True)
        return {key: value for key, value in dict(device_info).items() if value is not None}

    def _mint_refresh_token(self, owner_id: str, tenant_id: Optional[str], family: str) -> Tuple[str, datetime]:
        claims: Dict[str, Any] = {"sub": owner_id}
        if tenant_id:
            claims["tid"] = tenant_id
        refresh_token = self._signer.create_refresh_token(
            claims,
            family_id=family,
            expires_delta=self._refresh_ttl,
        )
        exp = self._signer.decode_token(refresh_token, REFRESH_TOKEN_TYPE, verify_exp=False).get("exp")
        if not exp:
            raise AuthenticationError("Failed to generate refresh token")
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc).replace(tzinfo=None)
        return refresh_token, expires_at

    def _token_pair(self, owner_id: str, tenant_id: Optional[str], family: str, refresh_token: str) -> TokenPair:
        return TokenPair(
            access_token=self._access_token_factory(owner_id, tenant_id),
            refresh_token=refresh_token,
            expires_in=int(self._access_ttl.total_seconds()),
            owner_id=owner_id,
            tenant_id=tenant_id,
            family=family,
        )

    def _find_by_token(self, db: Session, refresh_token: str) -> Optional[RefreshToken]:
        token_hash = self._signer.hash(refresh_token)
        return db.query(RefreshToken).filter(RefreshToken.token_hash == token_hash).first()

    def _audit(self, db: Session, **event: Any) -> None:
        # Audit failures are logged, never raised into the token operation.
        try:
            self._ledger.log_event(db, **event)
        except Exception as exc:
            logger.error("Audit logging failed for %s: %s", event.get("action"), exc)

    @staticmethod
    def _is_expired(record: RefreshToken, now: Optional[datetime] = None) -> bool:
        return naive_utc(record.expires_at) <= (now or utcnow())

    @staticmethod
    def _require_manual_reason(reason: RevocationReason) -> RevocationReason:
        reason = RevocationReason(reason)
        if reason not in MANUAL_REVOCATION_REASONS:
            raise ValidationError(
                "Revocation reason not allowed",
                details={"reason": reason.value, "allowed": [r.value for r in MANUAL_REVOCATION_REASONS]},
            )
        return reason

    # Issuance

    def issue(
        self,
        db: Session,
        owner_id: str,
        tenant_id: Optional[str] = None,
        device_info: DeviceInfoInput = None,
    ) -> str:
        """
        Start a new token family

        Args:
            db: Database session
            owner_id: Authenticated principal
            tenant_id: Optional tenant scope
            device_info: Descriptive client metadata

        Returns:
            str: Bearer secret of the family's first link
        """
        family = generate_family_id()
        refresh_token, expires_at = self._mint_refresh_token(owner_id, tenant_id, family)
        record = RefreshToken(
            token_hash=self._signer.hash(refresh_token),
            owner_id=owner_id,
            tenant_id=tenant_id,
            family=family,
            rotated_from_id=None,
            issued_at=utcnow(),
            expires_at=expires_at,
            revoked=False,
            device_info=self._device_dict(device_info),
        )
        try:
            db.add(record)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to create refresh token: %s", exc)
            raise
        db.refresh(record)

        TOKENS_ISSUED.inc()
        logger.info("Refresh token created owner=%s family=%s token_id=%s", owner_id, family, record.id)
        self._audit(
            db,
            action="token_issued",
            actor_id=owner_id,
            entity_type="refresh_token",
            entity_id=str(record.id),
            tenant_id=tenant_id,
            details={"family": family, "device_info": record.device_info or {}},
        )
        return refresh_token

    def issue_token_pair(
        self,
        db: Session,
        owner_id: str,
        tenant_id: Optional[str] = None,
        device_info: DeviceInfoInput = None,
    ) -> TokenPair:
        refresh_token = self.issue(db, owner_id, tenant_id, device_info)
        family = self._signer.decode_token(refresh_token, REFRESH_TOKEN_TYPE, verify_exp=False)["fam"]
        return self._token_pair(owner_id, tenant_id, family, refresh_token)

    # Rotation

    def _decode_refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        try:
            payload = self._signer.decode_token(refresh_token, REFRESH_TOKEN_TYPE)
        except JWTError as exc:
            logger.warning("Refresh token rejected: %s", exc)
            raise InvalidRefreshTokenError()
        if not payload.get("sub") or not payload.get("fam") or not payload.get("jti"):
            logger.warning("Refresh token rejected: missing claims")
            raise InvalidRefreshTokenError("Malformed refresh token")
        return payload

    @staticmethod
    def _is_superseded(db: Session, record: RefreshToken) -> bool:
        """True if the record is no longer the newest link of its family."""
        if record.revoked and record.revoked_reason in _SUPERSEDED_REASONS:
            return True
        newer = (
            db.query(RefreshToken.id)
            .filter(RefreshToken.family == record.family, RefreshToken.id > record.id)
            .first()
        )
        return newer is not None

    def _handle_reuse(
        self,
        db: Session,
        *,
        token_id: int,
        owner_id: str,
        tenant_id: Optional[str],
        family: str,
    ) -> NoReturn:
        revoked_count = self.revoke_family(db, family, RevocationReason.REUSE_DETECTED)
        TOKEN_REUSE_DETECTED.inc()
        logger.error(
            "Refresh token reuse detected; family revoked owner=%s family=%s token_id=%s revoked=%d",
            owner_id,
            family,
            token_id,
            revoked_count,
        )
        self._audit(
            db,
            action="token_reuse_detected",
            actor_id=owner_id,
            entity_type="user",
            entity_id=owner_id,
            tenant_id=tenant_id,
            severity="critical",
            details={
                "action": "revoked_token_family",
                "family": family,
                "presented_token_id": token_id,
                "revoked_count": revoked_count,
            },
        )
        raise TokenReuseDetectedError(family, revoked_count)

    def rotate(self, db: Session, refresh_token: str, device_info: DeviceInfoInput = None) -> TokenPair:
        """
        Exchange a refresh token for a new access token and refresh token

        Args:
            db: Database session
            refresh_token: Bearer secret presented by the client
            device_info: Client metadata; defaults to the predecessor's

        Returns:
            TokenPair: New access credential and bearer secret

        Raises:
            InvalidRefreshTokenError: Bad signature, expiry or claims
            RefreshTokenNotFoundError: No stored record for the secret
            TokenReuseDetectedError: A superseded secret was presented
            RefreshTokenRevokedError: Secret was revoked (logout, security)
            RefreshTokenExpiredError: Stored record is past expiry
            OwnerNotFoundError: Owner rejected by the configured validator
        """
        payload = self._decode_refresh_token(refresh_token)

        record = self._find_by_token(db, refresh_token)
        if record is None:
            logger.warning("Refresh token not found in database owner=%s", payload.get("sub"))
            raise RefreshTokenNotFoundError()

        token_id = record.id
        owner_id = record.owner_id
        tenant_id = record.tenant_id
        family = record.family
        identity = {"token_id": token_id, "owner_id": owner_id, "tenant_id": tenant_id, "family": family}

        if self._is_superseded(db, record):
            self._handle_reuse(db, **identity)

        if record.revoked:
            logger.warning(
                "Revoked refresh token presented owner=%s token_id=%s reason=%s",
                owner_id,
                token_id,
                record.revoked_reason,
            )
            raise RefreshTokenRevokedError(record.revoked_reason)

        now = utcnow()
        if self._is_expired(record, now):
            logger.warning("Expired refresh token presented owner=%s token_id=%s", owner_id, token_id)
            raise RefreshTokenExpiredError()

        if self._owner_validator is not None and not self._owner_validator(db, owner_id):
            logger.error("User not found for refresh token owner=%s", owner_id)
            raise OwnerNotFoundError(owner_id)

        new_refresh, new_expires_at = self._mint_refresh_token(owner_id, tenant_id, family)
        successor = RefreshToken(
            token_hash=self._signer.hash(new_refresh),
            owner_id=owner_id,
            tenant_id=tenant_id,
            family=family,
            rotated_from_id=token_id,
            issued_at=now,
            expires_at=new_expires_at,
            last_used_at=now,
            revoked=False,
            device_info=self._device_dict(device_info) or dict(record.device_info or {}),
        )

        try:
            db.add(successor)
            db.flush()
            claimed = (
                db.query(RefreshToken)
                .filter(RefreshToken.id == token_id, RefreshToken.revoked == False)  # noqa: E712
                .update(
                    {
                        RefreshToken.revoked: True,
                        RefreshToken.revoked_reason: RevocationReason.REFRESH.value,
                        RefreshToken.revoked_at: now,
                        RefreshToken.last_used_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if claimed != 1:
                db.rollback()
                logger.warning("Refresh token %s was rotated concurrently", token_id)
                self._handle_reuse(db, **identity)
            db.commit()
        except IntegrityError:
            # Another rotation already created this token's successor.
            db.rollback()
            logger.warning("Refresh token %s already has a successor", token_id)
            self._handle_reuse(db, **identity)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to rotate refresh token %s: %s", token_id, exc)
            raise

        TOKENS_ROTATED.inc()
        TOKENS_REVOKED.labels(RevocationReason.REFRESH.value).inc()
        logger.info("Refresh token rotated owner=%s family=%s token_id=%s", owner_id, family, token_id)
        self._audit(
            db,
            action="token_refreshed",
            actor_id=owner_id,
            entity_type="user",
            entity_id=owner_id,
            tenant_id=tenant_id,
            severity="low",
            details={"family": family, "rotated_from_id": token_id},
        )
        return self._token_pair(owner_id, tenant_id, family, new_refresh)

    # Revocation

    def revoke_family(
        self,
        db: Session,
        family: str,
        reason: RevocationReason = RevocationReason.REUSE_DETECTED,
    ) -> int:
        """Revoke every live record sharing a family id; returns the count."""
        now = utcnow()
        count = (
            db.query(RefreshToken)
            .filter(RefreshToken.family == family, RefreshToken.revoked == False)  # noqa: E712
            .update(
                {
                    RefreshToken.revoked: True,
                    RefreshToken.revoked_reason: reason.value,
                    RefreshToken.revoked_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if count:
            TOKENS_REVOKED.labels(reason.value).inc(count)
        return count

    def revoke(
        self,
        db: Session,
        refresh_token: str,
        reason: RevocationReason = RevocationReason.LOGOUT,
    ) -> Optional[RefreshToken]:
        """
        Revoke a single refresh token (logout)

        Returns:
            The revoked record, or None if the token is invalid or unknown

        Raises:
            ValidationError: If the reason is not logout or security
        """
        reason = self._require_manual_reason(reason)
        try:
            self._signer.decode_token(refresh_token, REFRESH_TOKEN_TYPE, verify_exp=False)
        except JWTError:
            return None

        record = self._find_by_token(db, refresh_token)
        if record is None:
            return None
        if record.revoked:
            return record

        try:
            record.revoked = True
            record.revoked_reason = reason.value
            record.revoked_at = utcnow()
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to revoke refresh token: %s", exc)
            raise
        db.refresh(record)

        TOKENS_REVOKED.labels(reason.value).inc()
        logger.info(
            "Refresh token revoked token_id=%s owner=%s reason=%s",
            record.id,
            record.owner_id,
            reason.value,
        )
        self._audit(
            db,
            action="token_revoked",
            actor_id=record.owner_id,
            entity_type="refresh_token",
            entity_id=str(record.id),
            tenant_id=record.tenant_id,
            details={"family": record.family, "reason": reason.value},
        )
        return record

    def revoke_all_for_owner(
        self,
        db: Session,
        owner_id: str,
        reason: RevocationReason = RevocationReason.SECURITY,
        tenant_id: Optional[str] = None,
    ) -> int:
        """
        Revoke every live refresh token of an owner ("log out everywhere")

        Already-revoked and expired records are left untouched. ``tenant_id``
        only selects the audit scope.
        """
        reason = self._require_manual_reason(reason)
        now = utcnow()
        try:
            count = (
                db.query(RefreshToken)
                .filter(
                    RefreshToken.owner_id == owner_id,
                    RefreshToken.revoked == False,  # noqa: E712
                    RefreshToken.expires_at > now,
                )
                .update(
                    {
                        RefreshToken.revoked: True,
                        RefreshToken.revoked_reason: reason.value,
                        RefreshToken.revoked_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to revoke refresh tokens for owner %s: %s", owner_id, exc)
            raise

        if count:
            TOKENS_REVOKED.labels(reason.value).inc(count)
        logger.info("All refresh tokens revoked owner=%s count=%d reason=%s", owner_id, count, reason.value)
        self._audit(
            db,
            action="all_refresh_tokens_revoked",
            actor_id=owner_id,
            entity_type="user",
            entity_id=owner_id,
            tenant_id=tenant_id,
            details={"count": count, "reason": reason.value},
        )
        return count

    # Lookup

    def verify_token(self, db: Session, refresh_token: str) -> bool:
        try:
            self._signer.decode_token(refresh_token, REFRESH_TOKEN_TYPE)
        except JWTError:
            return False
        record = self._find_by_token(db, refresh_token)
        return bool(record and not record.revoked and not self._is_expired(record))

    @staticmethod
    def get_active_tokens(db: Session, owner_id: str) -> List[RefreshToken]:
        return (
            db.query(RefreshToken)
            .filter(
                RefreshToken.owner_id == owner_id,
                RefreshToken.revoked == False,  # noqa: E712
                RefreshToken.expires_at > utcnow(),
            )
            .order_by(RefreshToken.issued_at.desc(), RefreshToken.id.desc())
            .all()
        )

    def get_token_stats(self, db: Session, owner_id: str) -> TokenStats:
        tokens = self.get_active_tokens(db, owner_id)
        return TokenStats(
            owner_id=owner_id,
            active_count=len(tokens),
            family_count=len({token.family for token in tokens}),
            tokens=[RefreshTokenSummary.model_validate(token) for token in tokens],
        )

    # Retention

    def cleanup(
        self,
        db: Session,
        *,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
        max_batches: Optional[int] = None,
    ) -> CleanupResult:
        """
        Reclaim expired refresh tokens in bounded batches

        Expired records still marked live are revoked with ``expired_cleanup``;
        records expired for longer than the retention window are deleted.
        When ``max_batches`` stops the sweep early, ``complete`` is False and a
        later call continues where this one stopped.
        """
        now = naive_utc(now) or utcnow()
        size = max(1, batch_size or settings.CLEANUP_BATCH_SIZE)
        delete_before = now - self._retention
        result = CleanupResult()

        def budget_left() -> bool:
            return max_batches is None or result.batches < max_batches

        try:
            while budget_left():
                ids = [
                    row.id
                    for row in db.query(RefreshToken.id)
                    .filter(RefreshToken.revoked == False, RefreshToken.expires_at <= now)  # noqa: E712
                    .limit(size)
                    .all()
                ]
                if not ids:
                    break
                result.marked_expired += (
                    db.query(RefreshToken)
                    .filter(RefreshToken.id.in_(ids), RefreshToken.revoked == False)  # noqa: E712
                    .update(
                        {
                            RefreshToken.revoked: True,
                            RefreshToken.revoked_reason: RevocationReason.EXPIRED_CLEANUP.value,
                            RefreshToken.revoked_at: now,
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()
                result.batches += 1

            while budget_left():
                ids = [
                    row.id
                    for row in db.query(RefreshToken.id)
                    .filter(RefreshToken.expires_at <= delete_before)
                    .limit(size)
                    .all()
                ]
                if not ids:
                    break
                result.deleted += (
                    db.query(RefreshToken)
                    .filter(RefreshToken.id.in_(ids))
                    .delete(synchronize_session=False)
                )
                db.commit()
                result.batches += 1
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to cleanup expired tokens: %s", exc)
            raise

        result.complete = budget_left()
        if result.marked_expired:
            TOKENS_REVOKED.labels(RevocationReason.EXPIRED_CLEANUP.value).inc(result.marked_expired)
        if result.deleted:
            TOKENS_RECLAIMED.inc(result.deleted)
        if result.marked_expired or result.deleted:
            logger.info(
                "Expired refresh tokens cleaned up marked=%d deleted=%d",
                result.marked_expired,
                result.deleted,
            )
        return result


token_service = TokenService(get_signer(), audit_ledger)
