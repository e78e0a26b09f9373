from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from authcore.core.database import Base
from authcore.core.exceptions import (
    InvalidRefreshTokenError,
    OwnerNotFoundError,
    RefreshTokenExpiredError,
    RefreshTokenNotFoundError,
    RefreshTokenRevokedError,
    TokenReuseDetectedError,
    ValidationError,
)
from authcore.core.security import Signer, utcnow
from authcore.models.audit import AuditRecord
from authcore.models.security import RefreshToken, RevocationReason
from authcore.schemas.token import DeviceInfo
from authcore.services.audit_service import AuditLedger
from authcore.services.token_service import TokenService

TEST_KEY = "token-test-secret-key-0123456789abcdef"


def _make_session():
    engine = create_engine("sqlite:///:memory:")
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    return SessionLocal()


def _service(**kwargs) -> TokenService:
    signer = Signer(TEST_KEY)
    return TokenService(signer, AuditLedger(signer), **kwargs)


def _record(db, service, token) -> RefreshToken:
    return db.query(RefreshToken).filter(RefreshToken.token_hash == service._signer.hash(token)).one()


def _family_rows(db, family):
    return db.query(RefreshToken).filter(RefreshToken.family == family).order_by(RefreshToken.id).all()


def test_issue_stores_only_hash_and_starts_family():
    db = _make_session()
    try:
        service = _service()
        token = service.issue(
            db,
            "user-1",
            tenant_id="firm-7",
            device_info=DeviceInfo(ip_address="10.0.0.1", user_agent="pytest"),
        )
        record = _record(db, service, token)

        assert record.token_hash != token
        assert len(record.token_hash) == 64
        assert record.owner_id == "user-1"
        assert record.tenant_id == "firm-7"
        assert record.rotated_from_id is None
        assert record.revoked is False
        assert record.expires_at > utcnow()
        assert record.device_info == {"ip_address": "10.0.0.1", "user_agent": "pytest"}

        event = db.query(AuditRecord).filter(AuditRecord.action == "token_issued").one()
        assert event.entity_id == str(record.id)
        assert event.tenant_id == "firm-7"
        assert event.details["family"] == record.family
    finally:
        db.close()


def test_issue_token_pair_returns_access_and_refresh():
    db = _make_session()
    try:
        service = _service()
        pair = service.issue_token_pair(db, "user-1", tenant_id="firm-7")

        access = service._signer.decode_access_token(pair.access_token)
        assert access["sub"] == "user-1"
        assert access["tid"] == "firm-7"
        assert pair.token_type == "bearer"
        assert pair.family == _record(db, service, pair.refresh_token).family
    finally:
        db.close()


def test_rotate_links_successor_and_retires_predecessor():
    db = _make_session()
    try:
        service = _service()
        first = service.issue(db, "user-1", device_info={"user_agent": "browser"})
        pair = service.rotate(db, first)

        predecessor = _record(db, service, first)
        successor = _record(db, service, pair.refresh_token)

        assert pair.refresh_token != first
        assert pair.owner_id == "user-1"
        assert predecessor.revoked is True
        assert predecessor.revoked_reason == RevocationReason.REFRESH.value
        assert predecessor.revoked_at is not None
        assert successor.rotated_from_id == predecessor.id
        assert successor.family == predecessor.family
        assert successor.revoked is False
        assert successor.last_used_at is not None
        assert successor.device_info == {"user_agent": "browser"}

        event = db.query(AuditRecord).filter(AuditRecord.action == "token_refreshed").one()
        assert event.severity == "low"
        assert event.details["rotated_from_id"] == predecessor.id
    finally:
        db.close()


def test_rotate_prefers_presented_device_info():
    db = _make_session()
    try:
        service = _service()
        first = service.issue(db, "user-1", device_info={"user_agent": "old"})
        pair = service.rotate(db, first, device_info=DeviceInfo(user_agent="new", device_id="d1"))
        assert _record(db, service, pair.refresh_token).device_info == {"user_agent": "new", "device_id": "d1"}
    finally:
        db.close()


def test_family_has_single_live_link_after_many_rotations():
    db = _make_session()
    try:
        service = _service()
        token = service.issue(db, "user-1")
        family = _record(db, service, token).family
        for _ in range(4):
            token = service.rotate(db, token).refresh_token

        rows = _family_rows(db, family)
        assert len(rows) == 5
        assert [row.id for row in rows if not row.revoked] == [rows[-1].id]
        for previous, current in zip(rows, rows[1:]):
            assert current.rotated_from_id == previous.id
    finally:
        db.close()


def test_replayed_token_revokes_whole_family():
    db = _make_session()
    try:
        service = _service()
        token_a = service.issue(db, "user-1", tenant_id="firm-7")
        token_b = service.rotate(db, token_a).refresh_token

        with pytest.raises(TokenReuseDetectedError) as exc_info:
            service.rotate(db, token_a)
        assert exc_info.value.code == "TOKEN_REUSE_DETECTED"
        assert exc_info.value.details["revoked_count"] == 1

        record_a = _record(db, service, token_a)
        record_b = _record(db, service, token_b)
        assert record_a.revoked_reason == RevocationReason.REFRESH.value
        assert record_b.revoked is True
        assert record_b.revoked_reason == RevocationReason.REUSE_DETECTED.value

        event = db.query(AuditRecord).filter(AuditRecord.action == "token_reuse_detected").one()
        assert event.severity == "critical"
        assert event.tenant_id == "firm-7"
        assert event.details["action"] == "revoked_token_family"
        assert event.details["family"] == record_a.family
        assert event.details["presented_token_id"] == record_a.id

        # the legitimate holder's token is now dead as well
        with pytest.raises(TokenReuseDetectedError):
            service.rotate(db, token_b)
    finally:
        db.close()


def test_reuse_leaves_other_families_usable():
    db = _make_session()
    try:
        service = _service()
        laptop = service.issue(db, "user-1")
        phone = service.issue(db, "user-1")
        service.rotate(db, laptop)

        with pytest.raises(TokenReuseDetectedError):
            service.rotate(db, laptop)

        pair = service.rotate(db, phone)
        assert _record(db, service, pair.refresh_token).revoked is False
    finally:
        db.close()


def test_logged_out_token_is_rejected_without_family_revocation():
    db = _make_session()
    try:
        service = _service()
        token_a = service.issue(db, "user-1")
        token_b = service.rotate(db, token_a).refresh_token
        service.revoke(db, token_b)

        with pytest.raises(RefreshTokenRevokedError) as exc_info:
            service.rotate(db, token_b)
        assert exc_info.value.details["reason"] == RevocationReason.LOGOUT.value

        assert _record(db, service, token_b).revoked_reason == RevocationReason.LOGOUT.value
        assert db.query(AuditRecord).filter(AuditRecord.action == "token_reuse_detected").count() == 0
    finally:
        db.close()


def test_expired_record_is_rejected():
    db = _make_session()
    try:
        service = _service()
        token = service.issue(db, "user-1")
        record = _record(db, service, token)
        record.expires_at = utcnow() - timedelta(minutes=1)
        db.commit()

        with pytest.raises(RefreshTokenExpiredError):
            service.rotate(db, token)
        assert _record(db, service, token).revoked is False
    finally:
        db.close()


def test_token_past_signed_expiry_is_invalid():
    db = _make_session()
    try:
        service = _service(refresh_token_ttl=timedelta(seconds=-10))
        token = service.issue(db, "user-1")
        with pytest.raises(InvalidRefreshTokenError):
            service.rotate(db, token)
    finally:
        db.close()


@pytest.mark.parametrize("factory", [
    lambda signer: "not-a-jwt",
    lambda signer: Signer("some-other-secret-key-0123456789").create_refresh_token({"sub": "u1"}, family_id="f"),
    lambda signer: signer.create_access_token({"sub": "u1"}),
])
def test_unverifiable_tokens_are_invalid(factory):
    db = _make_session()
    try:
        service = _service()
        with pytest.raises(InvalidRefreshTokenError) as exc_info:
            service.rotate(db, factory(service._signer))
        assert exc_info.value.code == "INVALID_REFRESH_TOKEN"
    finally:
        db.close()


def test_signed_but_unknown_token_is_not_found():
    db = _make_session()
    try:
        service = _service()
        service.issue(db, "user-1")
        forged = service._signer.create_refresh_token({"sub": "user-1"}, family_id="unknown-family")

        with pytest.raises(RefreshTokenNotFoundError):
            service.rotate(db, forged)
        assert db.query(RefreshToken).filter(RefreshToken.revoked == True).count() == 0  # noqa: E712
    finally:
        db.close()


def test_owner_validator_rejects_missing_owner():
    db = _make_session()
    try:
        service = _service(owner_validator=lambda session, owner_id: owner_id != "deleted-user")
        token = service.issue(db, "deleted-user")

        with pytest.raises(OwnerNotFoundError) as exc_info:
            service.rotate(db, token)
        assert exc_info.value.code == "USER_NOT_FOUND"
        assert _record(db, service, token).revoked is False
    finally:
        db.close()


def test_custom_access_token_factory_is_used():
    db = _make_session()
    try:
        service = _service(access_token_factory=lambda owner_id, tenant_id: f"opaque-{owner_id}-{tenant_id}")
        token = service.issue(db, "user-1", tenant_id="firm-7")
        assert service.rotate(db, token).access_token == "opaque-user-1-firm-7"
    finally:
        db.close()


def test_existing_successor_is_treated_as_reuse():
    db = _make_session()
    try:
        service = _service()
        token = service.issue(db, "user-1")
        record = _record(db, service, token)

        # a successor committed by a concurrent rotation
        db.add(RefreshToken(
            token_hash="f" * 64,
            owner_id="user-1",
            family="concurrent-family",
            rotated_from_id=record.id,
            issued_at=utcnow(),
            expires_at=utcnow() + timedelta(days=1),
            revoked=False,
        ))
        db.commit()

        with pytest.raises(TokenReuseDetectedError):
            service.rotate(db, token)

        record = _record(db, service, token)
        assert record.revoked_reason == RevocationReason.REUSE_DETECTED.value
        assert len(_family_rows(db, record.family)) == 1
    finally:
        db.close()


def test_token_retired_after_checks_is_treated_as_reuse():
    db = _make_session()
    try:
        state = {}

        def retire_before_claim(session, owner_id):
            # another rotation wins between the reuse check and the claim
            presented = state["record"]
            session.query(RefreshToken).filter(RefreshToken.id == presented.id).update(
                {
                    RefreshToken.revoked: True,
                    RefreshToken.revoked_reason: RevocationReason.REFRESH.value,
                    RefreshToken.revoked_at: utcnow(),
                },
                synchronize_session=False,
            )
            winner = RefreshToken(
                token_hash="e" * 64,
                owner_id=owner_id,
                family=presented.family,
                issued_at=utcnow(),
                expires_at=utcnow() + timedelta(days=1),
                revoked=False,
            )
            session.add(winner)
            session.commit()
            state["winner_id"] = winner.id
            return True

        service = _service(owner_validator=retire_before_claim)
        token = service.issue(db, "user-1")
        record = _record(db, service, token)
        state["record"] = record
        family = record.family
        record_id = record.id

        with pytest.raises(TokenReuseDetectedError) as excinfo:
            service.rotate(db, token)
        assert excinfo.value.details["revoked_count"] == 1

        assert db.query(RefreshToken).filter(RefreshToken.rotated_from_id == record_id).count() == 0
        winner = db.query(RefreshToken).filter(RefreshToken.id == state["winner_id"]).one()
        assert winner.revoked_reason == RevocationReason.REUSE_DETECTED.value
        rows = _family_rows(db, family)
        assert len(rows) == 2
        assert all(row.revoked for row in rows)
        assert db.query(AuditRecord).filter(AuditRecord.action == "token_reuse_detected").count() == 1
    finally:
        db.close()


def test_audit_failure_does_not_block_rotation(monkeypatch):
    db = _make_session()
    try:
        service = _service()
        token = service.issue(db, "user-1")

        def broken_log_event(*args, **kwargs):
            raise RuntimeError("ledger offline")

        monkeypatch.setattr(service._ledger, "log_event", broken_log_event)
        pair = service.rotate(db, token)
        assert _record(db, service, pair.refresh_token).revoked is False
        assert _record(db, service, token).revoked_reason == RevocationReason.REFRESH.value
    finally:
        db.close()


def test_revoke_single_token_is_idempotent():
    db = _make_session()
    try:
        service = _service()
        token = service.issue(db, "user-1")

        revoked = service.revoke(db, token)
        assert revoked.revoked is True
        first_revoked_at = revoked.revoked_at

        again = service.revoke(db, token, RevocationReason.SECURITY)
        assert again.revoked_reason == RevocationReason.LOGOUT.value
        assert again.revoked_at == first_revoked_at

        assert service.revoke(db, "garbage") is None
        unknown = service._signer.create_refresh_token({"sub": "user-1"}, family_id="f")
        assert service.revoke(db, unknown) is None
        assert db.query(AuditRecord).filter(AuditRecord.action == "token_revoked").count() == 1
    finally:
        db.close()


def test_revoke_rejects_internal_reasons():
    db = _make_session()
    try:
        service = _service()
        token = service.issue(db, "user-1")

        for reason in (RevocationReason.REFRESH, RevocationReason.REUSE_DETECTED, RevocationReason.EXPIRED_CLEANUP):
            with pytest.raises(ValidationError):
                service.revoke(db, token, reason)
            with pytest.raises(ValidationError):
                service.revoke_all_for_owner(db, "user-1", reason)

        record = _record(db, service, token)
        assert record.revoked is False
        assert service.rotate(db, token).family == record.family
    finally:
        db.close()


def test_revoke_all_for_owner_only_touches_live_tokens():
    db = _make_session()
    try:
        service = _service()
        live_1 = service.issue(db, "user-1")
        live_2 = service.issue(db, "user-1")
        logged_out = service.issue(db, "user-1")
        expired = service.issue(db, "user-1")
        other_owner = service.issue(db, "user-2")

        service.revoke(db, logged_out)
        expired_record = _record(db, service, expired)
        expired_record.expires_at = utcnow() - timedelta(hours=1)
        db.commit()

        count = service.revoke_all_for_owner(db, "user-1", tenant_id="firm-7")
        assert count == 2

        for token in (live_1, live_2):
            assert _record(db, service, token).revoked_reason == RevocationReason.SECURITY.value
        assert _record(db, service, logged_out).revoked_reason == RevocationReason.LOGOUT.value
        assert _record(db, service, expired).revoked is False
        assert _record(db, service, other_owner).revoked is False

        event = db.query(AuditRecord).filter(AuditRecord.action == "all_refresh_tokens_revoked").one()
        assert event.severity == "medium"
        assert event.details == {"count": 2, "reason": "security"}
    finally:
        db.close()


def test_verify_token_and_stats():
    db = _make_session()
    try:
        service = _service()
        laptop = service.issue(db, "user-1", device_info={"device": "laptop"})
        phone = service.issue(db, "user-1", device_info={"device": "phone"})
        rotated = service.rotate(db, laptop).refresh_token

        assert service.verify_token(db, rotated) is True
        assert service.verify_token(db, phone) is True
        assert service.verify_token(db, laptop) is False
        assert service.verify_token(db, "garbage") is False

        stats = service.get_token_stats(db, "user-1")
        assert stats.active_count == 2
        assert stats.family_count == 2
        assert {summary.device_info["device"] for summary in stats.tokens} == {"laptop", "phone"}
        assert service.get_token_stats(db, "nobody").active_count == 0
    finally:
        db.close()


def _expire(db, service, token, delta=timedelta(hours=1)):
    record = _record(db, service, token)
    record.expires_at = utcnow() - delta
    db.commit()


def test_cleanup_marks_then_deletes_expired_tokens():
    db = _make_session()
    try:
        service = _service(retention=timedelta(0))
        expired_live = service.issue(db, "user-1")
        expired_revoked = service.issue(db, "user-1")
        active = service.issue(db, "user-1")
        service.revoke(db, expired_revoked)
        _expire(db, service, expired_live)
        _expire(db, service, expired_revoked)

        result = service.cleanup(db)
        assert result.marked_expired == 1
        assert result.deleted == 2
        assert result.complete is True

        remaining = db.query(RefreshToken).all()
        assert [row.token_hash for row in remaining] == [service._signer.hash(active)]
    finally:
        db.close()


def test_cleanup_keeps_records_inside_retention_window():
    db = _make_session()
    try:
        service = _service(retention=timedelta(days=30))
        token = service.issue(db, "user-1")
        _expire(db, service, token, delta=timedelta(days=1))

        result = service.cleanup(db)
        assert result.marked_expired == 1
        assert result.deleted == 0
        assert _record(db, service, token).revoked_reason == RevocationReason.EXPIRED_CLEANUP.value
    finally:
        db.close()


def test_cleanup_respects_batch_budget_and_resumes():
    db = _make_session()
    try:
        service = _service(retention=timedelta(0))
        tokens = [service.issue(db, "user-1") for _ in range(3)]
        for token in tokens:
            _expire(db, service, token)

        partial = service.cleanup(db, batch_size=1, max_batches=2)
        assert partial.marked_expired == 2
        assert partial.deleted == 0
        assert partial.complete is False

        rest = service.cleanup(db, batch_size=1)
        assert rest.marked_expired == 1
        assert rest.deleted == 3
        assert rest.complete is True
        assert db.query(RefreshToken).count() == 0
    finally:
        db.close()
