"""Refresh token routes (internal RPC for the authentication layer)"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from authcore.api.deps import client_device_info, require_internal_caller
from authcore.core.database import get_db
from authcore.schemas.token import (
    CleanupResult,
    IssueTokenRequest,
    RevokeAllRequest,
    RevokeTokenRequest,
    RotateTokenRequest,
    TokenPair,
    TokenStats,
)
from authcore.services.token_service import token_service

router = APIRouter(dependencies=[Depends(require_internal_caller)])


@router.post("/issue", response_model=TokenPair, status_code=status.HTTP_201_CREATED)
def issue_tokens(
    body: IssueTokenRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Start a new token family for an authenticated principal

    Args:
        body: Owner, optional tenant and device metadata
        db: Database session

    Returns:
        Access token and refresh token
    """
    device = body.device_info.model_dump(exclude_none=True) if body.device_info else None
    return token_service.issue_token_pair(
        db,
        body.owner_id,
        body.tenant_id,
        client_device_info(request, device),
    )


@router.post("/rotate", response_model=TokenPair)
def rotate_tokens(
    body: RotateTokenRequest,
    db: Session = Depends(get_db),
):
    """
    Exchange a refresh token for a new pair

    Reuse of a superseded refresh token revokes its whole family and is
    rejected with TOKEN_REUSE_DETECTED.
    """
    return token_service.rotate(db, body.refresh_token)


@router.post("/revoke", status_code=status.HTTP_200_OK)
def revoke_token(
    body: RevokeTokenRequest,
    db: Session = Depends(get_db),
):
    """Revoke a single refresh token (logout)."""
    record = token_service.revoke(db, body.refresh_token, body.reason)
    return {
        "success": True,
        "refresh_token_revoked": record is not None,
    }


@router.post("/revoke-all", status_code=status.HTTP_200_OK)
def revoke_all_tokens(
    body: RevokeAllRequest,
    db: Session = Depends(get_db),
):
    """Revoke every live refresh token of an owner."""
    count = token_service.revoke_all_for_owner(db, body.owner_id, body.reason, body.tenant_id)
    return {"success": True, "revoked_count": count}


@router.get("/owners/{owner_id}/stats", response_model=TokenStats)
def get_owner_token_stats(owner_id: str, db: Session = Depends(get_db)):
    return token_service.get_token_stats(db, owner_id)


@router.post("/cleanup", response_model=CleanupResult)
def run_cleanup(
    batch_size: int = 500,
    max_batches: int = 20,
    db: Session = Depends(get_db),
):
    """Run one bounded retention sweep; call again while complete is false."""
    return token_service.cleanup(
        db,
        batch_size=max(1, min(batch_size, 5000)),
        max_batches=max(1, max_batches),
    )
