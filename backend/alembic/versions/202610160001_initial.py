"""refresh token and audit ledger schema

Revision ID: 202610160001
Revises:
Create Date: 2026-10-16 00:00:01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "202610160001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "refresh_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=True),
        sa.Column("family", sa.String(length=64), nullable=False),
        sa.Column("rotated_from_id", sa.Integer(), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("revoked_reason", sa.String(length=32), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("device_info", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("rotated_from_id"),
    )
    op.create_index("ix_refresh_tokens_id", "refresh_tokens", ["id"])
    op.create_index("ix_refresh_tokens_token_hash", "refresh_tokens", ["token_hash"], unique=True)
    op.create_index("ix_refresh_tokens_owner_id", "refresh_tokens", ["owner_id"])
    op.create_index("ix_refresh_tokens_tenant_id", "refresh_tokens", ["tenant_id"])
    op.create_index("ix_refresh_tokens_family", "refresh_tokens", ["family"])
    op.create_index("idx_refresh_tokens_owner_revoked", "refresh_tokens", ["owner_id", "revoked"])
    op.create_index("idx_refresh_tokens_family_revoked", "refresh_tokens", ["family", "revoked"])

    op.create_table(
        "audit_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("entity_type", sa.String(length=64), nullable=True),
        sa.Column("entity_id", sa.String(length=128), nullable=True),
        sa.Column("tenant_id", sa.String(length=128), nullable=True),
        sa.Column("scope_key", sa.String(length=128), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("chain_sequence", sa.Integer(), nullable=True),
        sa.Column("previous_hash", sa.String(length=128), nullable=True),
        sa.Column("hash", sa.String(length=128), nullable=True),
        sa.Column("signature", sa.String(length=128), nullable=True),
        sa.Column("algorithm", sa.String(length=16), nullable=True),
        sa.Column("integrity_version", sa.String(length=16), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("scope_key", "chain_sequence", name="uq_audit_records_scope_sequence"),
    )
    op.create_index("ix_audit_records_id", "audit_records", ["id"])
    op.create_index("ix_audit_records_action", "audit_records", ["action"])
    op.create_index("ix_audit_records_actor_id", "audit_records", ["actor_id"])
    op.create_index("ix_audit_records_entity_type", "audit_records", ["entity_type"])
    op.create_index("ix_audit_records_entity_id", "audit_records", ["entity_id"])
    op.create_index("idx_audit_records_scope_timestamp", "audit_records", ["scope_key", "timestamp"])
    op.create_index("idx_audit_records_entity", "audit_records", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("idx_audit_records_entity", table_name="audit_records")
    op.drop_index("idx_audit_records_scope_timestamp", table_name="audit_records")
    op.drop_index("ix_audit_records_entity_id", table_name="audit_records")
    op.drop_index("ix_audit_records_entity_type", table_name="audit_records")
    op.drop_index("ix_audit_records_actor_id", table_name="audit_records")
    op.drop_index("ix_audit_records_action", table_name="audit_records")
    op.drop_index("ix_audit_records_id", table_name="audit_records")
    op.drop_table("audit_records")

    op.drop_index("idx_refresh_tokens_family_revoked", table_name="refresh_tokens")
    op.drop_index("idx_refresh_tokens_owner_revoked", table_name="refresh_tokens")
    op.drop_index("ix_refresh_tokens_family", table_name="refresh_tokens")
    op.drop_index("ix_refresh_tokens_tenant_id", table_name="refresh_tokens")
    op.drop_index("ix_refresh_tokens_owner_id", table_name="refresh_tokens")
    op.drop_index("ix_refresh_tokens_token_hash", table_name="refresh_tokens")
    op.drop_index("ix_refresh_tokens_id", table_name="refresh_tokens")
    op.drop_table("refresh_tokens")
