"""Initial database schema

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # Create retention_policies table
    op.create_table(
        "retention_policies",
        sa.Column("policy_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organisation_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("data_type", sa.String(50), nullable=False),
        sa.Column("retention_period_days", sa.Integer, nullable=False),
        sa.Column("grace_period_days", sa.Integer, nullable=False, server_default="30"),
        sa.Column("deletion_method", sa.String(20), nullable=False, server_default="soft"),
        sa.Column(
            "secure_erase_method",
            sa.String(30),
            nullable=False,
            server_default="overwrite_multiple",
        ),
        sa.Column("trigger_type", sa.String(30), nullable=False, server_default="time_based"),
        sa.Column(
            "legal_basis", sa.String(30), nullable=False, server_default="legitimate_interests"
        ),
        sa.Column("regulatory_requirement", sa.String(255), nullable=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="100"),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("automatic_deletion", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "requires_manual_review", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("created_by", sa.String(255), nullable=True),
        sa.Column("revision", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
    )
    op.create_index(
        "idx_retention_policy_scope",
        "retention_policies",
        ["organisation_id", "data_type", "enabled"],
    )

    # Create lifecycle_records table
    op.create_table(
        "lifecycle_records",
        sa.Column("record_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organisation_id", sa.String(255), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("data_type", sa.String(50), nullable=False),
        sa.Column("resource_table", sa.String(100), nullable=False),
        sa.Column("resource_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="active"),
        sa.Column("state_data", postgresql.JSONB, nullable=False),
        sa.Column("next_action_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("data_created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retention_eligible_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "policy_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("retention_policies.policy_id"),
            nullable=True,
        ),
        sa.Column("policy_revision", sa.Integer, nullable=True),
        sa.Column("deletion_reason", sa.Text, nullable=True),
        sa.Column("deletion_method", sa.String(20), nullable=True),
        sa.Column("secure_erase_method", sa.String(30), nullable=True),
        sa.Column("legal_basis", sa.String(30), nullable=True),
        sa.Column("certificate_number", sa.String(64), nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("processing_errors", postgresql.JSONB, nullable=False),
        sa.Column("history", postgresql.JSONB, nullable=False),
        sa.Column("last_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "organisation_id",
            "data_type",
            "resource_table",
            "resource_id",
            name="uq_lifecycle_resource",
        ),
    )
    op.create_index(
        "idx_lifecycle_partition_due",
        "lifecycle_records",
        ["organisation_id", "data_type", "next_action_at"],
    )
    op.create_index("idx_lifecycle_org_status", "lifecycle_records", ["organisation_id", "status"])
    op.create_index("idx_lifecycle_user", "lifecycle_records", ["organisation_id", "user_id"])
    op.create_index("idx_lifecycle_certificate", "lifecycle_records", ["certificate_number"])

    # Create secure_deletion_certificates table
    op.create_table(
        "secure_deletion_certificates",
        sa.Column("certificate_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("certificate_number", sa.String(64), nullable=False, unique=True),
        sa.Column("organisation_id", sa.String(255), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("data_types", postgresql.JSONB, nullable=False),
        sa.Column("record_count", sa.Integer, nullable=False),
        sa.Column("record_ids", postgresql.JSONB, nullable=False),
        sa.Column("secure_erase_method", sa.String(30), nullable=False),
        sa.Column("deletion_started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deletion_completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("manifest", postgresql.JSONB, nullable=False),
        sa.Column("verification_hash", sa.String(64), nullable=False),
        sa.Column("verification_method", sa.String(50), nullable=False),
        sa.Column("digital_signature", sa.String(128), nullable=True),
        sa.Column("witness_name", sa.String(255), nullable=True),
        sa.Column("witness_statement", sa.Text, nullable=True),
        sa.Column("legal_basis", sa.String(30), nullable=False),
        sa.Column("regulatory_requirement", sa.String(255), nullable=False),
        sa.Column("request_origin", sa.String(30), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("issued_by", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "idx_certificate_org", "secure_deletion_certificates", ["organisation_id", "created_at"]
    )
    op.create_index(
        "idx_certificate_user", "secure_deletion_certificates", ["organisation_id", "user_id"]
    )

    # Create compliance_audits table
    op.create_table(
        "compliance_audits",
        sa.Column("audit_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organisation_id", sa.String(255), nullable=False),
        sa.Column(
            "policy_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("retention_policies.policy_id"),
            nullable=False,
        ),
        sa.Column("data_type", sa.String(50), nullable=False),
        sa.Column("audit_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("compliant_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("overdue_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("processed_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("held_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("compliance_rate", sa.Float, nullable=False),
        sa.Column("is_compliant", sa.Boolean, nullable=False),
        sa.Column("risk_level", sa.String(20), nullable=False),
        sa.Column("issues", postgresql.JSONB, nullable=False),
        sa.Column("recommendations", postgresql.JSONB, nullable=False),
        sa.Column("average_retention_days", sa.Float, nullable=True),
        sa.Column("oldest_record_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_audit_due", sa.DateTime(timezone=True), nullable=False),
        sa.Column("audit_duration_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "idx_compliance_audit_policy",
        "compliance_audits",
        ["organisation_id", "policy_id", "audit_date"],
    )
    op.create_index(
        "idx_compliance_audit_risk", "compliance_audits", ["organisation_id", "risk_level"]
    )

    # Create execution_locks table
    op.create_table(
        "execution_locks",
        sa.Column("lock_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lock_type", sa.String(50), nullable=False),
        sa.Column("resource_id", sa.String(255), nullable=False),
        sa.Column("holder", sa.String(255), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("renewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("queue_position", sa.Integer, nullable=False, server_default="0"),
        sa.Column("correlation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("metadata", postgresql.JSONB, nullable=False),
        sa.UniqueConstraint("lock_type", "resource_id", name="uq_execution_lock_resource"),
    )
    op.create_index("idx_execution_lock_expiry", "execution_locks", ["expires_at"])

    # Create data_encryption_keys table
    op.create_table(
        "data_encryption_keys",
        sa.Column("key_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("resource_table", sa.String(100), nullable=False),
        sa.Column("resource_id", sa.String(255), nullable=False),
        sa.Column("wrapped_key", sa.LargeBinary, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("destroyed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("resource_table", "resource_id", name="uq_data_key_resource"),
    )

    # Create audit_events table
    op.create_table(
        "audit_events",
        sa.Column("audit_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False, server_default="info"),
        sa.Column("organisation_id", sa.String(255), nullable=True),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("actor_type", sa.String(20), nullable=False, server_default="system"),
        sa.Column("correlation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("resource_type", sa.String(50), nullable=True),
        sa.Column("resource_id", sa.String(255), nullable=True),
        sa.Column("event_data", postgresql.JSONB, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("idx_audit_org", "audit_events", ["organisation_id"])
    op.create_index("idx_audit_correlation", "audit_events", ["correlation_id"])
    op.create_index("idx_audit_event_type", "audit_events", ["event_type"])
    op.create_index("idx_audit_created", "audit_events", ["created_at"])
    op.create_index("idx_audit_resource", "audit_events", ["resource_type", "resource_id"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("data_encryption_keys")
    op.drop_index("idx_execution_lock_expiry", table_name="execution_locks")
    op.drop_table("execution_locks")
    op.drop_table("compliance_audits")
    op.drop_table("secure_deletion_certificates")
    op.drop_table("lifecycle_records")
    op.drop_table("retention_policies")
