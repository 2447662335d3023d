"""control plane

Revision ID: 0001_control_plane
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_control_plane"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("billing_status", sa.String(), nullable=False, server_default="unpaid"),
        sa.Column("plan", sa.String(), nullable=False, server_default="starter"),
        sa.Column("max_devices", sa.Integer(), nullable=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("payment_customer_id", sa.String(), nullable=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("subscription_status", sa.String(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_accounts_payment_customer_id", "accounts", ["payment_customer_id"])

    op.create_table(
        "locations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("timezone", sa.String(), nullable=True),
        sa.Column("plan_tier", sa.String(), nullable=False, server_default="starter"),
        sa.Column("device_limit", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("setup_fee_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_locations_account_id", "locations", ["account_id"])
    op.create_index("ix_locations_account_active", "locations", ["account_id", "active"])

    op.create_table(
        "devices",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("device_type", sa.String(), nullable=False),
        sa.Column("os_version", sa.String(), nullable=True),
        sa.Column("hardware_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="registered"),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id"), nullable=True),
        sa.Column("location_id", sa.String(), sa.ForeignKey("locations.id"), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("registered_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("paired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_devices_account_id", "devices", ["account_id"])
    op.create_index("ix_devices_location_status", "devices", ["location_id", "status"])

    op.create_table(
        "service_registry",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("service_kind", sa.String(), nullable=False),
        # No foreign key: heartbeats may arrive before the location exists here.
        sa.Column("location_id", sa.String(), nullable=False),
        sa.Column("instance_id", sa.String(), nullable=False),
        sa.Column("base_url", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="unknown"),
        sa.Column("version", sa.String(), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("service_kind", "location_id", "instance_id", name="uq_service_registry_key"),
    )
    op.create_index("ix_service_registry_lookup", "service_registry", ["service_kind", "location_id"])
    op.create_index("ix_service_registry_status", "service_registry", ["status"])
    op.create_index("ix_service_registry_heartbeat", "service_registry", ["last_heartbeat"])

    op.create_table(
        "enforcement_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("location_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("billing_status", sa.String(), nullable=False),
        sa.Column("result", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("device_count", sa.Integer(), nullable=True),
        sa.Column("device_limit", sa.Integer(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
    )
    op.create_index("ix_enforcement_log_occurred_at", "enforcement_log", ["occurred_at"])
    op.create_index("ix_enforcement_log_location_id", "enforcement_log", ["location_id"])
    op.create_index(
        "ix_enforcement_log_account_occurred_at", "enforcement_log", ["account_id", "occurred_at"]
    )

    op.create_table(
        "rollouts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("rollout_type", sa.String(), nullable=False),
        sa.Column("target_locations", postgresql.JSONB(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("rollback_of", sa.String(), sa.ForeignKey("rollouts.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_rollouts_account_created_at", "rollouts", ["account_id", "created_at"])
    op.create_index("ix_rollouts_status_scheduled_at", "rollouts", ["status", "scheduled_at"])

    op.create_table(
        "rollout_executions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "rollout_id",
            sa.String(),
            sa.ForeignKey("rollouts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("location_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("rollout_id", "location_id", name="uq_rollout_executions_location"),
    )
    op.create_index("ix_rollout_executions_rollout_id", "rollout_executions", ["rollout_id"])

    op.create_table(
        "menus",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(), nullable=False, server_default="draft"),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_menus_account_id", "menus", ["account_id"])

    op.create_table(
        "location_config",
        sa.Column("location_id", sa.String(), sa.ForeignKey("locations.id"), primary_key=True),
        sa.Column("active_menu_id", sa.String(), sa.ForeignKey("menus.id"), nullable=True),
        sa.Column("fallback_menu_id", sa.String(), sa.ForeignKey("menus.id"), nullable=True),
        sa.Column("config", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "screens",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("device_id", sa.String(), sa.ForeignKey("devices.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("screen_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("resolution", sa.String(), nullable=True),
        sa.Column("orientation", sa.String(), nullable=True),
        sa.Column("position", sa.String(), nullable=True),
        sa.Column("assigned_layout_id", sa.String(), nullable=True),
    )
    op.create_index("ix_screens_device_id", "screens", ["device_id"])

    op.create_table(
        "screen_config",
        sa.Column("screen_id", sa.String(), sa.ForeignKey("screens.id"), primary_key=True),
        sa.Column("location_id", sa.String(), sa.ForeignKey("locations.id"), nullable=False),
        sa.Column("assigned_menu_id", sa.String(), nullable=True),
        sa.Column("assigned_layout_id", sa.String(), nullable=True),
        sa.Column("display_mode", sa.String(), nullable=False, server_default="menu"),
        sa.Column("config", postgresql.JSONB(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_screen_config_location_id", "screen_config", ["location_id"])

    op.create_table(
        "feature_flags",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id"), nullable=True),
        sa.Column("location_id", sa.String(), sa.ForeignKey("locations.id"), nullable=True),
        sa.Column("flag_key", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("config", postgresql.JSONB(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("account_id", "location_id", "flag_key", name="uq_feature_flags_scope_key"),
        # Exactly one scope per flag row.
        sa.CheckConstraint(
            "(account_id IS NULL) <> (location_id IS NULL)",
            name="ck_feature_flags_single_scope",
        ),
    )
    op.create_index("ix_feature_flags_account_id", "feature_flags", ["account_id"])
    op.create_index("ix_feature_flags_location_id", "feature_flags", ["location_id"])

    op.create_table(
        "event_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("source_service", sa.String(), nullable=False),
        sa.Column("location_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_event_log_event_type", "event_log", ["event_type"])
    op.create_index("ix_event_log_timestamp", "event_log", ["timestamp"])
    op.create_index("ix_event_log_location_timestamp", "event_log", ["location_id", "timestamp"])
    op.create_index("ix_event_log_account_timestamp", "event_log", ["account_id", "timestamp"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_account_id", "audit_events", ["account_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_request_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_account_id", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")

    op.drop_index("ix_event_log_account_timestamp", table_name="event_log")
    op.drop_index("ix_event_log_location_timestamp", table_name="event_log")
    op.drop_index("ix_event_log_timestamp", table_name="event_log")
    op.drop_index("ix_event_log_event_type", table_name="event_log")
    op.drop_table("event_log")

    op.drop_index("ix_feature_flags_location_id", table_name="feature_flags")
    op.drop_index("ix_feature_flags_account_id", table_name="feature_flags")
    op.drop_table("feature_flags")

    op.drop_index("ix_screen_config_location_id", table_name="screen_config")
    op.drop_table("screen_config")
    op.drop_index("ix_screens_device_id", table_name="screens")
    op.drop_table("screens")
    op.drop_table("location_config")
    op.drop_index("ix_menus_account_id", table_name="menus")
    op.drop_table("menus")

    op.drop_index("ix_rollout_executions_rollout_id", table_name="rollout_executions")
    op.drop_table("rollout_executions")
    op.drop_index("ix_rollouts_status_scheduled_at", table_name="rollouts")
    op.drop_index("ix_rollouts_account_created_at", table_name="rollouts")
    op.drop_table("rollouts")

    op.drop_index("ix_enforcement_log_account_occurred_at", table_name="enforcement_log")
    op.drop_index("ix_enforcement_log_location_id", table_name="enforcement_log")
    op.drop_index("ix_enforcement_log_occurred_at", table_name="enforcement_log")
    op.drop_table("enforcement_log")

    op.drop_index("ix_service_registry_heartbeat", table_name="service_registry")
    op.drop_index("ix_service_registry_status", table_name="service_registry")
    op.drop_index("ix_service_registry_lookup", table_name="service_registry")
    op.drop_table("service_registry")

    op.drop_index("ix_devices_location_status", table_name="devices")
    op.drop_index("ix_devices_account_id", table_name="devices")
    op.drop_table("devices")

    op.drop_index("ix_locations_account_active", table_name="locations")
    op.drop_index("ix_locations_account_id", table_name="locations")
    op.drop_table("locations")

    op.drop_index("ix_accounts_payment_customer_id", table_name="accounts")
    op.drop_table("accounts")
