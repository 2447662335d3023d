from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from signplane.core.timeutil import utc_now


# JSONB in Postgres, plain JSON elsewhere (SQLite test databases).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Written only by the billing webhook path; the enforcement gate reads it.
    billing_status: Mapped[str] = mapped_column(String, default="unpaid", nullable=False)
    plan: Mapped[str] = mapped_column(String, default="starter", nullable=False)
    # NULL means unlimited devices on the account plan.
    max_devices: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_customer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Keep the raw provider status for support investigations.
    subscription_status: Mapped[str | None] = mapped_column(String, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class Location(Base):
    __tablename__ = "locations"
    __table_args__ = (
        Index("ix_locations_account_active", "account_id", "active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    address: Mapped[str | None] = mapped_column(String, nullable=True)
    timezone: Mapped[str | None] = mapped_column(String, nullable=True)
    plan_tier: Mapped[str] = mapped_column(String, default="starter", nullable=False)
    # Derived from plan_tier whenever the tier changes.
    device_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    # Locations start inactive until the setup fee is confirmed.
    active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    setup_fee_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class Device(Base):
    __tablename__ = "devices"
    __table_args__ = (
        Index("ix_devices_location_status", "location_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    device_type: Mapped[str] = mapped_column(String)
    os_version: Mapped[str | None] = mapped_column(String, nullable=True)
    hardware_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # registered -> paired; nothing in billing moves a device back.
    status: Mapped[str] = mapped_column(String, default="registered", nullable=False)
    account_id: Mapped[str | None] = mapped_column(String, ForeignKey("accounts.id"), nullable=True, index=True)
    location_id: Mapped[str | None] = mapped_column(String, ForeignKey("locations.id"), nullable=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    registered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=func.now())
    paired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Monitoring only; never read by enforcement.
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ServiceRegistryEntry(Base):
    __tablename__ = "service_registry"
    __table_args__ = (
        UniqueConstraint("service_kind", "location_id", "instance_id", name="uq_service_registry_key"),
        Index("ix_service_registry_lookup", "service_kind", "location_id"),
        Index("ix_service_registry_status", "status"),
        Index("ix_service_registry_heartbeat", "last_heartbeat"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    service_kind: Mapped[str] = mapped_column(String)
    # No foreign key: heartbeats are accepted before a location is provisioned here.
    location_id: Mapped[str] = mapped_column(String)
    instance_id: Mapped[str] = mapped_column(String)
    base_url: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="unknown", nullable=False)
    version: Mapped[str | None] = mapped_column(String, nullable=True)
    last_heartbeat: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class EnforcementLogEntry(Base):
    __tablename__ = "enforcement_log"
    __table_args__ = (
        Index("ix_enforcement_log_account_occurred_at", "account_id", "occurred_at"),
    )

    # Append-only; monotonic id keeps ordering stable for investigations.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    location_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String)
    # Billing status as seen at decision time, not as of today.
    billing_status: Mapped[str] = mapped_column(String)
    result: Mapped[str] = mapped_column(String)
    code: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    device_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    device_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)


class Rollout(Base):
    __tablename__ = "rollouts"
    __table_args__ = (
        Index("ix_rollouts_account_created_at", "account_id", "created_at"),
        Index("ix_rollouts_status_scheduled_at", "status", "scheduled_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id"))
    rollout_type: Mapped[str] = mapped_column(String)
    target_locations: Mapped[list[str]] = mapped_column(JSONType, default=list)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    # Set on rollback rollouts to reference the rollout they invert.
    rollback_of: Mapped[str | None] = mapped_column(String, ForeignKey("rollouts.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class RolloutExecution(Base):
    __tablename__ = "rollout_executions"
    __table_args__ = (
        UniqueConstraint("rollout_id", "location_id", name="uq_rollout_executions_location"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    rollout_id: Mapped[str] = mapped_column(String, ForeignKey("rollouts.id", ondelete="CASCADE"), index=True)
    location_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=func.now())


class Menu(Base):
    __tablename__ = "menus"

    # Reference record only; menu content lives in the display layer.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[str] = mapped_column(String, default="draft", nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=func.now())


class LocationConfig(Base):
    __tablename__ = "location_config"

    location_id: Mapped[str] = mapped_column(String, ForeignKey("locations.id"), primary_key=True)
    active_menu_id: Mapped[str | None] = mapped_column(String, ForeignKey("menus.id"), nullable=True)
    fallback_menu_id: Mapped[str | None] = mapped_column(String, ForeignKey("menus.id"), nullable=True)
    config: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class Screen(Base):
    __tablename__ = "screens"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    device_id: Mapped[str] = mapped_column(String, ForeignKey("devices.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    screen_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    resolution: Mapped[str | None] = mapped_column(String, nullable=True)
    orientation: Mapped[str | None] = mapped_column(String, nullable=True)
    position: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_layout_id: Mapped[str | None] = mapped_column(String, nullable=True)


class ScreenConfig(Base):
    __tablename__ = "screen_config"

    # Per-screen overrides win over the screen's own assignment.
    screen_id: Mapped[str] = mapped_column(String, ForeignKey("screens.id"), primary_key=True)
    location_id: Mapped[str] = mapped_column(String, ForeignKey("locations.id"), index=True)
    assigned_menu_id: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_layout_id: Mapped[str | None] = mapped_column(String, nullable=True)
    display_mode: Mapped[str] = mapped_column(String, default="menu", nullable=False)
    config: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class FeatureFlag(Base):
    __tablename__ = "feature_flags"
    __table_args__ = (
        UniqueConstraint("account_id", "location_id", "flag_key", name="uq_feature_flags_scope_key"),
        CheckConstraint("(account_id IS NULL) <> (location_id IS NULL)", name="ck_feature_flags_single_scope"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    # Exactly one of account_id/location_id is set; location flags override account flags.
    account_id: Mapped[str | None] = mapped_column(String, ForeignKey("accounts.id"), nullable=True, index=True)
    location_id: Mapped[str | None] = mapped_column(String, ForeignKey("locations.id"), nullable=True, index=True)
    flag_key: Mapped[str] = mapped_column(String)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    config: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class EventLogEntry(Base):
    __tablename__ = "event_log"
    __table_args__ = (
        Index("ix_event_log_location_timestamp", "location_id", "timestamp"),
        Index("ix_event_log_account_timestamp", "account_id", "timestamp"),
    )

    # Mirror of external lifecycle events; stored for observability, never acted on.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    source_service: Mapped[str] = mapped_column(String)
    location_id: Mapped[str] = mapped_column(String)
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    # Source clock; created_at is the ingestion clock.
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Null for system events with no owning account.
    account_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=func.now())
