from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, Field

from signplane.domain.enums import (
    DeviceType,
    ExecutionStatus,
    PlanTier,
    ReportedServiceStatus,
    RolloutType,
)


class HeartbeatRequest(BaseModel):
    # service stays a plain string so unknown kinds surface as INVALID_SERVICE, not a 422.
    service: str
    location_id: str = Field(min_length=1)
    instance_id: str | None = None
    status: ReportedServiceStatus = ReportedServiceStatus.ONLINE
    version: str | None = None
    base_url: str | None = None
    metadata: dict[str, Any] | None = None


class HeartbeatResponse(BaseModel):
    success: bool
    timestamp: str


class ServiceCounts(BaseModel):
    total: int
    online: int
    degraded: int
    offline: int
    unknown: int


class ServiceEntryResponse(BaseModel):
    service: str
    location_id: str
    instance_id: str
    status: str
    stored_status: str
    version: str | None
    base_url: str | None
    last_heartbeat: str | None
    metadata: dict[str, Any]


class HealthSummaryResponse(ServiceCounts):
    by_service: dict[str, ServiceCounts]
    by_location: dict[str, ServiceCounts]
    services: list[ServiceEntryResponse]


class DeviceRegisterRequest(BaseModel):
    device_type: DeviceType
    os_version: str | None = None
    hardware_id: str | None = None
    device_id: str | None = None


class DeviceRegisterResponse(BaseModel):
    device_id: str
    device_token: str
    registered_at: str | None
    status: str


class PairDeviceRequest(BaseModel):
    device_id: str = Field(min_length=1)
    account_id: str = Field(validation_alias=AliasChoices("account_id", "organization_id"), min_length=1)
    location_id: str = Field(min_length=1)
    pairing_code: str | None = None
    device_name: str | None = Field(default=None, max_length=128)


class PairDeviceResponse(BaseModel):
    success: bool
    device_id: str
    account_id: str
    paired_at: str | None
    device_name: str | None


class PairingPreflightResponse(BaseModel):
    allowed: bool
    code: str | None
    message: str | None
    help: str | None
    billing_status: str
    device_count: int
    device_limit: int
    account_device_count: int
    max_devices: int | None
    remaining_slots: int


class DeviceHeartbeatRequest(BaseModel):
    status: str | None = None
    metrics: dict[str, Any] | None = None


class LocationCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    address: str | None = None
    timezone: str | None = None
    plan_tier: PlanTier = PlanTier.STARTER


class LocationPlanRequest(BaseModel):
    plan_tier: PlanTier


class LocationResponse(BaseModel):
    id: str
    account_id: str
    name: str
    address: str | None
    timezone: str | None
    plan_tier: str
    device_limit: int
    active: bool
    setup_fee_paid: bool
    device_count: int | None = None


class LocationConfigUpdateRequest(BaseModel):
    active_menu_id: str | None = None
    fallback_menu_id: str | None = None
    config: dict[str, Any] | None = None


class FeatureFlagRequest(BaseModel):
    flag_key: str = Field(min_length=1, max_length=128)
    enabled: bool
    location_id: str | None = None
    # Account-wide when location_id is omitted; the account comes from the session.
    config: dict[str, Any] | None = None


class FeatureFlagResponse(BaseModel):
    flag_key: str
    enabled: bool
    account_id: str | None
    location_id: str | None
    config: dict[str, Any]


class RolloutCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    account_id: str | None = Field(
        default=None, validation_alias=AliasChoices("account_id", "organization_id")
    )
    rollout_type: RolloutType
    target_locations: list[str]
    payload: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime | None = None


class RolloutExecutionResponse(BaseModel):
    location_id: str
    status: str
    started_at: str | None
    completed_at: str | None
    error_message: str | None


class RolloutResponse(BaseModel):
    id: str
    name: str
    account_id: str
    rollout_type: str
    target_locations: list[str]
    payload: dict[str, Any]
    status: str
    scheduled_at: str | None
    started_at: str | None
    completed_at: str | None
    created_by: str | None
    rollback_of: str | None
    created_at: str | None
    executions: list[RolloutExecutionResponse] | None = None


class RolloutsPage(BaseModel):
    items: list[RolloutResponse]
    total: int
    limit: int
    offset: int


class ExecutionUpdateRequest(BaseModel):
    status: ExecutionStatus
    error_message: str | None = None


class EventIngestResponse(BaseModel):
    inserted: int
    errors: list[dict[str, Any]]


class EventResponse(BaseModel):
    id: int
    event_type: str
    source_service: str
    location_id: str
    account_id: str | None
    actor_id: str | None
    resource_type: str | None
    resource_id: str | None
    payload: dict[str, Any]
    timestamp: str | None


class EventsPage(BaseModel):
    items: list[EventResponse]
    total: int
    limit: int
    offset: int


class EventSummaryResponse(BaseModel):
    total: int
    period_hours: int
    by_type: dict[str, int]
    by_service: dict[str, int]
    start_time: str


class EnforcementLogResponse(BaseModel):
    id: int
    occurred_at: str | None
    account_id: str | None
    location_id: str | None
    action: str
    billing_status: str
    result: str
    code: str | None
    reason: str | None
    device_count: int | None
    device_limit: int | None
    request_id: str | None


class EnforcementLogsPage(BaseModel):
    items: list[EnforcementLogResponse]
    next_offset: int | None


class BillingWebhookResponse(BaseModel):
    received: bool
    event_type: str
    handled: bool
