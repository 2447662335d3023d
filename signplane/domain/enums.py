"""Closed value sets for the control plane.

Every status column is stored as a plain string; these enums are the only
values services write, and request contracts parse into them so invalid
states never reach storage.
"""

from __future__ import annotations

from enum import Enum


class BillingStatus(str, Enum):
    """Platform billing status of an account."""
    UNPAID = "unpaid"
    PAID = "paid"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    TRIALING = "trialing"


# Only these statuses allow new device pairing.
ACTIVE_BILLING_STATUSES = frozenset({BillingStatus.PAID, BillingStatus.TRIALING})


class PlanTier(str, Enum):
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


# Per-location device limits from the billing contract; enterprise is effectively unlimited.
PLAN_DEVICE_LIMITS: dict[PlanTier, int] = {
    PlanTier.STARTER: 3,
    PlanTier.PRO: 25,
    PlanTier.ENTERPRISE: 999,
}


class DeviceType(str, Enum):
    MENU_BOARD = "menu-board"
    KIOSK = "kiosk"
    TV = "tv"


class DeviceStatus(str, Enum):
    """Device lifecycle. There is no billing-driven path back to registered."""
    REGISTERED = "registered"
    PAIRED = "paired"


class ServiceKind(str, Enum):
    """Downstream execution services allowed to send heartbeats."""
    MODOS_MENUS = "modos-menus"
    POS_LITE = "pos-lite"
    KDS = "kds"


class SourceService(str, Enum):
    """Services allowed to mirror events; includes the control plane itself."""
    MODOS_MENUS = "modos-menus"
    POS_LITE = "pos-lite"
    KDS = "kds"
    MOSM_CLOUD = "mosm-cloud"


class ServiceStatus(str, Enum):
    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class ReportedServiceStatus(str, Enum):
    """Statuses a sender may self-report; offline is only ever derived."""
    ONLINE = "online"
    DEGRADED = "degraded"


class EnforcementResult(str, Enum):
    ALLOWED = "ALLOWED"
    BLOCKED = "BLOCKED"


class EnforcementCode(str, Enum):
    BILLING_INACTIVE = "BILLING_INACTIVE"
    LOCATION_INACTIVE = "LOCATION_INACTIVE"
    SETUP_FEE_NOT_PAID = "SETUP_FEE_NOT_PAID"
    DEVICE_LIMIT_REACHED = "DEVICE_LIMIT_REACHED"


class RolloutType(str, Enum):
    MENU_ACTIVATION = "menu_activation"
    CONFIG_UPDATE = "config_update"
    FEATURE_TOGGLE = "feature_toggle"


class RolloutStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_EXECUTION_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED})


class DisplayMode(str, Enum):
    MENU = "menu"
    PROMOTION = "promotion"
    INFO = "info"
    CUSTOM = "custom"
