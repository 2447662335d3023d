from __future__ import annotations


class SignplaneError(Exception):
    """Base error for the signage control plane."""


class AccountNotFoundError(SignplaneError):
    """Account does not exist."""


class LocationNotFoundError(SignplaneError):
    """Location does not exist or belongs to another account."""


class DeviceNotFoundError(SignplaneError):
    """Device has not been registered."""


class DeviceStateError(SignplaneError):
    """Device cannot move to the requested lifecycle state."""


class RolloutNotFoundError(SignplaneError):
    """Rollout or rollout execution does not exist."""


class RolloutStateError(SignplaneError):
    """Rollout transition is not allowed from its current status."""


class RolloutValidationError(SignplaneError):
    """Rollout definition is malformed (e.g. no target locations)."""


class ConfigScopeError(SignplaneError):
    """Feature flag writes need exactly one of account or location scope."""


class BillingConfigError(SignplaneError):
    """Payment provider webhook secret missing for the configured mode."""


class WebhookSignatureError(SignplaneError):
    """Payment provider webhook signature missing, stale or invalid."""


class TokenError(SignplaneError):
    """Session or device token could not be verified."""


class EnforcementUnavailableError(SignplaneError):
    """Pairing state could not be read; callers must deny rather than allow."""
