from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.core.errors import ConfigScopeError, LocationNotFoundError
from signplane.core.timeutil import utc_now
from signplane.domain.enums import DisplayMode
from signplane.domain.models import Device, FeatureFlag, Location, LocationConfig, Menu, Screen, ScreenConfig


logger = logging.getLogger(__name__)

_LOCATION_CONFIG_FIELDS = ("active_menu_id", "fallback_menu_id", "config")


async def _require_location(session: AsyncSession, location_id: str) -> Location:
    location = await session.get(Location, location_id)
    if location is None:
        raise LocationNotFoundError(f"Location {location_id} not found")
    return location


async def _merged_flags(session: AsyncSession, location: Location) -> dict[str, dict[str, Any]]:
    # Account-level flags first, then location flags override by key.
    account_rows = await session.execute(
        select(FeatureFlag).where(FeatureFlag.account_id == location.account_id, FeatureFlag.location_id.is_(None))
    )
    location_rows = await session.execute(select(FeatureFlag).where(FeatureFlag.location_id == location.id))
    flags: dict[str, dict[str, Any]] = {}
    for flag in list(account_rows.scalars().all()) + list(location_rows.scalars().all()):
        flags[flag.flag_key] = {"enabled": bool(flag.enabled), "config": flag.config or {}}
    return flags


async def get_location_config(session: AsyncSession, location_id: str) -> dict[str, Any]:
    location = await _require_location(session, location_id)
    config = await session.get(LocationConfig, location_id)
    active_menu = None
    if config is not None and config.active_menu_id:
        menu = await session.get(Menu, config.active_menu_id)
        if menu is not None:
            active_menu = {
                "id": menu.id,
                "name": menu.name,
                "version": menu.version,
                "status": menu.status,
                "metadata": menu.metadata_json or {},
            }
    return {
        "location": {
            "id": location.id,
            "name": location.name,
            "address": location.address,
            "timezone": location.timezone,
            "active": location.active,
            "account_id": location.account_id,
        },
        "active_menu": active_menu,
        "fallback_menu_id": config.fallback_menu_id if config else None,
        "config": (config.config if config else None) or {},
        "feature_flags": await _merged_flags(session, location),
        "fetched_at": utc_now().isoformat(),
    }


async def get_screen_config(session: AsyncSession, location_id: str) -> dict[str, Any]:
    await _require_location(session, location_id)
    rows = await session.execute(
        select(Screen, Device)
        .join(Device, Device.id == Screen.device_id)
        .where(Device.location_id == location_id)
        .order_by(Device.id.asc(), Screen.screen_index.asc())
    )
    overrides_result = await session.execute(select(ScreenConfig).where(ScreenConfig.location_id == location_id))
    overrides = {item.screen_id: item for item in overrides_result.scalars().all()}

    screens: list[dict[str, Any]] = []
    for screen, device in rows.all():
        override = overrides.get(screen.id)
        screens.append(
            {
                "id": screen.id,
                "name": screen.name,
                "screen_index": screen.screen_index,
                "resolution": screen.resolution,
                "orientation": screen.orientation,
                "position": screen.position,
                "device": {"id": device.id, "name": device.name, "status": device.status},
                # Per-screen overrides win over the screen's own layout assignment.
                "assigned_layout_id": (override.assigned_layout_id if override else None) or screen.assigned_layout_id,
                "assigned_menu_id": override.assigned_menu_id if override else None,
                "display_mode": (override.display_mode if override else None) or DisplayMode.MENU.value,
                "config": (override.config if override else None) or {},
            }
        )
    return {"location_id": location_id, "screens": screens, "fetched_at": utc_now().isoformat()}


async def get_feature_flags(session: AsyncSession, location_id: str) -> dict[str, Any]:
    location = await _require_location(session, location_id)
    return {
        "location_id": location_id,
        "flags": await _merged_flags(session, location),
        "fetched_at": utc_now().isoformat(),
    }


async def update_location_config(
    session: AsyncSession,
    location_id: str,
    updates: dict[str, Any],
) -> LocationConfig:
    # Upsert; only known fields are written and omitted fields keep their stored value.
    await _require_location(session, location_id)
    config = await session.get(LocationConfig, location_id)
    if config is None:
        config = LocationConfig(location_id=location_id, config={})
        session.add(config)
    for key in _LOCATION_CONFIG_FIELDS:
        if key in updates:
            setattr(config, key, updates[key])
    config.updated_at = utc_now()
    await session.commit()
    logger.info("location_config_updated location_id=%s fields=%s", location_id, ",".join(sorted(updates)))
    return config


async def set_feature_flag(
    session: AsyncSession,
    *,
    flag_key: str,
    enabled: bool,
    account_id: str | None = None,
    location_id: str | None = None,
    config: dict[str, Any] | None = None,
) -> FeatureFlag:
    if bool(account_id) == bool(location_id):
        raise ConfigScopeError("Specify exactly one of account_id or location_id")
    if location_id:
        await _require_location(session, location_id)
    stmt = select(FeatureFlag).where(FeatureFlag.flag_key == flag_key)
    if location_id:
        stmt = stmt.where(FeatureFlag.location_id == location_id)
    else:
        stmt = stmt.where(FeatureFlag.account_id == account_id, FeatureFlag.location_id.is_(None))
    flag = (await session.execute(stmt)).scalars().first()
    if flag is None:
        flag = FeatureFlag(flag_key=flag_key, account_id=account_id, location_id=location_id)
        session.add(flag)
    flag.enabled = enabled
    flag.config = config or {}
    flag.updated_at = utc_now()
    await session.commit()
    logger.info(
        "feature_flag_set flag_key=%s enabled=%s account_id=%s location_id=%s",
        flag_key,
        enabled,
        account_id,
        location_id,
    )
    return flag
