from __future__ import annotations

import asyncio

from signplane.core.config import get_settings
from signplane.core.logging import configure_logging
from signplane.workers.maintenance_worker import run_registry_sweep_cycle, run_rollout_scheduler_cycle


async def _loop() -> None:
    # Plain loop for single-host deployments without redis; arq's WorkerSettings covers the rest.
    configure_logging()
    settings = get_settings()
    interval = max(5, min(settings.registry_sweep_interval_s, settings.rollout_scheduler_interval_s))
    while True:
        await run_registry_sweep_cycle()
        await run_rollout_scheduler_cycle()
        await asyncio.sleep(interval)


if __name__ == "__main__":
    asyncio.run(_loop())
