from __future__ import annotations

import asyncio

from signplane.core.logging import configure_logging
from signplane.workers.maintenance_worker import run_registry_sweep_cycle


async def sweep() -> None:
    # One-shot sweep for cron hosts that do not run the arq worker.
    configure_logging()
    result = await run_registry_sweep_cycle()
    print(f"registry_sweep status={result['status']} marked_offline={result['marked_offline']}")


if __name__ == "__main__":
    asyncio.run(sweep())
