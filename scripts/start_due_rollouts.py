from __future__ import annotations

import asyncio

from signplane.core.logging import configure_logging
from signplane.workers.maintenance_worker import run_rollout_scheduler_cycle


async def start() -> None:
    configure_logging()
    result = await run_rollout_scheduler_cycle()
    print(f"rollout_scheduler status={result['status']} started={len(result['started'])}")
    for rollout_id in result["started"]:
        print(f"started_rollout={rollout_id}")


if __name__ == "__main__":
    asyncio.run(start())
