from __future__ import annotations

import asyncio

from chatrelay.core.logging import configure_logging
from chatrelay.services.health.monitor import run_health_monitor_loop


async def _main() -> None:
    # Boot a dedicated monitor process so health snapshots and alerts continue without request traffic.
    configure_logging()
    await run_health_monitor_loop()


if __name__ == "__main__":
    asyncio.run(_main())
