from __future__ import annotations

import asyncio

from chatrelay.core.logging import configure_logging
from chatrelay.services.delivery.worker import DeliveryWorkerPool


async def _main() -> None:
    # Poll the durable queue directly so deliveries proceed even when Redis wake-ups are disabled.
    configure_logging()
    await DeliveryWorkerPool().run_forever()


if __name__ == "__main__":
    asyncio.run(_main())
