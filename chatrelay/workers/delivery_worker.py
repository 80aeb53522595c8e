from __future__ import annotations

import logging

from arq.connections import RedisSettings

from chatrelay.core.config import get_settings
from chatrelay.core.logging import configure_logging
from chatrelay.services.delivery.worker import DeliveryWorker, DeliveryWorkerPool

logger = logging.getLogger(__name__)


async def deliver_delivery_job(ctx, job_id: str) -> str:
    # Wake-up path: the durable row is the source of truth, so a lost claim just skips.
    worker: DeliveryWorker = ctx["delivery_worker"]
    outcome = await worker.deliver(job_id)
    return outcome


async def _startup(ctx) -> None:
    # Run the polling pool alongside arq so due retries and reclaimed leases are delivered without wake-ups.
    configure_logging()
    pool = DeliveryWorkerPool()
    ctx["delivery_pool"] = pool
    ctx["delivery_worker"] = DeliveryWorker(worker_id=f"{pool.pool_id}-arq")
    await pool.start()


async def _shutdown(ctx) -> None:
    # Stop pool tasks on shutdown to avoid dangling coroutines in tests and local runs.
    pool = ctx.get("delivery_pool")
    if pool is not None:
        await pool.stop()


class WorkerSettings:
    # Keep worker settings as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.delivery_queue_name
    # Attempt accounting lives on the job row; arq never re-runs a wake-up.
    max_tries = 1
    functions = [deliver_delivery_job]
    on_startup = _startup
    on_shutdown = _shutdown
