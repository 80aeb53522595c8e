from chatrelay.services.delivery.circuit_breaker import (
    ChannelCircuitBreaker,
    CircuitBreakerConfig,
    CircuitPermit,
)
from chatrelay.services.delivery.dispatch import ChatDispatcher, DispatchReceipt, redact_endpoint
from chatrelay.services.delivery.queue import (
    DeliveryQueue,
    EnqueueResult,
    get_delivery_job,
    list_delivery_jobs,
    list_job_attempts,
    publish_delivery_wakeup,
)
from chatrelay.services.delivery.render import ChatMessageRenderer, TemplateRenderer
from chatrelay.services.delivery.retry import (
    RecoveryFilter,
    RecoveryResult,
    RetryController,
    retry_delay_seconds,
    retry_jobs,
)
from chatrelay.services.delivery.worker import (
    DeliveryWorker,
    DeliveryWorkerPool,
    run_maintenance_cycle,
    run_worker_iteration,
)

__all__ = [
    "ChannelCircuitBreaker",
    "ChatDispatcher",
    "ChatMessageRenderer",
    "CircuitBreakerConfig",
    "CircuitPermit",
    "DeliveryQueue",
    "DeliveryWorker",
    "DeliveryWorkerPool",
    "DispatchReceipt",
    "EnqueueResult",
    "RecoveryFilter",
    "RecoveryResult",
    "RetryController",
    "TemplateRenderer",
    "get_delivery_job",
    "list_delivery_jobs",
    "list_job_attempts",
    "publish_delivery_wakeup",
    "redact_endpoint",
    "retry_delay_seconds",
    "retry_jobs",
    "run_maintenance_cycle",
    "run_worker_iteration",
]
