from chatrelay.services.health.alerts import (
    AlertCandidate,
    acknowledge_alert,
    list_alerts,
    resolve_alert,
    sync_alerts,
)
from chatrelay.services.health.monitor import (
    HealthIssue,
    HealthReport,
    latest_snapshots,
    run_health_check,
    run_health_monitor_cycle,
    run_health_monitor_loop,
    snapshot_history,
)

__all__ = [
    "AlertCandidate",
    "HealthIssue",
    "HealthReport",
    "acknowledge_alert",
    "latest_snapshots",
    "list_alerts",
    "resolve_alert",
    "run_health_check",
    "run_health_monitor_cycle",
    "run_health_monitor_loop",
    "snapshot_history",
    "sync_alerts",
]
