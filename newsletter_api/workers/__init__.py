from newsletter_api.workers.issue_delivery_worker import (
    ExecutionOutcome,
    drain_queue,
    retry_backoff_ms,
    run_issue_delivery_loop,
    try_execute_task,
)

__all__ = [
    "ExecutionOutcome",
    "drain_queue",
    "retry_backoff_ms",
    "run_issue_delivery_loop",
    "try_execute_task",
]
