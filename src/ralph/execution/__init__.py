"""Execution layer: escalation engine, circuit breaker and the Ralph loop."""

from ralph.execution.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerCheck,
    CircuitBreakerState,
    CircuitBreakerStatistics,
    FunctionStatus,
    StructuralDefectReport,
    TaskState,
    TripReason,
)
from ralph.execution.dag import order_task_ids, order_tasks
from ralph.execution.escalation import (
    AttemptHistory,
    CircuitBreak,
    Escalate,
    EscalationAction,
    EscalationDecision,
    RetrySame,
    decide,
)
from ralph.execution.ralph_loop import (
    ImplementationAttempt,
    RalphLoop,
    RalphLoopResult,
    run_batch,
)
from ralph.execution.reporting import (
    format_ralph_loop_report,
    format_structural_defect_report,
)

__all__ = [
    "AttemptHistory",
    "CircuitBreak",
    "CircuitBreaker",
    "CircuitBreakerCheck",
    "CircuitBreakerState",
    "CircuitBreakerStatistics",
    "Escalate",
    "EscalationAction",
    "EscalationDecision",
    "FunctionStatus",
    "ImplementationAttempt",
    "RalphLoop",
    "RalphLoopResult",
    "RetrySame",
    "StructuralDefectReport",
    "TaskState",
    "TripReason",
    "decide",
    "format_ralph_loop_report",
    "format_structural_defect_report",
    "order_task_ids",
    "order_tasks",
    "run_batch",
]
