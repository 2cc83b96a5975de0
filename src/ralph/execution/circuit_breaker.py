"""Batch-level circuit breaker for the injection loop.

Tracks the state of every task in a batch and halts the whole batch when a
failure pattern points to a structural defect rather than a task-local problem.

Trip conditions, evaluated in order (first match wins):
1. taskExhausted: a task failed after the architect tier was tried.
2. maxAttemptsExceeded: a task used up its attempt budget.
3. moduleEscalationRate: too many tasks in one module needed escalation.
   Escalation is sticky, so a task that escalated and later succeeded still
   counts.
4. globalFailureRate: too many tasks in the batch failed.

State is an immutable ``CircuitBreakerState`` value. The module-level
functions are pure transitions over it; ``CircuitBreaker`` owns one state value
for a single batch and logs trips and warnings.

Example usage:
    from ralph.execution.circuit_breaker import CircuitBreaker

    breaker = CircuitBreaker()
    breaker.register_function("src/a.ts:add", "src/a.ts")
    breaker.record_attempt_start("src/a.ts:add", ModelTier.WORKER)
    check = breaker.record_success("src/a.ts:add")
    if check.should_trip:
        report = breaker.generate_report()
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar

from ralph.core.config import CircuitBreakerConfig
from ralph.core.errors import FailureKind
from ralph.core.logging import get_logger
from ralph.core.tiers import ModelTier

_logger = get_logger("circuit_breaker")

# Escalation rate above which a module or the batch gets a review recommendation
HIGH_ESCALATION_RATE = 0.15


class FunctionStatus(str, Enum):
    """Lifecycle status of a task inside one batch.

    - PENDING: registered, no attempt started yet
    - IN_PROGRESS: an attempt is running
    - SUCCESS: an attempt was accepted (terminal)
    - ESCALATED: moved to a higher tier, waiting for the next attempt
    - FAILED: given up on (terminal)
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    ESCALATED = "escalated"
    FAILED = "failed"


@dataclass(frozen=True)
class TaskState:
    """Per-task state owned by the circuit breaker. Replaced, never mutated."""

    task_id: str
    module_path: str
    status: FunctionStatus = FunctionStatus.PENDING
    current_tier: ModelTier = ModelTier.WORKER
    architect_attempted: bool = False
    total_attempts: int = 0
    did_escalate: bool = False
    """Sticky: stays True after a later success."""

    last_failure: FailureKind | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "module_path": self.module_path,
            "status": self.status.value,
            "current_tier": self.current_tier.value,
            "architect_attempted": self.architect_attempted,
            "total_attempts": self.total_attempts,
            "did_escalate": self.did_escalate,
            "last_failure": self.last_failure.to_dict() if self.last_failure else None,
        }


@dataclass(frozen=True)
class TaskExhausted:
    type: ClassVar[str] = "taskExhausted"

    task_id: str
    total_attempts: int
    architect_attempted: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "task_id": self.task_id,
            "total_attempts": self.total_attempts,
            "architect_attempted": self.architect_attempted,
        }


@dataclass(frozen=True)
class MaxAttemptsExceeded:
    type: ClassVar[str] = "maxAttemptsExceeded"

    task_id: str
    total_attempts: int
    max_attempts: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "task_id": self.task_id,
            "total_attempts": self.total_attempts,
            "max_attempts": self.max_attempts,
        }


@dataclass(frozen=True)
class ModuleEscalationRate:
    type: ClassVar[str] = "moduleEscalationRate"

    module_path: str
    escalated_count: int
    total_count: int
    rate: float
    threshold: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "module_path": self.module_path,
            "escalated_count": self.escalated_count,
            "total_count": self.total_count,
            "rate": self.rate,
            "threshold": self.threshold,
        }


@dataclass(frozen=True)
class GlobalFailureRate:
    type: ClassVar[str] = "globalFailureRate"

    failed_count: int
    total_count: int
    rate: float
    threshold: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "failed_count": self.failed_count,
            "total_count": self.total_count,
            "rate": self.rate,
            "threshold": self.threshold,
        }


TripReason = TaskExhausted | MaxAttemptsExceeded | ModuleEscalationRate | GlobalFailureRate


class WarningType(str, Enum):
    MODULE_ESCALATION = "moduleEscalationWarning"
    GLOBAL_FAILURE = "globalFailureWarning"


@dataclass(frozen=True)
class CircuitWarning:
    """Non-fatal signal that a rate is approaching its trip threshold."""

    type: WarningType
    message: str
    rate: float
    threshold: float
    module_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "rate": self.rate,
            "threshold": self.threshold,
            "module_path": self.module_path,
        }


@dataclass(frozen=True)
class CircuitBreakerState:
    """All circuit breaker state for one batch run.

    ``tasks`` preserves registration order. ``warnings`` only ever grows.
    """

    tasks: Mapping[str, TaskState]
    is_tripped: bool = False
    trip_reason: TripReason | None = None
    warnings: tuple[CircuitWarning, ...] = ()


@dataclass(frozen=True)
class CircuitBreakerCheck:
    """Outcome of one evaluation of the trip conditions."""

    should_trip: bool
    trip_reason: TripReason | None = None
    warnings: tuple[CircuitWarning, ...] = ()


@dataclass(frozen=True)
class CircuitBreakerStatistics:
    total_functions: int
    success_count: int
    failed_count: int
    escalated_count: int
    """Tasks that escalated at least once, whatever their final status."""

    pending_count: int
    """Tasks not yet finished, including those in progress."""

    global_failure_rate: float
    global_escalation_rate: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_functions": self.total_functions,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "escalated_count": self.escalated_count,
            "pending_count": self.pending_count,
            "global_failure_rate": self.global_failure_rate,
            "global_escalation_rate": self.global_escalation_rate,
        }


@dataclass(frozen=True)
class ModuleStatistics:
    module_path: str
    total: int
    success: int
    failed: int
    escalated: int
    escalation_rate: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "module_path": self.module_path,
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "escalated": self.escalated,
            "escalation_rate": self.escalation_rate,
        }


@dataclass(frozen=True)
class StructuralDefectReport:
    """Snapshot of the batch taken when the circuit tripped."""

    trip_reason: TripReason
    failed_tasks: tuple[TaskState, ...]
    escalated_tasks: tuple[TaskState, ...]
    statistics: CircuitBreakerStatistics
    module_statistics: tuple[ModuleStatistics, ...]
    recommendations: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "trip_reason": self.trip_reason.to_dict(),
            "failed_tasks": [t.to_dict() for t in self.failed_tasks],
            "escalated_tasks": [t.to_dict() for t in self.escalated_tasks],
            "statistics": self.statistics.to_dict(),
            "module_statistics": [m.to_dict() for m in self.module_statistics],
            "recommendations": list(self.recommendations),
        }


# =============================================================================
# Pure state transitions
# =============================================================================


def create_circuit_breaker_state() -> CircuitBreakerState:
    return CircuitBreakerState(tasks=MappingProxyType({}))


def _with_task(state: CircuitBreakerState, task: TaskState) -> CircuitBreakerState:
    tasks = dict(state.tasks)
    tasks[task.task_id] = task
    return replace(state, tasks=MappingProxyType(tasks))


def register_function(
    state: CircuitBreakerState, task_id: str, module_path: str
) -> CircuitBreakerState:
    """Add a pending task. Registering an existing task is a no-op."""
    if task_id in state.tasks:
        return state
    return _with_task(state, TaskState(task_id=task_id, module_path=module_path))


def record_attempt_start(
    state: CircuitBreakerState, task_id: str, tier: ModelTier
) -> CircuitBreakerState:
    task = state.tasks.get(task_id)
    if task is None:
        return state
    return _with_task(
        state,
        replace(
            task,
            status=FunctionStatus.IN_PROGRESS,
            current_tier=tier,
            total_attempts=task.total_attempts + 1,
            architect_attempted=task.architect_attempted or tier is ModelTier.ARCHITECT,
        ),
    )


def record_success(state: CircuitBreakerState, task_id: str) -> CircuitBreakerState:
    task = state.tasks.get(task_id)
    if task is None:
        return state
    return _with_task(state, replace(task, status=FunctionStatus.SUCCESS))


def record_escalation(
    state: CircuitBreakerState, task_id: str, to_tier: ModelTier
) -> CircuitBreakerState:
    task = state.tasks.get(task_id)
    if task is None:
        return state
    return _with_task(
        state,
        replace(
            task,
            status=FunctionStatus.ESCALATED,
            current_tier=to_tier,
            did_escalate=True,
            architect_attempted=task.architect_attempted or to_tier is ModelTier.ARCHITECT,
        ),
    )


def record_failure(
    state: CircuitBreakerState, task_id: str, failure: FailureKind
) -> CircuitBreakerState:
    task = state.tasks.get(task_id)
    if task is None:
        return state
    return _with_task(state, replace(task, status=FunctionStatus.FAILED, last_failure=failure))


def _counts_as_escalated(task: TaskState) -> bool:
    return task.did_escalate or task.status is FunctionStatus.ESCALATED


def compute_statistics(state: CircuitBreakerState) -> CircuitBreakerStatistics:
    tasks = list(state.tasks.values())
    total = len(tasks)
    success = sum(1 for t in tasks if t.status is FunctionStatus.SUCCESS)
    failed = sum(1 for t in tasks if t.status is FunctionStatus.FAILED)
    escalated = sum(1 for t in tasks if _counts_as_escalated(t))
    pending = sum(
        1 for t in tasks
        if t.status in (FunctionStatus.PENDING, FunctionStatus.IN_PROGRESS)
    )
    return CircuitBreakerStatistics(
        total_functions=total,
        success_count=success,
        failed_count=failed,
        escalated_count=escalated,
        pending_count=pending,
        global_failure_rate=failed / total if total else 0.0,
        global_escalation_rate=escalated / total if total else 0.0,
    )


def compute_module_statistics(state: CircuitBreakerState) -> tuple[ModuleStatistics, ...]:
    """Per-module counters, sorted by module path."""
    grouped: dict[str, list[TaskState]] = {}
    for task in state.tasks.values():
        grouped.setdefault(task.module_path, []).append(task)

    result: list[ModuleStatistics] = []
    for module_path in sorted(grouped):
        tasks = grouped[module_path]
        escalated = sum(1 for t in tasks if _counts_as_escalated(t))
        result.append(
            ModuleStatistics(
                module_path=module_path,
                total=len(tasks),
                success=sum(1 for t in tasks if t.status is FunctionStatus.SUCCESS),
                failed=sum(1 for t in tasks if t.status is FunctionStatus.FAILED),
                escalated=escalated,
                escalation_rate=escalated / len(tasks),
            )
        )
    return tuple(result)


def check_circuit_breaker(
    state: CircuitBreakerState,
    config: CircuitBreakerConfig | None = None,
) -> CircuitBreakerCheck:
    """Evaluate trip conditions and warnings against the current state."""
    config = config or CircuitBreakerConfig()
    tasks = list(state.tasks.values())

    for task in tasks:
        if task.status is FunctionStatus.FAILED and task.architect_attempted:
            return CircuitBreakerCheck(
                should_trip=True,
                trip_reason=TaskExhausted(
                    task_id=task.task_id,
                    total_attempts=task.total_attempts,
                    architect_attempted=True,
                ),
            )

    for task in tasks:
        if task.total_attempts >= config.max_attempts_per_function:
            return CircuitBreakerCheck(
                should_trip=True,
                trip_reason=MaxAttemptsExceeded(
                    task_id=task.task_id,
                    total_attempts=task.total_attempts,
                    max_attempts=config.max_attempts_per_function,
                ),
            )

    warnings: list[CircuitWarning] = []
    modules = compute_module_statistics(state)
    for module in modules:
        if module.escalation_rate > config.module_escalation_threshold:
            return CircuitBreakerCheck(
                should_trip=True,
                trip_reason=ModuleEscalationRate(
                    module_path=module.module_path,
                    escalated_count=module.escalated,
                    total_count=module.total,
                    rate=module.escalation_rate,
                    threshold=config.module_escalation_threshold,
                ),
            )
        if module.escalation_rate >= config.module_escalation_warning_threshold and module.escalated:
            warnings.append(
                CircuitWarning(
                    type=WarningType.MODULE_ESCALATION,
                    message=(
                        f"Module {module.module_path} escalation rate "
                        f"{module.escalation_rate * 100:.1f}% ({module.escalated}/{module.total}) "
                        f"approaching threshold {config.module_escalation_threshold * 100:.0f}%"
                    ),
                    rate=module.escalation_rate,
                    threshold=config.module_escalation_threshold,
                    module_path=module.module_path,
                )
            )

    stats = compute_statistics(state)
    if stats.total_functions:
        rate = stats.global_failure_rate
        if rate > config.global_failure_threshold:
            return CircuitBreakerCheck(
                should_trip=True,
                trip_reason=GlobalFailureRate(
                    failed_count=stats.failed_count,
                    total_count=stats.total_functions,
                    rate=rate,
                    threshold=config.global_failure_threshold,
                ),
            )
        if rate >= config.global_failure_warning_threshold and stats.failed_count:
            warnings.append(
                CircuitWarning(
                    type=WarningType.GLOBAL_FAILURE,
                    message=(
                        f"Global failure rate {rate * 100:.1f}% "
                        f"({stats.failed_count}/{stats.total_functions}) "
                        f"approaching threshold {config.global_failure_threshold * 100:.0f}%"
                    ),
                    rate=rate,
                    threshold=config.global_failure_threshold,
                )
            )

    return CircuitBreakerCheck(should_trip=False, warnings=tuple(warnings))


def apply_check_result(
    state: CircuitBreakerState, result: CircuitBreakerCheck
) -> CircuitBreakerState:
    """Fold a check result into the state.

    Warnings are appended unless an identical warning is already recorded
    (identical means the same signal with unchanged counts). The first trip
    reason is kept once the circuit has tripped.
    """
    new_warnings = tuple(w for w in result.warnings if w not in state.warnings)
    updated = state
    if new_warnings:
        updated = replace(updated, warnings=updated.warnings + new_warnings)
    if result.should_trip and result.trip_reason is not None and not updated.is_tripped:
        updated = replace(updated, is_tripped=True, trip_reason=result.trip_reason)
    return updated


def _recommendations(
    trip_reason: TripReason,
    statistics: CircuitBreakerStatistics,
    modules: tuple[ModuleStatistics, ...],
) -> tuple[str, ...]:
    lines: list[str] = []
    match trip_reason:
        case TaskExhausted(task_id=task_id):
            lines += [
                f"Review function {task_id}: implementation may require manual intervention",
                "Consider simplifying the function contract or splitting it into smaller functions",
                "Check that type definitions are correct and complete",
            ]
        case MaxAttemptsExceeded(task_id=task_id, max_attempts=max_attempts):
            lines += [
                f"Function {task_id} exceeded {max_attempts} attempts",
                "Review function complexity and consider refactoring",
                "Ensure contracts are implementable with the available type constraints",
            ]
        case ModuleEscalationRate(module_path=module_path, rate=rate):
            lines += [
                f"Module {module_path} exceeds escalation threshold ({rate * 100:.1f}%) "
                "- consider interface redesign",
                "Review module structure and function contracts",
                "Check for systemic issues in type definitions",
            ]
        case GlobalFailureRate(rate=rate):
            lines += [
                f"Global failure rate {rate * 100:.1f}% exceeds threshold",
                "Check for fundamental issues in type system design",
                "Review the batch's constraints for feasibility",
            ]

    if statistics.failed_count:
        noun = "function requires" if statistics.failed_count == 1 else "functions require"
        lines.append(f"{statistics.failed_count} {noun} architect-tier review")

    for module in modules:
        if module.escalation_rate > HIGH_ESCALATION_RATE:
            lines.append(
                f"Module {module.module_path} has {module.escalation_rate * 100:.1f}% "
                "escalation rate - review contracts"
            )

    if statistics.global_escalation_rate > HIGH_ESCALATION_RATE:
        lines.append(
            "High overall escalation rate suggests constraints may be too complex "
            "for the worker model"
        )
    return tuple(lines)


def generate_structural_defect_report(
    state: CircuitBreakerState, trip_reason: TripReason
) -> StructuralDefectReport:
    """Build the defect report. Pure: identical inputs give equal reports."""
    statistics = compute_statistics(state)
    modules = compute_module_statistics(state)
    tasks = list(state.tasks.values())
    return StructuralDefectReport(
        trip_reason=trip_reason,
        failed_tasks=tuple(t for t in tasks if t.status is FunctionStatus.FAILED),
        escalated_tasks=tuple(t for t in tasks if _counts_as_escalated(t)),
        statistics=statistics,
        module_statistics=modules,
        recommendations=_recommendations(trip_reason, statistics, modules),
    )


# =============================================================================
# Stateful wrapper
# =============================================================================


class CircuitBreaker:
    """Circuit breaker owning the state of a single batch.

    Every ``record_*`` call updates the task and then runs ``check()``, so a
    caller always learns immediately when an outcome trips the circuit.
    Once tripped, the circuit stays tripped with its first trip reason.

    Not thread-safe: one orchestrator drives one breaker sequentially.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        name: str = "default",
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._name = name
        self._state = create_circuit_breaker_state()

        _logger.debug(
            "circuit_breaker.initialized",
            name=name,
            max_attempts_per_function=self._config.max_attempts_per_function,
            module_escalation_threshold=self._config.module_escalation_threshold,
            global_failure_threshold=self._config.global_failure_threshold,
        )

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def is_tripped(self) -> bool:
        return self._state.is_tripped

    @property
    def trip_reason(self) -> TripReason | None:
        return self._state.trip_reason

    @property
    def warnings(self) -> tuple[CircuitWarning, ...]:
        return self._state.warnings

    def get_state(self) -> CircuitBreakerState:
        """Return the current state value (immutable, safe to keep)."""
        return self._state

    def get_task_state(self, task_id: str) -> TaskState | None:
        return self._state.tasks.get(task_id)

    def register_function(self, task_id: str, module_path: str) -> None:
        self._state = register_function(self._state, task_id, module_path)

    def record_attempt_start(self, task_id: str, tier: ModelTier) -> CircuitBreakerCheck:
        self._state = record_attempt_start(self._state, task_id, tier)
        return self.check()

    def record_success(self, task_id: str) -> CircuitBreakerCheck:
        self._state = record_success(self._state, task_id)
        return self.check()

    def record_escalation(self, task_id: str, to_tier: ModelTier) -> CircuitBreakerCheck:
        self._state = record_escalation(self._state, task_id, to_tier)
        _logger.info(
            "circuit_breaker.task_escalated",
            name=self._name,
            task_id=task_id,
            to_tier=to_tier.value,
        )
        return self.check()

    def record_failure(self, task_id: str, failure: FailureKind) -> CircuitBreakerCheck:
        self._state = record_failure(self._state, task_id, failure)
        return self.check()

    def check(self) -> CircuitBreakerCheck:
        """Evaluate trip conditions, record warnings and trip if needed."""
        result = check_circuit_breaker(self._state, self._config)
        was_tripped = self._state.is_tripped
        previous_warnings = self._state.warnings
        self._state = apply_check_result(self._state, result)

        for warning in self._state.warnings[len(previous_warnings):]:
            _logger.warning(
                "circuit_breaker.warning",
                name=self._name,
                warning_type=warning.type.value,
                message=warning.message,
            )
        if self._state.is_tripped and not was_tripped and self._state.trip_reason is not None:
            _logger.error(
                "circuit_breaker.tripped",
                name=self._name,
                **self._state.trip_reason.to_dict(),
            )
        return result

    def generate_report(self) -> StructuralDefectReport | None:
        """Return the defect report, or None while the circuit is closed."""
        if not self._state.is_tripped or self._state.trip_reason is None:
            return None
        return generate_structural_defect_report(self._state, self._state.trip_reason)

    def get_statistics(self) -> CircuitBreakerStatistics:
        return compute_statistics(self._state)

    def get_module_statistics(self) -> tuple[ModuleStatistics, ...]:
        return compute_module_statistics(self._state)

    def __repr__(self) -> str:
        stats = self.get_statistics()
        return (
            f"CircuitBreaker(name={self._name!r}, tripped={self._state.is_tripped}, "
            f"tasks={stats.total_functions}, failed={stats.failed_count}, "
            f"escalated={stats.escalated_count})"
        )


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerCheck",
    "CircuitBreakerState",
    "CircuitBreakerStatistics",
    "CircuitWarning",
    "FunctionStatus",
    "GlobalFailureRate",
    "MaxAttemptsExceeded",
    "ModuleEscalationRate",
    "ModuleStatistics",
    "StructuralDefectReport",
    "TaskExhausted",
    "TaskState",
    "TripReason",
    "WarningType",
    "apply_check_result",
    "check_circuit_breaker",
    "compute_module_statistics",
    "compute_statistics",
    "create_circuit_breaker_state",
    "generate_structural_defect_report",
    "record_attempt_start",
    "record_escalation",
    "record_failure",
    "record_success",
    "register_function",
]
