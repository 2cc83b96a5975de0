"""Plain-text rendering of circuit trips, defect reports and batch results."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ralph.core.errors import FailureKind
from ralph.execution.circuit_breaker import (
    GlobalFailureRate,
    MaxAttemptsExceeded,
    ModuleEscalationRate,
    StructuralDefectReport,
    TaskExhausted,
    TaskState,
    TripReason,
)

if TYPE_CHECKING:
    from ralph.execution.ralph_loop import RalphLoopResult

BANNER = "=" * 80
RULE = "-" * 80


def _percent(rate: float, digits: int = 1) -> str:
    return f"{rate * 100:.{digits}f}%"


def format_trip_reason(reason: TripReason) -> str:
    match reason:
        case TaskExhausted(task_id=task_id, total_attempts=total, architect_attempted=architect):
            return (
                f"Function {task_id} failed after {total} attempts "
                f"(architect attempted: {str(architect).lower()})"
            )
        case MaxAttemptsExceeded(task_id=task_id, total_attempts=total, max_attempts=maximum):
            return f"Function {task_id} exceeded max attempts ({total}/{maximum})"
        case ModuleEscalationRate(
            module_path=module_path, escalated_count=escalated, total_count=total,
            rate=rate, threshold=threshold,
        ):
            return (
                f"Module {module_path} escalation rate {_percent(rate)} exceeds threshold "
                f"{_percent(threshold, 0)} ({escalated}/{total} functions)"
            )
        case GlobalFailureRate(failed_count=failed, total_count=total, rate=rate, threshold=threshold):
            return (
                f"Global failure rate {_percent(rate)} exceeds threshold "
                f"{_percent(threshold, 0)} ({failed}/{total} functions)"
            )
    raise TypeError(f"Unknown trip reason: {reason!r}")


def describe_failure(failure: FailureKind | None) -> str:
    """One-line description of a failure for report listings."""
    if failure is None:
        return "No failure recorded"
    details = {k: v for k, v in failure.to_dict().items() if k != "kind"}
    first_value = next(iter(details.values()), "")
    if isinstance(first_value, list):
        first_value = f"{len(first_value)} item(s)"
    return f"{failure.kind.value}: {first_value}".splitlines()[0]


def _task_lines(task: TaskState, include_reason: bool) -> list[str]:
    lines = [f"  {task.task_id} ({task.module_path})"]
    if include_reason:
        lines.append(f"    Reason: {describe_failure(task.last_failure)}")
        lines.append(
            f"    Attempts: {task.total_attempts}, "
            f"Architect: {str(task.architect_attempted).lower()}"
        )
    else:
        lines.append(f"    Attempts: {task.total_attempts}, Tier: {task.current_tier.value}")
    return lines


def format_structural_defect_report(report: StructuralDefectReport) -> str:
    """Render a defect report for operators."""
    stats = report.statistics
    lines = [
        BANNER,
        "STRUCTURAL DEFECT REPORT".center(80).rstrip(),
        BANNER,
        "",
        f"Trip Reason: {format_trip_reason(report.trip_reason)}",
        "",
        "STATISTICS:",
        f"  Total Functions: {stats.total_functions}",
        f"  Successful: {stats.success_count}",
        f"  Failed: {stats.failed_count}",
        f"  Escalated: {stats.escalated_count}",
        f"  Pending: {stats.pending_count}",
        f"  Global Failure Rate: {_percent(stats.global_failure_rate)}",
        f"  Global Escalation Rate: {_percent(stats.global_escalation_rate)}",
        "",
    ]

    if report.failed_tasks:
        lines += ["FAILED FUNCTIONS:", RULE]
        for task in report.failed_tasks:
            lines += _task_lines(task, include_reason=True)
        lines.append("")

    if report.escalated_tasks:
        lines += ["ESCALATED FUNCTIONS:", RULE]
        for task in report.escalated_tasks:
            lines += _task_lines(task, include_reason=False)
        lines.append("")

    lines += ["MODULE SUMMARY:", RULE]
    for module in report.module_statistics:
        lines.append(
            f"  {module.module_path}: {module.success}/{module.total} success, "
            f"{module.failed} failed, {module.escalated} escalated "
            f"({_percent(module.escalation_rate)} escalation)"
        )
    lines.append("")

    if report.recommendations:
        lines += ["RECOMMENDATIONS:", RULE]
        lines += [f"  * {rec}" for rec in report.recommendations]
        lines.append("")

    lines.append(BANNER)
    return "\n".join(lines)


def format_ralph_loop_report(result: RalphLoopResult) -> str:
    """Render a batch result, including the defect report if the circuit tripped."""
    lines = [
        BANNER,
        "RALPH LOOP REPORT".center(80).rstrip(),
        BANNER,
        "",
        f"Status: {'SUCCESS' if result.success else 'INCOMPLETE'}",
        f"Total Functions: {result.total_tasks}",
        f"Implemented: {result.implemented_count}",
        f"Failed: {result.failed_count}",
        f"Circuit Tripped: {'yes' if result.circuit_tripped else 'no'}",
        f"Duration: {round(result.total_duration_ms)}ms",
        "",
    ]

    if result.attempts:
        lines += ["ATTEMPTS:", RULE]
        for attempt in result.attempts:
            status = "[ACCEPTED]" if attempt.accepted else "[REJECTED]"
            lines.append(
                f"{status} {attempt.task.name} @ {attempt.tier.value} "
                f"({round(attempt.duration_ms)}ms)"
            )
            if not attempt.accepted and attempt.rejection_reason is not None:
                lines.append(f"  Reason: {attempt.rejection_reason}")
        lines.append("")

    if result.remaining_todos:
        lines += ["REMAINING TODO FUNCTIONS:", RULE]
        lines += [f"  - {task.name} ({task.file_path})" for task in result.remaining_todos]
        lines.append("")

    lines.append(BANNER)

    if result.structural_defect_report is not None:
        lines += ["", format_structural_defect_report(result.structural_defect_report)]

    return "\n".join(lines)


__all__ = [
    "describe_failure",
    "format_ralph_loop_report",
    "format_structural_defect_report",
    "format_trip_reason",
]
