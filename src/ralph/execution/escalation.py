"""Escalation engine: routes a failed attempt to retry, escalate or circuit break.

Everything in this module is pure. ``decide`` maps a classified failure, the
task's attempt history and its current tier to exactly one
``EscalationAction``. History is an immutable value; the ``record_*``
functions return an updated copy and never touch their input.

Decision priority:
1. Attempt ceiling across all tiers -> circuit break.
2. Coherence conflicts -> circuit break on any tier.
3. Security, timeout, semantic, fatal syntax -> escalate (break at architect).
4. Recoverable syntax, type, test, complexity -> retry while under the
   per-kind limit at the current tier, then escalate (break at architect).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType

from ralph.core.config import EscalationConfig
from ralph.core.errors import (
    CoherenceFailure,
    ComplexityFailure,
    FailureKind,
    FailureType,
    SecurityFailure,
    SemanticFailure,
    SyntaxFailure,
    TestFailure,
    TimeoutFailure,
    TypeFailure,
    is_syntax_recoverable,
)
from ralph.core.tiers import TIER_ORDER, ModelTier, is_highest_tier, next_tier

# Maximum failing tests listed in a failure summary
MAX_SUMMARY_TESTS = 5

DEFAULT_ESCALATION_CONFIG = EscalationConfig()

TYPE_HINT = (
    "Please ensure all types are used correctly. Review the type definitions provided."
)


def _empty_tier_counts() -> Mapping[ModelTier, int]:
    return MappingProxyType({tier: 0 for tier in TIER_ORDER})


@dataclass(frozen=True)
class AttemptHistory:
    """Immutable record of attempts made on a single task."""

    task_id: str
    total_attempts: int = 0
    attempts_by_tier: Mapping[ModelTier, int] = field(default_factory=_empty_tier_counts)
    last_failure: FailureKind | None = None
    syntax_hint_provided: bool = False

    def attempts_at(self, tier: ModelTier) -> int:
        return self.attempts_by_tier.get(tier, 0)


@dataclass(frozen=True)
class RetrySame:
    """Retry at the current tier, optionally with a hint appended to the prompt."""

    with_hint: bool = False
    hint: str | None = None


@dataclass(frozen=True)
class Escalate:
    to_tier: ModelTier


@dataclass(frozen=True)
class CircuitBreak:
    """Stop work on the task; ``requires_human_review`` marks defects needing a person."""

    reason: str
    requires_human_review: bool


EscalationAction = RetrySame | Escalate | CircuitBreak


@dataclass(frozen=True)
class EscalationDecision:
    action: EscalationAction
    reason: str
    next_tier: ModelTier | None = None


def create_attempt_history(task_id: str) -> AttemptHistory:
    return AttemptHistory(task_id=task_id)


def record_attempt(
    history: AttemptHistory,
    tier: ModelTier,
    failure: FailureKind | None = None,
) -> AttemptHistory:
    """Return a copy of ``history`` with one more attempt at ``tier``.

    ``last_failure`` is replaced only when a failure is given.
    """
    counts = dict(history.attempts_by_tier)
    counts[tier] = counts.get(tier, 0) + 1
    return replace(
        history,
        total_attempts=history.total_attempts + 1,
        attempts_by_tier=MappingProxyType(counts),
        last_failure=failure if failure is not None else history.last_failure,
    )


def record_syntax_hint(history: AttemptHistory) -> AttemptHistory:
    return replace(history, syntax_hint_provided=True)


def reset_syntax_hint(history: AttemptHistory) -> AttemptHistory:
    """Clear the hint flag, typically after escalating to a new tier."""
    return replace(history, syntax_hint_provided=False)


def generate_syntax_hint(message: str) -> str:
    return (
        f"SYNTAX ERROR in previous attempt:\n{message}\n\n"
        "Please ensure the code is syntactically valid. "
        "Check for missing semicolons, brackets, and proper string termination."
    )


def requires_immediate_escalation(failure: FailureKind) -> bool:
    """Whether ``failure`` skips same-tier retries entirely."""
    match failure:
        case SecurityFailure() | TimeoutFailure() | SemanticFailure():
            return True
        case SyntaxFailure(recoverable=recoverable):
            return not recoverable
        case _:
            return False


def causes_circuit_break(failure: FailureKind) -> bool:
    """Whether ``failure`` breaks the circuit regardless of tier."""
    return isinstance(failure, CoherenceFailure)


def get_retry_limit(failure_type: FailureType, config: EscalationConfig = DEFAULT_ESCALATION_CONFIG) -> int:
    """Same-tier attempt limit for a failure type; 0 for kinds that never retry."""
    if failure_type is FailureType.SYNTAX:
        return config.syntax_retry_limit
    if failure_type is FailureType.TYPE:
        return config.type_retry_limit
    if failure_type in (FailureType.TEST, FailureType.COMPLEXITY):
        return config.test_retry_limit
    return 0


def _escalate_or_break(
    current_tier: ModelTier,
    escalate_reason: str,
    break_reason: str,
    requires_human_review: bool,
) -> EscalationDecision:
    target = next_tier(current_tier)
    if target is None:
        return EscalationDecision(
            action=CircuitBreak(reason=break_reason, requires_human_review=requires_human_review),
            reason=break_reason,
        )
    return EscalationDecision(
        action=Escalate(to_tier=target),
        reason=escalate_reason,
        next_tier=target,
    )


def _decide_syntax(
    failure: SyntaxFailure,
    history: AttemptHistory,
    current_tier: ModelTier,
    config: EscalationConfig,
) -> EscalationDecision:
    if not failure.recoverable:
        return _escalate_or_break(
            current_tier,
            f"Fatal syntax error at {current_tier.value}, escalating",
            f"Fatal syntax error at {current_tier.value}, no higher tier available",
            requires_human_review=True,
        )

    at_tier = history.attempts_at(current_tier)
    limit = config.syntax_retry_limit
    hint = generate_syntax_hint(failure.message)

    if at_tier < limit:
        with_hint = history.syntax_hint_provided or at_tier >= 2
        return EscalationDecision(
            action=RetrySame(with_hint=with_hint, hint=hint if with_hint else None),
            reason=f"Recoverable syntax error, retry {at_tier}/{limit}",
        )
    if at_tier == limit and not history.syntax_hint_provided:
        return EscalationDecision(
            action=RetrySame(with_hint=True, hint=hint),
            reason="Syntax retry limit reached, final retry with hint",
        )
    return _escalate_or_break(
        current_tier,
        f"Syntax errors persist after {at_tier} attempts at {current_tier.value}",
        f"Syntax errors persist at {current_tier.value}",
        requires_human_review=False,
    )


def _decide_retryable(
    kind: FailureType,
    history: AttemptHistory,
    current_tier: ModelTier,
    config: EscalationConfig,
    hint: str | None,
    requires_human_review: bool,
) -> EscalationDecision:
    at_tier = history.attempts_at(current_tier)
    limit = get_retry_limit(kind, config)
    label = kind.value.capitalize()
    if at_tier < limit:
        return EscalationDecision(
            action=RetrySame(with_hint=hint is not None, hint=hint),
            reason=f"{label} failure, retry {at_tier}/{limit}",
        )
    return _escalate_or_break(
        current_tier,
        f"{label} failures persist after {at_tier} attempts at {current_tier.value}",
        f"{label} failures persist at {current_tier.value}",
        requires_human_review=requires_human_review,
    )


def decide(
    failure: FailureKind,
    history: AttemptHistory,
    current_tier: ModelTier,
    config: EscalationConfig = DEFAULT_ESCALATION_CONFIG,
) -> EscalationDecision:
    """Decide what happens after a failed attempt.

    Args:
        failure: Classification of the attempt that just failed.
        history: Task history that already includes the failed attempt.
        current_tier: Tier the failed attempt ran at.
        config: Retry limits and attempt ceiling.

    Returns:
        The action to take, a human-readable reason, and the target tier when
        the action escalates.
    """
    if history.total_attempts >= config.max_attempts_per_function:
        reason = f"Maximum attempts ({config.max_attempts_per_function}) exceeded"
        return EscalationDecision(
            action=CircuitBreak(reason=reason, requires_human_review=False),
            reason=reason,
        )

    match failure:
        case CoherenceFailure(conflicting_task_ids=conflicts):
            reason = f"Coherence conflict with: {', '.join(conflicts) or 'unknown functions'}"
            return EscalationDecision(
                action=CircuitBreak(reason=reason, requires_human_review=False),
                reason=reason,
            )
        case SyntaxFailure():
            return _decide_syntax(failure, history, current_tier, config)
        case SecurityFailure(vulnerability=vulnerability):
            return _escalate_or_break(
                current_tier,
                f"Security vulnerability ({vulnerability.value}), escalating",
                f"Security vulnerability ({vulnerability.value}) persists at architect",
                requires_human_review=True,
            )
        case TimeoutFailure(resource=resource):
            return _escalate_or_break(
                current_tier,
                f"Timeout on {resource.value}, escalating",
                f"Timeout on {resource.value} at architect",
                requires_human_review=True,
            )
        case SemanticFailure(violation=violation):
            return _escalate_or_break(
                current_tier,
                f"Semantic {violation.value} violation, escalating",
                f"Semantic {violation.value} violation at architect",
                requires_human_review=True,
            )
        case TypeFailure():
            return _decide_retryable(
                FailureType.TYPE, history, current_tier, config,
                hint=TYPE_HINT, requires_human_review=False,
            )
        case TestFailure() | ComplexityFailure():
            return _decide_retryable(
                failure.kind, history, current_tier, config,
                hint=None, requires_human_review=True,
            )
    raise TypeError(f"Unknown failure kind: {failure!r}")


def format_escalation_action(action: EscalationAction) -> str:
    match action:
        case RetrySame(with_hint=True):
            return "RETRY (with hint)"
        case RetrySame():
            return "RETRY"
        case Escalate(to_tier=tier):
            return f"ESCALATE to {tier.value}"
        case CircuitBreak(reason=reason, requires_human_review=True):
            return f"CIRCUIT BREAK (human review required): {reason}"
        case CircuitBreak(reason=reason):
            return f"CIRCUIT BREAK: {reason}"
    raise TypeError(f"Unknown escalation action: {action!r}")


def generate_failure_summary(task_id: str, signature: str, failure: FailureKind) -> str:
    """Describe a failed attempt for the next prompt.

    The summary names what failed but never includes the rejected body, and
    tells the model that earlier attempts were discarded.
    """
    lines = [
        f"FUNCTION: {task_id}",
        f"SIGNATURE: {signature}",
        "",
        f"FAILURE TYPE: {failure.kind.value.capitalize()}",
    ]

    match failure:
        case SyntaxFailure(message=message):
            lines.append(f"PARSE ERROR: {message}")
        case TypeFailure(compiler_error=compiler_error):
            lines.append(f"COMPILER ERROR: {compiler_error}")
        case TestFailure(failing_tests=failing_tests):
            lines.append("FAILING TESTS:")
            for test in failing_tests[:MAX_SUMMARY_TESTS]:
                lines.append(f"  - {test.test_name}: expected {test.expected}, got {test.actual}")
        case TimeoutFailure(resource=resource, limit=limit):
            lines.append(f"TIMEOUT: {resource.value} exceeded limit of {limit}ms")
        case SemanticFailure(violation=violation, description=description, clause=clause):
            lines.append(f"VIOLATION: {violation.value} - {description}")
            if clause is not None:
                lines.append(f"CLAUSE: {clause}")
        case ComplexityFailure(expected=expected, measured=measured):
            lines.append(f"EXPECTED: {expected}")
            lines.append(f"MEASURED: {measured}")
        case SecurityFailure(vulnerability=vulnerability):
            lines.append(f"VULNERABILITY: {vulnerability.value}")
        case CoherenceFailure(conflicting_task_ids=conflicts):
            lines.append(f"CONFLICTING FUNCTIONS: {', '.join(conflicts)}")

    lines.append("")
    lines.append("NOTE: Previous attempts discarded. Implement from scratch.")
    return "\n".join(lines)


__all__ = [
    "AttemptHistory",
    "CircuitBreak",
    "DEFAULT_ESCALATION_CONFIG",
    "Escalate",
    "EscalationAction",
    "EscalationDecision",
    "RetrySame",
    "causes_circuit_break",
    "create_attempt_history",
    "decide",
    "format_escalation_action",
    "generate_failure_summary",
    "generate_syntax_hint",
    "get_retry_limit",
    "is_highest_tier",
    "is_syntax_recoverable",
    "record_attempt",
    "record_syntax_hint",
    "requires_immediate_escalation",
    "reset_syntax_hint",
]
