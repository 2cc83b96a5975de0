"""Classified verification failures.

``FailureKind`` is a closed union of frozen dataclasses. Each member carries a
``kind`` discriminator so callers can either ``match`` on the class or branch on
``failure.kind``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, ClassVar

from .codes import (
    BIG_O_CLASSES,
    FailureType,
    ResourceType,
    SemanticViolationType,
    VulnerabilityType,
)


@dataclass(frozen=True)
class TestFailureDetail:
    """One failing test case reported by the test runner."""

    __test__: ClassVar[bool] = False

    test_name: str
    expected: str
    actual: str
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "test_name": self.test_name,
            "expected": self.expected,
            "actual": self.actual,
        }
        if self.message is not None:
            result["message"] = self.message
        return result


@dataclass(frozen=True)
class SyntaxFailure:
    """Generated body did not parse."""

    kind: ClassVar[FailureType] = FailureType.SYNTAX

    message: str
    """Parse error text from the compiler or injector."""

    recoverable: bool
    """Whether a retry with a hint is worth attempting."""

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "recoverable": self.recoverable}


@dataclass(frozen=True)
class TypeFailure:
    kind: ClassVar[FailureType] = FailureType.TYPE

    compiler_error: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "compiler_error": self.compiler_error}


@dataclass(frozen=True)
class TestFailure:
    """Body compiled but one or more associated tests failed."""

    __test__: ClassVar[bool] = False
    kind: ClassVar[FailureType] = FailureType.TEST

    failing_tests: tuple[TestFailureDetail, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "failing_tests": [t.to_dict() for t in self.failing_tests],
        }


@dataclass(frozen=True)
class TimeoutFailure:
    kind: ClassVar[FailureType] = FailureType.TIMEOUT

    resource: ResourceType
    limit: int
    """Limit that was exceeded, in milliseconds for time-based resources."""

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "resource": self.resource.value, "limit": self.limit}


@dataclass(frozen=True)
class SemanticFailure:
    """Implementation violates a contract, invariant or pre/postcondition."""

    kind: ClassVar[FailureType] = FailureType.SEMANTIC

    violation: SemanticViolationType
    description: str
    clause: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "kind": self.kind.value,
            "violation": self.violation.value,
            "description": self.description,
        }
        if self.clause is not None:
            result["clause"] = self.clause
        return result


@dataclass(frozen=True)
class ComplexityFailure:
    kind: ClassVar[FailureType] = FailureType.COMPLEXITY

    expected: str
    measured: str

    def __post_init__(self) -> None:
        for value in (self.expected, self.measured):
            if value not in BIG_O_CLASSES:
                raise ValueError(f"Unknown complexity class: {value!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "expected": self.expected, "measured": self.measured}


@dataclass(frozen=True)
class SecurityFailure:
    kind: ClassVar[FailureType] = FailureType.SECURITY

    vulnerability: VulnerabilityType

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "vulnerability": self.vulnerability.value}


@dataclass(frozen=True)
class CoherenceFailure:
    """Implementation conflicts with other functions in the batch."""

    kind: ClassVar[FailureType] = FailureType.COHERENCE

    conflicting_task_ids: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "conflicting_task_ids": list(self.conflicting_task_ids)}


# Parse errors that a retry with a hint can usually fix
RECOVERABLE_SYNTAX_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"missing.*semicolon", re.IGNORECASE),
    re.compile(r"expected.*[;{}()\[\]]", re.IGNORECASE),
    re.compile(r"unexpected token", re.IGNORECASE),
    re.compile(r"unterminated.*string", re.IGNORECASE),
    re.compile(r"unexpected end", re.IGNORECASE),
)


def is_syntax_recoverable(message: str) -> bool:
    """Return True if ``message`` looks like a local, fixable parse error."""
    return any(pattern.search(message) for pattern in RECOVERABLE_SYNTAX_PATTERNS)


FailureKind = (
    SyntaxFailure
    | TypeFailure
    | TestFailure
    | TimeoutFailure
    | SemanticFailure
    | ComplexityFailure
    | SecurityFailure
    | CoherenceFailure
)


def create_syntax_failure(message: str, recoverable: bool | None = None) -> SyntaxFailure:
    """Build a syntax failure, detecting recoverability from the message if not given."""
    if recoverable is None:
        recoverable = is_syntax_recoverable(message)
    return SyntaxFailure(message=message, recoverable=recoverable)


def create_type_failure(compiler_error: str) -> TypeFailure:
    return TypeFailure(compiler_error=compiler_error)


def create_test_failure(failing_tests: list[TestFailureDetail] | tuple[TestFailureDetail, ...]) -> TestFailure:
    return TestFailure(failing_tests=tuple(failing_tests))


def create_timeout_failure(resource: ResourceType | str, limit: int) -> TimeoutFailure:
    return TimeoutFailure(resource=ResourceType(resource), limit=limit)


def create_semantic_failure(
    violation: SemanticViolationType | str,
    description: str,
    clause: str | None = None,
) -> SemanticFailure:
    return SemanticFailure(
        violation=SemanticViolationType(violation),
        description=description,
        clause=clause,
    )


def create_complexity_failure(expected: str, measured: str) -> ComplexityFailure:
    return ComplexityFailure(expected=expected, measured=measured)


def create_security_failure(vulnerability: VulnerabilityType | str) -> SecurityFailure:
    return SecurityFailure(vulnerability=VulnerabilityType(vulnerability))


def create_coherence_failure(conflicting_task_ids: list[str] | tuple[str, ...]) -> CoherenceFailure:
    return CoherenceFailure(conflicting_task_ids=tuple(conflicting_task_ids))


__all__ = [
    "CoherenceFailure",
    "ComplexityFailure",
    "FailureKind",
    "RECOVERABLE_SYNTAX_PATTERNS",
    "SecurityFailure",
    "SemanticFailure",
    "SyntaxFailure",
    "TestFailure",
    "TestFailureDetail",
    "TimeoutFailure",
    "TypeFailure",
    "create_coherence_failure",
    "create_complexity_failure",
    "create_security_failure",
    "create_semantic_failure",
    "create_syntax_failure",
    "create_test_failure",
    "create_timeout_failure",
    "create_type_failure",
    "is_syntax_recoverable",
]
