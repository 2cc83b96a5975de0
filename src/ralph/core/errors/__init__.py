"""Failure classification and exceptions.

Re-exports all public symbols.
"""

from ralph.core.errors.codes import (
    BIG_O_CLASSES,
    FailureType,
    ResourceType,
    SemanticViolationType,
    VulnerabilityType,
)
from ralph.core.errors.exceptions import (
    ConfigurationError,
    InvalidBodyError,
    RalphError,
    TaskNotFoundError,
)
from ralph.core.errors.failures import (
    RECOVERABLE_SYNTAX_PATTERNS,
    CoherenceFailure,
    ComplexityFailure,
    FailureKind,
    SecurityFailure,
    SemanticFailure,
    SyntaxFailure,
    TestFailure,
    TestFailureDetail,
    TimeoutFailure,
    TypeFailure,
    create_coherence_failure,
    create_complexity_failure,
    create_security_failure,
    create_semantic_failure,
    create_syntax_failure,
    create_test_failure,
    create_timeout_failure,
    create_type_failure,
    is_syntax_recoverable,
)

__all__ = [
    "BIG_O_CLASSES",
    "FailureType",
    "ResourceType",
    "SemanticViolationType",
    "VulnerabilityType",
    "ConfigurationError",
    "InvalidBodyError",
    "RalphError",
    "TaskNotFoundError",
    "RECOVERABLE_SYNTAX_PATTERNS",
    "CoherenceFailure",
    "ComplexityFailure",
    "FailureKind",
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
