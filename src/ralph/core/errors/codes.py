"""Failure categories and the vocabularies used inside failure payloads.

Failure Taxonomy
================

Every rejected attempt is classified into exactly one ``FailureType``. The
type decides how the escalation engine routes the task:

    | Type       | Policy                 | Retry limit | Human review at architect |
    |------------|------------------------|-------------|---------------------------|
    | syntax     | retry (recoverable)    | 2 (+1 hint) | No                        |
    | syntax     | escalate (fatal)       | -           | Yes                       |
    | type       | retry                  | 2           | No                        |
    | test       | retry                  | 3           | Yes                       |
    | complexity | retry (test policy)    | 3           | Yes                       |
    | timeout    | escalate immediately   | -           | Yes                       |
    | semantic   | escalate immediately   | -           | Yes                       |
    | security   | escalate immediately   | -           | Yes                       |
    | coherence  | circuit break (always) | -           | No                        |
"""

from __future__ import annotations

from enum import Enum


class FailureType(str, Enum):
    """Discriminator of a classified verification failure."""

    SYNTAX = "syntax"
    TYPE = "type"
    TEST = "test"
    TIMEOUT = "timeout"
    SEMANTIC = "semantic"
    COMPLEXITY = "complexity"
    SECURITY = "security"
    COHERENCE = "coherence"


class ResourceType(str, Enum):
    """Resource whose limit was exceeded by a timeout failure."""

    CPU = "cpu"
    MEMORY = "memory"
    TIME = "time"
    NETWORK = "network"


class SemanticViolationType(str, Enum):
    CONTRACT = "contract"
    INVARIANT = "invariant"
    POSTCONDITION = "postcondition"
    PRECONDITION = "precondition"


class VulnerabilityType(str, Enum):
    """OWASP-style vulnerability classes reported by security scanning."""

    INJECTION = "injection"
    BROKEN_AUTH = "broken-auth"
    SENSITIVE_DATA_EXPOSURE = "sensitive-data-exposure"
    XXE = "xxe"
    BROKEN_ACCESS_CONTROL = "broken-access-control"
    SECURITY_MISCONFIGURATION = "security-misconfiguration"
    XSS = "xss"
    INSECURE_DESERIALIZATION = "insecure-deserialization"
    KNOWN_VULNERABLE_COMPONENTS = "known-vulnerable-components"
    INSUFFICIENT_LOGGING = "insufficient-logging"
    PATH_TRAVERSAL = "path-traversal"


# Big-O classes accepted by complexity failures, cheapest first
BIG_O_CLASSES: tuple[str, ...] = (
    "O(1)",
    "O(log n)",
    "O(n)",
    "O(n log n)",
    "O(n^2)",
    "O(n^3)",
    "O(2^n)",
)


__all__ = [
    "BIG_O_CLASSES",
    "FailureType",
    "ResourceType",
    "SemanticViolationType",
    "VulnerabilityType",
]
