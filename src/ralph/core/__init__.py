"""Core domain types, configuration and logging."""

from ralph.core.config import (
    CircuitBreakerConfig,
    EscalationConfig,
    LogConfig,
    RalphConfig,
    RalphLoopConfig,
)
from ralph.core.errors import FailureKind, FailureType, RalphError
from ralph.core.tiers import ModelTier, is_highest_tier, next_tier

__all__ = [
    "CircuitBreakerConfig",
    "EscalationConfig",
    "FailureKind",
    "FailureType",
    "LogConfig",
    "ModelTier",
    "RalphConfig",
    "RalphError",
    "RalphLoopConfig",
    "is_highest_tier",
    "next_tier",
]
