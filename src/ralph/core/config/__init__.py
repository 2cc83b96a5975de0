"""Configuration models for Ralph batch runs.

All models are re-exported here so ``from ralph.core.config import ...`` is
the single import path.
"""

from ralph.core.config.execution import (
    CircuitBreakerConfig,
    EscalationConfig,
    RalphLoopConfig,
)
from ralph.core.config.run import RalphConfig
from ralph.core.config.workspace import LogConfig

__all__ = [
    "CircuitBreakerConfig",
    "EscalationConfig",
    "LogConfig",
    "RalphConfig",
    "RalphLoopConfig",
]
