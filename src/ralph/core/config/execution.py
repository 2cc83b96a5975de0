"""Escalation, circuit breaker and orchestration configuration models."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from ralph.core.tiers import ModelTier


class EscalationConfig(BaseModel):
    """Per-failure-kind retry limits used by the escalation engine.

    Limits are counted against attempts at the task's current tier, so each
    tier gets a fresh budget. ``max_attempts_per_function`` is a ceiling over
    all tiers combined.
    """

    syntax_retry_limit: int = Field(
        default=2, ge=1, le=20, description="Same-tier attempts allowed for recoverable syntax errors"
    )
    type_retry_limit: int = Field(
        default=2, ge=1, le=20, description="Same-tier attempts allowed for type errors"
    )
    test_retry_limit: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Same-tier attempts allowed for test failures (also used for complexity)",
    )
    max_attempts_per_function: int = Field(
        default=8, ge=1, le=100, description="Total attempts across all tiers before circuit break"
    )


class CircuitBreakerConfig(BaseModel):
    """Thresholds for batch-level circuit breaking.

    Rates are fractions in [0, 1]. A rate strictly above a trip threshold trips
    the breaker; a rate between the warning and trip thresholds (inclusive)
    produces a warning instead.

    Example:
        circuit_breaker:
          max_attempts_per_function: 8
          module_escalation_threshold: 0.20
          global_failure_threshold: 0.10
    """

    max_attempts_per_function: int = Field(
        default=8, ge=1, le=100, description="Attempts at which a single task trips the breaker"
    )
    module_escalation_threshold: float = Field(
        default=0.20, ge=0.0, le=1.0, description="Module escalation rate that trips the breaker"
    )
    module_escalation_warning_threshold: float = Field(
        default=0.19, ge=0.0, le=1.0, description="Module escalation rate that emits a warning"
    )
    global_failure_threshold: float = Field(
        default=0.10, ge=0.0, le=1.0, description="Batch failure rate that trips the breaker"
    )
    global_failure_warning_threshold: float = Field(
        default=0.08, ge=0.0, le=1.0, description="Batch failure rate that emits a warning"
    )

    @model_validator(mode="after")
    def _check_warning_below_trip(self) -> CircuitBreakerConfig:
        if self.module_escalation_warning_threshold > self.module_escalation_threshold:
            raise ValueError(
                f"module_escalation_warning_threshold ({self.module_escalation_warning_threshold}) "
                f"must not exceed module_escalation_threshold ({self.module_escalation_threshold})"
            )
        if self.global_failure_warning_threshold > self.global_failure_threshold:
            raise ValueError(
                f"global_failure_warning_threshold ({self.global_failure_warning_threshold}) "
                f"must not exceed global_failure_threshold ({self.global_failure_threshold})"
            )
        return self


def _default_model_aliases() -> dict[ModelTier, str]:
    return {
        ModelTier.WORKER: "worker",
        ModelTier.FALLBACK: "fallback",
        ModelTier.ARCHITECT: "architect",
    }


class RalphLoopConfig(BaseModel):
    """Configuration for one batch run of the injection loop."""

    project_path: Path = Field(
        default=Path("."), description="Root of the project whose TODO functions are implemented"
    )
    max_attempts_per_function: int | None = Field(
        default=None,
        ge=1,
        le=100,
        description="Overrides the attempt ceiling in both escalation and circuit_breaker",
    )
    files: list[str] | None = Field(
        default=None, description="Only implement TODO functions found in these files"
    )
    test_pattern: str | None = Field(
        default=None, description="Test pattern used for every task instead of per-task test file lookup"
    )
    test_file_suffixes: list[str] = Field(
        default=[".test.ts", ".spec.ts"],
        min_length=1,
        description="Suffixes tried, in order, when looking up a task's test file",
    )
    model_aliases: dict[ModelTier, str] = Field(
        default_factory=_default_model_aliases,
        description="Model alias requested from the router for each tier",
    )
    max_tokens: int = Field(default=2000, ge=1, description="Completion token limit per attempt")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0, description="Sampling temperature")
    model_timeout_seconds: float | None = Field(
        default=None, gt=0, description="Wall-clock ceiling for one model completion"
    )
    compile_timeout_seconds: float | None = Field(
        default=None, gt=0, description="Wall-clock ceiling for one compile check"
    )
    test_timeout_seconds: float | None = Field(
        default=None, gt=0, description="Wall-clock ceiling for one test run"
    )
    security_scan_timeout_seconds: float | None = Field(
        default=None, gt=0, description="Wall-clock ceiling for one security scan"
    )
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)

    @model_validator(mode="after")
    def _apply_attempt_ceiling(self) -> RalphLoopConfig:
        """Propagate ``max_attempts_per_function`` into the nested configs."""
        if self.max_attempts_per_function is not None:
            self.escalation = self.escalation.model_copy(
                update={"max_attempts_per_function": self.max_attempts_per_function}
            )
            self.circuit_breaker = self.circuit_breaker.model_copy(
                update={"max_attempts_per_function": self.max_attempts_per_function}
            )
        return self

    @model_validator(mode="after")
    def _check_model_aliases(self) -> RalphLoopConfig:
        missing = [tier.value for tier in ModelTier if tier not in self.model_aliases]
        if missing:
            raise ValueError(f"model_aliases is missing tiers: {', '.join(missing)}")
        return self
