"""The Ralph loop: implements a batch of TODO functions one verified attempt at a time.

For each task, in leaves-first dependency order:

1. Record the attempt start with the circuit breaker.
2. Prompt the model for the task's current tier with minimal context.
3. Inject the body, compile, scan it for vulnerabilities when a scanner is
   configured, then run the task's tests.
4. Accept on success. Otherwise roll the file back, classify the failure and
   let the escalation engine choose: retry, escalate, or give up on the task.
5. Stop the whole batch as soon as the circuit breaker trips.

Attempts are strictly sequential: at most one body is injected into the
project tree at any moment, and a rejected body is always rolled back before
the next attempt starts.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from ralph.core.config import RalphLoopConfig
from ralph.core.errors import (
    FailureKind,
    InvalidBodyError,
    ResourceType,
    SecurityFailure,
    SemanticViolationType,
    SyntaxFailure,
    TaskNotFoundError,
    TestFailure,
    TestFailureDetail,
    VulnerabilityType,
    create_coherence_failure,
    create_security_failure,
    create_semantic_failure,
    create_syntax_failure,
    create_test_failure,
    create_timeout_failure,
    create_type_failure,
    is_syntax_recoverable,
)
from ralph.core.logging import ExecutionContext, get_logger, with_context
from ralph.core.tiers import ModelTier
from ralph.execution.circuit_breaker import CircuitBreaker, StructuralDefectReport
from ralph.execution.dag import order_tasks
from ralph.execution.escalation import (
    CircuitBreak,
    Escalate,
    RetrySame,
    create_attempt_history,
    decide,
    format_escalation_action,
    generate_failure_summary,
    record_attempt,
    record_syntax_hint,
    reset_syntax_hint,
)
from ralph.execution.interfaces import (
    CompilationResult,
    CompileVerifier,
    ContextExtractor,
    ExtractedContext,
    ModelRequest,
    ModelRouter,
    SecurityScanner,
    SecurityScanResult,
    SourceAdapter,
    TestCaseResult,
    TestRunner,
    TestRunResult,
    TodoFunction,
)
from ralph.execution.prompts import (
    IMPLEMENTATION_SYSTEM_PROMPT,
    generate_implementation_prompt,
    parse_implementation_response,
)

_logger = get_logger("ralph_loop")

# Compiler errors quoted in a type failure
MAX_REPORTED_COMPILER_ERRORS = 3

# Critical findings quoted in a security rejection
MAX_REPORTED_VULNERABILITIES = 3

T = TypeVar("T")


@dataclass(frozen=True)
class ImplementationAttempt:
    """Record of one generate-inject-verify attempt."""

    task: TodoFunction
    tier: ModelTier
    accepted: bool
    generated_body: str | None = None
    compilation_result: CompilationResult | None = None
    security_scan_result: SecurityScanResult | None = None
    test_result: TestRunResult | None = None
    rejection_reason: str | None = None
    failure: FailureKind | None = None
    duration_ms: float = 0.0


@dataclass(frozen=True)
class RalphLoopResult:
    """Outcome of a batch run.

    ``success`` is True only when every task was accepted and the circuit
    never tripped.
    """

    success: bool
    total_tasks: int
    implemented_count: int
    failed_count: int
    attempts: tuple[ImplementationAttempt, ...] = ()
    remaining_todos: tuple[TodoFunction, ...] = ()
    circuit_tripped: bool = False
    structural_defect_report: StructuralDefectReport | None = None
    ordered_task_ids: tuple[str, ...] = ()
    total_duration_ms: float = 0.0


@dataclass
class _TaskOutcome:
    accepted: bool
    attempts: list[ImplementationAttempt] = field(default_factory=list)


def classify_compilation_failure(result: CompilationResult) -> FailureKind:
    """Turn compiler diagnostics into a syntax or type failure.

    TypeScript reports parse errors with TS1xxx codes; those, or messages that
    look like parse errors, become syntax failures.
    """
    errors = [e for e in result.errors if e.severity == "error"] or list(result.errors)
    if not errors:
        return create_type_failure("Compilation failed without diagnostics")

    first = errors[0]
    if first.code.startswith("TS1") or is_syntax_recoverable(first.message):
        return create_syntax_failure(f"{first.code}: {first.message}")

    return create_type_failure(
        "\n".join(f"{e.code}: {e.message}" for e in errors[:MAX_REPORTED_COMPILER_ERRORS])
    )


def classify_test_failure(result: TestRunResult) -> TestFailure:
    details = [
        TestFailureDetail(
            test_name=test.name,
            expected=test.expected if test.expected is not None else "passing test",
            actual=test.actual if test.actual is not None else (test.error or "failure"),
            message=test.error,
        )
        for test in result.tests
        if test.status == "failed"
    ]
    if not details:
        details = [
            TestFailureDetail(
                test_name="test run",
                expected=f"{result.total_tests} passing",
                actual=f"{result.failed_tests} failing",
            )
        ]
    return create_test_failure(details)


def classify_security_scan(result: SecurityScanResult) -> SecurityFailure | None:
    """Report the most severe finding of a scan as a security failure.

    Returns None for a clean scan.
    """
    if not result.vulnerabilities:
        return None
    worst = max(result.vulnerabilities, key=lambda v: v.severity.rank)
    return create_security_failure(worst.vulnerability_type)


class RalphLoop:
    """Drives one batch of TODO functions to completion or to a circuit trip.

    Each instance owns its own ``CircuitBreaker``; run one instance per batch.
    """

    def __init__(
        self,
        source: SourceAdapter,
        compiler: CompileVerifier,
        test_runner: TestRunner,
        model_router: ModelRouter,
        context_extractor: ContextExtractor,
        config: RalphLoopConfig | None = None,
        batch_id: str = "ralph",
        security_scanner: SecurityScanner | None = None,
    ) -> None:
        self._source = source
        self._compiler = compiler
        self._test_runner = test_runner
        self._router = model_router
        self._extractor = context_extractor
        self._security_scanner = security_scanner
        self._config = config or RalphLoopConfig()
        self._context = ExecutionContext(batch_id=batch_id, component="ralph_loop")
        self._breaker = CircuitBreaker(self._config.circuit_breaker, name=batch_id)

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def config(self) -> RalphLoopConfig:
        return self._config

    async def run_batch(self, tasks: Sequence[TodoFunction] | None = None) -> RalphLoopResult:
        """Implement ``tasks`` (or every pending task the source adapter finds).

        Returns:
            The batch result; includes a structural defect report when the
            circuit tripped.
        """
        started = time.monotonic()
        with with_context(self._context):
            if tasks is None:
                tasks = await self._source.find_pending_tasks()
            if self._config.files is not None:
                allowed = set(self._config.files)
                tasks = [t for t in tasks if t.file_path in allowed]

            for task in tasks:
                self._breaker.register_function(task.task_id, task.module)

            dependencies = await self._source.get_dependencies(list(tasks))
            ordered = order_tasks(list(tasks), dependencies)
            _logger.info(
                "ralph_loop.batch_started",
                total_tasks=len(ordered),
                order=[t.task_id for t in ordered],
            )

            attempts: list[ImplementationAttempt] = []
            accepted: set[str] = set()
            for task in ordered:
                with with_context(self._context.with_task(task.task_id)):
                    outcome = await self._implement_task(task)
                attempts.extend(outcome.attempts)
                if outcome.accepted:
                    accepted.add(task.task_id)
                if self._breaker.is_tripped:
                    break

            report = self._breaker.generate_report()
            statistics = self._breaker.get_statistics()
            result = RalphLoopResult(
                success=len(accepted) == len(ordered) and not self._breaker.is_tripped,
                total_tasks=len(ordered),
                implemented_count=len(accepted),
                failed_count=statistics.failed_count,
                attempts=tuple(attempts),
                remaining_todos=tuple(t for t in ordered if t.task_id not in accepted),
                circuit_tripped=self._breaker.is_tripped,
                structural_defect_report=report,
                ordered_task_ids=tuple(t.task_id for t in ordered),
                total_duration_ms=(time.monotonic() - started) * 1000,
            )
            _logger.info(
                "ralph_loop.batch_completed",
                success=result.success,
                implemented=result.implemented_count,
                failed=result.failed_count,
                circuit_tripped=result.circuit_tripped,
                duration_ms=round(result.total_duration_ms),
            )
            return result

    async def _extract_context(self, task: TodoFunction) -> ExtractedContext:
        try:
            return await self._extractor.extract_context(task)
        except Exception as e:
            _logger.warning(
                "ralph_loop.context_extraction_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return ExtractedContext(signature_text=task.signature or task.name)

    async def _implement_task(self, task: TodoFunction) -> _TaskOutcome:
        """Run the attempt cycle for one task until accepted or given up."""
        outcome = _TaskOutcome(accepted=False)
        context = await self._extract_context(task)
        history = create_attempt_history(task.task_id)
        tier = ModelTier.WORKER
        hint: str | None = None
        failure_summary: str | None = None

        while True:
            self._breaker.record_attempt_start(task.task_id, tier)
            if self._breaker.is_tripped:
                return outcome

            attempt = await self._attempt(task, tier, context, hint, failure_summary)
            outcome.attempts.append(attempt)

            if attempt.accepted:
                self._breaker.record_success(task.task_id)
                outcome.accepted = True
                _logger.info(
                    "ralph_loop.task_accepted",
                    tier=tier.value,
                    attempts=history.total_attempts + 1,
                )
                return outcome

            failure = attempt.failure or create_semantic_failure(
                SemanticViolationType.CONTRACT,
                attempt.rejection_reason or "Attempt rejected",
            )
            history = record_attempt(history, tier, failure)
            decision = decide(failure, history, tier, self._config.escalation)
            _logger.info(
                "escalation.decision",
                tier=tier.value,
                failure_kind=failure.kind.value,
                action=format_escalation_action(decision.action),
                reason=decision.reason,
            )

            match decision.action:
                case RetrySame(with_hint=with_hint, hint=retry_hint):
                    hint = retry_hint if with_hint else None
                    if with_hint and isinstance(failure, SyntaxFailure):
                        history = record_syntax_hint(history)
                case Escalate(to_tier=to_tier):
                    self._breaker.record_escalation(task.task_id, to_tier)
                    history = reset_syntax_hint(history)
                    tier = to_tier
                    hint = None
                case CircuitBreak(requires_human_review=requires_human_review):
                    self._breaker.record_failure(task.task_id, failure)
                    _logger.warning(
                        "ralph_loop.task_failed",
                        reason=decision.reason,
                        requires_human_review=requires_human_review,
                        total_attempts=history.total_attempts,
                    )
                    return outcome

            if self._breaker.is_tripped:
                return outcome
            failure_summary = generate_failure_summary(
                task.task_id, context.signature_text, failure
            )

    async def _with_timeout(self, awaitable: Awaitable[T], timeout: float | None) -> T:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)

    def _reject(
        self,
        task: TodoFunction,
        tier: ModelTier,
        started: float,
        reason: str,
        failure: FailureKind,
        body: str | None = None,
        compilation: CompilationResult | None = None,
        tests: TestRunResult | None = None,
        security_scan: SecurityScanResult | None = None,
    ) -> ImplementationAttempt:
        _logger.info(
            "ralph_loop.attempt_rejected",
            tier=tier.value,
            reason=reason,
            failure_kind=failure.kind.value,
        )
        return ImplementationAttempt(
            task=task,
            tier=tier,
            accepted=False,
            generated_body=body,
            compilation_result=compilation,
            security_scan_result=security_scan,
            test_result=tests,
            rejection_reason=reason,
            failure=failure,
            duration_ms=(time.monotonic() - started) * 1000,
        )

    async def _attempt(
        self,
        task: TodoFunction,
        tier: ModelTier,
        context: ExtractedContext,
        hint: str | None,
        failure_summary: str | None,
    ) -> ImplementationAttempt:
        """Generate, inject and verify one body. Leaves the tree unchanged on rejection."""
        started = time.monotonic()
        config = self._config
        _logger.debug("ralph_loop.attempt_started", tier=tier.value, with_hint=hint is not None)

        request = ModelRequest(
            model_alias=config.model_aliases[tier],
            prompt=generate_implementation_prompt(context, hint=hint, failure_summary=failure_summary),
            system_prompt=IMPLEMENTATION_SYSTEM_PROMPT,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            tier=tier,
        )
        try:
            response = await self._with_timeout(
                self._router.complete(request), config.model_timeout_seconds
            )
        except TimeoutError:
            limit_ms = int((config.model_timeout_seconds or 0) * 1000)
            return self._reject(
                task, tier, started, f"Model request timed out after {limit_ms}ms",
                create_timeout_failure(ResourceType.TIME, limit_ms),
            )
        except Exception as e:
            return self._reject(
                task, tier, started, f"Model request failed: {e}",
                create_semantic_failure(SemanticViolationType.CONTRACT, f"Model request failed: {e}"),
            )

        if not response.success:
            reason = f"Model request failed: {response.error or 'unknown error'}"
            return self._reject(
                task, tier, started, reason,
                create_semantic_failure(SemanticViolationType.CONTRACT, reason),
            )

        body = parse_implementation_response(response.content)
        if not body:
            reason = "Model returned an empty body"
            return self._reject(
                task, tier, started, reason,
                create_semantic_failure(SemanticViolationType.CONTRACT, reason),
            )

        try:
            await self._source.inject_body(task, body)
        except InvalidBodyError as e:
            return self._reject(
                task, tier, started, str(e), create_syntax_failure(e.reason), body=body
            )
        except TaskNotFoundError as e:
            return self._reject(
                task, tier, started, str(e), create_coherence_failure([task.task_id]), body=body
            )
        except Exception as e:
            reason = f"Failed to inject function body: {e}"
            return self._reject(
                task, tier, started, reason,
                create_semantic_failure(SemanticViolationType.CONTRACT, reason), body=body,
            )

        # The body is in the tree from here on: every non-accepted exit rolls back.
        try:
            attempt = await self._verify(task, tier, started, body)
        except Exception as e:
            _logger.warning(
                "ralph_loop.verification_error",
                error=str(e),
                error_type=type(e).__name__,
            )
            reason = f"Verification failed: {e}"
            attempt = self._reject(
                task, tier, started, reason,
                create_semantic_failure(SemanticViolationType.CONTRACT, reason), body=body,
            )
        if not attempt.accepted:
            await self._rollback(task)
        return attempt

    async def _verify(
        self,
        task: TodoFunction,
        tier: ModelTier,
        started: float,
        body: str,
    ) -> ImplementationAttempt:
        """Compile, scan and test an injected body. The caller rolls back rejections."""
        config = self._config
        try:
            compilation = await self._with_timeout(
                self._compiler.check(config.project_path), config.compile_timeout_seconds
            )
        except TimeoutError:
            limit_ms = int((config.compile_timeout_seconds or 0) * 1000)
            return self._reject(
                task, tier, started, f"Compilation timed out after {limit_ms}ms",
                create_timeout_failure(ResourceType.TIME, limit_ms), body=body,
            )
        except Exception as e:
            return self._reject(
                task, tier, started, f"Compiler failed: {e}",
                create_type_failure(f"Compiler failed: {e}"), body=body,
            )

        if not compilation.success:
            return self._reject(
                task, tier, started,
                f"Compilation failed with {compilation.error_count or len(compilation.errors)} error(s)",
                classify_compilation_failure(compilation), body=body, compilation=compilation,
            )

        try:
            scan = await self._run_security_scan(task)
        except TimeoutError:
            limit_ms = int((config.security_scan_timeout_seconds or 0) * 1000)
            return self._reject(
                task, tier, started, f"Security scan timed out after {limit_ms}ms",
                create_timeout_failure(ResourceType.TIME, limit_ms),
                body=body, compilation=compilation,
            )
        if scan is not None and scan.has_critical_vulnerabilities:
            summary = "; ".join(
                f"{v.cwe_id or 'unknown'}: {v.message}"
                for v in scan.critical_vulnerabilities[:MAX_REPORTED_VULNERABILITIES]
            )
            return self._reject(
                task, tier, started, f"Security vulnerabilities: {summary}",
                classify_security_scan(scan) or create_security_failure(VulnerabilityType.INJECTION),
                body=body, compilation=compilation, security_scan=scan,
            )

        try:
            tests = await self._run_tests(task)
        except TimeoutError:
            limit_ms = int((config.test_timeout_seconds or 0) * 1000)
            return self._reject(
                task, tier, started, f"Tests timed out after {limit_ms}ms",
                create_timeout_failure(ResourceType.TIME, limit_ms),
                body=body, compilation=compilation, security_scan=scan,
            )
        if tests is not None and not tests.success:
            return self._reject(
                task, tier, started,
                f"{tests.failed_tests} of {tests.total_tests} test(s) failed",
                classify_test_failure(tests), body=body, compilation=compilation,
                tests=tests, security_scan=scan,
            )

        return ImplementationAttempt(
            task=task,
            tier=tier,
            accepted=True,
            generated_body=body,
            compilation_result=compilation,
            security_scan_result=scan,
            test_result=tests,
            duration_ms=(time.monotonic() - started) * 1000,
        )

    async def _run_security_scan(self, task: TodoFunction) -> SecurityScanResult | None:
        """Scan the task's file; None when no scanner is configured."""
        if self._security_scanner is None:
            return None
        scan = await self._with_timeout(
            self._security_scanner.scan(self._config.project_path, [task.file_path]),
            self._config.security_scan_timeout_seconds,
        )
        if scan.has_vulnerabilities:
            _logger.info(
                "ralph_loop.security_findings",
                total=len(scan.vulnerabilities),
                critical=len(scan.critical_vulnerabilities),
            )
        return scan

    async def _run_tests(self, task: TodoFunction) -> TestRunResult | None:
        """Run the task's tests; None when there is no test file.

        Runner exceptions become a synthetic failed run. Exceeding
        ``test_timeout_seconds`` raises TimeoutError.
        """
        pattern = self._config.test_pattern
        if pattern is None:
            test_file = await self._source.find_test_file(task, list(self._config.test_file_suffixes))
            if test_file is None:
                _logger.debug("ralph_loop.no_test_file")
                return None
            pattern = str(test_file)

        try:
            return await self._with_timeout(
                self._test_runner.run(pattern, {"cwd": str(self._config.project_path)}),
                self._config.test_timeout_seconds,
            )
        except TimeoutError:
            raise
        except Exception as e:
            _logger.warning("ralph_loop.test_runner_error", error=str(e), pattern=pattern)
            return TestRunResult(
                success=False,
                total_tests=1,
                failed_tests=1,
                tests=(
                    TestCaseResult(
                        name="test execution",
                        status="failed",
                        error=f"Test execution failed: {e}",
                    ),
                ),
            )

    async def _rollback(self, task: TodoFunction) -> None:
        await self._source.restore_original(task)
        _logger.debug("ralph_loop.rolled_back")


async def run_batch(
    tasks: Sequence[TodoFunction] | None,
    model_router: ModelRouter,
    config: RalphLoopConfig | None = None,
    *,
    source: SourceAdapter,
    compiler: CompileVerifier,
    test_runner: TestRunner,
    context_extractor: ContextExtractor,
    batch_id: str = "ralph",
    security_scanner: SecurityScanner | None = None,
) -> RalphLoopResult:
    """Run one batch with a fresh ``RalphLoop``."""
    loop = RalphLoop(
        source=source,
        compiler=compiler,
        test_runner=test_runner,
        model_router=model_router,
        context_extractor=context_extractor,
        config=config,
        batch_id=batch_id,
        security_scanner=security_scanner,
    )
    return await loop.run_batch(tasks)


__all__ = [
    "ImplementationAttempt",
    "RalphLoop",
    "RalphLoopResult",
    "classify_compilation_failure",
    "classify_security_scan",
    "classify_test_failure",
    "run_batch",
]
