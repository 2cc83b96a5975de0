"""Tests for the Ralph loop orchestrator.

All collaborators are in-memory fakes from tests.helpers, so these tests
exercise the attempt cycle, rollback, escalation routing and circuit breaking
without a compiler or a model.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from ralph.core.config import CircuitBreakerConfig, RalphLoopConfig
from ralph.core.errors import (
    CoherenceFailure,
    InvalidBodyError,
    ResourceType,
    SecurityFailure,
    SemanticFailure,
    SyntaxFailure,
    TaskNotFoundError,
    TestFailure,
    TimeoutFailure,
    TypeFailure,
    VulnerabilityType,
)
from ralph.core.tiers import ModelTier
from ralph.execution.circuit_breaker import (
    GlobalFailureRate,
    MaxAttemptsExceeded,
    ModuleEscalationRate,
    TaskExhausted,
)
from ralph.execution.escalation import TYPE_HINT
from ralph.execution.interfaces import (
    CompilationResult,
    CompilerError,
    ModelResponse,
    SecurityScanResult,
    SourceAdapter,
    TestRunResult,
    TodoFunction,
)
from ralph.execution.ralph_loop import (
    RalphLoop,
    classify_compilation_failure,
    classify_security_scan,
    classify_test_failure,
    run_batch,
)
from tests.helpers import (
    PLACEHOLDER_BODY,
    FakeCompileVerifier,
    FakeContextExtractor,
    FakeSecurityScanner,
    FakeSourceAdapter,
    FakeTestRunner,
    failing_tests,
    vulnerability,
)

ADD_ID = "src/math.ts:add"


def permissive_breaker() -> CircuitBreakerConfig:
    """Breaker that only trips on per-task conditions."""
    return CircuitBreakerConfig(
        module_escalation_threshold=1.0,
        module_escalation_warning_threshold=1.0,
        global_failure_threshold=1.0,
        global_failure_warning_threshold=1.0,
    )


def syntax_error_result(message: str = "Unexpected token.") -> CompilationResult:
    return CompilationResult(
        success=False,
        errors=(CompilerError(file="src/math.ts", line=2, column=1, code="TS1128", message=message),),
        error_count=1,
    )


@pytest.fixture
def make_loop(source, compiler, test_runner, router, extractor):
    def _make(config: RalphLoopConfig | None = None) -> RalphLoop:
        return RalphLoop(
            source=source,
            compiler=compiler,
            test_runner=test_runner,
            model_router=router,
            context_extractor=extractor,
            config=config,
            batch_id="test-batch",
        )

    return _make


# =============================================================================
# Happy path
# =============================================================================


class TestSuccessfulBatch:
    """Every task accepted on its first attempt."""

    @pytest.mark.asyncio
    async def test_all_tasks_implemented(self, make_loop, source, router) -> None:
        """Three tasks, three accepted first attempts."""
        router.default_body = "return a;"
        result = await make_loop().run_batch()

        assert result.success is True
        assert result.total_tasks == 3
        assert result.implemented_count == 3
        assert result.failed_count == 0
        assert result.remaining_todos == ()
        assert result.circuit_tripped is False
        assert result.structural_defect_report is None
        assert all(a.accepted for a in result.attempts)
        assert set(source.bodies.values()) == {"return a;"}

    @pytest.mark.asyncio
    async def test_order_follows_dependencies(self, make_loop, source) -> None:
        """add calls square, so square is implemented before add."""
        source.dependencies = {ADD_ID: ["src/math.ts:square"]}
        result = await make_loop().run_batch()

        assert result.ordered_task_ids == (
            "src/math.ts:double",
            "src/math.ts:square",
            ADD_ID,
        )
        assert [i[0] for i in source.injections] == list(result.ordered_task_ids)

    @pytest.mark.asyncio
    async def test_explicit_tasks_override_discovery(self, make_loop, math_tasks) -> None:
        """Passing tasks skips discovery."""
        result = await make_loop().run_batch([math_tasks[1]])
        assert result.ordered_task_ids == ("src/math.ts:double",)

    @pytest.mark.asyncio
    async def test_files_filter(self, compiler, test_runner, router, extractor) -> None:
        """Only tasks in the configured files are attempted."""
        tasks = [
            TodoFunction(name="add", file_path="src/math.ts"),
            TodoFunction(name="area", file_path="src/geo.ts"),
        ]
        loop = RalphLoop(
            FakeSourceAdapter(tasks), compiler, test_runner, router, extractor,
            config=RalphLoopConfig(files=["src/geo.ts"]),
        )
        result = await loop.run_batch()
        assert result.ordered_task_ids == ("src/geo.ts:area",)

    @pytest.mark.asyncio
    async def test_code_fence_stripped_before_injection(self, make_loop, source, router, math_tasks) -> None:
        """The injected body has its Markdown fence removed."""
        router.queue("```typescript\nreturn a + b;\n```")
        await make_loop().run_batch([math_tasks[0]])
        assert source.injections == [(ADD_ID, "return a + b;")]

    @pytest.mark.asyncio
    async def test_request_uses_tier_alias_and_settings(self, make_loop, router, math_tasks) -> None:
        """Requests carry the tier alias, limits and extracted context."""
        config = RalphLoopConfig(
            model_aliases={
                ModelTier.WORKER: "haiku",
                ModelTier.FALLBACK: "sonnet",
                ModelTier.ARCHITECT: "opus",
            },
            max_tokens=512,
            temperature=0.0,
        )
        await make_loop(config).run_batch([math_tasks[0]])

        request = router.requests[0]
        assert request.model_alias == "haiku"
        assert request.tier is ModelTier.WORKER
        assert request.max_tokens == 512
        assert request.temperature == 0.0
        assert "function add(a: number, b: number): number" in request.prompt
        assert "@ensures result is finite" in request.prompt

    @pytest.mark.asyncio
    async def test_module_function_runs_batch(self, source, compiler, test_runner, router, extractor) -> None:
        """The module-level run_batch drives a fresh loop."""
        result = await run_batch(
            None,
            router,
            source=source,
            compiler=compiler,
            test_runner=test_runner,
            context_extractor=extractor,
        )
        assert result.success is True
        assert result.implemented_count == 3


# =============================================================================
# Test lookup
# =============================================================================


class TestTestExecution:
    @pytest.mark.asyncio
    async def test_no_test_file_accepts_after_compile(self, make_loop, test_runner, math_tasks) -> None:
        """Without a test file a compiling body is accepted."""
        result = await make_loop().run_batch([math_tasks[0]])
        assert result.success is True
        assert test_runner.patterns == []
        assert result.attempts[0].test_result is None

    @pytest.mark.asyncio
    async def test_test_file_is_run(self, make_loop, source, test_runner, math_tasks) -> None:
        """The task's test file is passed to the runner."""
        source.test_files = {ADD_ID: "src/math.test.ts"}
        result = await make_loop().run_batch([math_tasks[0]])
        assert test_runner.patterns == ["src/math.test.ts"]
        assert result.attempts[0].test_result is not None

    @pytest.mark.asyncio
    async def test_test_pattern_overrides_lookup(self, make_loop, test_runner, math_tasks) -> None:
        """A configured pattern replaces per-task lookup."""
        await make_loop(RalphLoopConfig(test_pattern="tests/**/*.test.ts")).run_batch(math_tasks[:2])
        assert test_runner.patterns == ["tests/**/*.test.ts", "tests/**/*.test.ts"]

    @pytest.mark.asyncio
    async def test_default_lookup_finds_sibling_file(self, temp_project: Path) -> None:
        """The default lookup tries each suffix next to the source file."""
        source_file = temp_project / "src" / "math.ts"
        source_file.write_text("export function add() {}\n")
        (temp_project / "src" / "math.spec.ts").write_text("// tests\n")

        task = TodoFunction(name="add", file_path=str(source_file))
        found = await SourceAdapter.find_test_file(
            FakeSourceAdapter([task]), task, [".test.ts", ".spec.ts"]
        )
        assert found == temp_project / "src" / "math.spec.ts"

    @pytest.mark.asyncio
    async def test_failing_tests_reject_and_roll_back(self, make_loop, source, test_runner, math_tasks) -> None:
        """Failing tests roll the body back and retry."""
        source.test_files = {ADD_ID: "src/math.test.ts"}
        test_runner.queue(failing_tests("adds two numbers"))
        result = await make_loop().run_batch([math_tasks[0]])

        first = result.attempts[0]
        assert first.accepted is False
        assert isinstance(first.failure, TestFailure)
        assert first.failure.failing_tests[0].test_name == "adds two numbers"
        assert source.restores == [ADD_ID]
        assert result.attempts[1].accepted is True

    @pytest.mark.asyncio
    async def test_runner_exception_becomes_test_failure(self, make_loop, source, test_runner, math_tasks) -> None:
        """A crashing test runner counts as a failed test run."""
        source.test_files = {ADD_ID: "src/math.test.ts"}
        test_runner.queue(RuntimeError("vitest crashed"))
        result = await make_loop().run_batch([math_tasks[0]])

        failure = result.attempts[0].failure
        assert isinstance(failure, TestFailure)
        assert failure.failing_tests[0].test_name == "test execution"
        assert "vitest crashed" in failure.failing_tests[0].actual


# =============================================================================
# Rejection and retry
# =============================================================================


class TestRetry:
    @pytest.mark.asyncio
    async def test_type_error_retries_with_type_hint(
        self, make_loop, source, compiler, router, math_tasks, type_error_result
    ) -> None:
        """A rejected body is rolled back and never shown to the model again."""
        compiler.queue(type_error_result)
        router.queue("return 'bad';", "return a + b;")

        result = await make_loop().run_batch([math_tasks[0]])

        assert result.success is True
        assert [a.accepted for a in result.attempts] == [False, True]
        assert isinstance(result.attempts[0].failure, TypeFailure)
        assert source.restores == [ADD_ID]
        assert source.bodies[ADD_ID] == "return a + b;"

        retry_prompt = router.requests[1].prompt
        assert TYPE_HINT in retry_prompt
        assert "PREVIOUS ATTEMPT:" in retry_prompt
        assert "COMPILER ERROR: TS2322" in retry_prompt
        assert "return 'bad';" not in retry_prompt
        assert "NOTE: Previous attempts discarded. Implement from scratch." in retry_prompt

    @pytest.mark.asyncio
    async def test_rollback_restores_placeholder(self, make_loop, source, compiler, math_tasks, type_error_result) -> None:
        """After a rejection, and before the next injection, the original body is back."""
        compiler.queue(type_error_result)
        restored_bodies: list[str] = []
        original_inject = source.inject_body

        async def spy_inject(task, body):
            restored_bodies.append(source.bodies[task.task_id])
            await original_inject(task, body)

        source.inject_body = spy_inject
        await make_loop().run_batch([math_tasks[0]])
        assert restored_bodies == [PLACEHOLDER_BODY, PLACEHOLDER_BODY]

    @pytest.mark.asyncio
    async def test_syntax_hint_on_third_attempt(self, make_loop, compiler, router, math_tasks) -> None:
        """The second syntax error earns a hinted retry."""
        compiler.queue(syntax_error_result(), syntax_error_result())
        result = await make_loop().run_batch([math_tasks[0]])

        assert result.success is True
        assert len(router.requests) == 3
        assert isinstance(result.attempts[0].failure, SyntaxFailure)
        assert "SYNTAX ERROR in previous attempt" not in router.requests[1].prompt
        assert "SYNTAX ERROR in previous attempt" in router.requests[2].prompt
        assert "TS1128: Unexpected token." in router.requests[2].prompt

    @pytest.mark.asyncio
    async def test_invalid_body_is_syntax_failure(self, math_tasks, compiler, test_runner, router, extractor) -> None:
        """A body the adapter cannot splice in is a syntax failure with nothing to roll back."""
        source = FakeSourceAdapter(
            math_tasks,
            inject_errors={ADD_ID: [InvalidBodyError("add", "Unexpected token '}'")]},
        )
        loop = RalphLoop(source, compiler, test_runner, router, extractor)
        result = await loop.run_batch([math_tasks[0]])

        failure = result.attempts[0].failure
        assert isinstance(failure, SyntaxFailure)
        assert failure.recoverable is True
        assert compiler.calls == 1
        assert source.restores == []
        assert "PARSE ERROR: Unexpected token '}'" in router.requests[1].prompt

    @pytest.mark.asyncio
    async def test_unsuccessful_response_is_semantic_failure(self, make_loop, router, math_tasks) -> None:
        """A failed completion is rejected before injection."""
        router.queue(ModelResponse(success=False, error="rate limited"))
        result = await make_loop().run_batch([math_tasks[0]])

        failure = result.attempts[0].failure
        assert isinstance(failure, SemanticFailure)
        assert "rate limited" in failure.description
        assert result.attempts[0].generated_body is None

    @pytest.mark.asyncio
    async def test_empty_body_rejected(self, make_loop, source, router, math_tasks) -> None:
        """An empty body is never injected."""
        router.queue("```ts\n```")
        result = await make_loop().run_batch([math_tasks[0]])
        assert result.attempts[0].rejection_reason == "Model returned an empty body"
        assert source.injections == []

    @pytest.mark.asyncio
    async def test_context_extraction_failure_falls_back_to_signature(
        self, source, compiler, test_runner, router, math_tasks
    ) -> None:
        """A failing extractor degrades to the bare signature."""
        class BrokenExtractor(FakeContextExtractor):
            async def extract_context(self, task):
                raise RuntimeError("parse failed")

        loop = RalphLoop(source, compiler, test_runner, router, BrokenExtractor())
        result = await loop.run_batch([math_tasks[0]])

        assert result.success is True
        assert "function add(a: number, b: number): number" in router.requests[0].prompt


# =============================================================================
# Escalation and circuit breaking
# =============================================================================


class TestEscalation:
    @pytest.mark.asyncio
    async def test_escalates_to_fallback(self, make_loop, compiler, router, math_tasks, type_error_result) -> None:
        """Two type errors at worker move the task to fallback."""
        compiler.queue(type_error_result, type_error_result)
        loop = make_loop(RalphLoopConfig(circuit_breaker=permissive_breaker()))

        result = await loop.run_batch([math_tasks[0]])

        assert result.success is True
        assert [r.model_alias for r in router.requests] == ["worker", "worker", "fallback"]
        assert [a.tier for a in result.attempts] == [ModelTier.WORKER, ModelTier.WORKER, ModelTier.FALLBACK]
        assert TYPE_HINT not in router.requests[2].prompt
        assert loop.circuit_breaker.get_task_state(ADD_ID).did_escalate is True  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_escalation_trips_module_rate(self, make_loop, compiler, router, type_error_result) -> None:
        """One escalation among three tasks in a module exceeds 20%."""
        compiler.queue(type_error_result, type_error_result)
        result = await make_loop().run_batch()

        assert result.circuit_tripped is True
        assert result.success is False
        assert result.implemented_count == 0
        assert len(result.attempts) == 2
        assert len(result.remaining_todos) == 3
        report = result.structural_defect_report
        assert report is not None
        assert isinstance(report.trip_reason, ModuleEscalationRate)
        assert report.trip_reason.module_path == "src/math.ts"

    @pytest.mark.asyncio
    async def test_attempt_budget_trips_breaker(self, make_loop, source, test_runner, math_tasks) -> None:
        """Three test failures per tier: the eighth start trips the breaker."""
        source.test_files = {ADD_ID: "src/math.test.ts"}
        test_runner.queue(*[failing_tests("adds") for _ in range(10)])
        loop = make_loop(RalphLoopConfig(circuit_breaker=permissive_breaker()))

        result = await loop.run_batch([math_tasks[0]])

        assert len(result.attempts) == 7
        assert [a.tier for a in result.attempts] == [
            ModelTier.WORKER, ModelTier.WORKER, ModelTier.WORKER,
            ModelTier.FALLBACK, ModelTier.FALLBACK, ModelTier.FALLBACK,
            ModelTier.ARCHITECT,
        ]
        assert result.circuit_tripped is True
        assert result.structural_defect_report.trip_reason == MaxAttemptsExceeded(  # type: ignore[union-attr]
            task_id=ADD_ID, total_attempts=8, max_attempts=8
        )
        assert len(source.restores) == 7

    @pytest.mark.asyncio
    async def test_loop_attempt_ceiling_applies(self, make_loop, source, test_runner, math_tasks) -> None:
        """The loop-level ceiling reaches the breaker."""
        source.test_files = {ADD_ID: "src/math.test.ts"}
        test_runner.queue(*[failing_tests("adds") for _ in range(5)])
        config = RalphLoopConfig(max_attempts_per_function=2, circuit_breaker=permissive_breaker())

        result = await make_loop(config).run_batch([math_tasks[0]])

        assert len(result.attempts) == 1
        assert isinstance(result.structural_defect_report.trip_reason, MaxAttemptsExceeded)  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_coherence_failure_stops_task(self, math_tasks, compiler, test_runner, router, extractor) -> None:
        """A vanished function fails the task without touching the tree."""
        source = FakeSourceAdapter(
            math_tasks,
            inject_errors={ADD_ID: [TaskNotFoundError("add", "src/math.ts")]},
        )
        loop = RalphLoop(source, compiler, test_runner, router, extractor)
        result = await loop.run_batch([math_tasks[0]])

        assert result.attempts[0].failure == CoherenceFailure(conflicting_task_ids=(ADD_ID,))
        assert result.failed_count == 1
        assert result.circuit_tripped is True
        assert isinstance(result.structural_defect_report.trip_reason, GlobalFailureRate)  # type: ignore[union-attr]
        assert compiler.calls == 0
        assert source.restores == []

    @pytest.mark.asyncio
    async def test_failure_at_architect_exhausts_task(self, make_loop, router, math_tasks) -> None:
        """Unsuccessful responses escalate each time until architect gives up."""
        router.queue(*[ModelResponse(success=False, error="overloaded") for _ in range(3)])
        loop = make_loop(RalphLoopConfig(circuit_breaker=permissive_breaker()))

        result = await loop.run_batch([math_tasks[0]])

        assert [a.tier for a in result.attempts] == [ModelTier.WORKER, ModelTier.FALLBACK, ModelTier.ARCHITECT]
        assert result.failed_count == 1
        assert isinstance(result.structural_defect_report.trip_reason, TaskExhausted)  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_batch_stops_after_trip(self, make_loop, router, source) -> None:
        """No further tasks are attempted once the circuit trips."""
        router.queue(ModelResponse(success=False, error="down"))
        result = await make_loop().run_batch()

        assert result.circuit_tripped is True
        assert {a.task.task_id for a in result.attempts} == {ADD_ID}
        assert source.injections == []

    @pytest.mark.asyncio
    async def test_decisions_logged(self, make_loop, compiler, math_tasks, type_error_result) -> None:
        """Every escalation decision is logged."""
        compiler.queue(type_error_result)
        with capture_logs() as logs:
            await make_loop().run_batch([math_tasks[0]])

        decisions = [e for e in logs if e["event"] == "escalation.decision"]
        assert len(decisions) == 1
        assert decisions[0]["failure_kind"] == "type"
        assert decisions[0]["action"] == "RETRY (with hint)"


# =============================================================================
# Collaborator errors
# =============================================================================


class TestCollaboratorErrors:
    """Unexpected collaborator exceptions become rejected attempts."""

    @pytest.mark.asyncio
    async def test_test_file_lookup_error_rolls_back(self, math_tasks, compiler, test_runner, router, extractor) -> None:
        """An adapter error after injection restores the placeholder and ends the batch normally."""
        class BrokenLookupSource(FakeSourceAdapter):
            async def find_test_file(self, task, suffixes):
                raise OSError("permission denied")

        source = BrokenLookupSource(math_tasks)
        loop = RalphLoop(source, compiler, test_runner, router, extractor)

        result = await loop.run_batch([math_tasks[0]])

        failure = result.attempts[0].failure
        assert isinstance(failure, SemanticFailure)
        assert "permission denied" in failure.description
        assert source.restores == [ADD_ID]
        assert source.bodies[ADD_ID] == PLACEHOLDER_BODY
        assert result.success is False

    @pytest.mark.asyncio
    async def test_lookup_error_retried_at_next_tier(self, math_tasks, compiler, test_runner, router, extractor) -> None:
        """After the rollback the task escalates and can still be accepted."""
        class FlakyLookupSource(FakeSourceAdapter):
            lookups = 0

            async def find_test_file(self, task, suffixes):
                self.lookups += 1
                if self.lookups == 1:
                    raise OSError("permission denied")
                return None

        source = FlakyLookupSource(math_tasks)
        loop = RalphLoop(
            source, compiler, test_runner, router, extractor,
            config=RalphLoopConfig(circuit_breaker=permissive_breaker()),
        )

        result = await loop.run_batch([math_tasks[0]])

        assert result.success is True
        assert [a.tier for a in result.attempts] == [ModelTier.WORKER, ModelTier.FALLBACK]
        assert source.restores == [ADD_ID]
        assert source.bodies[ADD_ID] == "return 0;"

    @pytest.mark.asyncio
    async def test_unexpected_injection_error_rejected(self, math_tasks, compiler, test_runner, router, extractor) -> None:
        """Any injection error rejects the attempt; nothing was injected, so nothing is restored."""
        source = FakeSourceAdapter(
            math_tasks,
            inject_errors={ADD_ID: [RuntimeError("ts-morph crashed")]},
        )
        loop = RalphLoop(
            source, compiler, test_runner, router, extractor,
            config=RalphLoopConfig(circuit_breaker=permissive_breaker()),
        )

        result = await loop.run_batch([math_tasks[0]])

        first = result.attempts[0]
        assert isinstance(first.failure, SemanticFailure)
        assert first.rejection_reason == "Failed to inject function body: ts-morph crashed"
        assert compiler.calls == 1
        assert source.restores == []
        assert result.success is True

    @pytest.mark.asyncio
    async def test_scanner_error_rolls_back(self, source, compiler, test_runner, router, extractor, math_tasks) -> None:
        """A crashing scanner rejects the attempt and restores the file."""
        scanner = FakeSecurityScanner([RuntimeError("eslint exited with 2")])
        loop = RalphLoop(source, compiler, test_runner, router, extractor, security_scanner=scanner)

        result = await loop.run_batch([math_tasks[0]])

        assert "eslint exited with 2" in (result.attempts[0].rejection_reason or "")
        assert source.restores == [ADD_ID]
        assert source.bodies[ADD_ID] == PLACEHOLDER_BODY


# =============================================================================
# Security scanning
# =============================================================================


class TestSecurityScan:
    @pytest.mark.asyncio
    async def test_critical_finding_escalates_to_fallback(
        self, source, compiler, test_runner, router, extractor, math_tasks
    ) -> None:
        """A critical vulnerability is rolled back and moves the task up a tier before tests run."""
        source.test_files = {ADD_ID: "src/math.test.ts"}
        scan = SecurityScanResult(vulnerabilities=(vulnerability(),))
        scanner = FakeSecurityScanner([scan])
        loop = RalphLoop(
            source, compiler, test_runner, router, extractor,
            config=RalphLoopConfig(circuit_breaker=permissive_breaker()),
            security_scanner=scanner,
        )

        result = await loop.run_batch([math_tasks[0]])

        assert result.success is True
        first = result.attempts[0]
        assert first.failure == SecurityFailure(vulnerability=VulnerabilityType.INJECTION)
        assert first.security_scan_result is scan
        assert first.rejection_reason == "Security vulnerabilities: CWE-89: Unsanitized input reaches a SQL query"
        assert [r.model_alias for r in router.requests] == ["worker", "fallback"]
        assert [a.tier for a in result.attempts] == [ModelTier.WORKER, ModelTier.FALLBACK]
        assert source.restores == [ADD_ID]
        assert scanner.scanned == [["src/math.ts"], ["src/math.ts"]]
        assert test_runner.patterns == ["src/math.test.ts"]

    @pytest.mark.asyncio
    async def test_non_critical_findings_accepted(self, source, compiler, test_runner, router, extractor, math_tasks) -> None:
        """High and lower severities are recorded but do not block acceptance."""
        scan = SecurityScanResult(vulnerabilities=(vulnerability("xss", "high", cwe_id="CWE-79"),))
        loop = RalphLoop(
            source, compiler, test_runner, router, extractor,
            security_scanner=FakeSecurityScanner([scan]),
        )

        result = await loop.run_batch([math_tasks[0]])

        assert result.success is True
        assert result.attempts[0].accepted is True
        assert result.attempts[0].security_scan_result is scan

    @pytest.mark.asyncio
    async def test_scan_only_after_successful_compile(
        self, source, compiler, test_runner, router, extractor, math_tasks, type_error_result
    ) -> None:
        """A body that does not compile is never scanned."""
        compiler.queue(type_error_result)
        scanner = FakeSecurityScanner()
        loop = RalphLoop(source, compiler, test_runner, router, extractor, security_scanner=scanner)

        result = await loop.run_batch([math_tasks[0]])

        assert len(result.attempts) == 2
        assert result.attempts[0].security_scan_result is None
        assert scanner.scanned == [["src/math.ts"]]

    @pytest.mark.asyncio
    async def test_security_at_architect_needs_review(self, source, compiler, test_runner, router, extractor, math_tasks) -> None:
        """Critical findings on every tier exhaust the task at architect."""
        critical = SecurityScanResult(vulnerabilities=(vulnerability(),))
        loop = RalphLoop(
            source, compiler, test_runner, router, extractor,
            config=RalphLoopConfig(circuit_breaker=permissive_breaker()),
            security_scanner=FakeSecurityScanner([critical, critical, critical]),
        )

        with capture_logs() as logs:
            result = await loop.run_batch([math_tasks[0]])

        assert [a.tier for a in result.attempts] == [ModelTier.WORKER, ModelTier.FALLBACK, ModelTier.ARCHITECT]
        assert isinstance(result.structural_defect_report.trip_reason, TaskExhausted)  # type: ignore[union-attr]
        failed = [e for e in logs if e["event"] == "ralph_loop.task_failed"]
        assert failed[0]["requires_human_review"] is True
        assert source.bodies[ADD_ID] == PLACEHOLDER_BODY


# =============================================================================
# Timeouts
# =============================================================================


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_slow_tests_time_out(self, source, compiler, router, extractor, math_tasks) -> None:
        """A test run over its timeout is a time failure."""
        source.test_files = {ADD_ID: "src/math.test.ts"}
        loop = RalphLoop(
            source, compiler, FakeTestRunner(delay=5.0), router, extractor,
            config=RalphLoopConfig(test_timeout_seconds=0.01),
        )
        result = await loop.run_batch([math_tasks[0]])

        assert result.attempts[0].failure == TimeoutFailure(resource=ResourceType.TIME, limit=10)
        assert source.restores[0] == ADD_ID
        assert result.circuit_tripped is True

    @pytest.mark.asyncio
    async def test_slow_compiler_times_out(self, source, router, extractor, test_runner, math_tasks) -> None:
        """A compile over its timeout is rolled back."""
        class SlowCompiler(FakeCompileVerifier):
            async def check(self, project_path, options=None):
                await asyncio.sleep(5.0)
                return CompilationResult(success=True)

        loop = RalphLoop(
            source, SlowCompiler(), test_runner, router, extractor,
            config=RalphLoopConfig(compile_timeout_seconds=0.01),
        )
        result = await loop.run_batch([math_tasks[0]])

        assert isinstance(result.attempts[0].failure, TimeoutFailure)
        assert source.restores[0] == ADD_ID


# =============================================================================
# Failure classification
# =============================================================================


class TestClassifyCompilationFailure:
    def test_parse_error_code_is_syntax(self) -> None:
        """TS1xxx diagnostics are parse errors."""
        failure = classify_compilation_failure(syntax_error_result("Declaration or statement expected."))
        assert isinstance(failure, SyntaxFailure)
        assert failure.message == "TS1128: Declaration or statement expected."

    def test_type_error(self, type_error_result) -> None:
        """Other diagnostics are type errors."""
        failure = classify_compilation_failure(type_error_result)
        assert failure == TypeFailure(
            compiler_error="TS2322: Type 'string' is not assignable to type 'number'."
        )

    def test_quotes_at_most_three_errors(self) -> None:
        """Only the first three diagnostics are quoted."""
        errors = tuple(
            CompilerError(file="a.ts", line=i, column=1, code=f"TS23{i:02d}", message=f"error {i}")
            for i in range(5)
        )
        failure = classify_compilation_failure(CompilationResult(success=False, errors=errors, error_count=5))
        assert isinstance(failure, TypeFailure)
        assert failure.compiler_error.splitlines() == ["TS2300: error 0", "TS2301: error 1", "TS2302: error 2"]

    def test_no_diagnostics(self) -> None:
        """A failed compile without diagnostics still classifies."""
        failure = classify_compilation_failure(CompilationResult(success=False))
        assert failure == TypeFailure(compiler_error="Compilation failed without diagnostics")


class TestClassifyTestFailure:
    def test_failed_cases_only(self) -> None:
        """Each failed case becomes a detail."""
        result = failing_tests("a", "b")
        failure = classify_test_failure(result)
        assert [d.test_name for d in failure.failing_tests] == ["a", "b"]
        assert failure.failing_tests[0].expected == "4"

    def test_no_case_details(self) -> None:
        """A failed run without cases gets a summary detail."""
        failure = classify_test_failure(TestRunResult(success=False, total_tests=3, failed_tests=2))
        assert failure.failing_tests[0].test_name == "test run"
        assert failure.failing_tests[0].actual == "2 failing"


class TestClassifySecurityScan:
    def test_clean_scan(self) -> None:
        """No findings, no failure."""
        assert classify_security_scan(SecurityScanResult()) is None

    def test_most_severe_finding_wins(self) -> None:
        """The failure names the vulnerability class of the worst finding."""
        scan = SecurityScanResult(
            vulnerabilities=(
                vulnerability("xss", "low"),
                vulnerability("path-traversal", "critical"),
                vulnerability("broken-auth", "high"),
            )
        )
        assert classify_security_scan(scan) == SecurityFailure(vulnerability=VulnerabilityType.PATH_TRAVERSAL)
        assert [v.vulnerability_type for v in scan.critical_vulnerabilities] == [VulnerabilityType.PATH_TRAVERSAL]

    def test_non_critical_scan_still_classified(self) -> None:
        """Classification does not depend on the blocking severity."""
        scan = SecurityScanResult(vulnerabilities=(vulnerability("xss", "high"),))
        assert scan.has_vulnerabilities is True
        assert scan.has_critical_vulnerabilities is False
        assert classify_security_scan(scan) == SecurityFailure(vulnerability=VulnerabilityType.XSS)
