"""Shared test helpers: in-memory fakes for the Ralph loop's collaborators."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from ralph.core.errors import VulnerabilityType
from ralph.execution.interfaces import (
    CompilationResult,
    CompileVerifier,
    ContextExtractor,
    ExtractedContext,
    ModelRequest,
    ModelResponse,
    ModelRouter,
    SecurityScanner,
    SecurityScanResult,
    SourceAdapter,
    TestCaseResult,
    TestRunner,
    TestRunResult,
    TodoFunction,
    VulnerabilityDetails,
    VulnerabilitySeverity,
)

PLACEHOLDER_BODY = "throw new Error('TODO');"


class FakeSourceAdapter(SourceAdapter):
    """Keeps one body per task in memory and records every mutation."""

    def __init__(
        self,
        tasks: Iterable[TodoFunction],
        dependencies: Mapping[str, list[str]] | None = None,
        test_files: Mapping[str, str] | None = None,
        inject_errors: Mapping[str, list[Exception]] | None = None,
    ) -> None:
        self.tasks = list(tasks)
        self.bodies: dict[str, str] = {t.task_id: PLACEHOLDER_BODY for t in self.tasks}
        self._saved: dict[str, str] = {}
        self.dependencies = dict(dependencies or {})
        self.test_files = dict(test_files or {})
        self.inject_errors = {k: list(v) for k, v in (inject_errors or {}).items()}
        self.injections: list[tuple[str, str]] = []
        self.restores: list[str] = []

    async def find_pending_tasks(self) -> list[TodoFunction]:
        return list(self.tasks)

    async def inject_body(self, task: TodoFunction, body: str) -> None:
        errors = self.inject_errors.get(task.task_id)
        if errors:
            raise errors.pop(0)
        self._saved[task.task_id] = self.bodies[task.task_id]
        self.bodies[task.task_id] = body
        self.injections.append((task.task_id, body))

    async def restore_original(self, task: TodoFunction) -> None:
        self.bodies[task.task_id] = self._saved.pop(task.task_id)
        self.restores.append(task.task_id)

    async def get_dependencies(self, tasks: list[TodoFunction]) -> dict[str, list[str]]:
        return dict(self.dependencies)

    async def find_test_file(self, task: TodoFunction, suffixes: list[str]) -> Path | None:
        test_file = self.test_files.get(task.task_id)
        return Path(test_file) if test_file is not None else None


class FakeCompileVerifier(CompileVerifier):
    """Returns queued results in order, then succeeds."""

    def __init__(self, results: Iterable[CompilationResult | Exception] = ()) -> None:
        self.results: deque[CompilationResult | Exception] = deque(results)
        self.calls = 0

    def queue(self, *results: CompilationResult | Exception) -> None:
        self.results.extend(results)

    async def check(self, project_path: Path, options: Mapping[str, Any] | None = None) -> CompilationResult:
        self.calls += 1
        if not self.results:
            return CompilationResult(success=True)
        result = self.results.popleft()
        if isinstance(result, Exception):
            raise result
        return result


class FakeTestRunner(TestRunner):
    def __init__(self, results: Iterable[TestRunResult | Exception] = (), delay: float = 0.0) -> None:
        self.results: deque[TestRunResult | Exception] = deque(results)
        self.delay = delay
        self.patterns: list[str] = []

    def queue(self, *results: TestRunResult | Exception) -> None:
        self.results.extend(results)

    async def run(self, pattern: str, options: Mapping[str, Any] | None = None) -> TestRunResult:
        self.patterns.append(pattern)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.results:
            return TestRunResult(success=True, total_tests=1, passed_tests=1)
        result = self.results.popleft()
        if isinstance(result, Exception):
            raise result
        return result


class FakeModelRouter(ModelRouter):
    """Replies from a queue of bodies or responses; records every request."""

    def __init__(self, responses: Iterable[ModelResponse | str | Exception] = ()) -> None:
        self.responses: deque[ModelResponse | str | Exception] = deque(responses)
        self.requests: list[ModelRequest] = []
        self.default_body = "return 0;"

    def queue(self, *responses: ModelResponse | str | Exception) -> None:
        self.responses.extend(responses)

    async def complete(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if not self.responses:
            return ModelResponse(success=True, content=self.default_body)
        response = self.responses.popleft()
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            return ModelResponse(success=True, content=response)
        return response


class FakeContextExtractor(ContextExtractor):
    def __init__(self, contracts: tuple[str, ...] = ("@ensures result is finite",)) -> None:
        self.contracts = contracts
        self.calls: list[str] = []

    async def extract_context(self, task: TodoFunction) -> ExtractedContext:
        self.calls.append(task.task_id)
        return ExtractedContext(
            signature_text=task.signature or f"function {task.name}()",
            contracts=self.contracts,
            required_types=("type Num = number;",),
        )


class FakeSecurityScanner(SecurityScanner):
    """Returns queued scan results in order, then clean scans."""

    def __init__(self, results: Iterable[SecurityScanResult | Exception] = ()) -> None:
        self.results: deque[SecurityScanResult | Exception] = deque(results)
        self.scanned: list[list[str]] = []

    def queue(self, *results: SecurityScanResult | Exception) -> None:
        self.results.extend(results)

    async def scan(self, project_path: Path, files: list[str]) -> SecurityScanResult:
        self.scanned.append(list(files))
        if not self.results:
            return SecurityScanResult()
        result = self.results.popleft()
        if isinstance(result, Exception):
            raise result
        return result

def failing_tests(*names: str) -> TestRunResult:
    """A test run where every named test failed."""
    return TestRunResult(
        success=False,
        total_tests=len(names),
        failed_tests=len(names),
        tests=tuple(
            TestCaseResult(name=name, status="failed", expected="4", actual="5", error="mismatch")
            for name in names
        ),
    )


def vulnerability(
    vulnerability_type: VulnerabilityType | str = VulnerabilityType.INJECTION,
    severity: VulnerabilitySeverity | str = VulnerabilitySeverity.CRITICAL,
    cwe_id: str | None = "CWE-89",
    message: str = "Unsanitized input reaches a SQL query",
) -> VulnerabilityDetails:
    """A single scanner finding in src/math.ts."""
    return VulnerabilityDetails(
        vulnerability_type=VulnerabilityType(vulnerability_type),
        severity=VulnerabilitySeverity(severity),
        file_path="src/math.ts",
        line=2,
        column=5,
        message=message,
        rule_id="security/detect-sql-injection",
        cwe_id=cwe_id,
    )
