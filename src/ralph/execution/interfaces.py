"""Collaborator interfaces consumed by the injection loop.

The loop never parses source, runs a compiler or calls a model itself. Those
jobs belong to the implementations of the abstract classes below, which a
host application supplies.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from enum import Enum
from typing import Any, ClassVar, Literal

from ralph.core.errors import VulnerabilityType
from ralph.core.tiers import ModelTier


@dataclass(frozen=True)
class TodoFunction:
    """A placeholder function waiting for an implementation."""

    name: str
    file_path: str
    signature: str = ""
    module_path: str | None = None
    """Grouping used for module statistics; defaults to ``file_path``."""

    @property
    def task_id(self) -> str:
        return f"{self.file_path}:{self.name}"

    @property
    def module(self) -> str:
        return self.module_path or self.file_path


@dataclass(frozen=True)
class CompilerError:
    file: str
    line: int
    column: int
    code: str
    message: str
    severity: Literal["error", "warning"] = "error"


@dataclass(frozen=True)
class CompilationResult:
    success: bool
    errors: tuple[CompilerError, ...] = ()
    error_count: int = 0
    warning_count: int = 0


@dataclass(frozen=True)
class TestCaseResult:
    __test__: ClassVar[bool] = False

    name: str
    status: Literal["passed", "failed", "skipped"]
    duration_ms: float = 0.0
    error: str | None = None
    expected: str | None = None
    actual: str | None = None


@dataclass(frozen=True)
class TestRunResult:
    """Outcome of running the tests associated with one task."""

    __test__: ClassVar[bool] = False

    success: bool
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    skipped_tests: int = 0
    tests: tuple[TestCaseResult, ...] = ()


@dataclass(frozen=True)
class ModelRequest:
    model_alias: str
    prompt: str
    system_prompt: str
    max_tokens: int
    temperature: float
    tier: ModelTier = ModelTier.WORKER


@dataclass(frozen=True)
class ModelResponse:
    success: bool
    content: str = ""
    error: str | None = None


@dataclass(frozen=True)
class ExtractedContext:
    """Minimal context handed to the model for one function.

    Contains only declarations the body needs; never a previously rejected
    implementation.
    """

    signature_text: str
    contracts: tuple[str, ...] = ()
    required_types: tuple[str, ...] = ()
    witness_definitions: tuple[str, ...] = ()
    size_metrics: Mapping[str, int] = field(default_factory=dict)
    had_circular_references: bool = False


class VulnerabilitySeverity(str, Enum):
    """Severity of a scanner finding. Only CRITICAL blocks acceptance."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    VulnerabilitySeverity.CRITICAL: 4,
    VulnerabilitySeverity.HIGH: 3,
    VulnerabilitySeverity.MEDIUM: 2,
    VulnerabilitySeverity.LOW: 1,
}


@dataclass(frozen=True)
class VulnerabilityDetails:
    vulnerability_type: VulnerabilityType
    severity: VulnerabilitySeverity
    file_path: str
    line: int
    column: int
    message: str
    rule_id: str
    cwe_id: str | None = None


@dataclass(frozen=True)
class SecurityScanResult:
    vulnerabilities: tuple[VulnerabilityDetails, ...] = ()
    duration_ms: float = 0.0

    @property
    def has_vulnerabilities(self) -> bool:
        return bool(self.vulnerabilities)

    @property
    def critical_vulnerabilities(self) -> tuple[VulnerabilityDetails, ...]:
        return tuple(
            v for v in self.vulnerabilities if v.severity is VulnerabilitySeverity.CRITICAL
        )

    @property
    def has_critical_vulnerabilities(self) -> bool:
        return bool(self.critical_vulnerabilities)


class SourceAdapter(ABC):
    """Locates TODO functions and mutates their bodies in the project tree."""

    @abstractmethod
    async def find_pending_tasks(self) -> list[TodoFunction]:
        """Return every TODO function in the project, in discovery order."""
        ...

    @abstractmethod
    async def inject_body(self, task: TodoFunction, body: str) -> None:
        """Replace the task's body.

        Raises:
            TaskNotFoundError: If the function no longer exists.
            InvalidBodyError: If ``body`` cannot be spliced in.
        """
        ...

    @abstractmethod
    async def restore_original(self, task: TodoFunction) -> None:
        """Restore the source exactly as it was before the last injection."""
        ...

    async def get_dependencies(self, tasks: list[TodoFunction]) -> dict[str, list[str]]:
        """Map each task id to the task ids it calls. Default: no edges."""
        return {}

    async def find_test_file(self, task: TodoFunction, suffixes: list[str]) -> Path | None:
        """Locate the test file covering ``task`` by trying ``suffixes`` in order.

        The default looks for ``<stem><suffix>`` next to the task's source file.
        """
        source = Path(task.file_path)
        stem = source.name.split(".", 1)[0]
        for suffix in suffixes:
            candidate = source.with_name(f"{stem}{suffix}")
            if candidate.exists():
                return candidate
        return None


class CompileVerifier(ABC):
    @abstractmethod
    async def check(self, project_path: Path, options: Mapping[str, Any] | None = None) -> CompilationResult:
        """Type-check the project and report diagnostics."""
        ...


class TestRunner(ABC):
    __test__: ClassVar[bool] = False

    @abstractmethod
    async def run(self, pattern: str, options: Mapping[str, Any] | None = None) -> TestRunResult:
        """Run the tests matching ``pattern``."""
        ...


class ModelRouter(ABC):
    """Routes completion requests to the model configured for each tier."""

    @abstractmethod
    async def complete(self, request: ModelRequest) -> ModelResponse:
        """Return the completion, or ``success=False`` with an error.

        Transport errors should be reported in the response, not raised.
        """
        ...


class SecurityScanner(ABC):
    """Static security analysis run on a compiled body before its tests."""

    @abstractmethod
    async def scan(self, project_path: Path, files: list[str]) -> SecurityScanResult:
        """Scan ``files`` (paths relative to ``project_path``) for vulnerabilities."""
        ...


class ContextExtractor(ABC):
    @abstractmethod
    async def extract_context(self, task: TodoFunction) -> ExtractedContext:
        ...


__all__ = [
    "CompilationResult",
    "CompileVerifier",
    "CompilerError",
    "ContextExtractor",
    "ExtractedContext",
    "ModelRequest",
    "ModelResponse",
    "ModelRouter",
    "SecurityScanResult",
    "SecurityScanner",
    "SourceAdapter",
    "TestCaseResult",
    "TestRunResult",
    "TestRunner",
    "TodoFunction",
    "VulnerabilityDetails",
    "VulnerabilitySeverity",
]
