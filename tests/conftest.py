"""Pytest fixtures for Ralph tests."""

from __future__ import annotations

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog

from ralph.core.tiers import ModelTier
from ralph.execution.interfaces import CompilationResult, CompilerError, TodoFunction
from tests.helpers import (
    FakeCompileVerifier,
    FakeContextExtractor,
    FakeModelRouter,
    FakeSourceAdapter,
    FakeTestRunner,
)


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset structlog and root handlers around each test."""
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


@pytest.fixture
def math_tasks() -> list[TodoFunction]:
    """Three TODO functions in one module, in discovery order."""
    return [
        TodoFunction(name="add", file_path="src/math.ts", signature="function add(a: number, b: number): number"),
        TodoFunction(name="double", file_path="src/math.ts", signature="function double(a: number): number"),
        TodoFunction(name="square", file_path="src/math.ts", signature="function square(a: number): number"),
    ]


@pytest.fixture
def source(math_tasks: list[TodoFunction]) -> FakeSourceAdapter:
    return FakeSourceAdapter(math_tasks)


@pytest.fixture
def compiler() -> FakeCompileVerifier:
    return FakeCompileVerifier()


@pytest.fixture
def test_runner() -> FakeTestRunner:
    return FakeTestRunner()


@pytest.fixture
def router() -> FakeModelRouter:
    return FakeModelRouter()


@pytest.fixture
def extractor() -> FakeContextExtractor:
    return FakeContextExtractor()


@pytest.fixture
def type_error_result() -> CompilationResult:
    return CompilationResult(
        success=False,
        errors=(
            CompilerError(
                file="src/math.ts",
                line=3,
                column=10,
                code="TS2322",
                message="Type 'string' is not assignable to type 'number'.",
            ),
        ),
        error_count=1,
    )


@pytest.fixture
def temp_project(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    (project / "src").mkdir(parents=True)
    return project


@pytest.fixture
def all_tiers() -> tuple[ModelTier, ...]:
    return (ModelTier.WORKER, ModelTier.FALLBACK, ModelTier.ARCHITECT)
