"""Exceptions raised at the boundaries of the injection core.

Ordinary verification failures are never raised; they are values
(see ``ralph.core.errors.failures``). Exceptions signal contract violations
by collaborators or invalid configuration.
"""

from __future__ import annotations


class RalphError(Exception):
    """Base class for all Ralph exceptions."""


class TaskNotFoundError(RalphError):
    """Raised by a source adapter when the target function cannot be located.

    Attributes:
        function_name: Name of the function that was looked up.
        file_path: File that was searched.
    """

    def __init__(self, function_name: str, file_path: str):
        self.function_name = function_name
        self.file_path = file_path
        super().__init__(f"Function '{function_name}' not found in file: {file_path}")


class InvalidBodyError(RalphError):
    """Raised by a source adapter when an injected body does not parse."""

    def __init__(self, function_name: str, reason: str):
        self.function_name = function_name
        self.reason = reason
        super().__init__(f"Invalid body syntax for function '{function_name}': {reason}")


class ConfigurationError(RalphError):
    """Raised when a configuration file cannot be loaded or validated."""


__all__ = [
    "ConfigurationError",
    "InvalidBodyError",
    "RalphError",
    "TaskNotFoundError",
]
