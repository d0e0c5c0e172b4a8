"""
Exception types raised by the repair agent.

Validation failures are never exceptions; they are reported as
``ValidationResult`` values. The classes here cover requests that cannot
enter the repair loop at all, and infrastructure that is missing.
"""

from __future__ import annotations

from typing import Any


class MermaidFixError(Exception):
    """Base class for all repair agent errors."""

    status_code: int = 500


class RequestValidationError(MermaidFixError):
    """Raised when a request body does not match the expected schema."""

    status_code = 400

    def __init__(self, message: str, field_errors: dict[str, list[str]] | None = None) -> None:
        super().__init__(message)
        self.field_errors = field_errors or {}

    def to_dict(self) -> dict[str, Any]:
        return {"formErrors": [str(self)], "fieldErrors": self.field_errors}


class InputRejectedError(MermaidFixError):
    """Raised when input does not look like a Mermaid diagram at all."""

    status_code = 400

    def __init__(self, message: str, validation_error: str | None = None) -> None:
        super().__init__(message)
        self.validation_error = validation_error


class MissingCredentialError(MermaidFixError):
    """Raised when a backend is selected without its API credential."""

    status_code = 500


class ParserUnavailableError(MermaidFixError):
    """Raised when the external Mermaid parser cannot be started."""


class BackendError(MermaidFixError):
    """Raised when a model backend fails mid-request."""
