from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base class for business errors rendered as ErrorResponse bodies."""

    status_code: int = 400
    code: str = "domain_error"

    def __init__(self, detail: Any = None, *, code: str | None = None) -> None:
        self.detail = detail if detail is not None else self.__class__.__name__
        if code is not None:
            self.code = code
        super().__init__(str(self.detail))


class ValidationError(DomainError):
    status_code = 400
    code = "validation_error"


class NotFoundError(ValidationError):
    status_code = 404
    code = "not_found"


class EligibilityError(DomainError):
    status_code = 422
    code = "not_eligible"


class StateTransitionError(DomainError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, machine: str, from_state: str, to_state: str) -> None:
        self.machine = machine
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid {machine} transition {from_state} -> {to_state}")


class GuardError(DomainError):
    status_code = 409
    code = "guard_failed"


class ConflictError(DomainError):
    status_code = 409
    code = "conflict"


class ConfigurationError(DomainError):
    status_code = 500
    code = "configuration_error"


class ExternalDependencyError(DomainError):
    status_code = 502
    code = "external_dependency_failed"


class AuthenticationError(DomainError):
    status_code = 401
    code = "unauthorized"
