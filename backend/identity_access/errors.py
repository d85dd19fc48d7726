"""
Error taxonomy for the identity_access bounded context.

Why:
    Presentation layers render stable, localized messages. They can only do that
    when services surface a closed set of error types instead of raw driver or
    SDK exceptions. Store failures are chained (`raise ... from exc`) so the
    diagnostic trail stays available in logs.

Taxonomy:
    ValidationError      malformed/missing input, raised before any I/O
    DuplicateError       unique-email violation during account creation
    NotFoundError        an operation referenced an unknown id
    StoreError           the primary write (or required read) of an operation failed
    PermissionDeniedError  permission gate rejected the caller
    AuthenticationError  sign-in rejected

    ConsistencyWarning is not raised. It records a failed secondary step
    (compensation, mirroring, credential cleanup, audit append) and travels in
    `OperationResult.warnings`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, List, Sequence, TypeVar

T = TypeVar("T")


class IdentityAccessError(Exception):
    """Base class for all errors surfaced by this context."""

    code = "identity_access_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)


class ValidationError(IdentityAccessError):
    code = "validation_error"

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code


class DuplicateError(IdentityAccessError):
    code = "duplicate"

    def __init__(self, field_name: str = "email") -> None:
        super().__init__(f"{field_name}_already_exists")
        self.field = field_name


class NotFoundError(IdentityAccessError):
    code = "not_found"

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource}_not_found")
        self.resource = resource
        self.resource_id = resource_id


class StoreError(IdentityAccessError):
    """Primary write or required read failed in `store`.

    `warnings` carries secondary failures observed while handling the primary
    failure (e.g., a credential rollback that also failed).
    """

    code = "store_error"

    def __init__(self, store: str, step: str = "", warnings: Sequence["ConsistencyWarning"] = ()) -> None:
        super().__init__(f"{store}:{step}" if step else store)
        self.store = store
        self.step = step
        self.warnings: List[ConsistencyWarning] = list(warnings)


class PermissionDeniedError(IdentityAccessError):
    code = "permission_denied"

    def __init__(self, permission: str) -> None:
        super().__init__(f"missing_permission:{permission}")
        self.permission = permission


class AuthenticationError(IdentityAccessError):
    code = "authentication_failed"


class ConsistencyWarning(Warning):
    """A secondary step failed; the primary outcome stands."""

    def __init__(self, step: str, store: str, detail: str = "") -> None:
        super().__init__(f"{step}@{store}: {detail}" if detail else f"{step}@{store}")
        self.step = step
        self.store = store
        self.detail = detail

    def __repr__(self) -> str:
        return f"ConsistencyWarning(step={self.step!r}, store={self.store!r}, detail={self.detail!r})"


@dataclass
class OperationResult(Generic[T]):
    """Outcome of a mutating operation whose primary write succeeded.

    `partial` is True when at least one secondary step failed; callers still
    treat the operation as successful.
    """

    value: T
    warnings: List[ConsistencyWarning] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.warnings)

    def warning_steps(self) -> List[str]:
        return [w.step for w in self.warnings]



__all__ = [
    "AuthenticationError",
    "ConsistencyWarning",
    "DuplicateError",
    "IdentityAccessError",
    "NotFoundError",
    "OperationResult",
    "PermissionDeniedError",
    "StoreError",
    "ValidationError",
]
