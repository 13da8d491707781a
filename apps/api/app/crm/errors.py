from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base error for primary-data failures that are returned to the caller."""

    status_code = 500
    code = "crm_error"

    def __init__(self, message: str, *, details: Any = None, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if code is not None:
            self.code = code


class ValidationError(CRMError):
    """Malformed input. Nothing is persisted."""

    status_code = 400
    code = "validation_error"


class NotFoundError(CRMError):
    """Entity absent or outside the caller's organization."""

    status_code = 404
    code = "not_found"


class ConflictError(CRMError):
    """Lead already converted; details carry the existing customer id."""

    status_code = 400
    code = "already_converted"

    def __init__(self, message: str, *, customer_id: Any) -> None:
        super().__init__(message, details={"customer_id": str(customer_id)})
        self.customer_id = customer_id


class StorageError(CRMError):
    status_code = 500
    code = "storage_error"


class SideEffectError(Exception):
    """Failure inside a notification, email, automation, broadcast or sync call.

    Logged by the dispatcher and task layer; never surfaced to the HTTP caller.
    """

    def __init__(self, effect: str, message: str) -> None:
        super().__init__(f"{effect}: {message}")
        self.effect = effect
