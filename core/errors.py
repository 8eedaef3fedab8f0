"""
core/errors.py -- Error taxonomy shared by stores, services, and routes.

Every failure a request can end in maps to exactly one class here. api/main.py
registers one handler for PortalError that renders the common envelope
{"error": {"code", "message", "detail"}}, so routes raise and never build
error responses by hand.

  AuthenticationError  401  missing/invalid/expired credential, cause hidden
  RefreshRejected      401  failed rotation; handler also clears the cookie
  AuthorizationError   403  valid identity, missing role or permission
  NotFoundError        404  absent row OR row outside the caller's scope
  ValidationError      400  field-level problems, never echoes secret values
  ConflictError        409  unique-constraint violation

Layer rule: core/ is the kernel. No imports from the rest of the project.
"""

from __future__ import annotations

from typing import Any


class PortalError(Exception):
    """Base class for errors that map to an HTTP status."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, detail: Any = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(PortalError):
    status_code = 400
    code = "validation_error"
    default_message = "Request validation failed."


class AuthenticationError(PortalError):
    # One fixed message: the reason a credential was refused is never disclosed.
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class RefreshRejected(AuthenticationError):
    """Rotation failed. The response must also expire the refresh cookie."""

    clear_refresh_cookie = True


class AuthorizationError(PortalError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have permission to perform this action."


class NotFoundError(PortalError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class ConflictError(PortalError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists."
