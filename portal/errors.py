from __future__ import annotations

from typing import Any, Dict

from portal.ui_strings import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or code or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "No se pudo completar la operacion.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    """Malformed input at order creation or quote submission."""

    default_code = "validation_error"
    default_message_key = "validation_error"
    default_http_status = 400


class PermissionError(UserActionError):
    default_code = "permission_denied"
    default_message_key = "permission_denied"
    default_http_status = 403


class NotFoundError(UserActionError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404


class InvalidTransitionError(UserActionError):
    """The order is not in a state from which the requested transition exists."""

    default_code = "invalid_transition"
    default_message_key = "invalid_transition"
    default_http_status = 409


class AlreadyTerminalError(InvalidTransitionError):
    default_code = "order_already_terminal"
    default_message_key = "order_already_terminal"


class OrderNotOpenError(UserActionError):
    default_code = "order_not_open"
    default_message_key = "order_not_open"
    default_http_status = 409


class LineItemMismatchError(UserActionError):
    default_code = "line_items_mismatch"
    default_message_key = "line_items_mismatch"
    default_http_status = 422


class IncompleteAllocationError(UserActionError):
    default_code = "allocation_incomplete"
    default_message_key = "allocation_incomplete"
    default_http_status = 422


class InvalidOverrideError(UserActionError):
    default_code = "override_invalid"
    default_message_key = "override_invalid"
    default_http_status = 422


class ConcurrentModificationError(UserActionError):
    """A compare-and-swap write kept losing against concurrent writers."""

    default_code = "concurrent_modification"
    default_message_key = "concurrent_modification"
    default_http_status = 409


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True


class InvariantViolationError(SystemError):
    """A monetary computation produced a negative or non-finite amount."""

    default_code = "invariant_violation"
    default_message_key = "invariant_violation"
