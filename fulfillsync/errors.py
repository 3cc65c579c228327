from __future__ import annotations

import re
from typing import Any, Dict


_MESSAGES = {
    "unexpected_error": "The operation could not be completed.",
    "action_invalid": "The requested action is not allowed in the current state.",
    "validation_failed": "The submitted data is invalid.",
    "signature_invalid": "Webhook signature verification failed.",
    "payload_malformed": "The payload could not be parsed.",
    "ffn_temporarily_unavailable": "The fulfillment network is temporarily unavailable.",
    "ffn_request_rejected": "The fulfillment network rejected the request.",
    "not_found": "The requested record does not exist.",
}


def error_message(key: str, fallback: str | None = None) -> str:
    return _MESSAGES.get(key) or fallback or key


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
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        return error_message(self.message_key, error_message("unexpected_error"))

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
    default_code = "validation_error"
    default_message_key = "validation_failed"
    default_http_status = 400
    default_critical = False


class NotFoundError(UserActionError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404
    default_critical = False


class PermanentError(AppError):
    """Rejected input that must never be retried."""

    default_code = "permanent_failure"
    default_message_key = "validation_failed"
    default_http_status = 422
    default_critical = False


class SignatureError(PermanentError):
    default_code = "signature_invalid"
    default_message_key = "signature_invalid"
    default_http_status = 401


class MalformedPayloadError(PermanentError):
    default_code = "payload_malformed"
    default_message_key = "payload_malformed"
    default_http_status = 400


class IntegrationError(AppError):
    default_code = "integration_error"
    default_message_key = "ffn_temporarily_unavailable"
    default_http_status = 502
    default_critical = False


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True


_HTTP_CODE_PATTERN = re.compile(r"ffn http\s+(\d{3})", re.IGNORECASE)


def classify_gateway_failure(details: str | None) -> tuple[str, bool]:
    """Return ``(message_key, definitive)`` for a failed fulfillment call."""
    normalized = (details or "").strip().lower()
    code_match = _HTTP_CODE_PATTERN.search(normalized)
    if code_match:
        http_code = int(code_match.group(1))
        if 400 <= http_code < 500 and http_code not in {408, 429}:
            return ("ffn_request_rejected", True)

    rejection_markers = ("rejected", "invalid", "not allowed", "unprocessable")
    if any(marker in normalized for marker in rejection_markers):
        return ("ffn_request_rejected", True)

    return ("ffn_temporarily_unavailable", False)
