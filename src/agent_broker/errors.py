"""Broker error taxonomy.

Every failure a caller can act on is a ``BrokerError`` subclass carrying a
stable ``code``. ``reason`` narrows a denial to a machine-readable tag used by
audit rows and dashboards.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

CODE_BAD_REQUEST = "BAD_REQUEST"
CODE_DENIED = "DENIED"
CODE_NOT_FOUND = "NOT_FOUND"
CODE_TIMEOUT = "TIMEOUT"
CODE_NETWORK_ERROR = "NETWORK_ERROR"
CODE_FORBIDDEN = "FORBIDDEN"
CODE_PRECONDITION_FAILED = "PRECONDITION_FAILED"
CODE_CONFLICT = "CONFLICT"
CODE_TOKEN_MINT_FAILED = "TOKEN_MINT_FAILED"


class BrokerError(Exception):
    code = "INTERNAL"

    def __init__(self, message: str, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.reason:
            data["reason"] = self.reason
        return data


class ValidationError(BrokerError):
    """Malformed method, URL, or required field."""

    code = CODE_BAD_REQUEST


class ConsentRequired(ValidationError):
    """Third-party plugin enable attempted without explicit human consent."""

    def __init__(self, message: str = "Explicit consent is required before enabling third-party plugins.") -> None:
        super().__init__(message, reason="consent_required")


class PolicyDenied(BrokerError):
    code = CODE_DENIED


class NotFound(BrokerError):
    code = CODE_NOT_FOUND


class RequestTimeout(BrokerError):
    code = CODE_TIMEOUT

    def __init__(self, message: str, elapsed_ms: int) -> None:
        super().__init__(message, reason="timeout")
        self.elapsed_ms = elapsed_ms


class NetworkError(BrokerError):
    code = CODE_NETWORK_ERROR


class Forbidden(BrokerError):
    code = CODE_FORBIDDEN


class TrustModeBlocked(Forbidden):
    """Third-party plugin operation refused by the ``saas_locked`` trust mode."""

    def __init__(self, message: str) -> None:
        super().__init__(message, reason="trust_mode_locked")


class PreconditionFailed(BrokerError):
    code = CODE_PRECONDITION_FAILED


class ConflictError(BrokerError):
    code = CODE_CONFLICT


class TokenMintError(BrokerError):
    code = CODE_TOKEN_MINT_FAILED

    def __init__(self, message: str, configured_preset: str, status: Optional[int] = None) -> None:
        super().__init__(message, reason="token_mint_failed")
        self.configured_preset = configured_preset
        self.status = status


HTTP_STATUS_BY_CODE: Dict[str, int] = {
    CODE_BAD_REQUEST: 400,
    CODE_DENIED: 403,
    CODE_FORBIDDEN: 403,
    CODE_NOT_FOUND: 404,
    CODE_CONFLICT: 409,
    CODE_PRECONDITION_FAILED: 412,
    CODE_NETWORK_ERROR: 502,
    CODE_TOKEN_MINT_FAILED: 502,
    CODE_TIMEOUT: 504,
}


def http_status_for(error: BrokerError) -> int:
    return HTTP_STATUS_BY_CODE.get(error.code, 500)
