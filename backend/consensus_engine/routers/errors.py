"""
HTTP translation of engine errors.

Stable HTTPException.detail shape: error_code, gate, message, plus
retry_after / context where they apply.
"""
from typing import Any, Dict, Optional

from fastapi import HTTPException

from ..errors import NotFoundError, PolicyRejection


def gate_detail(
    *,
    error_code: str,
    gate: str,
    message: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    detail: Dict[str, Any] = {
        "error_code": error_code,
        "gate": gate,
    }
    if message:
        detail["message"] = message
    if context:
        detail["context"] = context
    for k, v in extra.items():
        if v is not None and k not in detail:
            detail[k] = v
    return detail


def policy_http_error(rejection: PolicyRejection) -> HTTPException:
    headers = None
    if rejection.retry_after is not None:
        headers = {"Retry-After": str(rejection.retry_after)}
    return HTTPException(
        status_code=rejection.status_code,
        detail=gate_detail(
            error_code=rejection.reason,
            gate=rejection.gate,
            message=rejection.message,
            retry_after=rejection.retry_after,
        ),
        headers=headers,
    )


def not_found_http_error(error: NotFoundError) -> HTTPException:
    return HTTPException(
        status_code=error.status_code,
        detail=gate_detail(error_code="not_found", gate="ledger", message=error.message),
    )


def internal_http_error() -> HTTPException:
    """Invariant violations never expose internal detail to the caller."""
    return HTTPException(
        status_code=500,
        detail=gate_detail(error_code="internal_error", gate="ledger", message="Internal error"),
    )
