"""
Error taxonomy shared by the ledger, hold and approval layers.

Every error carries a `kind` (the class name), a stable machine `code`, a
human message and an optional detail dict. The HTTP shell renders them with
`to_dict()` and the class-level `http_status`; nothing else crosses the
boundary.

Retry guidance for callers:
  StorageUnavailable          -> safe to retry with the same idempotency key
  IllegalTransition, Unauthorized -> never retry
"""

from typing import Any, Optional


class CreditCoreError(Exception):
    code = "credit_core_error"
    http_status = 400

    def __init__(self, message: str, *, detail: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind":    self.kind,
            "code":    self.code,
            "message": self.message,
            "detail":  self.detail,
        }


# ── Missing entities ───────────────────────────────────────────────────────────

class UnknownAccount(CreditCoreError):
    code = "account_not_found"
    http_status = 404


class UnknownRequest(CreditCoreError):
    code = "request_not_found"
    http_status = 404


class UnknownHold(CreditCoreError):
    code = "hold_not_found"
    http_status = 404


class UnknownRule(CreditCoreError):
    code = "rule_not_found"
    http_status = 404


class UnknownAssignment(CreditCoreError):
    code = "assignment_not_found"
    http_status = 404


# ── Validation / balance ───────────────────────────────────────────────────────

class InvalidAmount(CreditCoreError):
    code = "invalid_amount"
    http_status = 422


class InsufficientFunds(CreditCoreError):
    code = "insufficient_credits"
    http_status = 402


# ── Conflicts ──────────────────────────────────────────────────────────────────

class DuplicateHold(CreditCoreError):
    code = "duplicate_hold"
    http_status = 409


class ConflictingKey(CreditCoreError):
    code = "idempotency_key_conflict"
    http_status = 409


class IllegalTransition(CreditCoreError):
    code = "illegal_transition"
    http_status = 409


class Unauthorized(CreditCoreError):
    code = "unauthorized"
    http_status = 403


class RuleMisconfigured(CreditCoreError):
    code = "rule_misconfigured"
    http_status = 422


class StorageUnavailable(CreditCoreError):
    code = "storage_unavailable"
    http_status = 503


def install_error_handler(app) -> None:
    """
    Render CreditCoreError as a structured JSON body on a FastAPI app.
    Request bodies that fail schema validation are reported as InvalidAmount.
    """
    from fastapi import Request
    from fastapi.encoders import jsonable_encoder
    from fastapi.exceptions import RequestValidationError
    from fastapi.responses import JSONResponse

    @app.exception_handler(CreditCoreError)
    async def _credit_core_error_handler(request: Request, exc: CreditCoreError):
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        err = InvalidAmount(
            "Request failed validation",
            detail={"errors": jsonable_encoder(exc.errors())},
        )
        return JSONResponse(status_code=err.http_status, content={"error": err.to_dict()})
