"""
Settlement error taxonomy.

Every error is an HTTPException so routes can let it propagate; webhook
routes catch the non-authentication ones and acknowledge instead.
"""

from typing import Optional

from fastapi import HTTPException, status


class SettlementError(HTTPException):
    error_code = "SETTLEMENT_ERROR"
    default_status = status.HTTP_400_BAD_REQUEST
    default_detail = "Settlement error"

    def __init__(self, detail: Optional[str] = None, **context):
        super().__init__(
            status_code=self.default_status,
            detail=detail or self.default_detail,
        )
        self.context = context


class Unauthenticated(SettlementError):
    error_code = "UNAUTHENTICATED"
    default_status = status.HTTP_401_UNAUTHORIZED
    default_detail = "Invalid webhook signature"


class AmountMismatch(SettlementError):
    error_code = "AMOUNT_MISMATCH"
    default_status = status.HTTP_409_CONFLICT
    default_detail = "Paid amount does not match order total"


class InvalidTransition(SettlementError):
    error_code = "INVALID_TRANSITION"
    default_status = status.HTTP_409_CONFLICT
    default_detail = "Status transition not allowed"


class NotFound(SettlementError):
    error_code = "NOT_FOUND"
    default_status = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class AlreadyProcessed(SettlementError):
    error_code = "ALREADY_PROCESSED"
    default_status = status.HTTP_200_OK
    default_detail = "Already processed"


class UpstreamUnavailable(SettlementError):
    error_code = "UPSTREAM_UNAVAILABLE"
    default_status = status.HTTP_502_BAD_GATEWAY
    default_detail = "Upstream provider request failed"


class PartialFailure(SettlementError):
    error_code = "PARTIAL_FAILURE"
    default_status = status.HTTP_207_MULTI_STATUS
    default_detail = "Some steps failed"
