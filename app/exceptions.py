"""
Custom exception classes and FastAPI exception handlers.

Why custom exceptions?
  The service layer raises domain-specific errors (like InsufficientBalanceError)
  without importing HTTP concepts. The handler layer then translates these
  into proper HTTP responses with a stable `error_type` field.

Exception hierarchy:
    VoucherAPIError (base)
    ├── RedemptionDeniedError        — expected, user-facing denial (typed reason)
    ├── InsufficientBalanceError     — conflict detected inside the atomic write
    ├── InvalidFilterError           — malformed query/report parameters
    ├── InvalidAmountError           — non-positive redemption amount
    ├── InvalidStateTransitionError  — illegal ledger or approval state change
    ├── ImmutableFieldError          — attempt to rewrite a ledger entry's core fields
    ├── TokenConfirmationRequiredError
    ├── VoucherNotShareableError     — only product vouchers can be shared
    ├── UnauthorizedAccessError
    ├── Duplicate*Error              — uniqueness violations
    └── *NotFoundError               — missing entities

Infrastructure failures (storage unavailable, timeouts) are NOT wrapped:
they propagate unmodified after get_db() has rolled the session back.
"""

import enum
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class DenialReason(str, enum.Enum):
    """Why a redemption attempt was refused. Rendered to the user by the caller."""
    VOUCHER_EXPIRED = "voucher_expired"
    FUND_NOT_ACTIVE = "fund_not_active"
    PRODUCT_VOUCHER_USED = "product_voucher_used"
    NOT_PERMITTED = "not_permitted"
    UNSUPPORTED_TYPE = "unsupported_type"


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class VoucherAPIError(Exception):
    """Base exception for all Voucher API domain errors."""

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)


# ---------------------------------------------------------------------------
# Redemption outcomes
# ---------------------------------------------------------------------------

class RedemptionDeniedError(VoucherAPIError):
    """
    Raised at the recording boundary when the authorizer refuses a redemption.

    This is a permanent answer for the current state: retrying without a
    change (new approval, new permission) gives the same result.
    """

    def __init__(self, reason: DenialReason):
        self.reason = reason
        super().__init__(f"Redemption denied: {reason.value}")


class InsufficientBalanceError(VoucherAPIError):
    """
    Raised when the balance re-derived under the voucher lock cannot cover
    the requested amount.

    Unlike a denial this is a conflict: another redemption may have consumed
    the balance a moment earlier, so callers should treat it as "try again".

    Attributes:
        voucher_id: The voucher that lacks sufficient balance.
        requested_cents: The amount the provider tried to redeem.
        available_cents: The balance at commit time.
    """

    retryable = True

    def __init__(
        self,
        voucher_id: uuid.UUID,
        requested_cents: int,
        available_cents: int,
    ):
        self.voucher_id = voucher_id
        self.requested_cents = requested_cents
        self.available_cents = available_cents
        super().__init__(
            f"Insufficient voucher balance: requested {requested_cents} cents, "
            f"available {available_cents} cents"
        )


class TokenConfirmationRequiredError(VoucherAPIError):
    """Raised when a confirming token is redeemed without confirmation."""

    def __init__(self):
        super().__init__("This voucher token requires confirmation before redemption")


class VoucherNotShareableError(VoucherAPIError):
    """Raised when a holder tries to share a voucher that is not bound to a product."""

    def __init__(self, voucher_id: uuid.UUID):
        self.voucher_id = voucher_id
        super().__init__(f"Voucher {voucher_id} is not a product voucher and cannot be shared")


# ---------------------------------------------------------------------------
# Input and state errors
# ---------------------------------------------------------------------------

class InvalidFilterError(VoucherAPIError):
    """Raised for malformed query or report parameters, before any I/O."""


class InvalidAmountError(VoucherAPIError):
    """Raised when a redemption amount is missing, zero or negative."""


class InvalidStateTransitionError(VoucherAPIError):
    """Raised when a state change is not allowed from the current state."""


class ImmutableFieldError(VoucherAPIError):
    """Raised when a ledger entry's amount, voucher or provider is reassigned."""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Transaction field '{field}' cannot be changed")


class UnauthorizedAccessError(VoucherAPIError):
    """Raised when an identity acts on a resource it has no rights to."""

    def __init__(self, detail: str = "You do not have access to this resource"):
        super().__init__(detail)


class DuplicateFundProviderError(VoucherAPIError):
    """Raised when an organization applies twice to the same fund."""

    def __init__(self, fund_id: uuid.UUID, organization_id: uuid.UUID):
        self.fund_id = fund_id
        self.organization_id = organization_id
        super().__init__(
            f"Organization {organization_id} already applied to fund {fund_id}"
        )


class DuplicateVoucherError(VoucherAPIError):
    """Raised when an identity requests a second voucher for the same fund."""

    def __init__(self, fund_id: uuid.UUID):
        self.fund_id = fund_id
        super().__init__(f"A voucher for fund {fund_id} was already granted")


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class NotFoundError(VoucherAPIError):
    """Base class for missing entities."""

    entity = "Resource"

    def __init__(self, entity_id: uuid.UUID | str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity} {entity_id} not found")


class VoucherNotFoundError(NotFoundError):
    entity = "Voucher"


class FundNotFoundError(NotFoundError):
    entity = "Fund"


class FundProviderNotFoundError(NotFoundError):
    entity = "Fund provider"


class OrganizationNotFoundError(NotFoundError):
    entity = "Organization"


class ProductNotFoundError(NotFoundError):
    entity = "Product"


class TransactionNotFoundError(NotFoundError):
    entity = "Transaction"


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:
    """
    Register custom exception handlers with the FastAPI application.

    Each handler maps a domain exception to an HTTP status code and
    consistent JSON response format: {"detail": ..., "error_type": ...}
    """

    @app.exception_handler(RedemptionDeniedError)
    async def redemption_denied_handler(
        request: Request, exc: RedemptionDeniedError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=403,
            content={
                "detail": exc.detail,
                "error_type": "redemption_denied",
                "reason": exc.reason.value,
            },
        )

    @app.exception_handler(InsufficientBalanceError)
    async def insufficient_balance_handler(
        request: Request, exc: InsufficientBalanceError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,  # Conflict: the balance changed under us
            content={
                "detail": exc.detail,
                "error_type": "insufficient_balance",
                "retryable": True,
                "requested_cents": exc.requested_cents,
                "available_cents": exc.available_cents,
            },
        )

    @app.exception_handler(TokenConfirmationRequiredError)
    async def confirmation_required_handler(
        request: Request, exc: TokenConfirmationRequiredError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=403,
            content={"detail": exc.detail, "error_type": "confirmation_required"},
        )

    @app.exception_handler(VoucherNotShareableError)
    async def not_shareable_handler(
        request: Request, exc: VoucherNotShareableError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": exc.detail, "error_type": "voucher_not_shareable"},
        )

    @app.exception_handler(InvalidFilterError)
    async def invalid_filter_handler(
        request: Request, exc: InvalidFilterError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": exc.detail, "error_type": "invalid_filter"},
        )

    @app.exception_handler(InvalidAmountError)
    async def invalid_amount_handler(
        request: Request, exc: InvalidAmountError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": exc.detail, "error_type": "invalid_amount"},
        )

    @app.exception_handler(InvalidStateTransitionError)
    async def invalid_state_handler(
        request: Request, exc: InvalidStateTransitionError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": exc.detail, "error_type": "invalid_state_transition"},
        )

    @app.exception_handler(ImmutableFieldError)
    async def immutable_field_handler(
        request: Request, exc: ImmutableFieldError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": exc.detail, "error_type": "immutable_field"},
        )

    @app.exception_handler(UnauthorizedAccessError)
    async def unauthorized_access_handler(
        request: Request, exc: UnauthorizedAccessError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=403,
            content={"detail": exc.detail, "error_type": "unauthorized_access"},
        )

    @app.exception_handler(DuplicateFundProviderError)
    async def duplicate_fund_provider_handler(
        request: Request, exc: DuplicateFundProviderError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": exc.detail, "error_type": "duplicate_fund_provider"},
        )

    @app.exception_handler(DuplicateVoucherError)
    async def duplicate_voucher_handler(
        request: Request, exc: DuplicateVoucherError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": exc.detail, "error_type": "duplicate_voucher"},
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(
        request: Request, exc: NotFoundError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={
                "detail": exc.detail,
                "error_type": f"{exc.entity.lower().replace(' ', '_')}_not_found",
            },
        )
