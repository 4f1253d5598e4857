"""
Redemption service — writes the ledger.

THIS IS THE MOST CRITICAL FILE IN THE PROJECT. It handles:
  - Recording a redemption (authorize + balance re-check + ledger insert)
  - Token-based redemption (what a provider's scanner actually calls)
  - Settlement bookkeeping for the payout of a ledger entry

Atomicity:
  record_redemption() runs entirely inside the caller's database
  transaction:

      lock voucher row  →  authorize  →  re-derive balance  →  insert entry

  The lock is taken FIRST, before anything about the voucher is read. A
  concurrent redemption of the same voucher blocks at its own lock step
  until this one commits, then sees the new ledger entry when it derives
  the balance. Two redemptions can therefore never both pass a stale
  balance check, and a product voucher can never collect two entries.

  If anything fails, nothing is written: the caller's session rolls back.

Settlement:
  record_payment_attempt() is the hook for the payment rail that pays
  providers out. No HTTP route calls it; the payout worker that talks to
  the bank calls it once per attempt, inside its own session, and commits.
  Settlement never touches the balance: every ledger entry counts as
  spent whatever its state.

Lock ordering:
  A product voucher spawned from a regular voucher spends the parent's
  money, so both rows are locked, parent first. Every path locks parents
  before children, which rules out lock-order deadlocks between a parent
  redemption and a child redemption.

Error semantics:
  - RedemptionDeniedError: the authorizer said no (permanent for this state)
  - InsufficientBalanceError: the balance at commit time is too low (retry)
  - Anything else propagates unchanged after rollback
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import (
    DenialReason,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidStateTransitionError,
    ProductNotFoundError,
    RedemptionDeniedError,
    TokenConfirmationRequiredError,
    TransactionNotFoundError,
    VoucherNotFoundError,
)
from app.models.product import Product
from app.models.voucher import ProductVoucher, Voucher, voucher_kind
from app.models.voucher_transaction import TransactionState, VoucherTransaction
from app.services import organization_service, voucher_service
from app.services.authorization_service import authorize_redemption
from app.services.balance_service import compute_balance
from app.services.notification_service import (
    PaymentCompleted,
    TransactionRecorded,
    queue_notification,
)
from app.timeutils import as_utc, utcnow

log = logging.getLogger(__name__)


async def _check_balance(db: AsyncSession, voucher_id: uuid.UUID, amount_cents: int) -> None:
    available = await compute_balance(db, voucher_id)
    if amount_cents > available:
        raise InsufficientBalanceError(
            voucher_id=voucher_id,
            requested_cents=amount_cents,
            available_cents=available,
        )


async def record_redemption(
    db: AsyncSession,
    identity_address: str,
    voucher_id: uuid.UUID,
    organization_id: uuid.UUID,
    amount_cents: int | None = None,
    product_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> VoucherTransaction:
    """
    Redeem a voucher at a provider and append the ledger entry.

    Amount defaults:
      - product voucher: the whole remaining value of the voucher
      - regular voucher paying for a product: the product price
      - regular voucher without a product: required

    Args:
        db: Database session (the caller commits).
        identity_address: Identity operating the provider's scanner.
        voucher_id: The voucher being redeemed.
        organization_id: The provider organization receiving the value.
        amount_cents: Positive amount to move out of the voucher.
        product_id: Product being paid for, if any.
        now: Evaluation instant; also stamped on the ledger entry.

    Returns:
        The new, pending VoucherTransaction.

    Raises:
        VoucherNotFoundError / ProductNotFoundError: Missing entities.
        RedemptionDeniedError: The authorizer refused, or the product does
            not belong to the receiving organization.
        InvalidAmountError: Missing or non-positive amount.
        InsufficientBalanceError: The voucher (or its parent) cannot cover the amount.
    """
    now = now or utcnow()

    # parent_id never changes, so reading it before the lock is safe
    parent_result = await db.execute(
        select(Voucher.parent_id).where(Voucher.id == voucher_id)
    )
    row = parent_result.first()
    if row is None:
        raise VoucherNotFoundError(voucher_id)
    parent_id = row.parent_id

    if parent_id is not None:
        await voucher_service.lock_voucher(db, parent_id)
    voucher = await voucher_service.lock_voucher(db, voucher_id)

    decision = await authorize_redemption(
        db, identity_address, voucher, organization_id=organization_id, now=now
    )
    if not decision.allowed:
        log.info(
            "Redemption of voucher %s at %s denied: %s",
            voucher.id, organization_id, decision.reason.value,
        )
        raise RedemptionDeniedError(decision.reason)

    product = None
    kind = voucher_kind(voucher)
    if isinstance(kind, ProductVoucher):
        if product_id is not None and product_id != kind.product_id:
            raise RedemptionDeniedError(DenialReason.NOT_PERMITTED)
        product_id = kind.product_id
        product = await db.get(Product, product_id)
        if amount_cents is None:
            amount_cents = await compute_balance(db, voucher.id)
    elif product_id is not None:
        product = await db.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        if product.organization_id != organization_id:
            raise RedemptionDeniedError(DenialReason.NOT_PERMITTED)
        if amount_cents is None:
            amount_cents = product.price_cents

    if amount_cents is None or amount_cents <= 0:
        raise InvalidAmountError("Redemption amount must be a positive number of cents")

    await _check_balance(db, voucher.id, amount_cents)
    if voucher.parent_id is not None:
        await _check_balance(db, voucher.parent_id, amount_cents)

    provider = await organization_service.get_organization(db, organization_id)

    txn = VoucherTransaction(
        voucher_id=voucher.id,
        organization_id=provider.id,
        product_id=product_id,
        address=provider.iban,
        amount_cents=amount_cents,
        state=TransactionState.PENDING,
        created_at=now,
    )
    db.add(txn)
    await db.flush()

    # Product vouchers spawned from a regular voucher report what the parent has left
    available = await compute_balance(db, voucher.parent_id or voucher.id)
    queue_notification(
        db,
        TransactionRecorded(
            transaction_id=txn.id,
            identity_address=voucher.identity_address,
            amount_cents=amount_cents,
            fund_name=voucher.fund.name,
            product_name=product.name if product is not None else None,
            available_cents=available,
        ),
    )
    log.info(
        "Recorded transaction %s: %d cents from voucher %s to %s",
        txn.id, amount_cents, voucher.id, provider.id,
    )
    return txn


async def redeem_token(
    db: AsyncSession,
    identity_address: str,
    address: str,
    organization_id: uuid.UUID,
    amount_cents: int | None = None,
    product_id: uuid.UUID | None = None,
    confirmed: bool = False,
    now: datetime | None = None,
) -> VoucherTransaction:
    """
    Redeem the voucher behind a scanned token address.

    Raises:
        TokenConfirmationRequiredError: The token is a confirming token and
            the caller did not assert confirmation.
        Everything record_redemption() raises.
    """
    token = await voucher_service.get_token(db, address)
    if token.need_confirmation and not confirmed:
        raise TokenConfirmationRequiredError()

    return await record_redemption(
        db,
        identity_address=identity_address,
        voucher_id=token.voucher_id,
        organization_id=organization_id,
        amount_cents=amount_cents,
        product_id=product_id,
        now=now,
    )


async def preview_redemption(
    db: AsyncSession,
    identity_address: str,
    address: str,
    now: datetime | None = None,
) -> dict:
    """
    What a provider sees after scanning a token: the authorization outcome
    and the live balance. Writes nothing.
    """
    now = now or utcnow()
    token = await voucher_service.get_token(db, address)
    voucher = await voucher_service.get_voucher(db, token.voucher_id)
    decision = await authorize_redemption(db, identity_address, voucher, now=now)

    return {
        "voucher_id": voucher.id,
        "fund_id": voucher.fund_id,
        "type": voucher.type,
        "product_id": voucher.product_id,
        "expire_at": as_utc(voucher.expire_at),
        "need_confirmation": token.need_confirmation,
        "allowed": decision.allowed,
        "reason": decision.reason,
        "organization_ids": sorted(decision.organization_ids, key=str),
        "available_cents": await compute_balance(db, voucher.id),
    }


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

async def record_payment_attempt(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    outcome: TransactionState,
    payment_id: str | None = None,
    now: datetime | None = None,
) -> VoucherTransaction:
    """
    Book one payout attempt for a ledger entry.

    Only the settlement fields change: attempts, last_attempt_at, payment_id
    and state. An outcome of PENDING means "try again later".

    Raises:
        TransactionNotFoundError: If the entry doesn't exist.
        InvalidStateTransitionError: If the entry already settled.
    """
    now = now or utcnow()
    result = await db.execute(
        select(VoucherTransaction)
        .where(VoucherTransaction.id == transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    txn = result.scalar_one_or_none()
    if txn is None:
        raise TransactionNotFoundError(transaction_id)

    if txn.state != TransactionState.PENDING:
        raise InvalidStateTransitionError(
            f"Transaction {transaction_id} already settled as {txn.state.value}"
        )

    txn.attempts += 1
    txn.last_attempt_at = now
    if payment_id is not None:
        txn.payment_id = payment_id
    txn.state = outcome
    await db.flush()

    if outcome == TransactionState.SUCCESS:
        queue_notification(
            db,
            PaymentCompleted(
                transaction_id=txn.id,
                provider_identity=txn.provider.identity_address,
                amount_cents=txn.amount_cents,
            ),
        )
    log.info(
        "Payment attempt %d for transaction %s: %s",
        txn.attempts, txn.id, outcome.value,
    )
    return txn
