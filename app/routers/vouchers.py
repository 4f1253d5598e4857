"""
Vouchers router — the holder's side.

All endpoints are scoped to the authenticated identity:
  POST /vouchers                                 — Claim the entitlement of a fund
  GET  /vouchers                                 — List own vouchers
  GET  /vouchers/{voucher_id}                    — One voucher with its live balance
  GET  /vouchers/{voucher_id}/transactions       — Ledger of one voucher (with filters)
  POST /vouchers/{voucher_id}/product-vouchers   — Reserve a product
  POST /vouchers/{voucher_id}/email              — Mail the share-safe code to the holder
  POST /vouchers/{voucher_id}/share              — Share a product voucher with its provider
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_identity, get_transaction_filter
from app.schemas.transaction import TransactionFilter, TransactionPage
from app.schemas.voucher import (
    ProductVoucherRequest,
    VoucherCreateRequest,
    VoucherMailResponse,
    VoucherResponse,
    VoucherShareRequest,
)
from app.services import transaction_query_service, voucher_service
from app.services.balance_service import compute_balance
from app.services.transaction_query_service import VoucherScope

router = APIRouter()


@router.post(
    "",
    response_model=VoucherResponse,
    status_code=201,
    summary="Claim a fund entitlement",
)
async def create_voucher(
    request: VoucherCreateRequest,
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """
    Grant the caller its voucher for an active fund.

    One regular voucher per identity and fund; a second claim returns 409.
    """
    voucher = await voucher_service.create_voucher(db, request.fund_id, identity)
    return voucher_service.voucher_summary(voucher, voucher.amount_cents)


@router.get(
    "",
    response_model=list[VoucherResponse],
    summary="List own vouchers",
)
async def list_vouchers(
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    return await voucher_service.list_vouchers_for_identity(db, identity)


@router.get(
    "/{voucher_id}",
    response_model=VoucherResponse,
    summary="Get a voucher",
)
async def get_voucher(
    voucher_id: uuid.UUID,
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """The available amount is derived from the ledger at request time."""
    voucher = await voucher_service.get_voucher_for_identity(db, voucher_id, identity)
    available = await compute_balance(db, voucher.id)
    return voucher_service.voucher_summary(voucher, available)


@router.get(
    "/{voucher_id}/transactions",
    response_model=TransactionPage,
    summary="List the transactions of a voucher",
)
async def list_voucher_transactions(
    voucher_id: uuid.UUID,
    filters: TransactionFilter = Depends(get_transaction_filter),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    await voucher_service.get_voucher_for_identity(db, voucher_id, identity)
    return await transaction_query_service.search_transactions(
        db, filters, VoucherScope(voucher_id), limit=limit, offset=offset
    )


@router.post(
    "/{voucher_id}/product-vouchers",
    response_model=VoucherResponse,
    status_code=201,
    summary="Reserve a product with a voucher",
)
async def create_product_voucher(
    voucher_id: uuid.UUID,
    request: ProductVoucherRequest,
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """
    Spawn a product voucher worth the product price.

    Its spending counts against the parent voucher's balance.
    """
    child = await voucher_service.spawn_product_voucher(
        db, identity, voucher_id, request.product_id
    )
    return voucher_service.voucher_summary(child, child.amount_cents)


@router.post(
    "/{voucher_id}/email",
    response_model=VoucherMailResponse,
    status_code=202,
    summary="Mail the voucher code to its holder",
)
async def email_voucher(
    voucher_id: uuid.UUID,
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Sends the share-safe code, never the confirming one."""
    voucher = await voucher_service.send_voucher_email(db, identity, voucher_id)
    return {"voucher_id": voucher.id, "queued": 1}


@router.post(
    "/{voucher_id}/share",
    response_model=VoucherMailResponse,
    status_code=202,
    summary="Share a product voucher with the product's organization",
)
async def share_voucher(
    voucher_id: uuid.UUID,
    request: VoucherShareRequest,
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """
    - **409 voucher_not_shareable**: only product vouchers can be shared
    """
    voucher = await voucher_service.share_product_voucher(
        db, identity, voucher_id, request.reason, send_copy=request.send_copy
    )
    return {"voucher_id": voucher.id, "queued": 2 if request.send_copy else 1}
