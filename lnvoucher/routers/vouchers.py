# lnvoucher/routers/vouchers.py
from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException

from lnvoucher.core.deps import get_redemption_service, get_voucher_store
from lnvoucher.schemas.vouchers import (
    CreateVoucherIn,
    RedeemVoucherIn,
    RedeemVoucherOut,
    VoucherOut,
)
from lnvoucher.services.redemption import (
    InvalidInvoice,
    NotRedeemable,
    PaymentFailed,
    RedemptionService,
)
from lnvoucher.services.vouchers import (
    CreateVoucherOptions,
    StorageFailure,
    ValidationError,
    Voucher,
    VoucherStore,
    WalletLimitExceeded,
)

router = APIRouter(prefix="/vouchers", tags=["Vouchers"])


def voucher_out(v: Voucher) -> VoucherOut:
    return VoucherOut(
        id=v.id,
        amount_sats=v.amount_sats,
        wallet_currency=v.wallet_currency,
        usd_amount_cents=v.usd_amount_cents,
        created_at=v.created_at,
        expires_at=v.expires_at,
        expiry_id=v.expiry_id,
        status=v.status.value,
    )


@router.post("", response_model=VoucherOut)
async def create_voucher(
    body: CreateVoucherIn = Body(...),
    store: VoucherStore = Depends(get_voucher_store),
):
    options = CreateVoucherOptions(
        expiry_id=body.expiry_id,
        commission_percent=body.commission_percent,
        display_amount=body.display_amount,
        display_currency=body.display_currency,
        environment=body.environment,
        wallet_currency=body.wallet_currency,
        usd_amount_cents=getattr(body, "usd_amount_cents", None),
    )

    try:
        voucher = await store.create_voucher(body.amount_sats, body.api_key, body.wallet_id, options)
    except (ValidationError, WalletLimitExceeded) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageFailure:
        raise HTTPException(status_code=503, detail="Failed to create voucher")

    return voucher_out(voucher)


@router.get("/{voucher_id}", response_model=VoucherOut)
async def get_redeemable_voucher(
    voucher_id: str,
    store: VoucherStore = Depends(get_voucher_store),
):
    voucher = await store.get_voucher(voucher_id)
    if not voucher:
        # not found / claimed / cancelled / expired look the same here
        raise HTTPException(status_code=404, detail="Voucher not found or expired")
    return voucher_out(voucher)


@router.post("/{voucher_id}/redeem", response_model=RedeemVoucherOut)
async def redeem_voucher(
    voucher_id: str,
    body: RedeemVoucherIn,
    service: RedemptionService = Depends(get_redemption_service),
):
    try:
        result = await service.redeem(voucher_id, body.invoice)
    except NotRedeemable as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidInvoice as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PaymentFailed as e:
        raise HTTPException(status_code=502, detail=f"Payment failed: {e}")
    except StorageFailure:
        raise HTTPException(status_code=503, detail="Voucher storage unavailable")

    return RedeemVoucherOut(
        voucher_id=result.voucher_id,
        amount_sats=result.amount_sats,
        payment_status=result.payment_status,
    )
