# lnvoucher/routers/admin_vouchers.py
from __future__ import annotations

from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from lnvoucher.core.deps import get_voucher_store, require_admin
from lnvoucher.schemas.vouchers import (
    CancelVoucherOut,
    VoucherDetailOut,
    VoucherListOut,
    VoucherStatsOut,
)
from lnvoucher.services.expiry import EXPIRING_SOON_WINDOW, VoucherStatus
from lnvoucher.services.vouchers import StorageFailure, Voucher, VoucherStore

router = APIRouter(prefix="/admin/vouchers", tags=["Admin - Vouchers"])


def voucher_detail_out(v: Voucher, now: datetime) -> VoucherDetailOut:
    remaining = v.time_remaining(now)
    return VoucherDetailOut(
        id=v.id,
        short_id=v.short_id,
        amount_sats=v.amount_sats,
        wallet_currency=v.wallet_currency,
        usd_amount_cents=v.usd_amount_cents,
        created_at=v.created_at,
        expires_at=v.expires_at,
        expiry_id=v.expiry_id,
        status=v.status.value,
        claimed=v.claimed,
        claimed_at=v.claimed_at,
        cancelled_at=v.cancelled_at,
        commission_percent=v.commission_percent,
        display_amount=v.display_amount,
        display_currency=v.display_currency,
        environment=v.environment,
        time_remaining_ms=int(remaining.total_seconds() * 1000) if remaining is not None else None,
    )


def summarize(vouchers: list[Voucher], now: datetime) -> VoucherStatsOut:
    counts = {s: 0 for s in VoucherStatus}
    for v in vouchers:
        counts[v.status] += 1

    return VoucherStatsOut(
        total=len(vouchers),
        active=counts[VoucherStatus.ACTIVE],
        claimed=counts[VoucherStatus.CLAIMED],
        cancelled=counts[VoucherStatus.CANCELLED],
        expired=counts[VoucherStatus.EXPIRED],
        expiring_soon=sum(
            1
            for v in vouchers
            if v.status == VoucherStatus.ACTIVE and v.expires_at - now < EXPIRING_SOON_WINDOW
        ),
        total_btc=sum(1 for v in vouchers if v.wallet_currency == "BTC"),
        active_btc=sum(1 for v in vouchers if v.wallet_currency == "BTC" and v.status == VoucherStatus.ACTIVE),
        total_usd=sum(1 for v in vouchers if v.wallet_currency == "USD"),
        active_usd=sum(1 for v in vouchers if v.wallet_currency == "USD" and v.status == VoucherStatus.ACTIVE),
    )


@router.get("", response_model=VoucherListOut)
async def list_vouchers(
    status: str | None = Query(default=None),
    store: VoucherStore = Depends(get_voucher_store),
    admin=Depends(require_admin),
):
    vouchers = await store.get_all_vouchers()
    now = store.now()

    items = vouchers
    if status and status.lower() != "all":
        wanted = status.upper()
        if wanted not in VoucherStatus.__members__:
            raise HTTPException(status_code=400, detail=f"Unknown status filter: {status}")
        items = [v for v in vouchers if v.status.value == wanted]

    out = [voucher_detail_out(v, now) for v in items]
    return VoucherListOut(items=out, count=len(out), stats=summarize(vouchers, now))


@router.get("/stats", response_model=VoucherStatsOut)
async def voucher_stats(
    store: VoucherStore = Depends(get_voucher_store),
    admin=Depends(require_admin),
):
    stats = await store.get_stats()
    return VoucherStatsOut(**asdict(stats))


@router.get("/{voucher_id}", response_model=VoucherDetailOut)
async def get_voucher(
    voucher_id: str,
    store: VoucherStore = Depends(get_voucher_store),
    admin=Depends(require_admin),
):
    voucher = await store.get_voucher_with_status(voucher_id)
    if not voucher:
        raise HTTPException(status_code=404, detail="Voucher not found")
    return voucher_detail_out(voucher, store.now())


@router.post("/{voucher_id}/cancel", response_model=CancelVoucherOut)
async def cancel_voucher(
    voucher_id: str,
    store: VoucherStore = Depends(get_voucher_store),
    admin=Depends(require_admin),
):
    try:
        ok = await store.cancel_voucher(voucher_id)
    except StorageFailure:
        raise HTTPException(status_code=503, detail="Voucher storage unavailable")

    if not ok:
        raise HTTPException(status_code=409, detail="Voucher cannot be cancelled (claimed, cancelled or not found)")
    return CancelVoucherOut(id=voucher_id, cancelled=True)
