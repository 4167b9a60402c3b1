# lnvoucher/routers/lnurl.py
"""
LNURL-withdraw (LUD-03) for vouchers.

A wallet scans the voucher QR, GETs the withdraw request, then calls back with
an invoice for exactly the voucher amount. Per LNURL, every answer is HTTP 200
with errors reported as {"status": "ERROR", "reason": ...}.
"""
from __future__ import annotations

import logging
from typing import Union

from fastapi import APIRouter, Depends, Request, Response

from lnvoucher.core.config import settings
from lnvoucher.core.deps import get_redemption_service, get_voucher_store
from lnvoucher.schemas.vouchers import LnurlStatusOut, LnurlWithdrawOut
from lnvoucher.services.redemption import (
    InvalidInvoice,
    NotRedeemable,
    PaymentFailed,
    RedemptionService,
)
from lnvoucher.services.vouchers import StorageFailure, VoucherStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lnurl", tags=["LNURL"])


def _error(reason: str) -> LnurlStatusOut:
    return LnurlStatusOut(status="ERROR", reason=reason)


def _allow_any_origin(response: Response) -> None:
    # web wallets call these from their own origin
    response.headers["Access-Control-Allow-Origin"] = "*"


def _callback_url(request: Request) -> str:
    if settings.PUBLIC_BASE_URL:
        return f"{settings.PUBLIC_BASE_URL.rstrip('/')}{router.prefix}/callback"
    return str(request.url_for("lnurl_callback"))


def payment_failure_reason(message: str) -> str:
    lowered = message.lower()
    if "balance" in lowered or "insufficient" in lowered:
        return "Insufficient balance in voucher wallet"
    if "expired" in lowered:
        return "Invoice has expired"
    if "already paid" in lowered or "already_paid" in lowered:
        return "Invoice has already been paid"
    if "amount" in lowered:
        return "Invoice amount does not match voucher"
    return "Failed to process voucher withdrawal"


@router.get("/callback", response_model=LnurlStatusOut, response_model_exclude_none=True)
async def lnurl_callback(
    response: Response,
    k1: str | None = None,
    pr: str | None = None,
    service: RedemptionService = Depends(get_redemption_service),
):
    _allow_any_origin(response)

    if not k1:
        return _error("k1 parameter is required")
    if not pr:
        return _error("Payment request (pr) is required")

    try:
        await service.redeem(k1, pr)
    except (NotRedeemable, InvalidInvoice) as e:
        logger.info("LNURL callback refused for %s...: %s", k1[:8], e)
        return _error(str(e))
    except PaymentFailed as e:
        return _error(payment_failure_reason(str(e)))
    except StorageFailure:
        logger.exception("LNURL callback storage failure for %s...", k1[:8])
        return _error("Failed to process voucher withdrawal")

    return LnurlStatusOut(status="OK")


@router.get(
    "/{voucher_id}/{amount}",
    response_model=Union[LnurlWithdrawOut, LnurlStatusOut],
    response_model_exclude_none=True,
)
async def lnurl_withdraw_request(
    voucher_id: str,
    amount: str,
    request: Request,
    response: Response,
    store: VoucherStore = Depends(get_voucher_store),
):
    _allow_any_origin(response)

    try:
        amount_sats = int(amount)
    except ValueError:
        amount_sats = 0
    if amount_sats <= 0:
        return _error("Invalid amount")

    voucher = await store.get_voucher(voucher_id)
    if voucher is None:
        return _error("Voucher not found or expired")

    if voucher.amount_sats != amount_sats:
        return _error(f"Amount mismatch. Expected {voucher.amount_sats} sats")

    msat = amount_sats * 1000
    return LnurlWithdrawOut(
        callback=_callback_url(request),
        k1=voucher.id,
        minWithdrawable=msat,
        maxWithdrawable=msat,
        defaultDescription=f"BlinkPOS Voucher: {amount_sats} sats",
    )
