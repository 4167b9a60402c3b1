# lnvoucher/schemas/vouchers.py
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class _CreateVoucherBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_sats: int = Field(..., ge=1)
    api_key: str = Field(..., min_length=1)
    wallet_id: str = Field(..., min_length=1, max_length=128)
    expiry_id: str | None = None
    commission_percent: float = Field(0, ge=0, le=100)
    display_amount: str | None = Field(default=None, max_length=50)
    display_currency: str | None = Field(default=None, max_length=10)
    environment: Literal["production", "staging"] = "production"


class CreateBtcVoucherIn(_CreateVoucherBase):
    wallet_currency: Literal["BTC"] = "BTC"


class CreateUsdVoucherIn(_CreateVoucherBase):
    wallet_currency: Literal["USD"]
    usd_amount_cents: int = Field(..., ge=1)


def _currency_tag(v) -> str:
    # wallet_currency may be omitted, BTC is the default
    if isinstance(v, dict):
        return v.get("wallet_currency") or "BTC"
    return getattr(v, "wallet_currency", None) or "BTC"


CreateVoucherIn = Annotated[
    Union[
        Annotated[CreateBtcVoucherIn, Tag("BTC")],
        Annotated[CreateUsdVoucherIn, Tag("USD")],
    ],
    Discriminator(_currency_tag),
]


class VoucherOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    amount_sats: int
    wallet_currency: str
    usd_amount_cents: int | None
    created_at: datetime
    expires_at: datetime
    expiry_id: str
    status: str


class VoucherDetailOut(VoucherOut):
    short_id: str
    claimed: bool
    claimed_at: datetime | None
    cancelled_at: datetime | None
    commission_percent: float
    display_amount: str | None
    display_currency: str | None
    environment: str
    time_remaining_ms: int | None = None


class VoucherStatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    active: int
    claimed: int
    cancelled: int
    expired: int
    expiring_soon: int
    total_btc: int = 0
    active_btc: int = 0
    total_usd: int = 0
    active_usd: int = 0


class VoucherListOut(BaseModel):
    items: list[VoucherDetailOut]
    count: int
    stats: VoucherStatsOut


class RedeemVoucherIn(BaseModel):
    invoice: str = Field(..., min_length=1)


class RedeemVoucherOut(BaseModel):
    status: str = "OK"
    voucher_id: str
    amount_sats: int
    payment_status: str


class CancelVoucherOut(BaseModel):
    id: str
    cancelled: bool


# LNURL-withdraw (LUD-03) wire models, camelCase on the wire
class LnurlWithdrawOut(BaseModel):
    tag: Literal["withdrawRequest"] = "withdrawRequest"
    callback: str
    k1: str
    minWithdrawable: int
    maxWithdrawable: int
    defaultDescription: str


class LnurlStatusOut(BaseModel):
    status: Literal["OK", "ERROR"]
    reason: str | None = None
