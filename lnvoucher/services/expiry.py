# lnvoucher/services/expiry.py
"""
Expiry presets, retention windows and the derived voucher status.

Pure data and pure functions; nothing here touches the database.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum


class VoucherStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLAIMED = "CLAIMED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class ExpiryPreset:
    id: str
    label: str
    duration: timedelta


EXPIRY_PRESETS: tuple[ExpiryPreset, ...] = (
    # Legacy, only so already-issued vouchers keep resolving
    ExpiryPreset("15m", "15 min", timedelta(minutes=15)),
    ExpiryPreset("1h", "1 hour", timedelta(hours=1)),
    # Offered for new vouchers
    ExpiryPreset("24h", "24 hours", timedelta(hours=24)),
    ExpiryPreset("72h", "72 hours", timedelta(hours=72)),
    ExpiryPreset("7d", "7 days", timedelta(days=7)),
    ExpiryPreset("30d", "30 days", timedelta(days=30)),
    ExpiryPreset("90d", "90 days", timedelta(days=90)),
    ExpiryPreset("6mo", "6 months", timedelta(days=180)),
)

LEGACY_EXPIRY_IDS: frozenset[str] = frozenset({"15m", "1h"})

DEFAULT_EXPIRY_ID = "24h"

MAX_UNCLAIMED_PER_WALLET = 1000

CLAIMED_RETENTION = timedelta(days=30)
CANCELLED_RETENTION = timedelta(days=30)
# grace period so expired vouchers stay browsable for a while
EXPIRED_RETENTION = timedelta(days=7)

EXPIRING_SOON_WINDOW = timedelta(hours=24)

_BY_ID: dict[str, ExpiryPreset] = {p.id: p for p in EXPIRY_PRESETS}


def get_expiry_preset(expiry_id: str | None) -> ExpiryPreset | None:
    if not expiry_id:
        return None
    return _BY_ID.get(expiry_id)


def is_valid_expiry_id(expiry_id: str | None) -> bool:
    return get_expiry_preset(expiry_id) is not None


def get_default_expiry(default_id: str = DEFAULT_EXPIRY_ID) -> ExpiryPreset:
    # a misconfigured default falls back to the built-in one
    return _BY_ID.get(default_id) or _BY_ID[DEFAULT_EXPIRY_ID]


def normalize_expiry_id(expiry_id: str | None, default_id: str = DEFAULT_EXPIRY_ID) -> str:
    preset = get_expiry_preset(expiry_id)
    return preset.id if preset else get_default_expiry(default_id).id


def resolve(expiry_id: str | None, default_id: str = DEFAULT_EXPIRY_ID) -> timedelta:
    """Duration for a preset id. Unknown or missing ids degrade to the default, never raise."""
    preset = get_expiry_preset(expiry_id)
    if preset:
        return preset.duration
    return get_default_expiry(default_id).duration


def derive_status(
    *,
    claimed: bool,
    cancelled_at: datetime | None,
    expires_at: datetime | None,
    now: datetime,
) -> VoucherStatus:
    if claimed:
        return VoucherStatus.CLAIMED
    if cancelled_at is not None:
        return VoucherStatus.CANCELLED
    if expires_at is not None and now > expires_at:
        return VoucherStatus.EXPIRED
    return VoucherStatus.ACTIVE
