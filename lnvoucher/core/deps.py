from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from lnvoucher.core.config import settings
from lnvoucher.core.db import SessionLocal
from lnvoucher.core.security import CredentialCipher, TokenError, decode_token
from lnvoucher.services.redemption import RedemptionService
from lnvoucher.services.vouchers import VoucherStore

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


@lru_cache
def get_cipher() -> CredentialCipher:
    return CredentialCipher()


@lru_cache
def get_voucher_store() -> VoucherStore:
    # one per process: the sweeper's debounce timestamp lives here
    return VoucherStore(
        SessionLocal,
        get_cipher(),
        max_unclaimed_per_wallet=settings.VOUCHER_MAX_UNCLAIMED_PER_WALLET,
        default_expiry_id=settings.VOUCHER_DEFAULT_EXPIRY_ID,
        strict_wallet_cap=settings.VOUCHER_STRICT_WALLET_CAP,
        cleanup_interval=timedelta(seconds=settings.VOUCHER_CLEANUP_INTERVAL_SECONDS),
    )


def get_redemption_service(
    store: VoucherStore = Depends(get_voucher_store),
    cipher: CredentialCipher = Depends(get_cipher),
) -> RedemptionService:
    return RedemptionService(store, cipher)


def require_admin(token: str = Depends(oauth2_scheme)) -> dict:
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    try:
        payload = decode_token(token)
    except TokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    if payload.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return payload
