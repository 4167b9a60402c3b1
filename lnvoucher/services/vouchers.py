# lnvoucher/services/vouchers.py
"""
Voucher lifecycle store.

Every state change (claim / unclaim / cancel) is a single conditional UPDATE
whose affected-row count is the success signal. The database is the only
synchronization point; nothing here caches voucher state in memory.
"""
from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Union

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lnvoucher.core.security import CredentialCipher
from lnvoucher.models.voucher import VoucherRow
from lnvoucher.services.expiry import (
    DEFAULT_EXPIRY_ID,
    EXPIRING_SOON_WINDOW,
    MAX_UNCLAIMED_PER_WALLET,
    VoucherStatus,
    derive_status,
    normalize_expiry_id,
    resolve,
)
from lnvoucher.services.sweeper import DEFAULT_CLEANUP_INTERVAL, RetentionSweeper

logger = logging.getLogger(__name__)

BTC = "BTC"
USD = "USD"

SLOW_QUERY_SECONDS = 1.0


# -------------------------
# Errors
# -------------------------
class VoucherError(Exception):
    pass


class ValidationError(VoucherError):
    pass


class WalletLimitExceeded(VoucherError):
    def __init__(self, wallet_id: str, limit: int):
        super().__init__(f"Maximum unclaimed vouchers ({limit}) reached for this wallet")
        self.wallet_id = wallet_id
        self.limit = limit


class StorageFailure(VoucherError):
    """
    outcome_unknown=False: the statement failed before commit, nothing was written.
    outcome_unknown=True: the commit itself failed, the write may or may not have landed.
    """

    def __init__(self, message: str, *, outcome_unknown: bool = False):
        super().__init__(message)
        self.outcome_unknown = outcome_unknown


class VoucherIntegrityError(StorageFailure):
    pass


# -------------------------
# Records
# -------------------------
@dataclass(frozen=True)
class BtcAmount:
    amount_sats: int

    wallet_currency = BTC
    usd_amount_cents = None


@dataclass(frozen=True)
class UsdAmount:
    amount_sats: int
    usd_amount_cents: int

    wallet_currency = USD


VoucherAmount = Union[BtcAmount, UsdAmount]


def build_amount(amount_sats, wallet_currency: str | None = BTC, usd_amount_cents=None) -> VoucherAmount:
    if isinstance(amount_sats, bool) or not isinstance(amount_sats, int) or amount_sats <= 0:
        raise ValidationError("Amount must be a positive number of sats")

    currency = (wallet_currency or BTC).upper()
    if currency == BTC:
        return BtcAmount(amount_sats=amount_sats)
    if currency == USD:
        if (
            isinstance(usd_amount_cents, bool)
            or not isinstance(usd_amount_cents, int)
            or usd_amount_cents <= 0
        ):
            raise ValidationError("USD vouchers require a positive usd_amount_cents")
        return UsdAmount(amount_sats=amount_sats, usd_amount_cents=usd_amount_cents)

    raise ValidationError("wallet_currency must be BTC or USD")


@dataclass
class Voucher:
    id: str
    amount: VoucherAmount
    wallet_id: str
    created_at: datetime
    expires_at: datetime
    expiry_id: str
    status: VoucherStatus
    claimed: bool = False
    claimed_at: datetime | None = None
    cancelled_at: datetime | None = None
    commission_percent: float = 0.0
    display_amount: str | None = None
    display_currency: str | None = None
    environment: str = "production"
    # plaintext only on the creation response; reads carry the encrypted form
    issuer_ref: str | None = field(default=None, repr=False)
    issuer_ref_encrypted: str | None = field(default=None, repr=False)

    @property
    def amount_sats(self) -> int:
        return self.amount.amount_sats

    @property
    def wallet_currency(self) -> str:
        return self.amount.wallet_currency

    @property
    def usd_amount_cents(self) -> int | None:
        return self.amount.usd_amount_cents

    @property
    def short_id(self) -> str:
        return self.id[:8].upper()

    def status_at(self, now: datetime) -> VoucherStatus:
        return derive_status(
            claimed=self.claimed,
            cancelled_at=self.cancelled_at,
            expires_at=self.expires_at,
            now=now,
        )

    def time_remaining(self, now: datetime) -> timedelta | None:
        if self.status != VoucherStatus.ACTIVE:
            return None
        return max(self.expires_at - now, timedelta(0))


@dataclass
class CreateVoucherOptions:
    expiry_id: str | None = None
    commission_percent: float = 0.0
    display_amount: str | None = None
    display_currency: str | None = None
    environment: str = "production"
    wallet_currency: str = BTC
    usd_amount_cents: int | None = None


@dataclass(frozen=True)
class VoucherStats:
    total: int = 0
    active: int = 0
    claimed: int = 0
    cancelled: int = 0
    expired: int = 0
    expiring_soon: int = 0
    total_btc: int = 0
    active_btc: int = 0
    total_usd: int = 0
    active_usd: int = 0


def utc_now() -> datetime:
    # naive UTC, matching the TIMESTAMP WITHOUT TIME ZONE columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_voucher_id() -> str:
    # 128 bits; a collision on insert is treated as fatal, not retried
    return secrets.token_hex(16)


def _short(voucher_id: str) -> str:
    return f"{voucher_id[:8]}..."


def _row_to_voucher(row: VoucherRow, now: datetime, issuer_ref: str | None = None) -> Voucher:
    if row.wallet_currency == USD:
        amount: VoucherAmount = UsdAmount(
            amount_sats=int(row.amount_sats),
            usd_amount_cents=int(row.usd_amount_cents or 0),
        )
    else:
        amount = BtcAmount(amount_sats=int(row.amount_sats))

    status = derive_status(
        claimed=bool(row.claimed),
        cancelled_at=row.cancelled_at,
        expires_at=row.expires_at,
        now=now,
    )

    return Voucher(
        id=row.id,
        amount=amount,
        wallet_id=row.wallet_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
        expiry_id=row.expiry_id,
        status=status,
        claimed=bool(row.claimed),
        claimed_at=row.claimed_at,
        cancelled_at=row.cancelled_at,
        commission_percent=float(row.commission_percent or 0),
        display_amount=row.display_amount,
        display_currency=row.display_currency,
        environment=row.environment or "production",
        issuer_ref=issuer_ref,
        issuer_ref_encrypted=row.issuer_ref_encrypted,
    )


def _redeemable(now: datetime):
    # claim predicate; evaluated against now, never against the cached status alone
    return and_(
        VoucherRow.status == VoucherStatus.ACTIVE.value,
        VoucherRow.claimed.is_(False),
        VoucherRow.expires_at > now,
    )


def _derived_active(now: datetime):
    """
    ACTIVE as derive_status sees it, used for the wallet cap and stats.

    At exactly expires_at a voucher is still ACTIVE here (and holds its cap
    slot) but is no longer claimable: _redeemable requires expires_at > now.
    A sweep at that instant marks it EXPIRED and releases the slot early.
    """
    return and_(
        VoucherRow.status == VoucherStatus.ACTIVE.value,
        VoucherRow.claimed.is_(False),
        VoucherRow.cancelled_at.is_(None),
        VoucherRow.expires_at >= now,
    )


def _derived_expired(now: datetime):
    return or_(
        VoucherRow.status == VoucherStatus.EXPIRED.value,
        and_(
            VoucherRow.status == VoucherStatus.ACTIVE.value,
            VoucherRow.claimed.is_(False),
            VoucherRow.cancelled_at.is_(None),
            VoucherRow.expires_at < now,
        ),
    )


def _count_if(cond):
    return func.coalesce(func.sum(case((cond, 1), else_=0)), 0)


class VoucherStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: CredentialCipher,
        *,
        clock: Callable[[], datetime] = utc_now,
        max_unclaimed_per_wallet: int = MAX_UNCLAIMED_PER_WALLET,
        default_expiry_id: str = DEFAULT_EXPIRY_ID,
        strict_wallet_cap: bool = True,
        cleanup_interval: timedelta = DEFAULT_CLEANUP_INTERVAL,
        sweeper: RetentionSweeper | None = None,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self._clock = clock
        self.max_unclaimed_per_wallet = max_unclaimed_per_wallet
        self.default_expiry_id = default_expiry_id
        self.strict_wallet_cap = strict_wallet_cap
        self.sweeper = sweeper or RetentionSweeper(
            session_factory,
            clock=clock,
            interval=cleanup_interval,
        )

    def now(self) -> datetime:
        return self._clock()

    # -------------------------
    # helpers
    # -------------------------
    async def _timed(self, db: AsyncSession, stmt, label: str):
        start = time.monotonic()
        res = await db.execute(stmt)
        elapsed = time.monotonic() - start
        if elapsed > SLOW_QUERY_SECONDS:
            logger.warning("Slow query %s (%.0fms)", label, elapsed * 1000)
        return res

    async def _conditional_write(self, label: str, voucher_id: str, stmt) -> bool:
        """Run one conditional UPDATE in its own transaction; True iff it changed a row."""
        async with self._session_factory() as db:
            try:
                res = await self._timed(db, stmt, label)
            except SQLAlchemyError as e:
                await db.rollback()
                logger.exception("%s failed for %s", label, _short(voucher_id))
                raise StorageFailure(f"{label} failed", outcome_unknown=False) from e

            try:
                await db.commit()
            except SQLAlchemyError as e:
                logger.exception("%s commit failed for %s", label, _short(voucher_id))
                raise StorageFailure(f"{label} commit failed", outcome_unknown=True) from e

        return (res.rowcount or 0) > 0

    async def _count_unclaimed(self, db: AsyncSession, wallet_id: str, now: datetime) -> int:
        res = await self._timed(
            db,
            select(func.count())
            .select_from(VoucherRow)
            .where(VoucherRow.wallet_id == wallet_id, _derived_active(now)),
            "count_unclaimed",
        )
        return int(res.scalar_one() or 0)

    async def _lock_wallet(self, db: AsyncSession, wallet_id: str) -> None:
        # Serializes cap check + insert per wallet for the life of the transaction.
        # Other backends keep the soft (read-then-act) cap.
        if not self.strict_wallet_cap:
            return
        if db.get_bind().dialect.name != "postgresql":
            return
        await db.execute(select(func.pg_advisory_xact_lock(func.hashtext(wallet_id))))

    async def _sweep(self) -> None:
        await self.sweeper.maybe_run()

    # -------------------------
    # create
    # -------------------------
    async def create_voucher(
        self,
        amount_sats: int,
        issuer_ref: str,
        wallet_id: str,
        options: CreateVoucherOptions | None = None,
    ) -> Voucher:
        options = options or CreateVoucherOptions()

        amount = build_amount(amount_sats, options.wallet_currency, options.usd_amount_cents)
        if not wallet_id:
            raise ValidationError("wallet_id is required")
        if not issuer_ref:
            raise ValidationError("issuer credential is required")

        now = self._clock()
        expiry_id = normalize_expiry_id(options.expiry_id, self.default_expiry_id)
        expires_at = now + resolve(expiry_id, self.default_expiry_id)
        voucher_id = generate_voucher_id()

        row = VoucherRow(
            id=voucher_id,
            amount_sats=amount.amount_sats,
            wallet_id=wallet_id,
            issuer_ref_encrypted=self._cipher.encrypt(issuer_ref),
            status=VoucherStatus.ACTIVE.value,
            claimed=False,
            created_at=now,
            expires_at=expires_at,
            expiry_id=expiry_id,
            display_amount=options.display_amount or None,
            display_currency=options.display_currency or None,
            commission_percent=Decimal(str(options.commission_percent or 0)),
            environment=options.environment or "production",
            wallet_currency=amount.wallet_currency,
            usd_amount_cents=amount.usd_amount_cents,
        )

        async with self._session_factory() as db:
            try:
                await self._lock_wallet(db, wallet_id)
                unclaimed = await self._count_unclaimed(db, wallet_id, now)
            except SQLAlchemyError as e:
                await db.rollback()
                logger.exception("create_voucher: cap check failed for wallet %s", wallet_id)
                raise StorageFailure("create_voucher cap check failed") from e

            if unclaimed >= self.max_unclaimed_per_wallet:
                await db.rollback()
                raise WalletLimitExceeded(wallet_id, self.max_unclaimed_per_wallet)

            db.add(row)
            try:
                await db.flush()
            except IntegrityError as e:
                await db.rollback()
                logger.error("create_voucher: integrity error inserting %s", _short(voucher_id))
                raise VoucherIntegrityError("Voucher insert violated an integrity constraint") from e
            except SQLAlchemyError as e:
                await db.rollback()
                logger.exception("create_voucher: insert failed")
                raise StorageFailure("create_voucher insert failed") from e

            try:
                await db.commit()
            except SQLAlchemyError as e:
                logger.exception("create_voucher: commit failed for %s", _short(voucher_id))
                raise StorageFailure("create_voucher commit failed", outcome_unknown=True) from e

        # the caller's plaintext goes back as-is, no decrypt round trip
        voucher = _row_to_voucher(row, now, issuer_ref=issuer_ref)

        extras = []
        if amount.wallet_currency == USD:
            extras.append(f"[USD: ${amount.usd_amount_cents / 100:.2f}]")
        if options.commission_percent:
            extras.append(f"({options.commission_percent}% commission)")
        if voucher.environment != "production":
            extras.append(f"[{voucher.environment}]")
        logger.info(
            "Created voucher %s for %s sats, expires %s %s",
            voucher_id,
            amount.amount_sats,
            expires_at.isoformat(),
            " ".join(extras),
        )
        return voucher

    # -------------------------
    # reads
    # -------------------------
    async def get_unclaimed_count_by_wallet(self, wallet_id: str) -> int:
        try:
            async with self._session_factory() as db:
                return await self._count_unclaimed(db, wallet_id, self._clock())
        except SQLAlchemyError:
            logger.exception("get_unclaimed_count_by_wallet failed")
            return 0

    async def get_voucher(self, voucher_id: str) -> Voucher | None:
        """
        The voucher only if it can be redeemed right now.
        Not found, claimed, cancelled and expired all come back as None.
        """
        await self._sweep()

        now = self._clock()
        try:
            async with self._session_factory() as db:
                res = await self._timed(
                    db,
                    select(VoucherRow).where(VoucherRow.id == voucher_id, _redeemable(now)),
                    "get_voucher",
                )
                row = res.scalar_one_or_none()
        except SQLAlchemyError:
            logger.exception("get_voucher failed")
            return None

        if row is None:
            logger.info("Voucher not found or not active: %s", _short(voucher_id))
            return None

        return _row_to_voucher(row, now)

    async def get_voucher_with_status(self, voucher_id: str) -> Voucher | None:
        now = self._clock()
        try:
            async with self._session_factory() as db:
                row = await db.get(VoucherRow, voucher_id)
        except SQLAlchemyError:
            logger.exception("get_voucher_with_status failed")
            return None

        if row is None:
            return None
        return _row_to_voucher(row, now)

    async def get_all_vouchers(self) -> list[Voucher]:
        """Full history, newest first, status recomputed against now."""
        await self._sweep()

        now = self._clock()
        try:
            async with self._session_factory() as db:
                res = await self._timed(
                    db,
                    select(VoucherRow).order_by(VoucherRow.created_at.desc(), VoucherRow.id),
                    "get_all_vouchers",
                )
                rows = res.scalars().all()
        except SQLAlchemyError:
            logger.exception("get_all_vouchers failed")
            return []

        return [_row_to_voucher(r, now) for r in rows]

    async def get_stats(self) -> VoucherStats:
        await self._sweep()

        now = self._clock()
        is_usd = VoucherRow.wallet_currency == USD
        is_btc = VoucherRow.wallet_currency == BTC
        active = _derived_active(now)

        stmt = select(
            func.count().label("total"),
            _count_if(active).label("active"),
            _count_if(VoucherRow.claimed.is_(True)).label("claimed"),
            _count_if(
                and_(VoucherRow.claimed.is_(False), VoucherRow.cancelled_at.is_not(None))
            ).label("cancelled"),
            _count_if(_derived_expired(now)).label("expired"),
            _count_if(and_(active, VoucherRow.expires_at < now + EXPIRING_SOON_WINDOW)).label(
                "expiring_soon"
            ),
            _count_if(is_btc).label("total_btc"),
            _count_if(and_(is_btc, active)).label("active_btc"),
            _count_if(is_usd).label("total_usd"),
            _count_if(and_(is_usd, active)).label("active_usd"),
        ).select_from(VoucherRow)

        try:
            async with self._session_factory() as db:
                res = await self._timed(db, stmt, "get_stats")
                r = res.one()
        except SQLAlchemyError:
            logger.exception("get_stats failed")
            return VoucherStats()

        return VoucherStats(**{k: int(v or 0) for k, v in r._mapping.items()})

    # -------------------------
    # state transitions
    # -------------------------
    async def claim_voucher(self, voucher_id: str) -> bool:
        """Single compare-and-swap; True only for the call that performed ACTIVE -> CLAIMED."""
        now = self._clock()
        stmt = (
            update(VoucherRow)
            .where(VoucherRow.id == voucher_id, _redeemable(now))
            .values(claimed=True, claimed_at=now, status=VoucherStatus.CLAIMED.value)
            .execution_options(synchronize_session=False)
        )

        ok = await self._conditional_write("claim_voucher", voucher_id, stmt)
        if ok:
            logger.info("Voucher claimed: %s", _short(voucher_id))
        else:
            logger.info("Cannot claim voucher: %s", _short(voucher_id))
        return ok

    async def unclaim_voucher(self, voucher_id: str) -> bool:
        """
        Roll a claim back after the downstream payment failed.
        Refused once expires_at has passed; the voucher then simply expires.
        """
        now = self._clock()
        stmt = (
            update(VoucherRow)
            .where(
                VoucherRow.id == voucher_id,
                VoucherRow.status == VoucherStatus.CLAIMED.value,
                VoucherRow.expires_at > now,
            )
            .values(claimed=False, claimed_at=None, status=VoucherStatus.ACTIVE.value)
            .execution_options(synchronize_session=False)
        )

        ok = await self._conditional_write("unclaim_voucher", voucher_id, stmt)
        if ok:
            logger.info("Voucher unclaimed (payment failed): %s", _short(voucher_id))
        else:
            logger.info("Cannot unclaim voucher: %s", _short(voucher_id))
        return ok

    async def cancel_voucher(self, voucher_id: str) -> bool:
        now = self._clock()
        stmt = (
            update(VoucherRow)
            .where(
                VoucherRow.id == voucher_id,
                VoucherRow.status == VoucherStatus.ACTIVE.value,
                VoucherRow.claimed.is_(False),
            )
            .values(cancelled_at=now, status=VoucherStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )

        ok = await self._conditional_write("cancel_voucher", voucher_id, stmt)
        if ok:
            logger.info("Voucher cancelled: %s", _short(voucher_id))
        else:
            logger.info("Cannot cancel voucher: %s", _short(voucher_id))
        return ok
