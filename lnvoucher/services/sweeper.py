# lnvoucher/services/sweeper.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import and_, delete, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lnvoucher.models.voucher import VoucherRow
from lnvoucher.services.expiry import (
    CANCELLED_RETENTION,
    CLAIMED_RETENTION,
    EXPIRED_RETENTION,
    VoucherStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL = timedelta(minutes=5)


@dataclass(frozen=True)
class SweepResult:
    expired: int = 0
    purged: int = 0


class RetentionSweeper:
    """
    Lazily triggered cleanup, called from read paths instead of a scheduler.

    Both statements are bounded by their WHERE clause, so running them twice
    (or from two processes at once) is a no-op. The only in-process state is
    the debounce timestamp.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime],
        interval: timedelta = DEFAULT_CLEANUP_INTERVAL,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self.interval = interval
        self.last_run_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        return self.last_run_at is None or now - self.last_run_at >= self.interval

    async def maybe_run(self) -> SweepResult | None:
        now = self._clock()
        if not self.is_due(now):
            return None

        # claim the slot before awaiting so overlapping callers skip
        self.last_run_at = now

        try:
            return await self.run(now)
        except SQLAlchemyError:
            # a failed sweep must not fail the read that triggered it
            logger.exception("Lazy cleanup failed")
            return None

    async def run(self, now: datetime | None = None) -> SweepResult:
        now = now or self._clock()

        async with self._session_factory() as db:
            expired = await self._expire_stale(db, now)
            purged = await self._purge_old(db, now)
            await db.commit()

        if expired or purged:
            logger.info("Lazy cleanup: %s expired, %s removed", expired, purged)

        return SweepResult(expired=expired, purged=purged)

    async def expire_stale(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        async with self._session_factory() as db:
            count = await self._expire_stale(db, now)
            await db.commit()
        return count

    async def purge_old(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        async with self._session_factory() as db:
            count = await self._purge_old(db, now)
            await db.commit()
        if count:
            logger.info("Cleanup: removed %s old voucher(s)", count)
        return count

    @staticmethod
    async def _expire_stale(db: AsyncSession, now: datetime) -> int:
        # refreshes the cached status column only; redemption checks expires_at itself
        res = await db.execute(
            update(VoucherRow)
            .where(
                VoucherRow.status == VoucherStatus.ACTIVE.value,
                VoucherRow.claimed.is_(False),
                VoucherRow.expires_at <= now,
            )
            .values(status=VoucherStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        return int(res.rowcount or 0)

    @staticmethod
    async def _purge_old(db: AsyncSession, now: datetime) -> int:
        res = await db.execute(
            delete(VoucherRow)
            .where(
                or_(
                    and_(
                        VoucherRow.status == VoucherStatus.CLAIMED.value,
                        VoucherRow.claimed_at.is_not(None),
                        VoucherRow.claimed_at < now - CLAIMED_RETENTION,
                    ),
                    and_(
                        VoucherRow.status == VoucherStatus.CANCELLED.value,
                        VoucherRow.cancelled_at.is_not(None),
                        VoucherRow.cancelled_at < now - CANCELLED_RETENTION,
                    ),
                    and_(
                        VoucherRow.status == VoucherStatus.EXPIRED.value,
                        VoucherRow.expires_at < now - EXPIRED_RETENTION,
                    ),
                )
            )
            .execution_options(synchronize_session=False)
        )
        return int(res.rowcount or 0)
