"""
Tests for lnvoucher.services.sweeper: lazy expiry refresh and retention purge.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select

from lnvoucher.models.voucher import VoucherRow
from lnvoucher.services.sweeper import RetentionSweeper, SweepResult
from lnvoucher.services.vouchers import CreateVoucherOptions


async def _statuses(session_factory) -> dict[str, str]:
    async with session_factory() as db:
        res = await db.execute(select(VoucherRow.id, VoucherRow.status))
        return {r[0]: r[1] for r in res.all()}


class TestDebounce:
    async def test_first_call_runs_then_debounces(self, session_factory, clock):
        sweeper = RetentionSweeper(session_factory, clock=clock, interval=timedelta(minutes=5))

        assert await sweeper.maybe_run() == SweepResult()
        assert sweeper.last_run_at == clock.now

        clock.advance(minutes=4, seconds=59)
        assert await sweeper.maybe_run() is None

        clock.advance(seconds=1)
        assert await sweeper.maybe_run() == SweepResult()

    async def test_read_paths_trigger_sweep(self, store, clock):
        assert store.sweeper.last_run_at is None
        await store.get_voucher("missing")
        assert store.sweeper.last_run_at == clock.now


class TestExpire:
    async def test_marks_stale_active_rows_expired(self, store, session_factory, clock):
        stale = await store.create_voucher(10, "k", "W", CreateVoucherOptions(expiry_id="15m"))
        fresh = await store.create_voucher(10, "k", "W", CreateVoucherOptions(expiry_id="24h"))
        claimed = await store.create_voucher(10, "k", "W", CreateVoucherOptions(expiry_id="15m"))
        await store.claim_voucher(claimed.id)

        clock.advance(minutes=15)
        expired = await store.sweeper.expire_stale()

        assert expired == 1
        statuses = await _statuses(session_factory)
        assert statuses[stale.id] == "EXPIRED"
        assert statuses[fresh.id] == "ACTIVE"
        assert statuses[claimed.id] == "CLAIMED"

    async def test_idempotent(self, store, clock):
        await store.create_voucher(10, "k", "W", CreateVoucherOptions(expiry_id="15m"))
        clock.advance(hours=1)

        assert await store.sweeper.expire_stale() == 1
        assert await store.sweeper.expire_stale() == 0


class TestPurge:
    async def test_retention_windows(self, store, session_factory, clock):
        claimed = await store.create_voucher(10, "k", "W", CreateVoucherOptions(expiry_id="6mo"))
        cancelled = await store.create_voucher(10, "k", "W", CreateVoucherOptions(expiry_id="6mo"))
        expired = await store.create_voucher(10, "k", "W", CreateVoucherOptions(expiry_id="24h"))
        active = await store.create_voucher(10, "k", "W", CreateVoucherOptions(expiry_id="6mo"))
        await store.claim_voucher(claimed.id)
        await store.cancel_voucher(cancelled.id)

        # day 7: expired on day 1, still inside its 7 day grace
        clock.advance(days=7)
        result = await store.sweeper.run()
        assert result == SweepResult(expired=1, purged=0)
        assert (await _statuses(session_factory))[expired.id] == "EXPIRED"

        # day 8 + 1m: grace is over
        clock.advance(days=1, minutes=1)
        result = await store.sweeper.run()
        assert result.purged == 1
        assert expired.id not in await _statuses(session_factory)

        # day 31: claimed and cancelled are past 30 days
        clock.advance(days=23)
        result = await store.sweeper.run()
        assert result.purged == 2

        remaining = await _statuses(session_factory)
        assert remaining == {active.id: "ACTIVE"}

    async def test_purge_does_not_touch_active_rows(self, store, session_factory, clock):
        v = await store.create_voucher(10, "k", "W", CreateVoucherOptions(expiry_id="6mo"))
        clock.advance(days=100)
        assert await store.sweeper.purge_old() == 0
        assert v.id in await _statuses(session_factory)
