from __future__ import annotations

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from lnvoucher.core.db import init_db, make_session_factory
from lnvoucher.core.security import CredentialCipher
from lnvoucher.services.vouchers import VoucherStore

T0 = datetime(2026, 1, 18, 12, 0, 0)
TEST_KEY_HEX = "11" * 32


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest_asyncio.fixture
async def engine(tmp_path):
    # file-backed + NullPool: every session gets its own connection,
    # so concurrent conditional updates really contend
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'vouchers.db'}", poolclass=NullPool)

    @event.listens_for(eng.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _begin(conn):
        # take the write lock up front; deferred upgrades deadlock under contention
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cipher():
    return CredentialCipher(TEST_KEY_HEX)


@pytest.fixture
def make_store(session_factory, cipher, clock):
    def _make(**overrides) -> VoucherStore:
        kwargs = dict(clock=clock, max_unclaimed_per_wallet=1000, strict_wallet_cap=True)
        kwargs.update(overrides)
        return VoucherStore(session_factory, cipher, **kwargs)

    return _make


@pytest.fixture
def store(make_store):
    return make_store()
