# lnvoucher/models/voucher.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    false,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from lnvoucher.core.db import Base


class VoucherRow(Base):
    """
    One row per issued claim code.

    `status` is a cache of the derived status; it can lag behind wall-clock
    expiry until the sweeper refreshes it. Timestamps are naive UTC.
    """

    __tablename__ = "vouchers"
    __table_args__ = (
        CheckConstraint("amount_sats > 0", name="vouchers_amount_positive_chk"),
        CheckConstraint(
            "status IN ('ACTIVE','CLAIMED','CANCELLED','EXPIRED')",
            name="valid_voucher_status",
        ),
        CheckConstraint("wallet_currency IN ('BTC','USD')", name="valid_wallet_currency"),
        CheckConstraint(
            "(wallet_currency = 'USD' AND usd_amount_cents IS NOT NULL AND usd_amount_cents > 0)"
            " OR wallet_currency = 'BTC'",
            name="usd_voucher_has_amount",
        ),
    )

    # 32-char hex from secrets.token_hex(16)
    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    amount_sats: Mapped[int] = mapped_column(BigInteger, nullable=False)

    wallet_id: Mapped[str] = mapped_column(String(128), nullable=False)
    issuer_ref_encrypted: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, server_default=text("'ACTIVE'"))
    claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    expiry_id: Mapped[str] = mapped_column(String(10), nullable=False, server_default=text("'24h'"))

    display_amount: Mapped[str | None] = mapped_column(String(50), nullable=True)
    display_currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    commission_percent: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, server_default=text("0")
    )
    environment: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default=text("'production'")
    )

    wallet_currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default=text("'BTC'"))
    usd_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)


# unclaimed count per wallet
Index("idx_vouchers_wallet_status", VoucherRow.wallet_id, VoucherRow.status)
# history listing
Index("idx_vouchers_created_at", VoucherRow.created_at.desc())
# expiry sweep
Index("idx_vouchers_expires_at", VoucherRow.expires_at)
Index("idx_vouchers_status", VoucherRow.status)
