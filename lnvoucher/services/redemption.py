# lnvoucher/services/redemption.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from bolt11 import decode as decode_bolt11
from bolt11.exceptions import Bolt11Exception

from lnvoucher.core.security import CredentialCipher
from lnvoucher.integrations.blink_api_client import BlinkApiClient, api_url_for_environment
from lnvoucher.services.vouchers import USD, Voucher, VoucherStore

logger = logging.getLogger(__name__)

INVOICE_PREFIXES = ("lnbc", "lntb", "lntbs")

# PENDING keeps the claim: the payment is in flight, not failed
SETTLED_STATUSES = frozenset({"SUCCESS", "ALREADY_PAID", "PENDING"})


class PaymentClient(Protocol):
    async def pay_ln_invoice(self, wallet_id: str, payment_request: str, memo: str = "") -> dict: ...


PaymentClientFactory = Callable[[str, str], PaymentClient]

# invoice -> amount in millisats, None for amountless invoices
InvoiceAmountDecoder = Callable[[str], int | None]


def default_payment_client(api_key: str, base_url: str) -> PaymentClient:
    return BlinkApiClient(api_key, base_url)


class RedemptionError(Exception):
    pass


class NotRedeemable(RedemptionError):
    pass


class InvalidInvoice(RedemptionError):
    pass


class PaymentFailed(RedemptionError):
    def __init__(self, message: str, *, rolled_back: bool):
        super().__init__(message)
        self.rolled_back = rolled_back


@dataclass(frozen=True)
class RedemptionResult:
    voucher_id: str
    amount_sats: int
    payment_status: str
    elapsed_ms: int


def is_lightning_invoice(invoice: str | None) -> bool:
    return bool(invoice) and invoice.strip().lower().startswith(INVOICE_PREFIXES)


def invoice_amount_msat(invoice: str) -> int | None:
    try:
        decoded = decode_bolt11(invoice.strip())
    except (Bolt11Exception, ValueError) as e:
        raise InvalidInvoice("Invalid Lightning invoice format") from e

    if decoded.amount_msat is None:
        return None
    return int(decoded.amount_msat)


def check_invoice_amount(voucher: Voucher, amount_msat: int | None) -> None:
    """The invoice must ask for exactly the voucher's face value."""
    if not amount_msat:
        raise InvalidInvoice("Invoice must specify an amount")
    if amount_msat != voucher.amount_sats * 1000:
        raise InvalidInvoice(
            f"Invoice amount does not match voucher. Expected {voucher.amount_sats} sats"
        )


def _fmt_commission(voucher: Voucher) -> str:
    if voucher.commission_percent and voucher.commission_percent > 0:
        return f" ({voucher.commission_percent:g}% commission)"
    return ""


def build_payment_memo(voucher: Voucher) -> str:
    if voucher.wallet_currency == USD and voucher.usd_amount_cents:
        usd = f"{voucher.usd_amount_cents / 100:.2f}"
        if voucher.display_amount and voucher.display_currency and voucher.display_currency != USD:
            return (
                f"BlinkPOS USD Voucher: {voucher.display_currency} {voucher.display_amount}"
                f"{_fmt_commission(voucher)} = ${usd} USD"
            )
        return f"BlinkPOS USD Voucher: ${usd} USD = {voucher.amount_sats} sats"

    if voucher.display_amount and voucher.display_currency:
        return (
            f"BlinkPOS Voucher: {voucher.display_currency} {voucher.display_amount}"
            f"{_fmt_commission(voucher)} = {voucher.amount_sats} sats"
        )

    return f"BlinkPOS Voucher: {voucher.amount_sats} sats"


class RedemptionService:
    """
    claim -> pay -> (on failure) unclaim.

    The claim happens before paying so two wallets scanning the same code can't
    both get paid; a failed payment re-opens the voucher if it hasn't expired.
    """

    def __init__(
        self,
        store: VoucherStore,
        cipher: CredentialCipher,
        payment_client_factory: PaymentClientFactory = default_payment_client,
        invoice_amount_decoder: InvoiceAmountDecoder = invoice_amount_msat,
    ):
        self.store = store
        self.cipher = cipher
        self.payment_client_factory = payment_client_factory
        self.invoice_amount_decoder = invoice_amount_decoder

    async def redeem(self, voucher_id: str, invoice: str) -> RedemptionResult:
        start = time.monotonic()

        voucher = await self.store.get_voucher(voucher_id)
        if voucher is None:
            raise NotRedeemable("Voucher not found or expired")

        if not is_lightning_invoice(invoice):
            raise InvalidInvoice("Invalid Lightning invoice format")

        check_invoice_amount(voucher, self.invoice_amount_decoder(invoice))

        if not await self.store.claim_voucher(voucher_id):
            raise NotRedeemable("Failed to claim voucher - may already be in use")

        memo = build_payment_memo(voucher)
        try:
            client = self.payment_client_factory(
                self.cipher.decrypt(voucher.issuer_ref_encrypted or ""),
                api_url_for_environment(voucher.environment),
            )
            result = await client.pay_ln_invoice(voucher.wallet_id, invoice.strip(), memo)
            status = str(result.get("status") or "")
            if status not in SETTLED_STATUSES:
                raise PaymentFailed(f"Payment failed with status: {status or 'UNKNOWN'}", rolled_back=False)
        except Exception as e:
            logger.error("Payment failed, unclaiming voucher %s...: %s", voucher_id[:8], e)
            rolled_back = await self.store.unclaim_voucher(voucher_id)
            raise PaymentFailed(str(e), rolled_back=rolled_back) from e

        if status == "PENDING":
            logger.info("Payment pending for voucher %s...", voucher_id[:8])

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Voucher %s... redeemed in %sms (%s sats, %s)",
            voucher_id[:8],
            elapsed_ms,
            voucher.amount_sats,
            status,
        )
        return RedemptionResult(
            voucher_id=voucher_id,
            amount_sats=voucher.amount_sats,
            payment_status=status,
            elapsed_ms=elapsed_ms,
        )
