"""
HTTP surface: public issue/lookup/redeem, LNURL-withdraw, and the admin endpoints.
"""

from __future__ import annotations

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from lnvoucher.core.config import settings
from lnvoucher.core.deps import get_cipher, get_redemption_service, get_voucher_store
from lnvoucher.main import create_app
from lnvoucher.services.redemption import RedemptionService

from tests.test_redemption import INVOICE, FakePaymentClient


def _token(role: str = "admin") -> str:
    return jwt.encode({"sub": "1", "role": role}, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


ADMIN = {"Authorization": f"Bearer {_token()}"}


@pytest.fixture
def payments():
    return FakePaymentClient()


@pytest_asyncio.fixture
async def client(make_store, cipher, payments):
    store = make_store(max_unclaimed_per_wallet=2)
    app = create_app(init_tables=False)
    app.dependency_overrides[get_voucher_store] = lambda: store
    app.dependency_overrides[get_cipher] = lambda: cipher
    app.dependency_overrides[get_redemption_service] = lambda: RedemptionService(
        store,
        cipher,
        payment_client_factory=payments.factory,
        # INVOICE asks for 1000 sats, the default voucher amount
        invoice_amount_decoder=lambda invoice: 1000 * 1000,
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def _create(client, **kw):
    body = {"amount_sats": 1000, "api_key": "issuer-key", "wallet_id": "wallet-1"}
    body.update(kw)
    return await client.post("/vouchers", json=body)


class TestIssue:
    async def test_create_btc_by_default(self, client):
        r = await _create(client)
        assert r.status_code == 200
        data = r.json()
        assert data["wallet_currency"] == "BTC"
        assert data["status"] == "ACTIVE"
        assert data["expiry_id"] == "24h"
        assert "api_key" not in data

    async def test_create_usd(self, client):
        r = await _create(client, wallet_currency="USD", usd_amount_cents=250, expiry_id="7d")
        assert r.status_code == 200
        assert r.json()["usd_amount_cents"] == 250
        assert r.json()["expiry_id"] == "7d"

    async def test_usd_without_cents_is_rejected(self, client):
        r = await _create(client, wallet_currency="USD")
        assert r.status_code == 422

    async def test_non_positive_amount_is_rejected(self, client):
        r = await _create(client, amount_sats=0)
        assert r.status_code == 422

    async def test_wallet_limit(self, client):
        assert (await _create(client)).status_code == 200
        assert (await _create(client)).status_code == 200
        r = await _create(client)
        assert r.status_code == 400
        assert "Maximum unclaimed vouchers (2)" in r.json()["detail"]

        # other wallets are unaffected
        assert (await _create(client, wallet_id="wallet-2")).status_code == 200


class TestLookupAndRedeem:
    async def test_lookup_unknown(self, client):
        r = await client.get("/vouchers/nope")
        assert r.status_code == 404

    async def test_redeem_then_lookup(self, client, payments):
        vid = (await _create(client)).json()["id"]

        assert (await client.get(f"/vouchers/{vid}")).status_code == 200

        r = await client.post(f"/vouchers/{vid}/redeem", json={"invoice": INVOICE})
        assert r.status_code == 200
        assert r.json() == {
            "status": "OK",
            "voucher_id": vid,
            "amount_sats": 1000,
            "payment_status": "SUCCESS",
        }
        assert len(payments.calls) == 1

        assert (await client.get(f"/vouchers/{vid}")).status_code == 404
        r = await client.post(f"/vouchers/{vid}/redeem", json={"invoice": INVOICE})
        assert r.status_code == 409

    async def test_bad_invoice(self, client):
        vid = (await _create(client)).json()["id"]
        r = await client.post(f"/vouchers/{vid}/redeem", json={"invoice": "bitcoin:bc1q"})
        assert r.status_code == 400

    async def test_payment_failure_reopens_voucher(self, client, payments):
        payments.error = RuntimeError("no route")
        vid = (await _create(client)).json()["id"]

        r = await client.post(f"/vouchers/{vid}/redeem", json={"invoice": INVOICE})
        assert r.status_code == 502
        assert (await client.get(f"/vouchers/{vid}")).status_code == 200


class TestAdmin:
    async def test_requires_token(self, client):
        assert (await client.get("/admin/vouchers")).status_code == 401

    async def test_rejects_garbage_token(self, client):
        r = await client.get("/admin/vouchers", headers={"Authorization": "Bearer junk"})
        assert r.status_code == 401

    async def test_rejects_non_admin(self, client):
        r = await client.get("/admin/vouchers", headers={"Authorization": f"Bearer {_token('seller')}"})
        assert r.status_code == 403

    async def test_list_and_filter(self, client):
        a = (await _create(client)).json()["id"]
        b = (await _create(client, wallet_id="wallet-2")).json()["id"]
        await client.post(f"/admin/vouchers/{b}/cancel", headers=ADMIN)

        r = await client.get("/admin/vouchers", headers=ADMIN)
        assert r.status_code == 200
        data = r.json()
        assert data["count"] == 2
        assert data["stats"]["active"] == 1
        assert data["stats"]["cancelled"] == 1

        r = await client.get("/admin/vouchers", params={"status": "cancelled"}, headers=ADMIN)
        assert [v["id"] for v in r.json()["items"]] == [b]

        r = await client.get("/admin/vouchers", params={"status": "bogus"}, headers=ADMIN)
        assert r.status_code == 400
        assert "bogus" in r.json()["detail"]

        r = await client.get("/admin/vouchers", params={"status": "all"}, headers=ADMIN)
        assert r.json()["count"] == 2

        r = await client.get(f"/admin/vouchers/{a}", headers=ADMIN)
        detail = r.json()
        assert detail["short_id"] == a[:8].upper()
        assert detail["time_remaining_ms"] == 24 * 60 * 60 * 1000

    async def test_stats(self, client):
        await _create(client)
        await _create(client, wallet_currency="USD", usd_amount_cents=100)

        r = await client.get("/admin/vouchers/stats", headers=ADMIN)
        assert r.status_code == 200
        stats = r.json()
        assert stats["total"] == 2
        assert stats["active_btc"] == 1
        assert stats["active_usd"] == 1

    async def test_detail_unknown(self, client):
        r = await client.get("/admin/vouchers/nope", headers=ADMIN)
        assert r.status_code == 404

    async def test_cancel_twice(self, client):
        vid = (await _create(client)).json()["id"]

        r = await client.post(f"/admin/vouchers/{vid}/cancel", headers=ADMIN)
        assert r.status_code == 200
        assert r.json() == {"id": vid, "cancelled": True}

        r = await client.post(f"/admin/vouchers/{vid}/cancel", headers=ADMIN)
        assert r.status_code == 409

        detail = (await client.get(f"/admin/vouchers/{vid}", headers=ADMIN)).json()
        assert detail["status"] == "CANCELLED"
        assert detail["time_remaining_ms"] is None


class TestLnurlWithdraw:
    async def test_withdraw_request(self, client):
        vid = (await _create(client)).json()["id"]

        r = await client.get(f"/lnurl/{vid}/1000")

        assert r.status_code == 200
        assert r.headers["access-control-allow-origin"] == "*"
        assert r.json() == {
            "tag": "withdrawRequest",
            "callback": "http://test/lnurl/callback",
            "k1": vid,
            "minWithdrawable": 1_000_000,
            "maxWithdrawable": 1_000_000,
            "defaultDescription": "BlinkPOS Voucher: 1000 sats",
        }

    async def test_public_base_url_wins(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PUBLIC_BASE_URL", "https://pay.example.com/")
        vid = (await _create(client)).json()["id"]

        r = await client.get(f"/lnurl/{vid}/1000")
        assert r.json()["callback"] == "https://pay.example.com/lnurl/callback"

    @pytest.mark.parametrize(
        "amount,reason",
        [("999", "Amount mismatch. Expected 1000 sats"), ("abc", "Invalid amount"), ("0", "Invalid amount")],
    )
    async def test_withdraw_request_errors_are_200(self, client, amount, reason):
        vid = (await _create(client)).json()["id"]

        r = await client.get(f"/lnurl/{vid}/{amount}")
        assert r.status_code == 200
        assert r.json() == {"status": "ERROR", "reason": reason}

    async def test_withdraw_request_unknown_voucher(self, client):
        r = await client.get("/lnurl/nope/1000")
        assert r.json() == {"status": "ERROR", "reason": "Voucher not found or expired"}

    async def test_callback_pays_once(self, client, payments):
        vid = (await _create(client)).json()["id"]

        r = await client.get("/lnurl/callback", params={"k1": vid, "pr": INVOICE})
        assert r.status_code == 200
        assert r.json() == {"status": "OK"}
        assert len(payments.calls) == 1

        r = await client.get("/lnurl/callback", params={"k1": vid, "pr": INVOICE})
        assert r.status_code == 200
        assert r.json() == {"status": "ERROR", "reason": "Voucher not found or expired"}
        assert len(payments.calls) == 1

    async def test_callback_missing_params(self, client):
        r = await client.get("/lnurl/callback", params={"pr": INVOICE})
        assert r.json() == {"status": "ERROR", "reason": "k1 parameter is required"}

        r = await client.get("/lnurl/callback", params={"k1": "abc"})
        assert r.json() == {"status": "ERROR", "reason": "Payment request (pr) is required"}

    async def test_callback_rejects_wrong_invoice_amount(self, client, payments):
        vid = (await _create(client, amount_sats=500)).json()["id"]

        r = await client.get("/lnurl/callback", params={"k1": vid, "pr": INVOICE})
        body = r.json()
        assert body["status"] == "ERROR"
        assert "does not match voucher" in body["reason"]
        assert payments.calls == []

    async def test_callback_payment_failure_reopens_voucher(self, client, payments):
        payments.error = RuntimeError("INSUFFICIENT_BALANCE")
        vid = (await _create(client)).json()["id"]

        r = await client.get("/lnurl/callback", params={"k1": vid, "pr": INVOICE})
        assert r.status_code == 200
        assert r.json() == {"status": "ERROR", "reason": "Insufficient balance in voucher wallet"}

        assert (await client.get(f"/lnurl/{vid}/1000")).json()["tag"] == "withdrawRequest"
