import logging

import httpx

from lnvoucher.core.config import settings

logger = logging.getLogger(__name__)

PAY_LN_INVOICE_MUTATION = """
mutation LnInvoicePaymentSend($input: LnInvoicePaymentInput!) {
  lnInvoicePaymentSend(input: $input) {
    status
    errors {
      message
      path
      code
    }
  }
}
"""


class BlinkApiError(Exception):
    pass


def api_url_for_environment(environment: str | None) -> str:
    if (environment or "production") == "staging":
        return settings.BLINK_STAGING_API_URL
    return settings.BLINK_API_URL


class BlinkApiClient:
    def __init__(self, api_key: str, base_url: str | None = None, timeout: float | None = None):
        self.api_key = api_key
        self.base_url = base_url or settings.BLINK_API_URL
        self.timeout = timeout or settings.BLINK_TIMEOUT_SECONDS

    async def query(self, query: str, variables: dict | None = None) -> dict:
        headers = {
            "Content-Type": "application/json",
            "X-API-KEY": self.api_key,
        }
        payload = {"query": query, "variables": variables or {}}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.post(self.base_url, json=payload, headers=headers)

        if r.status_code != 200:
            raise BlinkApiError(f"Blink API error: HTTP {r.status_code}: {r.text[:200]}")

        body = r.json()
        if body.get("errors"):
            raise BlinkApiError(body["errors"][0].get("message") or "GraphQL error")

        return body.get("data") or {}

    async def pay_ln_invoice(self, wallet_id: str, payment_request: str, memo: str = "") -> dict:
        tx_input = {"walletId": wallet_id, "paymentRequest": payment_request}
        if memo:
            tx_input["memo"] = memo

        data = await self.query(PAY_LN_INVOICE_MUTATION, {"input": tx_input})
        result = data.get("lnInvoicePaymentSend") or {}

        if result.get("errors"):
            raise BlinkApiError(result["errors"][0].get("message") or "Payment failed")

        return result
