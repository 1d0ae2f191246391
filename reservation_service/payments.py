import logging
from abc import ABC, abstractmethod
from decimal import Decimal

import httpx

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import PAYMENT_GATEWAY_URL, PAYMENT_TIMEOUT_SECONDS
from .errors import PaymentError

logger = logging.getLogger(__name__)


class PaymentGateway(ABC):
    """Card processing lives elsewhere; the engine only asks for these three things."""

    @abstractmethod
    async def authorize(self, amount: Decimal, currency: str, payer: str) -> str: ...

    @abstractmethod
    async def capture(self, payment_ref: str) -> None: ...

    @abstractmethod
    async def refund(self, payment_ref: str, amount: Decimal, idempotency_key: str | None = None) -> str: ...


class HttpPaymentGateway(PaymentGateway):
    def __init__(
        self,
        base_url: str = PAYMENT_GATEWAY_URL,
        timeout: float = PAYMENT_TIMEOUT_SECONDS,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker("payment-gateway", failure_threshold=5, reset_timeout_seconds=10)
        self._transport = transport

    async def _call(self, method: str, path: str, payload: dict | None, idempotency_key: str | None = None) -> dict:
        try:
            await self.breaker.allow_request()
        except CircuitBreakerOpen as e:
            raise PaymentError(str(e))

        url = f"{self.base_url}{path}"
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method=method, url=url, json=payload, headers=headers)
                resp.raise_for_status()
                await self.breaker.record_success()
                if resp.content:
                    return resp.json()
                return {}
        except httpx.TimeoutException:
            await self.breaker.record_failure()
            logger.warning("payment gateway timeout: %s %s", method, url)
            raise PaymentError(f"Timeout calling payment gateway: {path}")
        except httpx.HTTPStatusError as e:
            await self.breaker.record_failure()
            logger.warning("payment gateway %s on %s %s: %s", e.response.status_code, method, url, e.response.text)
            raise PaymentError(f"Payment gateway rejected {path} ({e.response.status_code}): {e.response.text}")
        except httpx.HTTPError as e:
            await self.breaker.record_failure()
            logger.warning("payment gateway unreachable: %s %s: %s", method, url, e)
            raise PaymentError(f"Payment gateway unavailable: {path}")

    async def authorize(self, amount: Decimal, currency: str, payer: str) -> str:
        data = await self._call(
            "POST",
            "/payments/authorize",
            {"amount": str(amount), "currency": currency, "payer": payer},
        )
        payment_ref = data.get("payment_ref")
        if not payment_ref:
            raise PaymentError("Payment gateway returned no payment_ref")
        return payment_ref

    async def capture(self, payment_ref: str) -> None:
        await self._call("POST", f"/payments/{payment_ref}/capture", None, idempotency_key=f"capture:{payment_ref}")

    async def refund(self, payment_ref: str, amount: Decimal, idempotency_key: str | None = None) -> str:
        key = idempotency_key or f"refund:{payment_ref}:{amount}"
        data = await self._call("POST", f"/payments/{payment_ref}/refund", {"amount": str(amount)}, idempotency_key=key)
        refund_ref = data.get("refund_ref")
        if not refund_ref:
            raise PaymentError("Payment gateway returned no refund_ref")
        return refund_ref
