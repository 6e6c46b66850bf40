"""Async HTTP client for the Chapa payment gateway."""

import asyncio
from typing import Any, Optional

import httpx

from src.models.payment import GatewayStatus
from src.utils.config import PaymentConfig
from src.utils.errors import GatewayError
from src.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)


class ChapaClient:
    """
    Client for Chapa hosted checkout.

    Two calls are used:
    1. initialize_checkout - POST /transaction/initialize registers a
       checkout for a tx_ref and returns the hosted checkout URL.
    2. verify - GET /transaction/verify/{tx_ref} reports the payment
       status. ``get_status`` normalises it to a GatewayStatus.

    Rate-limited calls (429) are retried with exponential backoff.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = (base_url or PaymentConfig.CHAPA_BASE_URL).rstrip("/")
        self._secret_key = PaymentConfig.CHAPA_SECRET_KEY if secret_key is None else secret_key
        self._max_retries = PaymentConfig.CHAPA_MAX_RETRIES if max_retries is None else max_retries
        self._backoff_base = backoff_base_seconds
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds or PaymentConfig.CHAPA_TIMEOUT_SECONDS),
            headers={
                "Authorization": f"Bearer {self._secret_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self._secret_key) and "your_secret_key_here" not in self._secret_key

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying 429 responses with exponential backoff."""
        attempt = 0
        while True:
            try:
                response = await self._client.request(method, path, **kwargs)
            except (httpx.ConnectError, httpx.TimeoutException) as exc:
                logger.warning("Chapa connection failed", path=path, error=str(exc))
                raise GatewayError("Cannot connect to Chapa", details={"path": path}) from exc
            except httpx.HTTPError as exc:
                logger.warning("Chapa HTTP error", path=path, error=str(exc))
                raise GatewayError("Chapa request failed", details={"path": path}) from exc

            if response.status_code != 429 or attempt >= self._max_retries:
                return response

            attempt += 1
            wait = self._backoff_base * (2 ** attempt)
            logger.info("Chapa rate limited, backing off", path=path, attempt=attempt, wait_seconds=wait)
            await asyncio.sleep(wait)

    @staticmethod
    def _json(response: httpx.Response, path: str) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayError(
                "Invalid JSON from Chapa",
                details={"path": path, "status_code": response.status_code},
            ) from exc
        if not isinstance(body, dict):
            raise GatewayError("Unexpected response shape from Chapa", details={"path": path})
        return body

    async def initialize_checkout(
        self,
        tx_ref: str,
        amount: float,
        currency: str,
        email: str,
        first_name: str,
        last_name: str = "",
        phone_number: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> str:
        """Register a checkout and return the hosted checkout URL."""
        if not self.configured:
            raise GatewayError("Chapa API credentials not configured")

        path = "/transaction/initialize"
        payload: dict[str, Any] = {
            "amount": f"{amount:.2f}",
            "currency": currency,
            "email": email.strip(),
            "first_name": first_name.strip(),
            "last_name": last_name.strip(),
            "tx_ref": tx_ref,
            "callback_url": PaymentConfig.CHAPA_CALLBACK_URL or None,
            "return_url": PaymentConfig.CHAPA_RETURN_URL or None,
            "customization": {
                "title": PaymentConfig.COMPANY_NAME,
                "description": "Payment for task completion",
            },
            "meta": meta or {},
        }
        if phone_number:
            payload["phone_number"] = "".join(phone_number.split())
        payload = {k: v for k, v in payload.items() if v is not None}

        response = await self._request("POST", path, json=payload)
        body = self._json(response, path)

        if response.status_code >= 400 or body.get("status") != "success":
            logger.warning(
                "Chapa rejected checkout",
                tx_ref=tx_ref,
                status_code=response.status_code,
                gateway_message=str(body.get("message")),
            )
            raise GatewayError(
                f"Chapa payment initialization failed: {body.get('message') or 'Unknown error'}",
                details={"status_code": response.status_code},
            )

        checkout_url = (body.get("data") or {}).get("checkout_url")
        if not checkout_url:
            raise GatewayError("Chapa response missing checkout_url", details={"tx_ref": tx_ref})

        logger.info("Chapa checkout initialized", tx_ref=tx_ref, amount=amount, currency=currency)
        return checkout_url

    async def verify(self, tx_ref: str) -> dict[str, Any]:
        """Return the transaction data Chapa holds for a tx_ref."""
        path = f"/transaction/verify/{tx_ref}"
        response = await self._request("GET", path)
        body = self._json(response, path)

        if response.status_code >= 400:
            raise GatewayError(
                f"Chapa verification failed: {body.get('message') or 'Unknown error'}",
                details={"status_code": response.status_code, "tx_ref": tx_ref},
            )
        return body.get("data") or {}

    async def get_status(self, tx_ref: str) -> GatewayStatus:
        """Normalised payment status for a tx_ref.

        Chapa answers 404 until the payer has opened the checkout, which is
        reported as pending.
        """
        try:
            data = await self.verify(tx_ref)
        except GatewayError as e:
            if e.details.get("status_code") == 404:
                return GatewayStatus.PENDING
            raise
        return GatewayStatus.from_gateway(data.get("status"))
