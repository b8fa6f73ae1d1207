"""
Payment Gateway Adapter (Midtrans)
==================================
Snap hosted-payment creation and Core API status queries over httpx.

- create_transaction: POST {snap}/snap/v1/transactions
- query_transaction_status: GET {api}/v2/{order_id}/status
- verify_signature: SHA-512(order_id + status_code + gross_amount + server_key)

pip install httpx pydantic structlog
"""

import base64
import hashlib
import hmac
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import structlog

from pipeline.errors import GatewayError, GatewayQueryError
from schemas.order_models import GatewayNotification, PaymentTransaction

logger = structlog.get_logger().bind(component="midtrans_gateway")


# =============================================================================
# CONFIGURATION
# =============================================================================

class MidtransConfig:
    """Gateway configuration from environment"""

    SERVER_KEY = os.getenv("MIDTRANS_SERVER_KEY", "")
    CLIENT_KEY = os.getenv("MIDTRANS_CLIENT_KEY", "")
    IS_PRODUCTION = os.getenv("MIDTRANS_IS_PRODUCTION", "false").lower() == "true"
    TIMEOUT_SECONDS = float(os.getenv("MIDTRANS_TIMEOUT_SECONDS", "15"))
    VERIFY_SIGNATURE = os.getenv("MIDTRANS_VERIFY_SIGNATURE", "false").lower() == "true"

    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
    PAYMENT_EXPIRY_HOURS = int(os.getenv("PAYMENT_EXPIRY_HOURS", "24"))

    SANDBOX_SNAP_URL = "https://app.sandbox.midtrans.com"
    SANDBOX_API_URL = "https://api.sandbox.midtrans.com"
    PRODUCTION_SNAP_URL = "https://app.midtrans.com"
    PRODUCTION_API_URL = "https://api.midtrans.com"

    @classmethod
    def snap_url(cls, is_production: Optional[bool] = None) -> str:
        production = cls.IS_PRODUCTION if is_production is None else is_production
        return cls.PRODUCTION_SNAP_URL if production else cls.SANDBOX_SNAP_URL

    @classmethod
    def api_url(cls, is_production: Optional[bool] = None) -> str:
        production = cls.IS_PRODUCTION if is_production is None else is_production
        return cls.PRODUCTION_API_URL if production else cls.SANDBOX_API_URL


config = MidtransConfig()


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentGateway(ABC):
    """Payment Gateway Adapter collaborator"""

    @abstractmethod
    async def create_transaction(self, params: Dict[str, Any]) -> PaymentTransaction:
        pass

    @abstractmethod
    async def query_transaction_status(self, midtrans_order_id: str) -> GatewayNotification:
        """Raises GatewayQueryError on any failure."""
        pass

    def verify_signature(self, notification: GatewayNotification) -> bool:
        return True

    async def close(self) -> None:
        pass


# =============================================================================
# MIDTRANS
# =============================================================================

def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode()).hexdigest()


class MidtransGateway(IPaymentGateway):
    """
    Midtrans Snap / Core API client.

    Example:
        gateway = MidtransGateway()
        tx = await gateway.create_transaction(params)
        report = await gateway.query_transaction_status("ORDER-abc-1700000000000")
    """

    def __init__(
        self,
        server_key: Optional[str] = None,
        is_production: Optional[bool] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_key = config.SERVER_KEY if server_key is None else server_key
        self.is_production = config.IS_PRODUCTION if is_production is None else is_production
        self._timeout = timeout_seconds or config.TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _headers(self) -> Dict[str, str]:
        token = base64.b64encode(f"{self.server_key}:".encode()).decode()
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Basic {token}",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers=self._headers(),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def create_transaction(self, params: Dict[str, Any]) -> PaymentTransaction:
        url = f"{MidtransConfig.snap_url(self.is_production)}/snap/v1/transactions"
        order_id = params.get("transaction_details", {}).get("order_id")
        log = logger.bind(midtrans_order_id=order_id)

        try:
            response = await self._get_client().post(url, json=params)
        except httpx.HTTPError as e:
            log.error("create_transaction_failed", error=str(e), error_type=type(e).__name__)
            raise GatewayError(f"Failed to reach payment gateway: {e}") from e

        body = _json_or_empty(response)
        if response.status_code >= 400 or "token" not in body:
            messages = body.get("error_messages") or [response.text[:200]]
            log.error("create_transaction_rejected", http_status=response.status_code, messages=messages)
            raise GatewayError(f"Payment gateway rejected transaction: {'; '.join(map(str, messages))}")

        log.info("transaction_created")
        return PaymentTransaction(token=body["token"], redirect_url=body["redirect_url"])

    async def query_transaction_status(self, midtrans_order_id: str) -> GatewayNotification:
        url = f"{MidtransConfig.api_url(self.is_production)}/v2/{midtrans_order_id}/status"
        log = logger.bind(midtrans_order_id=midtrans_order_id)

        try:
            response = await self._get_client().get(url)
        except httpx.TimeoutException as e:
            log.warning("status_query_timeout")
            raise GatewayQueryError(midtrans_order_id, "timeout") from e
        except httpx.HTTPError as e:
            log.warning("status_query_failed", error=str(e))
            raise GatewayQueryError(midtrans_order_id, str(e)) from e

        if response.status_code >= 400:
            raise GatewayQueryError(midtrans_order_id, f"HTTP {response.status_code}")

        body = _json_or_empty(response)
        if not body.get("transaction_status"):
            # Core API reports unknown transactions as HTTP 200 with status_code 404
            reason = body.get("status_message") or "missing transaction_status"
            raise GatewayQueryError(midtrans_order_id, str(reason))

        body.setdefault("order_id", midtrans_order_id)
        log.info("status_queried", transaction_status=body["transaction_status"])
        return GatewayNotification(**body)

    def verify_signature(self, notification: GatewayNotification) -> bool:
        if not notification.signature_key:
            return False
        expected = compute_signature(
            notification.order_id,
            notification.status_code or "",
            notification.gross_amount or "",
            self.server_key,
        )
        return hmac.compare_digest(expected, notification.signature_key)


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
