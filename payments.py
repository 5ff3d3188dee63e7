import asyncio
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://app.platega.io"

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"
CANCELLED = "cancelled"
REFUNDED = "refunded"

KNOWN_STATES = {PENDING, SUCCESS, FAILED, CANCELLED, REFUNDED}
TERMINAL_STATES = {SUCCESS, FAILED, CANCELLED, REFUNDED}


class GatewayError(Exception):
    """Payment creation or status check failed."""


class MalformedWebhookError(ValueError):
    """Webhook body is not JSON or lacks required fields."""


class SignatureError(Exception):
    """Webhook signature did not match the shared secret."""


@dataclass
class PaymentLink:
    transaction_id: str
    external_id: str
    payment_url: str


@dataclass
class WebhookEvent:
    transaction_id: str
    external_id: str | None
    state: str
    amount: float | None
    currency: str | None
    subscriber_id: str | None
    timestamp: str


def normalize_state(value) -> str:
    state = str(value).strip()
    if state.lower() in KNOWN_STATES:
        return state.lower()
    return state


def make_external_id(subscriber_id: str, now: float | None = None) -> str:
    millis = int((time.time() if now is None else now) * 1000)
    return f"user_{subscriber_id}_{millis}"


def sign_payload(secret: str, raw: bytes) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def decode_webhook(raw: bytes) -> WebhookEvent:
    """Turn a raw webhook body into a :class:`WebhookEvent`."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedWebhookError(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedWebhookError("payload is not an object")
    transaction_id = data.get("transactionId") or data.get("id")
    status = data.get("status")
    if not transaction_id or status in (None, ""):
        raise MalformedWebhookError("transactionId and status are required")
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    user_id = metadata.get("userId")
    return WebhookEvent(
        transaction_id=str(transaction_id),
        external_id=data.get("externalId"),
        state=normalize_state(status),
        amount=data.get("amount"),
        currency=data.get("currency"),
        subscriber_id=str(user_id) if user_id is not None else None,
        timestamp=data.get("timestamp") or datetime.now(timezone.utc).isoformat(),
    )


class PlategaGateway:
    """Platega payment gateway client."""

    name = "platega"

    def __init__(
        self,
        merchant_id: str | None,
        secret: str | None,
        webhook_secret: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        callback_base_url: str = "",
        timeout: float = 15,
    ) -> None:
        self.merchant_id = merchant_id
        self.secret = secret
        self.webhook_secret = webhook_secret
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.callback_base_url = (callback_base_url or "").rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        if not self.configured:
            logger.warning("Platega credentials not configured, payments are disabled")

    @property
    def configured(self) -> bool:
        return bool(self.merchant_id and self.secret)

    @property
    def callback_url(self) -> str:
        return f"{self.callback_base_url}/webhook/{self.name}"

    def _headers(self) -> dict:
        return {
            "X-MerchantId": self.merchant_id,
            "X-Secret": self.secret,
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, headers=self._headers(), **kwargs) as resp:
                    text = await resp.text()
                    if resp.status >= 400:
                        raise GatewayError(f"{method} {path} returned {resp.status}: {text}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise GatewayError(f"{method} {path} failed: {exc}") from exc
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise GatewayError(f"invalid JSON from {path}") from exc
        if not isinstance(data, dict):
            raise GatewayError(f"unexpected response from {path}")
        return data

    async def create_payment(
        self,
        amount: float,
        description: str,
        subscriber_id: str,
        return_url: str | None = None,
        fail_url: str | None = None,
    ) -> PaymentLink:
        """Create a card payment of ``amount`` roubles for ``subscriber_id``.

        Every call gets a new ``externalId``; retries are never deduplicated
        on the gateway side.
        """
        if not self.configured:
            raise GatewayError("Platega credentials not configured")
        external_id = make_external_id(subscriber_id)
        payload = {
            "paymentMethod": "card",
            "paymentDetails": {"amount": round(amount * 100), "currency": "RUB"},
            "description": description,
            "externalId": external_id,
            "returnUrl": return_url or f"{self.callback_base_url}/payment/success",
            "failedUrl": fail_url or f"{self.callback_base_url}/payment/failed",
            "callbackUrl": self.callback_url,
            "metadata": {
                "userId": subscriber_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }
        data = await self._request("POST", "/api/v1/transactions", json=payload)
        payment_url = data.get("paymentUrl")
        transaction_id = data.get("transactionId") or data.get("id")
        if not payment_url or not transaction_id:
            raise GatewayError(f"invalid response from Platega: {data}")
        logger.info(
            "Created payment %s (%s) for user %s", transaction_id, external_id, subscriber_id
        )
        return PaymentLink(str(transaction_id), external_id, payment_url)

    async def check_status(self, transaction_id: str) -> str:
        if not self.configured:
            raise GatewayError("Platega credentials not configured")
        data = await self._request("GET", f"/api/v1/transactions/{transaction_id}")
        if "status" not in data:
            raise GatewayError(f"no status for transaction {transaction_id}")
        return normalize_state(data["status"])

    def verify_signature(self, raw: bytes, signature: str | None) -> bool:
        if not self.webhook_secret:
            logger.warning("Webhook secret not configured, skipping signature verification")
            return True
        if not signature:
            return False
        expected = sign_payload(self.webhook_secret, raw)
        return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())

    decode_webhook = staticmethod(decode_webhook)
