"""
Payment gateway adapter.

Creates payment intents through the hosted ``createPaymentIntent`` function
and confirms them by polling the processor. Whenever the processor cannot be
used (no configuration, no authenticated caller, transport failure, bad
response) checkout still proceeds with a ``SimulatedIntent`` that carries the
reason it was chosen. Simulated intents always settle successfully.

The adapter reports outcomes only; it never touches orders or stock.
"""
import asyncio
import enum
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Tuple

import httpx

from src.core.config import Settings, settings as default_settings
from src.services.errors import GatewayError, PaymentPendingError, ValidationError

logger = logging.getLogger(__name__)

SIMULATION_CLIENT_SECRET = "SIMULATION_MODE"


class FallbackReason(str, enum.Enum):
    NOT_CONFIGURED = "not_configured"
    UNAUTHENTICATED = "unauthenticated"
    AUTH_REJECTED = "auth_rejected"
    NETWORK_ERROR = "network_error"
    PROCESSOR_ERROR = "processor_error"
    MALFORMED_RESPONSE = "malformed_response"


class PaymentResult(str, enum.Enum):
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class IntentHandle:
    """Authorization to charge an amount, as returned by the processor"""
    intent_id: str
    client_secret: Optional[str]
    amount: int
    currency: str
    order_id: str

    @property
    def simulated(self) -> bool:
        return False

    @property
    def fallback_reason(self) -> Optional[FallbackReason]:
        return None


@dataclass(frozen=True)
class SimulatedIntent(IntentHandle):
    """Stand-in intent used when the processor could not be reached"""
    reason: FallbackReason = FallbackReason.NOT_CONFIGURED

    @property
    def simulated(self) -> bool:
        return True

    @property
    def fallback_reason(self) -> Optional[FallbackReason]:
        return self.reason


@dataclass(frozen=True)
class PaymentOutcome:
    result: PaymentResult
    transaction_id: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def succeeded(cls, transaction_id: str) -> "PaymentOutcome":
        return cls(PaymentResult.SUCCEEDED, transaction_id=transaction_id)

    @classmethod
    def cancelled(cls, message: str = "payment cancelled") -> "PaymentOutcome":
        return cls(PaymentResult.CANCELLED, message=message)

    @classmethod
    def failed(cls, message: str = "payment declined") -> "PaymentOutcome":
        return cls(PaymentResult.FAILED, message=message)


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def simulated_intent_id(order_id: str) -> str:
    return f"sim_{order_id}"


def simulated_transaction_id(intent_id: str) -> str:
    digest = hashlib.sha256(intent_id.encode("utf-8")).hexdigest()
    return f"pi_sim_{digest[:20]}"


class PaymentGatewayAdapter:
    """Primary processor with a deterministic simulation fallback"""

    def __init__(self, config: Settings = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or default_settings
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.PAYMENT_PROCESSOR_URL,
            timeout=self.config.PAYMENT_TIMEOUT_SECONDS,
            transport=self.transport,
        )

    def validate(self, amount: int, currency: str) -> str:
        if amount <= 0:
            raise ValidationError(f"Payment amount must be positive, got {amount}")
        currency = (currency or "").lower()
        if len(currency) != 3 or currency not in self.config.SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency '{currency}'")
        return currency

    async def create_intent(
        self,
        amount: int,
        currency: str,
        order_id: str,
        user_id: Optional[str] = None,
    ) -> IntentHandle:
        """
        Obtain a payment intent for ``amount`` minor units.

        Never raises for processor problems; those yield a SimulatedIntent.
        Invalid amount or currency is a caller error and raises ValidationError.
        """
        currency = self.validate(amount, currency)

        if not self.config.PAYMENT_PROCESSOR_URL:
            return self._simulate(amount, currency, order_id, FallbackReason.NOT_CONFIGURED)
        if not user_id:
            return self._simulate(amount, currency, order_id, FallbackReason.UNAUTHENTICATED)

        try:
            async with self._client() as client:
                resp = await client.post(
                    "/createPaymentIntent",
                    json={"amount": amount, "currency": currency, "orderId": order_id},
                    headers={"X-User-Id": user_id},
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            reason = (
                FallbackReason.AUTH_REJECTED
                if e.response.status_code in (401, 403)
                else FallbackReason.PROCESSOR_ERROR
            )
            logger.warning(f"Processor rejected intent for order {order_id}: {e.response.status_code}")
            return self._simulate(amount, currency, order_id, reason)
        except httpx.HTTPError as e:
            logger.warning(f"Processor unreachable for order {order_id}: {str(e)}")
            return self._simulate(amount, currency, order_id, FallbackReason.NETWORK_ERROR)
        except ValueError as e:
            logger.warning(f"Processor sent unreadable body for order {order_id}: {str(e)}")
            return self._simulate(amount, currency, order_id, FallbackReason.MALFORMED_RESPONSE)
        except Exception as e:
            # e.g. httpx.InvalidURL from a misconfigured processor URL
            logger.warning(f"Processor call failed for order {order_id}: {e!r}")
            return self._simulate(amount, currency, order_id, FallbackReason.PROCESSOR_ERROR)

        if not isinstance(data, dict) or not data.get("clientSecret") or not data.get("paymentIntentId"):
            keys = list(data) if isinstance(data, dict) else type(data).__name__
            logger.warning(f"No clientSecret in processor response for order {order_id}: {keys}")
            return self._simulate(amount, currency, order_id, FallbackReason.MALFORMED_RESPONSE)

        logger.info(f"Created payment intent {data['paymentIntentId']} for order {order_id}")
        return IntentHandle(
            intent_id=data["paymentIntentId"],
            client_secret=data["clientSecret"],
            amount=amount,
            currency=currency,
            order_id=order_id,
        )

    def _simulate(self, amount: int, currency: str, order_id: str, reason: FallbackReason) -> SimulatedIntent:
        logger.warning(f"Using payment simulation for order {order_id} (reason: {reason.value})")
        return SimulatedIntent(
            intent_id=simulated_intent_id(order_id),
            client_secret=SIMULATION_CLIENT_SECRET,
            amount=amount,
            currency=currency,
            order_id=order_id,
            reason=reason,
        )

    async def confirm(self, handle: IntentHandle) -> PaymentOutcome:
        """Resolve an intent to Succeeded, Cancelled or Failed."""
        if handle.simulated:
            await asyncio.sleep(self.config.PAYMENT_SIMULATION_DELAY_SECONDS)
            transaction_id = simulated_transaction_id(handle.intent_id)
            logger.info(f"Simulated payment completed for order {handle.order_id}: {transaction_id}")
            return PaymentOutcome.succeeded(transaction_id)

        try:
            async with self._client() as client:
                resp = await client.get(f"/paymentIntents/{handle.intent_id}")
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GatewayError(f"Could not confirm payment intent {handle.intent_id}: {str(e)}") from e

        status = data.get("status") if isinstance(data, dict) else None
        if status == "succeeded":
            return PaymentOutcome.succeeded(handle.intent_id)
        if status == "canceled":
            return PaymentOutcome.cancelled()
        if status in ("requires_payment_method", "payment_failed"):
            return PaymentOutcome.failed(data.get("last_payment_error") or "payment declined")
        raise PaymentPendingError(f"Payment intent {handle.intent_id} is still {status}")

    def sign_webhook(self, raw_body: bytes) -> str:
        """Hex HMAC-SHA256 of the raw request body under the webhook secret."""
        secret = self.config.PAYMENT_WEBHOOK_SECRET
        return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()

    def verify_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Authenticate a webhook delivery and return its decoded payload.

        Raises ValidationError when no secret is configured, the signature does
        not match the body, or the body is not a JSON object.
        """
        if not self.config.PAYMENT_WEBHOOK_SECRET:
            logger.warning("Webhook rejected: PAYMENT_WEBHOOK_SECRET is not configured")
            raise ValidationError("Webhooks are disabled: no signing secret configured")

        if not signature or not hmac.compare_digest(self.sign_webhook(raw_body), signature.strip().lower()):
            logger.warning("Webhook rejected: invalid signature")
            raise ValidationError("Invalid signature")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Invalid JSON payload")
        if not isinstance(payload, dict):
            raise ValidationError("Webhook payload must be a JSON object")
        return payload

    def parse_webhook(self, payload: Dict[str, Any]) -> Optional[Tuple[str, PaymentOutcome]]:
        """Map a processor webhook event to (order_id, outcome); None for events we ignore."""
        event_type = payload.get("type")
        intent = (payload.get("data") or {}).get("object") or {}
        order_id = (intent.get("metadata") or {}).get("orderId")
        if not order_id or order_id == "no_order":
            logger.info(f"Ignoring webhook {event_type} without an order id")
            return None

        if event_type == "payment_intent.succeeded":
            return order_id, PaymentOutcome.succeeded(intent.get("id"))
        if event_type == "payment_intent.payment_failed":
            return order_id, PaymentOutcome.failed()
        if event_type == "payment_intent.canceled":
            return order_id, PaymentOutcome.cancelled()

        logger.info(f"Unhandled webhook event type {event_type}")
        return None

    def restore_handle(self, order) -> IntentHandle:
        """Rebuild the intent handle recorded on an order."""
        amount = to_minor_units(order.amount)
        if order.payment_simulated:
            return SimulatedIntent(
                intent_id=order.payment_intent_id,
                client_secret=SIMULATION_CLIENT_SECRET,
                amount=amount,
                currency=order.currency,
                order_id=order.id,
                reason=FallbackReason(order.payment_fallback_reason or FallbackReason.NOT_CONFIGURED.value),
            )
        return IntentHandle(
            intent_id=order.payment_intent_id,
            client_secret=None,
            amount=amount,
            currency=order.currency,
            order_id=order.id,
        )
