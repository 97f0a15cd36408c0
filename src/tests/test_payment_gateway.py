import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from src.core.config import Settings
from src.services.errors import GatewayError, PaymentPendingError, ValidationError
from src.services.payment_gateway import (
    FallbackReason,
    IntentHandle,
    PaymentGatewayAdapter,
    PaymentResult,
    SimulatedIntent,
    simulated_intent_id,
    simulated_transaction_id,
    to_minor_units,
)

PROCESSOR_URL = "https://payments.example.test"


def gateway_with(handler, url=PROCESSOR_URL):
    config = Settings(PAYMENT_PROCESSOR_URL=url, PAYMENT_SIMULATION_DELAY_SECONDS=0)
    return PaymentGatewayAdapter(config, transport=httpx.MockTransport(handler))


def real_handle(intent_id="pi_123"):
    return IntentHandle(
        intent_id=intent_id, client_secret="pi_123_secret", amount=4000, currency="usd", order_id="order-1"
    )


class TestCreateIntent:

    @pytest.mark.asyncio
    async def test_intent_from_processor(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["user"] = request.headers.get("X-User-Id")
            seen["body"] = request.read()
            return httpx.Response(200, json={"clientSecret": "pi_123_secret", "paymentIntentId": "pi_123"})

        handle = await gateway_with(handler).create_intent(4000, "USD", "order-1", "fan-1")

        assert not handle.simulated
        assert handle.fallback_reason is None
        assert handle.intent_id == "pi_123"
        assert handle.client_secret == "pi_123_secret"
        assert handle.currency == "usd"
        assert seen["path"] == "/createPaymentIntent"
        assert seen["user"] == "fan-1"
        assert b'"orderId":"order-1"' in seen["body"].replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_not_configured(self, gateway):
        handle = await gateway.create_intent(4000, "usd", "order-1", "fan-1")

        assert isinstance(handle, SimulatedIntent)
        assert handle.fallback_reason == FallbackReason.NOT_CONFIGURED
        assert handle.intent_id == simulated_intent_id("order-1")
        assert handle.amount == 4000

    @pytest.mark.asyncio
    async def test_unauthenticated_caller(self):
        def handler(request):
            raise AssertionError("processor must not be called without a user")

        handle = await gateway_with(handler).create_intent(4000, "usd", "order-1")

        assert handle.fallback_reason == FallbackReason.UNAUTHENTICATED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code, reason", [
        (401, FallbackReason.AUTH_REJECTED),
        (403, FallbackReason.AUTH_REJECTED),
        (500, FallbackReason.PROCESSOR_ERROR),
        (503, FallbackReason.PROCESSOR_ERROR),
    ])
    async def test_processor_rejection(self, status_code, reason):
        gateway = gateway_with(lambda request: httpx.Response(status_code))

        handle = await gateway.create_intent(4000, "usd", "order-1", "fan-1")

        assert handle.simulated
        assert handle.fallback_reason == reason

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        handle = await gateway_with(handler).create_intent(4000, "usd", "order-1", "fan-1")

        assert handle.fallback_reason == FallbackReason.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        handle = await gateway_with(handler).create_intent(4000, "usd", "order-1", "fan-1")

        assert handle.fallback_reason == FallbackReason.NETWORK_ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [httpx.InvalidURL("bad url"), RuntimeError("transport exploded")])
    async def test_unexpected_client_error(self, error):
        def handler(request):
            raise error

        handle = await gateway_with(handler).create_intent(4000, "usd", "order-1", "fan-1")

        assert handle.simulated
        assert handle.fallback_reason == FallbackReason.PROCESSOR_ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(200, json={"paymentIntentId": "pi_123"}),
        httpx.Response(200, json={"clientSecret": "", "paymentIntentId": "pi_123"}),
        httpx.Response(200, json=["pi_123"]),
        httpx.Response(200, content=b"<html>gateway</html>"),
    ])
    async def test_malformed_response(self, response):
        handle = await gateway_with(lambda request: response).create_intent(4000, "usd", "order-1", "fan-1")

        assert handle.fallback_reason == FallbackReason.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount, currency", [(0, "usd"), (-100, "usd"), (4000, "jpy"), (4000, "dollars")])
    async def test_invalid_request_is_not_simulated(self, gateway, amount, currency):
        with pytest.raises(ValidationError):
            await gateway.create_intent(amount, currency, "order-1", "fan-1")


class TestConfirm:

    @pytest.mark.asyncio
    async def test_simulated_confirm_is_deterministic(self, gateway):
        handle = await gateway.create_intent(4000, "usd", "order-1")

        first = await gateway.confirm(handle)
        second = await gateway.confirm(handle)

        assert first.result == PaymentResult.SUCCEEDED
        assert first.transaction_id == second.transaction_id
        assert first.transaction_id == simulated_transaction_id(handle.intent_id)
        assert first.transaction_id.startswith("pi_sim_")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("intent_status, result", [
        ("succeeded", PaymentResult.SUCCEEDED),
        ("canceled", PaymentResult.CANCELLED),
        ("requires_payment_method", PaymentResult.FAILED),
        ("payment_failed", PaymentResult.FAILED),
    ])
    async def test_processor_status_mapping(self, intent_status, result):
        gateway = gateway_with(lambda request: httpx.Response(200, json={"status": intent_status}))

        outcome = await gateway.confirm(real_handle())

        assert outcome.result == result
        if result == PaymentResult.SUCCEEDED:
            assert outcome.transaction_id == "pi_123"

    @pytest.mark.asyncio
    async def test_processing_intent_is_pending(self):
        gateway = gateway_with(lambda request: httpx.Response(200, json={"status": "processing"}))

        with pytest.raises(PaymentPendingError, match="still processing"):
            await gateway.confirm(real_handle())

    @pytest.mark.asyncio
    async def test_unreachable_processor(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayError):
            await gateway_with(handler).confirm(real_handle())


class TestWebhook:

    def test_succeeded_event(self, gateway):
        order_id, outcome = gateway.parse_webhook({
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_123", "metadata": {"orderId": "order-1"}}},
        })

        assert order_id == "order-1"
        assert outcome.result == PaymentResult.SUCCEEDED
        assert outcome.transaction_id == "pi_123"

    @pytest.mark.parametrize("event_type, result", [
        ("payment_intent.payment_failed", PaymentResult.FAILED),
        ("payment_intent.canceled", PaymentResult.CANCELLED),
    ])
    def test_unsuccessful_events(self, gateway, event_type, result):
        _, outcome = gateway.parse_webhook({
            "type": event_type,
            "data": {"object": {"id": "pi_123", "metadata": {"orderId": "order-1"}}},
        })

        assert outcome.result == result

    @pytest.mark.parametrize("payload", [
        {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_123", "metadata": {}}}},
        {"type": "payment_intent.succeeded", "data": {"object": {"metadata": {"orderId": "no_order"}}}},
        {"type": "charge.refunded", "data": {"object": {"metadata": {"orderId": "order-1"}}}},
        {},
    ])
    def test_ignored_events(self, gateway, payload):
        assert gateway.parse_webhook(payload) is None

    def test_verified_payload(self, gateway):
        body = b'{"type": "payment_intent.succeeded", "data": {}}'
        signature = hmac.new(b"whsec_test", body, hashlib.sha256).hexdigest()

        payload = gateway.verify_webhook(body, signature)

        assert payload["type"] == "payment_intent.succeeded"
        assert gateway.sign_webhook(body) == signature

    @pytest.mark.parametrize("signature", [None, "", "deadbeef", hmac.new(b"other", b"{}", hashlib.sha256).hexdigest()])
    def test_bad_signature(self, gateway, signature):
        with pytest.raises(ValidationError, match="Invalid signature"):
            gateway.verify_webhook(b"{}", signature)

    @pytest.mark.parametrize("body", [b"not json", b'["a list"]'])
    def test_signed_garbage(self, gateway, body):
        with pytest.raises(ValidationError):
            gateway.verify_webhook(body, gateway.sign_webhook(body))

    def test_no_secret_configured(self):
        gateway = PaymentGatewayAdapter(Settings(PAYMENT_WEBHOOK_SECRET=""))
        body = json.dumps({"type": "payment_intent.succeeded"}).encode("utf-8")

        with pytest.raises(ValidationError, match="no signing secret"):
            gateway.verify_webhook(body, hmac.new(b"", body, hashlib.sha256).hexdigest())


def test_minor_units_round_half_up():
    assert to_minor_units(Decimal("40.00")) == 4000
    assert to_minor_units(Decimal("55.505")) == 5551
    assert to_minor_units(Decimal("0.01")) == 1
