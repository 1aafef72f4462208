"""
Stripe API client implementation for payment processing
"""
import json
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx
import stripe

from ..base import BaseAPIClient
from ..exceptions import GatewayError, WebhookSignatureError

# Seconds a signed webhook stays acceptable
WEBHOOK_TOLERANCE_SECONDS = 300


def format_amount_for_stripe(amount: Decimal) -> int:
    """Convert a major-unit Decimal to integer cents"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount_from_stripe(amount_cents: int) -> Decimal:
    """Convert integer cents to a major-unit Decimal"""
    return (Decimal(amount_cents) / 100).quantize(Decimal("0.01"))


def _encode_metadata(payload: Dict[str, str], metadata: Optional[Dict[str, Any]]) -> None:
    for key, value in (metadata or {}).items():
        if value is not None:
            payload[f"metadata[{key}]"] = str(value)


class StripeClient(BaseAPIClient):
    """Stripe API client for payment processing"""

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(provider="stripe", api_key=api_key, **kwargs)

    def _get_base_url(self) -> str:
        """Get Stripe API base URL"""
        return "https://api.stripe.com"

    def _get_headers(self) -> Dict[str, str]:
        """Get Stripe API headers"""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/x-www-form-urlencoded",
            "Stripe-Version": self.settings.stripe_api_version,
        }

    def _parse_error(self, response: httpx.Response) -> GatewayError:
        """Map Stripe's error envelope, keeping decline and error codes"""
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}

        payment_intent = error.get("payment_intent") or {}
        return GatewayError(
            provider=self.provider,
            message=error.get("message") or f"HTTP {response.status_code}",
            status_code=response.status_code,
            error_code=error.get("code") or error.get("type"),
            decline_code=error.get("decline_code"),
            payment_intent_id=payment_intent.get("id") if isinstance(payment_intent, dict) else None,
            response_body=response.text,
        )

    async def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a customer

        Args:
            email: Customer email
            name: Customer name
            metadata: Additional metadata
            idempotency_key: Retried creates with the same key return the same customer

        Returns:
            Dict containing customer data
        """
        payload = {"email": email}

        if name:
            payload["name"] = name
        _encode_metadata(payload, metadata)

        return await self.make_request("POST", "/v1/customers", data=payload, idempotency_key=idempotency_key)

    async def get_customer(self, customer_id: str) -> Dict[str, Any]:
        return await self.make_request("GET", f"/v1/customers/{customer_id}")

    async def create_payment_intent(
        self,
        amount: int,
        currency: str = "usd",
        customer_id: Optional[str] = None,
        capture_method: str = "automatic",
        setup_future_usage: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        receipt_email: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a payment intent for client-side confirmation

        Args:
            amount: Amount in cents
            currency: Currency code
            customer_id: Stripe customer ID
            capture_method: "automatic" charges on confirmation, "manual" only authorizes
            setup_future_usage: "off_session" keeps the card for later charges
            description: Payment description
            metadata: Additional metadata
            receipt_email: Email for receipt
            idempotency_key: Key that makes a retried create side-effect free

        Returns:
            Dict containing payment intent data
        """
        payload = {
            "amount": str(amount),
            "currency": currency,
            "capture_method": capture_method,
            "automatic_payment_methods[enabled]": "true",
        }

        if customer_id:
            payload["customer"] = customer_id
        if setup_future_usage:
            payload["setup_future_usage"] = setup_future_usage
        if description:
            payload["description"] = description
        if receipt_email:
            payload["receipt_email"] = receipt_email
        _encode_metadata(payload, metadata)

        return await self.make_request("POST", "/v1/payment_intents", data=payload, idempotency_key=idempotency_key)

    async def get_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return await self.make_request("GET", f"/v1/payment_intents/{payment_intent_id}")

    async def capture_payment_intent(
        self,
        payment_intent_id: str,
        amount_to_capture: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Capture a previously authorized (requires_capture) payment intent"""
        payload = {}
        if amount_to_capture is not None:
            payload["amount_to_capture"] = str(amount_to_capture)

        return await self.make_request(
            "POST",
            f"/v1/payment_intents/{payment_intent_id}/capture",
            data=payload,
            idempotency_key=idempotency_key,
        )

    async def cancel_payment_intent(
        self, payment_intent_id: str, cancellation_reason: Optional[str] = None
    ) -> Dict[str, Any]:
        payload = {}
        if cancellation_reason:
            payload["cancellation_reason"] = cancellation_reason

        return await self.make_request("POST", f"/v1/payment_intents/{payment_intent_id}/cancel", data=payload)

    async def charge_off_session(
        self,
        amount: int,
        customer_id: str,
        payment_method_id: str,
        currency: str = "usd",
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Charge a saved payment method without the customer present

        Creates and confirms a new payment intent in one call. Declines come
        back as a 402 and are raised as GatewayError with the decline code.
        """
        payload = {
            "amount": str(amount),
            "currency": currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "off_session": "true",
            "confirm": "true",
        }

        if description:
            payload["description"] = description
        _encode_metadata(payload, metadata)

        return await self.make_request("POST", "/v1/payment_intents", data=payload, idempotency_key=idempotency_key)

    async def list_payment_methods(self, customer_id: str, method_type: str = "card", limit: int = 10) -> Dict[str, Any]:
        """List a customer's saved payment methods"""
        params = {"type": method_type, "limit": str(limit)}
        return await self.make_request("GET", f"/v1/customers/{customer_id}/payment_methods", params=params)

    def construct_webhook_event(self, payload: bytes, signature: str, endpoint_secret: str) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and parse the event

        Args:
            payload: Raw request body exactly as received
            signature: Stripe-Signature header value
            endpoint_secret: Webhook endpoint signing secret

        Returns:
            Dict containing webhook event data

        Raises:
            WebhookSignatureError: When the signature or payload is invalid
        """
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, endpoint_secret, tolerance=WEBHOOK_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as e:
            self.logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookSignatureError() from e

        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise WebhookSignatureError("Invalid webhook payload") from e

        if not isinstance(event, dict) or "type" not in event:
            raise WebhookSignatureError("Webhook payload is not an event")
        return event
