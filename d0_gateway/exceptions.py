"""
Gateway-specific exceptions
"""
from typing import Optional

from core.exceptions import BackerStoreError


class GatewayError(BackerStoreError):
    """A payment or delivery provider rejected or failed a call

    decline_code/error_code carry the provider's classification of the
    failure so callers can surface or record it.
    """

    outcome_unknown = False

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        decline_code: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        response_body: Optional[str] = None,
    ):
        super().__init__(
            message=f"{provider}: {message}",
            error_code="GATEWAY_ERROR",
            details={
                "provider": provider,
                "gateway_error_code": error_code,
                "decline_code": decline_code,
                "payment_intent_id": payment_intent_id,
                "api_status_code": status_code,
            },
            status_code=402 if decline_code or status_code == 402 else 502,
        )
        self.provider = provider
        self.provider_message = message
        self.api_status_code = status_code
        self.gateway_error_code = error_code
        self.decline_code = decline_code
        self.payment_intent_id = payment_intent_id
        self.response_body = response_body

    @property
    def failure_code(self) -> str:
        """Best single code for recording against an order"""
        return self.decline_code or self.gateway_error_code or "gateway_error"


class GatewayTimeoutError(GatewayError):
    """The provider did not answer in time; the call may or may not have taken effect"""

    outcome_unknown = True

    def __init__(self, provider: str, timeout_seconds: float, operation: Optional[str] = None):
        super().__init__(
            provider=provider,
            message=f"Request timed out after {timeout_seconds}s" + (f" ({operation})" if operation else ""),
            error_code="timeout",
        )
        self.status_code = 504
        self.timeout_seconds = timeout_seconds


class WebhookSignatureError(BackerStoreError):
    """Inbound event failed authenticity verification"""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message=message, error_code="INVALID_SIGNATURE", status_code=400)
