"""
D0 Gateway - clients for the payment gateway and email provider

No other domain makes direct external calls - everything goes through this gateway.
"""

from .base import BaseAPIClient
from .exceptions import GatewayError, GatewayTimeoutError, WebhookSignatureError

__all__ = [
    "BaseAPIClient",
    "GatewayError",
    "GatewayTimeoutError",
    "WebhookSignatureError",
]
