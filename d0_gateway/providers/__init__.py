"""
Provider-specific API clients for D0 Gateway
"""

from .sendgrid import SendGridClient
from .stripe import StripeClient

__all__ = [
    "SendGridClient",
    "StripeClient",
]
