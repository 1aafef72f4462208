"""
D9 Delivery - payment notifications

Fire-and-forget payment emails (success, failure, card saved) and the
operator alerts for disputes and bulk capture summaries, sent via SendGrid.
"""

from .notifications import NotificationService

__all__ = ["NotificationService"]
