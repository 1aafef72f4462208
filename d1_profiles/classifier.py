"""
Profile classifier

Maps raw account attributes to one of the closed Classification values.
Pure: reads attributes, performs no I/O, mutates nothing.
"""

from typing import Any, Optional

from core.logging import get_logger
from database.models import BackerStatus

from .types import Classification

logger = get_logger(__name__, domain="d1")


def classify(account: Optional[Any]) -> Classification:
    """
    Classify an account, highest precedence first:

    1. no account or no backer number -> guest
    2. late-pledge flag -> late_pledge (regardless of status)
    3. status dropped -> dropped
    4. status canceled -> canceled
    5. status collected with pledge-over-time -> pot
    6. status collected -> collected
    7. anything else -> guest, logged as unexpected

    Args:
        account: BackerAccount (or any object with the same ks_* attributes),
            or None for a guest

    Returns:
        Classification
    """
    if account is None or not getattr(account, "ks_backer_number", None):
        return Classification.GUEST

    if getattr(account, "ks_late_pledge", False):
        return Classification.LATE_PLEDGE

    status = getattr(account, "ks_status", None)
    if status == BackerStatus.DROPPED.value:
        return Classification.DROPPED
    if status == BackerStatus.CANCELED.value:
        return Classification.CANCELED
    if status == BackerStatus.COLLECTED.value:
        if getattr(account, "ks_pledge_over_time", False):
            return Classification.POT
        return Classification.COLLECTED

    logger.warning(
        f"Unexpected backer status {status!r} for {getattr(account, 'identity_id', None)}, treating as guest"
    )
    return Classification.GUEST
