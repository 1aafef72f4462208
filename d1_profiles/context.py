"""
Per-request context carried through the checkout call chain
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from .rules import CachedRuleStore, RuleStore


@dataclass
class RequestContext:
    """
    Owns the caches that live exactly one request: rule reads and resolved
    profiles. Create one per request and drop it afterwards.
    """

    db: Session
    rules: Any = None
    profiles: Dict[str, Any] = field(default_factory=dict)
    request_id: Optional[str] = None

    def __post_init__(self):
        if self.rules is None:
            self.rules = CachedRuleStore(RuleStore(self.db))

    @classmethod
    def for_session(cls, db: Session, rules: Any = None, request_id: Optional[str] = None) -> "RequestContext":
        return cls(db=db, rules=rules, request_id=request_id)
