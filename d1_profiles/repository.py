"""
Repository for backer account reads and merge updates.

Accounts are never deleted. Classification attributes are written by the
import/admin side only; checkout code goes through ensure_by_email and
attach_gateway_customer.
"""

from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import NotFoundError, PersistenceError, ValidationError
from core.logging import get_logger
from database.base import utcnow
from database.models import BackerAccount

logger = get_logger("account_repository", domain="d1")

UPDATABLE_FIELDS = {
    "email",
    "name",
    "ks_backer_number",
    "ks_status",
    "ks_pledge_over_time",
    "ks_late_pledge",
    "ks_pledge_id",
    "ks_pledge_amount",
    "ks_amount_paid",
    "ks_amount_due",
    "ship_address_1",
    "ship_country",
    "stripe_customer_id",
}


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AccountRepository:
    """Repository for BackerAccount operations"""

    def __init__(self, db: Session):
        self.db = db

    def find_by_identity(self, identity_id: str) -> Optional[BackerAccount]:
        return self.db.query(BackerAccount).filter(BackerAccount.identity_id == identity_id).first()

    def get_by_identity(self, identity_id: str) -> BackerAccount:
        account = self.find_by_identity(identity_id)
        if account is None:
            raise NotFoundError("Account", identity_id)
        return account

    def find_by_email(self, email: str) -> Optional[BackerAccount]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self.db.query(BackerAccount).filter(BackerAccount.email == normalized).first()

    def create(self, email: str, name: Optional[str] = None, **attributes) -> BackerAccount:
        """Create an account; attributes are limited to the updatable fields"""
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("A valid email is required", field="email", reason="invalid_email")

        unknown = set(attributes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown account fields: {sorted(unknown)}", field="attributes")

        try:
            account = BackerAccount(email=normalized, name=name, **attributes)
            self.db.add(account)
            self.db.commit()
            self.db.refresh(account)
            logger.info(f"Created account {account.identity_id} for {normalized}")
            return account
        except IntegrityError as e:
            self.db.rollback()
            logger.error(f"Integrity error creating account for {normalized}: {e}")
            raise ValidationError("Account with this email already exists", field="email", reason="duplicate_email")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error creating account: {e}")
            raise PersistenceError(f"Failed to create account: {e}", operation="create_account") from e

    def ensure_by_email(self, email: str, name: Optional[str] = None) -> Tuple[BackerAccount, bool]:
        """
        Find the account for an email, creating a bare one on first contact

        Returns:
            (account, created)
        """
        account = self.find_by_email(email)
        if account is not None:
            return account, False
        try:
            return self.create(email, name=name), True
        except ValidationError as e:
            # Lost a race with a concurrent first contact
            if e.reason != "duplicate_email":
                raise
            account = self.find_by_email(email)
            if account is None:
                raise
            return account, False

    def update(self, identity_id: str, **fields) -> BackerAccount:
        """Merge the given fields into the account and stamp updated_at"""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown account fields: {sorted(unknown)}", field="fields")

        account = self.get_by_identity(identity_id)
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])

        try:
            for key, value in fields.items():
                setattr(account, key, value)
            account.updated_at = utcnow()
            self.db.commit()
            self.db.refresh(account)
            logger.info(f"Updated account {identity_id}: {sorted(fields)}")
            return account
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error updating account {identity_id}: {e}")
            raise PersistenceError(f"Failed to update account: {e}", operation="update_account") from e

    def attach_gateway_customer(self, identity_id: str, customer_id: str) -> str:
        """
        Store a gateway customer id unless one is already on file

        Conditional write, so two concurrent checkouts for one identity
        settle on a single stored id.

        Returns:
            The customer id on file after the write
        """
        try:
            updated = (
                self.db.query(BackerAccount)
                .filter(
                    BackerAccount.identity_id == identity_id,
                    BackerAccount.stripe_customer_id.is_(None),
                )
                .update(
                    {BackerAccount.stripe_customer_id: customer_id, BackerAccount.updated_at: utcnow()},
                    synchronize_session=False,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error attaching customer {customer_id} to {identity_id}: {e}")
            raise PersistenceError(
                f"Failed to store gateway customer: {e}",
                operation="attach_gateway_customer",
                gateway_reference=customer_id,
            ) from e

        account = self.get_by_identity(identity_id)
        self.db.refresh(account)
        if not updated and account.stripe_customer_id != customer_id:
            logger.warning(
                f"Account {identity_id} already has customer {account.stripe_customer_id}, ignoring {customer_id}"
            )
        return account.stripe_customer_id
