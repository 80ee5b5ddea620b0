"""Credit repository - Database operations for trial credit accounts

Balances are only ever changed with single UPDATE statements (atomic increments
or compare-and-set), never by writing back a value read earlier.
"""

from typing import Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from ...models import TrialCreditAccount, TrialCreditTransaction
from ...shared.money import utcnow


class CreditRepository:
    """Repository for trial credit database operations"""

    @staticmethod
    def get_account(db: Session, customer_id: str, professional_id: str) -> Optional[TrialCreditAccount]:
        """Get the account for a pair, always reading the current row"""
        return (
            db.query(TrialCreditAccount)
            .populate_existing()
            .filter(
                TrialCreditAccount.customer_id == customer_id,
                TrialCreditAccount.professional_id == professional_id,
            )
            .first()
        )

    @staticmethod
    def list_accounts_for_customer(db: Session, customer_id: str) -> list[TrialCreditAccount]:
        return (
            db.query(TrialCreditAccount)
            .filter(TrialCreditAccount.customer_id == customer_id)
            .order_by(TrialCreditAccount.updated_at.desc())
            .all()
        )

    @staticmethod
    def ensure_account(db: Session, customer_id: str, professional_id: str) -> TrialCreditAccount:
        """Create the pair's account if missing; safe under concurrent first earns"""
        values = {
            "customer_id": customer_id,
            "professional_id": professional_id,
            "credit_earned_total": 0,
            "credit_consumed_total": 0,
            "bookings_completed_count": 0,
        }
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            db.execute(
                pg_insert(TrialCreditAccount)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["customer_id", "professional_id"])
            )
        elif dialect == "sqlite":
            db.execute(
                sqlite_insert(TrialCreditAccount)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["customer_id", "professional_id"])
            )
        elif CreditRepository.get_account(db, customer_id, professional_id) is None:
            db.add(TrialCreditAccount(**values))
            db.flush()

        return CreditRepository.get_account(db, customer_id, professional_id)

    @staticmethod
    def increment_earned(db: Session, account_id: int, amount: int) -> None:
        """Atomic earn: totals are incremented in SQL"""
        now = utcnow()
        db.query(TrialCreditAccount).filter(TrialCreditAccount.id == account_id).update(
            {
                TrialCreditAccount.credit_earned_total: TrialCreditAccount.credit_earned_total + amount,
                TrialCreditAccount.bookings_completed_count: TrialCreditAccount.bookings_completed_count + 1,
                TrialCreditAccount.last_earned_at: now,
                TrialCreditAccount.updated_at: now,
            },
            synchronize_session=False,
        )

    @staticmethod
    def compare_and_set_consumed(db: Session, account_id: int, expected: int, new_value: int) -> bool:
        """Set credit_consumed_total only if nobody changed it since it was read"""
        updated = (
            db.query(TrialCreditAccount)
            .filter(
                TrialCreditAccount.id == account_id,
                TrialCreditAccount.credit_consumed_total == expected,
            )
            .update(
                {
                    TrialCreditAccount.credit_consumed_total: new_value,
                    TrialCreditAccount.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    @staticmethod
    def decrement_consumed(db: Session, account_id: int, amount: int) -> bool:
        """Atomic release of previously consumed credit"""
        updated = (
            db.query(TrialCreditAccount)
            .filter(
                TrialCreditAccount.id == account_id,
                TrialCreditAccount.credit_consumed_total >= amount,
            )
            .update(
                {
                    TrialCreditAccount.credit_consumed_total: TrialCreditAccount.credit_consumed_total - amount,
                    TrialCreditAccount.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    @staticmethod
    def get_booking_transaction(db: Session, booking_id: int, kind: str) -> Optional[TrialCreditTransaction]:
        return (
            db.query(TrialCreditTransaction)
            .filter(TrialCreditTransaction.booking_id == booking_id, TrialCreditTransaction.kind == kind)
            .first()
        )

    @staticmethod
    def add_transaction(
        db: Session, account_id: int, kind: str, amount: int, booking_id: Optional[int] = None
    ) -> TrialCreditTransaction:
        entry = TrialCreditTransaction(account_id=account_id, kind=kind, amount=amount, booking_id=booking_id)
        db.add(entry)
        db.flush()
        return entry
