"""
Credit Ledger
Trial credit toward a direct hire, earned from completed bookings and scoped
to a single (customer, professional) pair.

    credit_available = min(earned - consumed, cap), never below 0
    cap = 50% of the platform direct-hire fee (always the current value)

Earning never stops at 3 bookings; only the "x/3" display caps. Redemption is
partial by default: it applies whatever is available up to the request.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ... import events as ev
from ...config import DIRECT_HIRE_FEE
from ...events import EventBus
from ...exceptions import InsufficientCredit, StateConflictError, ValidationError
from ...models import TrialCreditAccount
from .repository import CreditRepository
from .schemas import CreditInfo, DirectHirePreview

logger = logging.getLogger(__name__)

# Compare-and-set attempts before a consume gives up under contention
MAX_CONSUME_ATTEMPTS = 5


class CreditLedger:
    """Service for trial credit earn/consume/release"""

    def __init__(self, db: Session, events: Optional[EventBus] = None):
        self.db = db
        self.repo = CreditRepository()
        self.events = events or EventBus()
        self._deferred: list[tuple[str, dict]] = []

    def _emit(self, name: str, commit: bool, **payload) -> None:
        if commit:
            self.events.publish(name, **payload)
        else:
            self._deferred.append((name, payload))

    def flush_events(self) -> None:
        """Publish events held back while the caller's transaction was open"""
        deferred, self._deferred = self._deferred, []
        for name, payload in deferred:
            self.events.publish(name, **payload)

    def discard_events(self) -> None:
        self._deferred = []

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def earn(
        self,
        customer_id: str,
        professional_id: str,
        amount: int,
        booking_id: Optional[int] = None,
        commit: bool = True,
    ) -> TrialCreditAccount:
        """Credit a completed booking; a booking earns at most once"""
        if amount < 0:
            raise ValidationError("Earned credit cannot be negative", amount=amount)

        account = self.repo.ensure_account(self.db, customer_id, professional_id)

        if booking_id is not None and self.repo.get_booking_transaction(self.db, booking_id, "earn"):
            logger.info(f"ℹ️ Booking {booking_id} already earned credit; skipping")
            return account

        self.repo.increment_earned(self.db, account.id, amount)
        self.repo.add_transaction(self.db, account.id, "earn", amount, booking_id)
        if commit:
            self.db.commit()

        account = self.repo.get_account(self.db, customer_id, professional_id)
        logger.info(
            f"💳 Credit earned: customer={customer_id} professional={professional_id} "
            f"amount={amount} available={account.credit_available}"
        )
        self._emit(
            ev.CREDIT_EARNED,
            commit,
            customer_id=customer_id,
            professional_id=professional_id,
            amount=amount,
            booking_id=booking_id,
            credit_available=account.credit_available,
        )
        return account

    def consume(
        self,
        customer_id: str,
        professional_id: str,
        amount: int,
        exact: bool = False,
        booking_id: Optional[int] = None,
        commit: bool = True,
    ) -> int:
        """
        Redeem credit for this pair.

        Returns:
            The amount actually applied: min(requested, credit_available)

        Raises:
            InsufficientCredit: only when exact=True and the balance is short
        """
        if amount <= 0:
            raise ValidationError("Redemption amount must be positive", amount=amount)

        for _ in range(MAX_CONSUME_ATTEMPTS):
            account = self.repo.get_account(self.db, customer_id, professional_id)
            available = account.credit_available if account else 0
            applied = min(amount, available)

            if exact and applied < amount:
                raise InsufficientCredit(requested=amount, available=available)
            if applied == 0:
                return 0

            consumed = account.credit_consumed_total
            if self.repo.compare_and_set_consumed(self.db, account.id, consumed, consumed + applied):
                break
            logger.debug(f"🔁 Credit consume contention for account {account.id}; retrying")
        else:
            raise StateConflictError(
                "Credit balance changed concurrently; try again",
                attempted="consume",
                customer_id=customer_id,
                professional_id=professional_id,
            )

        self.repo.add_transaction(self.db, account.id, "consume", applied, booking_id)
        if commit:
            self.db.commit()

        logger.info(
            f"💳 Credit consumed: customer={customer_id} professional={professional_id} "
            f"requested={amount} applied={applied}"
        )
        self._emit(
            ev.CREDIT_CONSUMED,
            commit,
            customer_id=customer_id,
            professional_id=professional_id,
            amount=applied,
            booking_id=booking_id,
        )
        return applied

    def release(
        self,
        customer_id: str,
        professional_id: str,
        amount: int,
        booking_id: int,
        commit: bool = True,
    ) -> int:
        """Return credit consumed by a booking that was cancelled or declined"""
        if amount <= 0:
            return 0
        if self.repo.get_booking_transaction(self.db, booking_id, "release"):
            return 0

        account = self.repo.get_account(self.db, customer_id, professional_id)
        if account is None or not self.repo.decrement_consumed(self.db, account.id, amount):
            logger.warning(
                f"⚠️ Could not release {amount} credit for booking {booking_id} "
                f"(customer={customer_id}, professional={professional_id})"
            )
            return 0

        self.repo.add_transaction(self.db, account.id, "release", amount, booking_id)
        if commit:
            self.db.commit()

        logger.info(f"💳 Credit released: booking={booking_id} amount={amount}")
        self._emit(
            ev.CREDIT_RELEASED,
            commit,
            customer_id=customer_id,
            professional_id=professional_id,
            amount=amount,
            booking_id=booking_id,
        )
        return amount

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def get_available(self, customer_id: str, professional_id: str) -> int:
        account = self.repo.get_account(self.db, customer_id, professional_id)
        return account.credit_available if account else 0

    @staticmethod
    def _to_info(customer_id: str, professional_id: str, account: Optional[TrialCreditAccount]) -> CreditInfo:
        cap = TrialCreditAccount.credit_cap()
        if account is None:
            return CreditInfo(
                customer_id=customer_id,
                professional_id=professional_id,
                has_credit=False,
                credit_available=0,
                credit_earned_total=0,
                credit_consumed_total=0,
                bookings_completed=0,
                bookings_completed_display=0,
                max_credit=cap,
                percentage_earned=0,
            )

        earned_toward_cap = min(account.credit_earned_total, cap)
        return CreditInfo(
            customer_id=customer_id,
            professional_id=professional_id,
            has_credit=account.credit_available > 0,
            credit_available=account.credit_available,
            credit_earned_total=account.credit_earned_total,
            credit_consumed_total=account.credit_consumed_total,
            bookings_completed=account.bookings_completed_count,
            bookings_completed_display=account.bookings_completed_display,
            max_credit=cap,
            percentage_earned=round(earned_toward_cap / cap * 100, 1) if cap else 0,
        )

    def get_credit_info(self, customer_id: str, professional_id: str) -> CreditInfo:
        account = self.repo.get_account(self.db, customer_id, professional_id)
        return self._to_info(customer_id, professional_id, account)

    def list_customer_credits(self, customer_id: str) -> list[CreditInfo]:
        return [
            self._to_info(customer_id, account.professional_id, account)
            for account in self.repo.list_accounts_for_customer(self.db, customer_id)
        ]

    def preview_direct_hire(
        self, customer_id: str, professional_id: str, direct_hire_fee: int = DIRECT_HIRE_FEE
    ) -> DirectHirePreview:
        """Price a direct hire after credit, without consuming anything"""
        available = self.get_available(customer_id, professional_id)
        discount = min(available, direct_hire_fee)
        return DirectHirePreview(
            professional_id=professional_id,
            direct_hire_fee=direct_hire_fee,
            discount_applied=discount,
            final_price=max(direct_hire_fee - discount, 0),
            credit_remaining=available - discount,
        )
