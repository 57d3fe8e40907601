"""
Loan Engine Module

Originates loans, accrues simple daily interest, applies payments and writes
loans off.

Interest is accrued once per payment event from the loan's accrual anchor
(last_updated_at), not from creation:

    interest   = elapsed_days * remaining_amount * daily_interest_rate / 100
    total_owed = remaining_amount + interest

Each payment resets the anchor to the payment time so interest already settled
by an earlier partial payment is never charged again. Origination does not
touch the account ledger; the caller that triggers it credits the proceeds.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money, money_from_dict, money_to_dict, to_decimal
from .errors import NotFoundError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_timestamp
from .validation import Validator, value_in_list


SECONDS_PER_DAY = Decimal(86400)


class LoanAction(Enum):
    """Origination rows and payment-ledger rows share the loans table"""
    TOOK = "took"
    PAID = "paid"


@dataclass
class Loan(StorageRecord):
    """
    Loan row.

    A TOOK row is the mutable loan itself. A PAID row is an immutable
    payment-ledger entry whose principal_amount is the amount applied and
    whose settles_loan_id names the loan it paid down.
    """
    owner_id: str
    principal_amount: Money
    daily_interest_rate: Decimal  # percent per day
    remaining_amount: Money
    action: LoanAction
    last_updated_at: datetime
    over_payment: Money
    settles_loan_id: Optional[str] = None
    version: int = 1

    @property
    def is_paid_off(self) -> bool:
        return self.remaining_amount.is_zero()


@dataclass
class LoanDeletion(StorageRecord):
    """Immutable write-off record; snapshot of the loan when it was deleted"""
    loan_id: str
    debtor_id: str
    deleted_by_id: str
    principal_amount: Money
    daily_interest_rate: Decimal
    remaining_amount: Money
    over_payment: Money
    loan_created_at: datetime
    reason: str


def validate_loan(validator: Validator, loan: Loan) -> None:
    validator.check(not loan.principal_amount.is_zero(), "amount", "must be given")
    validator.check(loan.principal_amount.is_positive(), "amount", "must be more than 0")
    validator.check(loan.daily_interest_rate >= 0, "daily_interest_rate", "must not be negative")
    validator.check(value_in_list(loan.action, LoanAction.TOOK, LoanAction.PAID),
                    "action", "invalid")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoanEngine:
    """
    Loan origination, interest accrual, payments and write-offs
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        currency: Currency = Currency.USD,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.currency = currency
        self.clock = clock
        self.loans_table = "loans"
        self.deletions_table = "loan_deletions"
        self.logger = get_logger("bankcore.loans")

    def originate(
        self,
        validator: Validator,
        owner_id: str,
        amount: Union[Decimal, str, int],
        daily_interest_rate: Union[Decimal, str, int]
    ) -> Loan:
        """
        Create a loan with remaining_amount equal to amount

        Raises:
            FailedValidationError: Amount not positive, rate negative or not a number
        """
        try:
            principal = Money(to_decimal(amount), self.currency)
        except ValueError:
            validator.add_error("amount", "must be a number")
            principal = Money.zero(self.currency)
        try:
            rate = to_decimal(daily_interest_rate)
        except ValueError:
            validator.add_error("daily_interest_rate", "must be a number")
            rate = Decimal('0')

        now = self.clock()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            principal_amount=principal,
            daily_interest_rate=rate,
            remaining_amount=principal,
            action=LoanAction.TOOK,
            last_updated_at=now,
            over_payment=Money.zero(self.currency)
        )
        validate_loan(validator, loan)
        validator.raise_if_invalid()

        with self.storage.atomic():
            self.storage.insert(self.loans_table, loan.id, self._loan_to_dict(loan))
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_ORIGINATED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=owner_id,
                metadata={
                    "principal": principal.to_string(),
                    "daily_interest_rate": str(rate)
                }
            )

        log_action(
            self.logger, "info", "Loan originated",
            user_id=owner_id, action="originate_loan", resource=f"loan:{loan.id}",
            extra={"principal": principal.to_string(), "daily_interest_rate": str(rate)}
        )
        return loan

    def accrued_interest(self, loan: Loan, at: Optional[datetime] = None) -> Decimal:
        """Simple interest on remaining_amount since the accrual anchor"""
        at = at or self.clock()
        elapsed_seconds = Decimal(str((at - loan.last_updated_at).total_seconds()))
        if elapsed_seconds < 0:
            elapsed_seconds = Decimal('0')
        elapsed_days = elapsed_seconds / SECONDS_PER_DAY
        return elapsed_days * loan.remaining_amount.amount * (loan.daily_interest_rate / Decimal(100))

    def make_payment(
        self,
        validator: Validator,
        loan_id: str,
        payer_id: str,
        payment_amount: Union[Decimal, str, int]
    ) -> Loan:
        """
        Apply a payment to a loan owned by payer_id

        The loan update is version-checked, so of two concurrent payments
        against the same accrual window only one succeeds.

        Returns:
            Updated loan

        Raises:
            FailedValidationError: Payment not positive, or loan already paid off
            NotFoundError: Loan absent or not owned by payer_id
            EditConflictError: Loan changed concurrently
        """
        try:
            payment = Money(to_decimal(payment_amount), self.currency).amount
        except ValueError:
            payment = Decimal('0')
        # Rounded first so a sub-cent payment cannot leave the loan unchanged
        validator.check(payment > 0, "amount", "must be more than 0")
        validator.raise_if_invalid()

        loan = self.get_loan(loan_id, owner_id=payer_id)

        validator.check(not loan.is_paid_off, "loan", "payment is completed")
        validator.raise_if_invalid()

        now = self.clock()
        interest = self.accrued_interest(loan, now)
        total_owed = loan.remaining_amount.amount + interest

        applied = Money(min(payment, total_owed), self.currency)
        overpayment = Money(max(payment - total_owed, Decimal('0')), self.currency)

        loan.remaining_amount = Money(max(total_owed - payment, Decimal('0')), self.currency)
        loan.over_payment = loan.over_payment + overpayment
        loan.last_updated_at = now
        loan.updated_at = now

        payment_row = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=loan.owner_id,
            principal_amount=applied,
            daily_interest_rate=loan.daily_interest_rate,
            remaining_amount=Money.zero(self.currency),
            action=LoanAction.PAID,
            last_updated_at=now,
            over_payment=overpayment,
            settles_loan_id=loan.id
        )

        with self.storage.atomic():
            loan.version = self.storage.update(
                self.loans_table, loan.id, self._loan_to_dict(loan), loan.version
            )
            self.storage.insert(self.loans_table, payment_row.id, self._loan_to_dict(payment_row))
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAYMENT_MADE,
                entity_type="loan",
                entity_id=loan.id,
                user_id=payer_id,
                metadata={
                    "payment": applied.to_string(),
                    "interest": str(interest),
                    "remaining": loan.remaining_amount.to_string(),
                    "over_payment": overpayment.to_string()
                }
            )
            if loan.is_paid_off:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_PAID_OFF,
                    entity_type="loan",
                    entity_id=loan.id,
                    user_id=payer_id,
                    metadata={"over_payment": loan.over_payment.to_string()}
                )

        log_action(
            self.logger, "info", "Loan payment applied",
            user_id=payer_id, action="loan_payment", resource=f"loan:{loan.id}",
            extra={
                "payment": applied.to_string(),
                "remaining": loan.remaining_amount.to_string()
            }
        )
        return loan

    def delete_loan(
        self,
        validator: Validator,
        loan_id: str,
        debtor_id: str,
        deleted_by_id: str,
        reason: str
    ) -> LoanDeletion:
        """
        Write a loan off: record a LoanDeletion snapshot and remove the loan

        Raises:
            FailedValidationError: Empty reason
            NotFoundError: Loan absent or not owned by debtor_id
        """
        validator.check(bool(reason and reason.strip()), "reason", "must be provided")
        validator.raise_if_invalid()

        loan = self.get_loan(loan_id, owner_id=debtor_id)

        now = self.clock()
        deletion = LoanDeletion(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            debtor_id=loan.owner_id,
            deleted_by_id=deleted_by_id,
            principal_amount=loan.principal_amount,
            daily_interest_rate=loan.daily_interest_rate,
            remaining_amount=loan.remaining_amount,
            over_payment=loan.over_payment,
            loan_created_at=loan.created_at,
            reason=reason
        )

        with self.storage.atomic():
            self.storage.insert(self.deletions_table, deletion.id,
                                self._deletion_to_dict(deletion))
            if not self.storage.delete(self.loans_table, loan.id):
                raise NotFoundError(f"loan {loan.id} not found")
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DELETED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=deleted_by_id,
                metadata={
                    "debtor_id": loan.owner_id,
                    "remaining": loan.remaining_amount.to_string(),
                    "reason": reason
                }
            )

        log_action(
            self.logger, "info", "Loan written off",
            user_id=deleted_by_id, action="delete_loan", resource=f"loan:{loan.id}",
            extra={"debtor_id": loan.owner_id, "remaining": loan.remaining_amount.to_string()}
        )
        return deletion

    def get_loan(self, loan_id: str, owner_id: Optional[str] = None) -> Loan:
        """
        Load a loan (TOOK row); NotFoundError if absent, a payment-ledger row,
        or not owned by owner_id when given
        """
        data = self.storage.load(self.loans_table, loan_id)
        if not data or data.get('action') != LoanAction.TOOK.value:
            raise NotFoundError(f"loan {loan_id} not found")
        loan = self._loan_from_dict(data)
        if owner_id is not None and loan.owner_id != owner_id:
            raise NotFoundError(f"loan {loan_id} not found")
        return loan

    def list_loans(self, owner_id: str, action: Optional[LoanAction] = None) -> List[Loan]:
        """Loan rows of owner_id, optionally of one action, oldest first"""
        filters = {'owner_id': owner_id}
        if action is not None:
            filters['action'] = action.value
        loans = [self._loan_from_dict(row) for row in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda l: l.created_at)
        return loans

    def payment_history(self, loan_id: str) -> List[Loan]:
        """Payment-ledger rows that paid down loan_id, oldest first"""
        rows = self.storage.find(self.loans_table, {
            'settles_loan_id': loan_id,
            'action': LoanAction.PAID.value
        })
        payments = [self._loan_from_dict(row) for row in rows]
        payments.sort(key=lambda l: l.created_at)
        return payments

    def get_deletion(self, loan_id: str) -> LoanDeletion:
        rows = self.storage.find(self.deletions_table, {'loan_id': loan_id})
        if not rows:
            raise NotFoundError(f"no write-off for loan {loan_id}")
        return self._deletion_from_dict(rows[0])

    def _loan_to_dict(self, loan: Loan) -> Dict:
        result = loan.to_dict()
        result.update(money_to_dict(loan.principal_amount, 'principal_amount'))
        result.update(money_to_dict(loan.remaining_amount, 'remaining_amount'))
        result.update(money_to_dict(loan.over_payment, 'over_payment'))
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        return Loan(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            owner_id=data['owner_id'],
            principal_amount=money_from_dict(data, 'principal_amount'),
            daily_interest_rate=Decimal(data['daily_interest_rate']),
            remaining_amount=money_from_dict(data, 'remaining_amount'),
            action=LoanAction(data['action']),
            last_updated_at=parse_timestamp(data['last_updated_at']),
            over_payment=money_from_dict(data, 'over_payment'),
            settles_loan_id=data.get('settles_loan_id'),
            version=data.get('version', 1)
        )

    def _deletion_to_dict(self, deletion: LoanDeletion) -> Dict:
        result = deletion.to_dict()
        result.update(money_to_dict(deletion.principal_amount, 'principal_amount'))
        result.update(money_to_dict(deletion.remaining_amount, 'remaining_amount'))
        result.update(money_to_dict(deletion.over_payment, 'over_payment'))
        return result

    def _deletion_from_dict(self, data: Dict) -> LoanDeletion:
        return LoanDeletion(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            loan_id=data['loan_id'],
            debtor_id=data['debtor_id'],
            deleted_by_id=data['deleted_by_id'],
            principal_amount=money_from_dict(data, 'principal_amount'),
            daily_interest_rate=Decimal(data['daily_interest_rate']),
            remaining_amount=money_from_dict(data, 'remaining_amount'),
            over_payment=money_from_dict(data, 'over_payment'),
            loan_created_at=parse_timestamp(data['loan_created_at']),
            reason=data['reason']
        )
