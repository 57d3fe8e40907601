"""
Transaction Recorder Module

Deposits and withdrawals. Each appends an immutable Transaction row and
applies the matching version-checked balance update in one unit of work.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Union

from .accounts import AccountLedger
from .audit import AuditTrail, AuditEventType
from .currency import Money, money_from_dict, money_to_dict, to_decimal
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_timestamp
from .validation import Validator


class TransactionAction(Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"


@dataclass
class Transaction(StorageRecord):
    """Immutable deposit/withdraw record"""
    user_id: str
    action: TransactionAction
    amount: Money
    performed_by: str


def validate_transaction(validator: Validator, money: Optional[Money],
                         performed_by: str) -> None:
    if money is None:
        validator.add_error("amount", "must be a number")
    else:
        validator.check(not money.is_zero(), "amount", "must be given")
        validator.check(money.is_positive(), "amount", "must be more than 0")
    validator.check(bool(performed_by), "performed_by", "must be provided")


class TransactionRecorder:
    """Applies deposits and withdrawals against the account ledger"""

    def __init__(self, storage: StorageInterface, account_ledger: AccountLedger,
                 audit_trail: AuditTrail):
        self.storage = storage
        self.account_ledger = account_ledger
        self.audit_trail = audit_trail
        self.table_name = "transactions"
        self.logger = get_logger("bankcore.transactions")

    def deposit(self, validator: Validator, user_id: str,
                amount: Union[Decimal, str, int], performed_by: str) -> Transaction:
        """
        Credit user_id by amount

        Raises:
            FailedValidationError: Amount not positive or actor missing
            NotFoundError: No such account
            EditConflictError: Account changed concurrently
        """
        return self._apply(validator, TransactionAction.DEPOSIT, user_id, amount, performed_by)

    def withdraw(self, validator: Validator, user_id: str,
                 amount: Union[Decimal, str, int], performed_by: str) -> Transaction:
        """
        Debit user_id by amount; 'account balance' validation error when the
        balance does not cover it
        """
        return self._apply(validator, TransactionAction.WITHDRAW, user_id, amount, performed_by)

    def _apply(self, validator: Validator, action: TransactionAction, user_id: str,
               amount: Union[Decimal, str, int], performed_by: str) -> Transaction:
        try:
            money = Money(to_decimal(amount), self.account_ledger.currency)
        except ValueError:
            money = None
        validate_transaction(validator, money, performed_by)
        validator.raise_if_invalid()

        with self.storage.atomic():
            account = self.account_ledger.get(user_id)

            if action == TransactionAction.WITHDRAW:
                validator.check(account.balance >= money, "account balance", "insufficient funds")
                validator.raise_if_invalid()
                account.balance = account.balance - money
            else:
                account.balance = account.balance + money

            now = datetime.now(timezone.utc)
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                action=action,
                amount=money,
                performed_by=performed_by
            )
            self.storage.insert(self.table_name, transaction.id,
                                self._transaction_to_dict(transaction))
            self.account_ledger.update(account)

            self.audit_trail.log_event(
                event_type=(AuditEventType.DEPOSIT_RECORDED
                            if action == TransactionAction.DEPOSIT
                            else AuditEventType.WITHDRAWAL_RECORDED),
                entity_type="transaction",
                entity_id=transaction.id,
                user_id=user_id,
                metadata={
                    "amount": money.to_string(),
                    "performed_by": performed_by,
                    "balance_after": account.balance.to_string()
                }
            )

        log_action(
            self.logger, "info", f"{action.value.capitalize()} recorded",
            user_id=user_id, action=action.value.lower(),
            resource=f"transaction:{transaction.id}",
            extra={"amount": money.to_string(), "performed_by": performed_by}
        )
        return transaction

    def list_for_account(self, account_id: str) -> List[Transaction]:
        """Deposits and withdrawals of account, oldest first"""
        rows = self.storage.find(self.table_name, {'user_id': account_id})
        transactions = [self._transaction_from_dict(row) for row in rows]
        transactions.sort(key=lambda t: t.created_at)
        return transactions

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        result = transaction.to_dict()
        result.update(money_to_dict(transaction.amount, 'amount'))
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        return Transaction(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            user_id=data['user_id'],
            action=TransactionAction(data['action']),
            amount=money_from_dict(data, 'amount'),
            performed_by=data['performed_by']
        )
