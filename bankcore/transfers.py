"""
Transfer Engine Module

Moves a positive amount from one account to another. The debit is committed
on its own; the credit commits together with the Transfer record and its audit
event. When that second unit fails the sender is re-credited (compensation)
before the original failure is surfaced.
A failed compensation is the one path that leaves the ledger unbalanced and is
reported as CompensationFailedError.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Tuple, Union

from .accounts import Account, AccountLedger
from .audit import AuditTrail, AuditEventType
from .currency import Money, money_from_dict, money_to_dict, to_decimal
from .errors import CompensationFailedError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_timestamp
from .validation import Validator


@dataclass
class Transfer(StorageRecord):
    """Immutable record of a completed money movement"""
    from_account_id: str
    to_account_id: str
    amount: Money


def validate_transfer(validator: Validator, money: Money, sender: Account,
                      recipient: Account) -> None:
    # Checked after rounding; an amount below the currency's smallest unit is not given
    validator.check(not money.is_zero(), "amount", "must be given")
    validator.check(not money.is_negative(), "amount", "must be positive")
    validator.check(sender.balance >= money, "account balance", "insufficient funds")
    validator.check(sender.id != recipient.id, "recipient", "cannot transfer to own account")


class TransferEngine:
    """Debit-then-credit transfers with compensating re-credit"""

    def __init__(self, storage: StorageInterface, account_ledger: AccountLedger,
                 audit_trail: AuditTrail):
        self.storage = storage
        self.account_ledger = account_ledger
        self.audit_trail = audit_trail
        self.table_name = "transfers"
        self.logger = get_logger("bankcore.transfers")

    def transfer(
        self,
        validator: Validator,
        sender: Account,
        recipient_email: str,
        amount: Union[Decimal, str, int]
    ) -> Tuple[Transfer, Account]:
        """
        Transfer amount from sender to the account registered under recipient_email

        Args:
            validator: Collector for field errors
            sender: Sender account as last read by the caller (its version is checked)
            recipient_email: Identifier of the recipient account
            amount: Amount in the ledger currency

        Returns:
            (Transfer record, updated sender account)

        Raises:
            NotFoundError: No account for recipient_email
            FailedValidationError: Invalid amount or insufficient funds
            EditConflictError: Sender or recipient changed concurrently
            CompensationFailedError: Credit and compensating re-credit both failed
        """
        recipient = self.account_ledger.get_by_email(recipient_email)

        try:
            money = Money(to_decimal(amount), sender.balance.currency)
        except ValueError:
            validator.add_error("amount", "must be a number")
            validator.raise_if_invalid()

        validate_transfer(validator, money, sender, recipient)
        validator.raise_if_invalid()

        # Debit; a failure here means nothing moved
        sender.balance = sender.balance - money
        try:
            self.account_ledger.update(sender)
        except Exception:
            sender.balance = sender.balance + money
            raise

        # Credit, transfer record and audit event commit together; on failure
        # re-credit the original sender
        now = datetime.now(timezone.utc)
        transfer = Transfer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            from_account_id=sender.id,
            to_account_id=recipient.id,
            amount=money
        )
        recipient_version = recipient.version
        recipient.balance = recipient.balance + money
        try:
            with self.storage.atomic():
                self.account_ledger.update(recipient)
                self.storage.insert(self.table_name, transfer.id,
                                    self._transfer_to_dict(transfer))
                self.audit_trail.log_event(
                    event_type=AuditEventType.TRANSFER_COMPLETED,
                    entity_type="transfer",
                    entity_id=transfer.id,
                    user_id=sender.id,
                    metadata={
                        "from_account": sender.id,
                        "to_account": recipient.id,
                        "amount": money.to_string()
                    }
                )
        except Exception as credit_error:
            recipient.balance = recipient.balance - money
            recipient.version = recipient_version
            self._compensate(sender, recipient, money, credit_error)
            raise

        log_action(
            self.logger, "info", "Transfer completed",
            user_id=sender.id, action="transfer", resource=f"transfer:{transfer.id}",
            extra={"to_account": recipient.id, "amount": money.to_string()}
        )

        return transfer, sender

    def _compensate(self, sender: Account, recipient: Account, money: Money,
                    credit_error: Exception) -> None:
        sender.balance = sender.balance + money
        try:
            self.account_ledger.update(sender)
        except Exception as compensation_error:
            log_action(
                self.logger, "critical",
                "Transfer compensation failed; sender debited without recipient credit",
                user_id=sender.id, action="transfer_compensation_failed",
                resource=f"account:{sender.id}",
                extra={
                    "to_account": recipient.id,
                    "amount": money.to_string(),
                    "credit_error": repr(credit_error),
                    "compensation_error": repr(compensation_error)
                },
                exc_info=compensation_error
            )
            self._record_compensation_failure(sender, recipient, money, credit_error,
                                              compensation_error)
            raise CompensationFailedError(
                credit_error, compensation_error, sender.id, recipient.id, money.to_string()
            ) from compensation_error

        log_action(
            self.logger, "warning", "Transfer credit failed; sender re-credited",
            user_id=sender.id, action="transfer_compensated",
            resource=f"account:{sender.id}",
            extra={"to_account": recipient.id, "amount": money.to_string(),
                   "credit_error": repr(credit_error)}
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSFER_COMPENSATED,
            entity_type="account",
            entity_id=sender.id,
            user_id=sender.id,
            metadata={"to_account": recipient.id, "amount": money.to_string(),
                      "credit_error": repr(credit_error)}
        )

    def _record_compensation_failure(self, sender: Account, recipient: Account, money: Money,
                                     credit_error: Exception,
                                     compensation_error: Exception) -> None:
        # The store may be the thing that is failing; the CRITICAL log line above
        # is the record of last resort
        try:
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_COMPENSATION_FAILED,
                entity_type="account",
                entity_id=sender.id,
                user_id=sender.id,
                metadata={
                    "to_account": recipient.id,
                    "amount": money.to_string(),
                    "credit_error": repr(credit_error),
                    "compensation_error": repr(compensation_error)
                }
            )
        except Exception as e:
            log_action(
                self.logger, "error", f"Could not audit compensation failure: {e}",
                user_id=sender.id, action="transfer_compensation_failed", exc_info=e
            )

    def list_for_account(self, account_id: str) -> List[Transfer]:
        """Transfers sent or received by account, oldest first"""
        rows = [
            row for row in self.storage.load_all(self.table_name)
            if account_id in (row['from_account_id'], row['to_account_id'])
        ]
        transfers = [self._transfer_from_dict(row) for row in rows]
        transfers.sort(key=lambda t: t.created_at)
        return transfers

    def _transfer_to_dict(self, transfer: Transfer) -> Dict:
        result = transfer.to_dict()
        result.update(money_to_dict(transfer.amount, 'amount'))
        return result

    def _transfer_from_dict(self, data: Dict) -> Transfer:
        return Transfer(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            from_account_id=data['from_account_id'],
            to_account_id=data['to_account_id'],
            amount=money_from_dict(data, 'amount')
        )
