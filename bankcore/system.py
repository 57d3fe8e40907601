"""
Banking Core System Module

Wires the record store, audit trail, ledger and engines together and exposes
one operation per business action. Every operation returns an OperationResult;
typed domain failures map to a status category and anything else is logged
and reported as a generic server error.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .accounts import Account, AccountLedger
from .audit import AuditTrail
from .config import BankCoreConfig, get_config
from .currency import Currency
from .errors import (
    CompensationFailedError, DuplicateKeyError, EditConflictError,
    FailedValidationError, InvalidTokenError, NotFoundError
)
from .loan_requests import LoanRequestWorkflow
from .loans import LoanEngine
from .logging_config import get_logger, log_action, setup_logging
from .notifications import NotificationDispatcher, create_sender
from .storage import StorageInterface, create_storage
from .tokens import TokenStore
from .transactions import TransactionRecorder
from .transfers import TransferEngine
from .validation import Validator


class OperationStatus(Enum):
    OK = "ok"
    FAILED_VALIDATION = "failed_validation"
    NOT_FOUND = "not_found"
    DUPLICATE = "duplicate"
    EDIT_CONFLICT = "edit_conflict"
    INVALID_TOKEN = "invalid_token"
    INCONSISTENT = "inconsistent"
    SERVER_ERROR = "server_error"


SERVER_ERROR_MESSAGE = "the server encountered a problem and could not process your request"
EDIT_CONFLICT_MESSAGE = "unable to update the record due to an edit conflict, please try again"
NOT_FOUND_MESSAGE = "the requested resource could not be found"
INVALID_TOKEN_MESSAGE = "invalid or expired token"
INCONSISTENT_MESSAGE = "the operation could not be completed and requires manual reconciliation"


@dataclass
class OperationResult:
    """Outcome of one business action"""
    status: OperationStatus
    value: Any = None
    errors: Dict[str, List[str]] = field(default_factory=dict)
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == OperationStatus.OK


class BankingCore:
    """Banking core with all components initialized"""

    def __init__(
        self,
        storage: StorageInterface,
        currency: Currency = Currency.USD,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        activation_ttl: timedelta = timedelta(days=3),
        password_min_length: int = 8,
        password_max_length: int = 72,
        name_max_length: int = 500
    ):
        self.storage = storage
        self.notifier = notifier
        self.logger = get_logger("bankcore.system")

        self.audit_trail = AuditTrail(storage)
        self.token_store = TokenStore(storage)
        self.account_ledger = AccountLedger(
            storage, self.audit_trail,
            currency=currency,
            token_store=self.token_store,
            notifier=notifier,
            activation_ttl=activation_ttl,
            password_min_length=password_min_length,
            password_max_length=password_max_length,
            name_max_length=name_max_length
        )
        self.transfer_engine = TransferEngine(storage, self.account_ledger, self.audit_trail)
        self.transaction_recorder = TransactionRecorder(storage, self.account_ledger, self.audit_trail)
        if clock is not None:
            self.loan_engine = LoanEngine(storage, self.audit_trail, currency=currency, clock=clock)
        else:
            self.loan_engine = LoanEngine(storage, self.audit_trail, currency=currency)
        self.loan_request_workflow = LoanRequestWorkflow(
            storage, self.account_ledger, self.loan_engine, self.audit_trail, notifier=notifier
        )

    @classmethod
    def from_config(cls, config: Optional[BankCoreConfig] = None) -> 'BankingCore':
        """Build a core from settings (environment / .env when config is omitted)"""
        config = config or get_config()
        setup_logging(level=config.log_level, log_format=config.log_format,
                      log_file=config.log_file)

        storage = create_storage(config.database_url, timeout=config.store_timeout_seconds)
        sender = create_sender(config.notification_webhook_url, config.notification_sender,
                               config.notification_timeout)
        notifier = NotificationDispatcher(sender, max_workers=config.notification_workers)

        return cls(
            storage,
            currency=Currency[config.default_currency.upper()],
            notifier=notifier,
            activation_ttl=timedelta(hours=config.activation_token_ttl_hours),
            password_min_length=config.password_min_length,
            password_max_length=config.password_max_length,
            name_max_length=config.name_max_length
        )

    def close(self) -> None:
        if self.notifier is not None:
            self.notifier.shutdown(wait=True)
        self.storage.close()

    def _run(self, action: str, operation: Callable[[Validator], Any]) -> OperationResult:
        validator = Validator()
        try:
            return OperationResult(OperationStatus.OK, value=operation(validator))
        except FailedValidationError as e:
            return OperationResult(OperationStatus.FAILED_VALIDATION, errors=e.errors)
        except NotFoundError:
            return OperationResult(OperationStatus.NOT_FOUND, message=NOT_FOUND_MESSAGE)
        except DuplicateKeyError as e:
            return OperationResult(
                OperationStatus.DUPLICATE,
                errors={e.field: [f"a record with this {e.field} already exists"]}
            )
        except EditConflictError:
            return OperationResult(OperationStatus.EDIT_CONFLICT, message=EDIT_CONFLICT_MESSAGE)
        except InvalidTokenError:
            return OperationResult(
                OperationStatus.INVALID_TOKEN,
                errors={"token": [INVALID_TOKEN_MESSAGE]}
            )
        except CompensationFailedError:
            # Logged at CRITICAL by the transfer engine
            return OperationResult(OperationStatus.INCONSISTENT, message=INCONSISTENT_MESSAGE)
        except Exception as e:
            log_action(
                self.logger, "error", f"Unhandled error in {action}: {e}",
                action=action, exc_info=e
            )
            return OperationResult(OperationStatus.SERVER_ERROR, message=SERVER_ERROR_MESSAGE)

    def register(self, name: str, email: str, password: str) -> OperationResult:
        """value: (Account, activation token)"""
        return self._run("register", lambda v: self.account_ledger.register(v, name, email, password))

    def activate(self, token: str) -> OperationResult:
        """value: activated Account"""
        return self._run("activate", lambda v: self.account_ledger.activate(token))

    def transfer(self, sender: Union[Account, str], recipient_email: str,
                 amount: Union[Decimal, str, int]) -> OperationResult:
        """
        value: (Transfer, updated sender Account)

        sender may be the Account as last read by the caller, whose version is
        then checked, or an account id to read now.
        """
        def operation(v: Validator):
            account = sender if isinstance(sender, Account) else self.account_ledger.get(sender)
            return self.transfer_engine.transfer(v, account, recipient_email, amount)
        return self._run("transfer", operation)

    def originate_loan(self, owner_id: str, amount: Union[Decimal, str, int],
                       daily_interest_rate: Union[Decimal, str, int]) -> OperationResult:
        """value: Loan (the ledger is not credited)"""
        def operation(v: Validator):
            self.account_ledger.get(owner_id)
            return self.loan_engine.originate(v, owner_id, amount, daily_interest_rate)
        return self._run("originate_loan", operation)

    def request_loan(self, user_id: str, amount: Union[Decimal, str, int],
                     daily_interest_rate: Union[Decimal, str, int]) -> OperationResult:
        """value: PENDING LoanRequest"""
        def operation(v: Validator):
            requester = self.account_ledger.get(user_id)
            return self.loan_request_workflow.new(v, requester, amount, daily_interest_rate)
        return self._run("request_loan", operation)

    def accept_loan_request(self, request_id: str, user_id: str,
                            decided_by: Optional[str] = None) -> OperationResult:
        """value: (LoanRequest, Loan)"""
        return self._run(
            "accept_loan_request",
            lambda v: self.loan_request_workflow.accept(request_id, user_id, decided_by)
        )

    def decline_loan_request(self, request_id: str, user_id: str,
                             decided_by: Optional[str] = None) -> OperationResult:
        """value: LoanRequest"""
        return self._run(
            "decline_loan_request",
            lambda v: self.loan_request_workflow.decline(request_id, user_id, decided_by)
        )

    def make_payment(self, loan_id: str, payer_id: str,
                     amount: Union[Decimal, str, int]) -> OperationResult:
        """value: updated Loan"""
        return self._run(
            "make_payment",
            lambda v: self.loan_engine.make_payment(v, loan_id, payer_id, amount)
        )

    def delete_loan(self, loan_id: str, debtor_id: str, deleted_by_id: str,
                    reason: str) -> OperationResult:
        """value: LoanDeletion"""
        return self._run(
            "delete_loan",
            lambda v: self.loan_engine.delete_loan(v, loan_id, debtor_id, deleted_by_id, reason)
        )

    def deposit(self, user_id: str, amount: Union[Decimal, str, int],
                performed_by: str) -> OperationResult:
        """value: Transaction"""
        return self._run(
            "deposit",
            lambda v: self.transaction_recorder.deposit(v, user_id, amount, performed_by)
        )

    def withdraw(self, user_id: str, amount: Union[Decimal, str, int],
                 performed_by: str) -> OperationResult:
        """value: Transaction"""
        return self._run(
            "withdraw",
            lambda v: self.transaction_recorder.withdraw(v, user_id, amount, performed_by)
        )
