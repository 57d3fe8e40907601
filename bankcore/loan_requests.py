"""
Loan Request Workflow Module

Three-state approval process: PENDING -> ACCEPTED or PENDING -> DECLINED.
Both outcomes are terminal. Acceptance transitions the request, credits the
requester's balance and originates the loan inside a single unit of work, so
either all three are persisted or none is.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from .accounts import Account, AccountLedger
from .audit import AuditTrail, AuditEventType
from .currency import Money, money_from_dict, money_to_dict, to_decimal
from .errors import NotFoundError
from .loans import Loan, LoanEngine
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_timestamp
from .validation import Validator


class LoanRequestStatus(Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"

    @property
    def is_terminal(self) -> bool:
        return self != LoanRequestStatus.PENDING


@dataclass
class LoanRequest(StorageRecord):
    user_id: str
    amount: Money
    daily_interest_rate: Decimal
    status: LoanRequestStatus = LoanRequestStatus.PENDING
    decided_by: Optional[str] = None
    version: int = 1


class LoanRequestWorkflow:
    """Creates loan requests and moves them to a terminal state exactly once"""

    def __init__(
        self,
        storage: StorageInterface,
        account_ledger: AccountLedger,
        loan_engine: LoanEngine,
        audit_trail: AuditTrail,
        notifier=None
    ):
        self.storage = storage
        self.account_ledger = account_ledger
        self.loan_engine = loan_engine
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.table_name = "loan_requests"
        self.logger = get_logger("bankcore.loan_requests")

    def new(
        self,
        validator: Validator,
        requester: Account,
        amount: Union[Decimal, str, int],
        daily_interest_rate: Union[Decimal, str, int]
    ) -> LoanRequest:
        """
        Persist a PENDING request

        Raises:
            FailedValidationError: Amount not positive or rate negative; nothing persisted
        """
        currency = self.account_ledger.currency
        try:
            value = Money(to_decimal(amount), currency).amount
        except ValueError:
            validator.add_error("amount", "must be a number")
            value = Decimal('0')
        try:
            rate = to_decimal(daily_interest_rate)
        except ValueError:
            validator.add_error("daily_interest_rate", "must be a number")
            rate = Decimal('0')

        validator.check(value != 0, "amount", "must be given")
        validator.check(value > 0, "amount", "must be more than 0")
        validator.check(rate >= 0, "daily_interest_rate", "must not be negative")
        validator.raise_if_invalid()

        now = datetime.now(timezone.utc)
        request = LoanRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=requester.id,
            amount=Money(value, currency),
            daily_interest_rate=rate
        )

        with self.storage.atomic():
            self.storage.insert(self.table_name, request.id, self._request_to_dict(request))
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REQUEST_CREATED,
                entity_type="loan_request",
                entity_id=request.id,
                user_id=requester.id,
                metadata={
                    "amount": request.amount.to_string(),
                    "daily_interest_rate": str(rate)
                }
            )

        log_action(
            self.logger, "info", "Loan request created",
            user_id=requester.id, action="request_loan",
            resource=f"loan_request:{request.id}"
        )
        return request

    def accept(self, request_id: str, user_id: str,
               decided_by: Optional[str] = None) -> Tuple[LoanRequest, Loan]:
        """
        Accept a PENDING request owned by user_id

        Returns:
            (accepted request, originated loan)

        Raises:
            NotFoundError: Request absent, not owned by user_id, or not PENDING
            EditConflictError: Request or account changed concurrently
        """
        with self.storage.atomic():
            request = self._load_pending(request_id, user_id)
            account = self.account_ledger.get(user_id)

            self._transition(request, LoanRequestStatus.ACCEPTED, decided_by)

            account.balance = account.balance + request.amount
            self.account_ledger.update(account)

            loan = self.loan_engine.originate(
                Validator(), user_id, request.amount.amount, request.daily_interest_rate
            )

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REQUEST_ACCEPTED,
                entity_type="loan_request",
                entity_id=request.id,
                user_id=decided_by or user_id,
                metadata={
                    "loan_id": loan.id,
                    "amount": request.amount.to_string(),
                    "balance_after": account.balance.to_string()
                }
            )

        log_action(
            self.logger, "info", "Loan request accepted",
            user_id=decided_by or user_id, action="accept_loan_request",
            resource=f"loan_request:{request.id}",
            extra={"loan_id": loan.id, "amount": request.amount.to_string()}
        )
        self._notify(account, "loan_request_accepted", request)
        return request, loan

    def decline(self, request_id: str, user_id: str,
                decided_by: Optional[str] = None) -> LoanRequest:
        """
        Decline a PENDING request owned by user_id; no ledger or loan side effects

        Raises:
            NotFoundError: Request absent, not owned by user_id, or not PENDING
            EditConflictError: Request changed concurrently
        """
        with self.storage.atomic():
            request = self._load_pending(request_id, user_id)
            account = self.account_ledger.get(user_id)

            self._transition(request, LoanRequestStatus.DECLINED, decided_by)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REQUEST_DECLINED,
                entity_type="loan_request",
                entity_id=request.id,
                user_id=decided_by or user_id,
                metadata={"amount": request.amount.to_string()}
            )

        log_action(
            self.logger, "info", "Loan request declined",
            user_id=decided_by or user_id, action="decline_loan_request",
            resource=f"loan_request:{request.id}"
        )
        self._notify(account, "loan_request_declined", request)
        return request

    def _load_pending(self, request_id: str, user_id: str) -> LoanRequest:
        request = self.get(request_id)
        # A terminal request is indistinguishable from a missing one
        if request.user_id != user_id or request.status.is_terminal:
            raise NotFoundError(f"loan request {request_id} not found")
        return request

    def _transition(self, request: LoanRequest, status: LoanRequestStatus,
                    decided_by: Optional[str]) -> None:
        request.status = status
        request.decided_by = decided_by
        request.updated_at = datetime.now(timezone.utc)
        request.version = self.storage.update(
            self.table_name, request.id, self._request_to_dict(request), request.version
        )

    def _notify(self, account: Account, template_name: str, request: LoanRequest) -> None:
        if self.notifier is None:
            return
        self.notifier.dispatch(account.email, template_name, {
            "request_id": request.id,
            "amount": request.amount.to_string(),
            "daily_interest_rate": str(request.daily_interest_rate)
        })

    def get(self, request_id: str) -> LoanRequest:
        data = self.storage.load(self.table_name, request_id)
        if not data:
            raise NotFoundError(f"loan request {request_id} not found")
        return self._request_from_dict(data)

    def list_for_user(self, user_id: str) -> List[LoanRequest]:
        requests = [
            self._request_from_dict(row)
            for row in self.storage.find(self.table_name, {'user_id': user_id})
        ]
        requests.sort(key=lambda r: r.created_at)
        return requests

    def list_pending(self) -> List[LoanRequest]:
        """All PENDING requests, oldest first (the review queue)"""
        rows = self.storage.find(self.table_name, {'status': LoanRequestStatus.PENDING.value})
        requests = [self._request_from_dict(row) for row in rows]
        requests.sort(key=lambda r: r.created_at)
        return requests

    def _request_to_dict(self, request: LoanRequest) -> Dict:
        result = request.to_dict()
        result.update(money_to_dict(request.amount, 'amount'))
        return result

    def _request_from_dict(self, data: Dict) -> LoanRequest:
        return LoanRequest(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            user_id=data['user_id'],
            amount=money_from_dict(data, 'amount'),
            daily_interest_rate=Decimal(data['daily_interest_rate']),
            status=LoanRequestStatus(data['status']),
            decided_by=data.get('decided_by'),
            version=data.get('version', 1)
        )
