"""
Test suite for loan_requests module

A request reaches at most one terminal state. Acceptance credits the
requester and originates the loan together or not at all.
"""

import pytest
from decimal import Decimal
from unittest.mock import MagicMock, patch

from bankcore.accounts import AccountLedger
from bankcore.audit import AuditTrail, AuditEventType
from bankcore.currency import Currency, Money
from bankcore.errors import FailedValidationError, NotFoundError, StorageError
from bankcore.loan_requests import LoanRequestStatus, LoanRequestWorkflow
from bankcore.loans import LoanAction, LoanEngine
from bankcore.storage import InMemoryStorage
from bankcore.validation import Validator


def usd(amount):
    return Money(Decimal(amount), Currency.USD)


class TestLoanRequestWorkflow:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = AccountLedger(self.storage, self.audit_trail)
        self.loan_engine = LoanEngine(self.storage, self.audit_trail)
        self.notifier = MagicMock()
        self.workflow = LoanRequestWorkflow(
            self.storage, self.ledger, self.loan_engine, self.audit_trail, notifier=self.notifier
        )
        self.account, _ = self.ledger.register(Validator(), "Alice", "alice@example.com", "pa55word")

    def _request(self, amount="100", rate="2"):
        return self.workflow.new(Validator(), self.account, amount, rate)

    def test_new_request_is_pending(self):
        request = self._request()

        assert request.status == LoanRequestStatus.PENDING
        assert request.amount == usd("100.00")
        assert request.daily_interest_rate == Decimal('2')
        assert self.workflow.get(request.id).status == LoanRequestStatus.PENDING
        assert [r.id for r in self.workflow.list_pending()] == [request.id]

    @pytest.mark.parametrize("amount,rate,fields", [
        ("0", "2", {"amount"}),
        ("0.004", "2", {"amount"}),
        ("-1", "2", {"amount"}),
        ("100", "-1", {"daily_interest_rate"}),
        ("x", "y", {"amount", "daily_interest_rate"}),
    ])
    def test_invalid_request_not_persisted(self, amount, rate, fields):
        with pytest.raises(FailedValidationError) as exc_info:
            self._request(amount, rate)

        assert set(exc_info.value.errors) == fields
        assert self.storage.count("loan_requests") == 0

    def test_accept_credits_and_originates(self):
        request = self._request("100", "2")

        accepted, loan = self.workflow.accept(request.id, self.account.id, decided_by="STAFF1")

        assert accepted.status == LoanRequestStatus.ACCEPTED
        assert accepted.decided_by == "STAFF1"
        assert accepted.version == 2
        assert self.ledger.get(self.account.id).balance == usd("100.00")
        assert loan.remaining_amount == usd("100.00")
        assert loan.daily_interest_rate == Decimal('2')
        assert loan.owner_id == self.account.id
        assert len(self.loan_engine.list_loans(self.account.id, LoanAction.TOOK)) == 1
        assert self.workflow.list_pending() == []
        assert len(self.audit_trail.get_events_by_type(AuditEventType.LOAN_REQUEST_ACCEPTED)) == 1

    def test_accept_notifies_requester(self):
        request = self._request("100", "2")
        self.workflow.accept(request.id, self.account.id)

        self.notifier.dispatch.assert_called_once()
        recipient, template_name, data = self.notifier.dispatch.call_args[0]
        assert recipient == "alice@example.com"
        assert template_name == "loan_request_accepted"
        assert data["request_id"] == request.id

    def test_second_accept_fails(self):
        request = self._request()
        self.workflow.accept(request.id, self.account.id)

        with pytest.raises(NotFoundError):
            self.workflow.accept(request.id, self.account.id)

        assert self.ledger.get(self.account.id).balance == usd("100.00")
        assert len(self.loan_engine.list_loans(self.account.id)) == 1

    def test_declined_request_cannot_be_accepted(self):
        request = self._request()
        declined = self.workflow.decline(request.id, self.account.id)
        assert declined.status == LoanRequestStatus.DECLINED

        with pytest.raises(NotFoundError):
            self.workflow.accept(request.id, self.account.id)
        with pytest.raises(NotFoundError):
            self.workflow.decline(request.id, self.account.id)

        assert self.workflow.get(request.id).status == LoanRequestStatus.DECLINED

    def test_decline_has_no_side_effects(self):
        request = self._request()

        self.workflow.decline(request.id, self.account.id)

        assert self.ledger.get(self.account.id).balance == usd("0.00")
        assert self.loan_engine.list_loans(self.account.id) == []
        self.notifier.dispatch.assert_called_once()
        assert self.notifier.dispatch.call_args[0][1] == "loan_request_declined"

    def test_request_of_other_user_is_not_found(self):
        request = self._request()
        other, _ = self.ledger.register(Validator(), "Bob", "bob@example.com", "pa55word")

        with pytest.raises(NotFoundError):
            self.workflow.accept(request.id, other.id)
        with pytest.raises(NotFoundError):
            self.workflow.accept("missing", self.account.id)

        assert self.workflow.get(request.id).status == LoanRequestStatus.PENDING

    def test_failed_origination_rolls_back_acceptance(self):
        request = self._request()

        with patch.object(self.loan_engine, "originate", side_effect=StorageError("timeout")):
            with pytest.raises(StorageError):
                self.workflow.accept(request.id, self.account.id)

        stored = self.workflow.get(request.id)
        assert stored.status == LoanRequestStatus.PENDING
        assert stored.version == 1
        assert self.ledger.get(self.account.id).balance == usd("0.00")
        assert self.loan_engine.list_loans(self.account.id) == []
        self.notifier.dispatch.assert_not_called()

        # Still acceptable once the store recovers
        accepted, _ = self.workflow.accept(request.id, self.account.id)
        assert accepted.status == LoanRequestStatus.ACCEPTED
        assert self.ledger.get(self.account.id).balance == usd("100.00")

    def test_failed_credit_rolls_back_acceptance(self):
        request = self._request()

        with patch.object(self.ledger, "update", side_effect=StorageError("timeout")):
            with pytest.raises(StorageError):
                self.workflow.accept(request.id, self.account.id)

        assert self.workflow.get(request.id).status == LoanRequestStatus.PENDING
        assert self.loan_engine.list_loans(self.account.id) == []

    def test_list_for_user(self):
        first = self._request("100")
        second = self._request("200")
        self.workflow.decline(first.id, self.account.id)

        requests = self.workflow.list_for_user(self.account.id)
        assert [r.id for r in requests] == [first.id, second.id]
        assert [r.id for r in self.workflow.list_pending()] == [second.id]
