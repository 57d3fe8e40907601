"""
Test suite for accounts module

Tests registration, activation tokens and version-checked balance updates.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta
from unittest.mock import MagicMock

from bankcore.accounts import Account, AccountLedger, hash_password
from bankcore.audit import AuditTrail, AuditEventType
from bankcore.currency import Currency, Money
from bankcore.errors import (
    DuplicateKeyError, EditConflictError, FailedValidationError,
    InvalidTokenError, NotFoundError
)
from bankcore.storage import InMemoryStorage
from bankcore.tokens import SCOPE_ACTIVATION, TokenStore, hash_token
from bankcore.validation import Validator


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def ledger(storage, audit_trail, notifier):
    return AccountLedger(storage, audit_trail, notifier=notifier)


class TestAccount:

    def test_negative_balance_rejected(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(ValueError, match="negative"):
            Account(
                id="A1", created_at=now, updated_at=now,
                name="Alice", email="alice@example.com",
                password_hash="x", password_salt="y",
                balance=Money(Decimal('-1.00'), Currency.USD)
            )

    def test_check_password(self):
        now = datetime.now(timezone.utc)
        account = Account(
            id="A1", created_at=now, updated_at=now,
            name="Alice", email="alice@example.com",
            password_hash=hash_password("pa55word", "salt"), password_salt="salt",
            balance=Money.zero(Currency.USD)
        )
        assert account.check_password("pa55word")
        assert not account.check_password("wrong-password")


class TestRegistration:

    def test_register_creates_inactive_zero_balance_account(self, ledger, audit_trail):
        account, token = ledger.register(Validator(), "Alice", "alice@example.com", "pa55word")

        assert not account.activated
        assert account.version == 1
        assert account.balance == Money.zero(Currency.USD)
        assert account.check_password("pa55word")
        assert len(token) == 26

        stored = ledger.get(account.id)
        assert stored.email == "alice@example.com"
        assert stored.password_hash != "pa55word"
        assert len(audit_trail.get_events_by_type(AuditEventType.ACCOUNT_REGISTERED)) == 1

    def test_register_dispatches_welcome_notification(self, ledger, notifier):
        account, token = ledger.register(Validator(), "Alice", "alice@example.com", "pa55word")

        notifier.dispatch.assert_called_once_with("alice@example.com", "user_welcome", {
            "user_id": account.id,
            "user_name": "Alice",
            "token": token
        })

    def test_invalid_input_persists_nothing(self, ledger, storage, notifier):
        validator = Validator()

        with pytest.raises(FailedValidationError) as exc_info:
            ledger.register(validator, "", "not-an-email", "short")

        assert set(exc_info.value.errors) == {"name", "email", "password"}
        assert storage.count("accounts") == 0
        assert storage.count("tokens") == 0
        notifier.dispatch.assert_not_called()

    def test_password_length_bounds(self, ledger):
        with pytest.raises(FailedValidationError) as exc_info:
            ledger.register(Validator(), "Alice", "alice@example.com", "x" * 73)
        assert exc_info.value.errors == {"password": ["must not be more than 72 characters long"]}

    def test_duplicate_email_rejected(self, ledger, storage):
        ledger.register(Validator(), "Alice", "alice@example.com", "pa55word")

        with pytest.raises(DuplicateKeyError) as exc_info:
            ledger.register(Validator(), "Other", "ALICE@example.com", "pa55word")

        assert exc_info.value.field == "email"
        assert storage.count("accounts") == 1
        assert storage.count("tokens") == 1


class TestActivation:

    def test_activate_with_token(self, ledger, storage, audit_trail):
        account, token = ledger.register(Validator(), "Alice", "alice@example.com", "pa55word")

        activated = ledger.activate(token)

        assert activated.activated
        assert activated.version == 2
        assert ledger.get(account.id).activated
        assert storage.count("tokens") == 0
        assert len(audit_trail.get_events_by_type(AuditEventType.ACCOUNT_ACTIVATED)) == 1

    def test_token_is_single_use(self, ledger):
        _, token = ledger.register(Validator(), "Alice", "alice@example.com", "pa55word")
        ledger.activate(token)

        with pytest.raises(InvalidTokenError):
            ledger.activate(token)

    def test_unknown_token_rejected(self, ledger):
        with pytest.raises(InvalidTokenError):
            ledger.activate("AAAAAAAAAAAAAAAAAAAAAAAAAA")
        with pytest.raises(InvalidTokenError):
            ledger.activate("")

    def test_expired_token_rejected(self, storage, audit_trail):
        ledger = AccountLedger(storage, audit_trail, activation_ttl=timedelta(seconds=-1))
        _, token = ledger.register(Validator(), "Alice", "alice@example.com", "pa55word")

        with pytest.raises(InvalidTokenError):
            ledger.activate(token)


class TestTokenStore:

    def test_only_hash_is_stored(self, storage):
        tokens = TokenStore(storage)
        token, plaintext = tokens.new("A1", timedelta(hours=1), SCOPE_ACTIVATION)

        stored = storage.load("tokens", token.id)
        assert stored["token_hash"] == hash_token(plaintext)
        assert plaintext not in stored.values()
        assert tokens.get_account_id(plaintext, SCOPE_ACTIVATION) == "A1"
        assert tokens.get_account_id(plaintext, "password-reset") is None

    def test_delete_all_for_account(self, storage):
        tokens = TokenStore(storage)
        tokens.new("A1", timedelta(hours=1), SCOPE_ACTIVATION)
        tokens.new("A1", timedelta(hours=1), SCOPE_ACTIVATION)
        tokens.new("A2", timedelta(hours=1), SCOPE_ACTIVATION)

        assert tokens.delete_all_for_account("A1", SCOPE_ACTIVATION) == 2
        assert storage.count("tokens") == 1


class TestLedgerUpdate:
    """Balances change only through version-checked update()"""

    def test_get_missing_account(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.get("missing")
        with pytest.raises(NotFoundError):
            ledger.get_by_email("nobody@example.com")

    def test_get_by_email_is_case_insensitive(self, ledger):
        account, _ = ledger.register(Validator(), "Alice", "alice@example.com", "pa55word")
        assert ledger.get_by_email("Alice@Example.COM").id == account.id

    def test_update_advances_version(self, ledger):
        account, _ = ledger.register(Validator(), "Alice", "alice@example.com", "pa55word")

        account.balance = Money(Decimal('25.00'), Currency.USD)
        ledger.update(account)

        assert account.version == 2
        stored = ledger.get(account.id)
        assert stored.balance == Money(Decimal('25.00'), Currency.USD)
        assert stored.version == 2

    def test_stale_copy_loses_race(self, ledger):
        account, _ = ledger.register(Validator(), "Alice", "alice@example.com", "pa55word")
        first = ledger.get(account.id)
        second = ledger.get(account.id)

        first.balance = Money(Decimal('10.00'), Currency.USD)
        ledger.update(first)

        second.balance = Money(Decimal('99.00'), Currency.USD)
        with pytest.raises(EditConflictError):
            ledger.update(second)

        assert ledger.get(account.id).balance == Money(Decimal('10.00'), Currency.USD)

    def test_update_to_taken_email_rejected(self, ledger):
        ledger.register(Validator(), "Alice", "alice@example.com", "pa55word")
        bob, _ = ledger.register(Validator(), "Bob", "bob@example.com", "pa55word")

        bob.email = "alice@example.com"
        with pytest.raises(DuplicateKeyError):
            ledger.update(bob)

    def test_wrong_currency_rejected(self, ledger):
        account, _ = ledger.register(Validator(), "Alice", "alice@example.com", "pa55word")
        account.balance = Money(Decimal('1.00'), Currency.EUR)

        with pytest.raises(ValueError):
            ledger.update(account)
