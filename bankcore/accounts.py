"""
Account Ledger Module

Owns user accounts, their balances and optimistic-concurrency versions. It is
the single source of truth debited and credited by every money-moving
operation. Balances change only through update(), a compare-and-swap write
keyed on (id, version); there is no in-place increment or decrement.
"""

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Dict, Optional, Tuple

from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money, money_from_dict, money_to_dict
from .errors import InvalidTokenError, NotFoundError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_timestamp
from .tokens import SCOPE_ACTIVATION, TokenStore
from .validation import Validator, matches_email


@dataclass
class Account(StorageRecord):
    """User account holding a single-currency balance"""
    name: str
    email: str
    password_hash: str
    password_salt: str
    balance: Money
    activated: bool = False
    version: int = 1

    def __post_init__(self):
        if self.balance.is_negative():
            raise ValueError("Account balance cannot be negative")

    def check_password(self, plaintext: str) -> bool:
        return secrets.compare_digest(
            hash_password(plaintext, self.password_salt), self.password_hash
        )


def hash_password(password: str, salt: str) -> str:
    """Hash password with salt using scrypt"""
    return hashlib.scrypt(
        password.encode(),
        salt=salt.encode(),
        n=16384, r=8, p=1
    ).hex()


class AccountLedger:
    """
    Account store with version-checked updates, registration and activation
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        currency: Currency = Currency.USD,
        token_store: Optional[TokenStore] = None,
        notifier=None,
        activation_ttl: timedelta = timedelta(days=3),
        password_min_length: int = 8,
        password_max_length: int = 72,
        name_max_length: int = 500
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.currency = currency
        self.token_store = token_store or TokenStore(storage)
        self.notifier = notifier
        self.activation_ttl = activation_ttl
        self.password_min_length = password_min_length
        self.password_max_length = password_max_length
        self.name_max_length = name_max_length
        self.accounts_table = "accounts"
        self.logger = get_logger("bankcore.accounts")

        self.storage.add_unique_constraint(self.accounts_table, "email")

    def get(self, account_id: str) -> Account:
        """Get account by ID; NotFoundError if absent"""
        data = self.storage.load(self.accounts_table, account_id)
        if not data:
            raise NotFoundError(f"account {account_id} not found")
        return self._account_from_dict(data)

    def get_by_email(self, email: str) -> Account:
        """Get account by email (case-insensitive); NotFoundError if absent"""
        needle = (email or "").strip().lower()
        for data in self.storage.load_all(self.accounts_table):
            if data.get('email', '').lower() == needle:
                return self._account_from_dict(data)
        raise NotFoundError(f"account with email {email} not found")

    def update(self, account: Account) -> Account:
        """
        Persist account if its stored version still equals account.version.

        On success account.version is advanced in place. Raises
        EditConflictError on a lost race and DuplicateKeyError when the email
        collides with another account.
        """
        if account.balance.is_negative():
            raise ValueError("Account balance cannot be negative")
        if account.balance.currency != self.currency:
            raise ValueError(f"Account balance must be in {self.currency.code}")

        account.updated_at = datetime.now(timezone.utc)
        account.version = self.storage.update(
            self.accounts_table, account.id, self._account_to_dict(account), account.version
        )
        return account

    def validate_registration(self, validator: Validator, name: str, email: str,
                              password: str) -> None:
        validator.check(bool(name), "name", "must be provided")
        validator.check(len(name or "") <= self.name_max_length, "name",
                        f"must not be more than {self.name_max_length} characters long")
        validator.check(bool(email), "email", "must be provided")
        validator.check(matches_email(email or ""), "email", "must be a valid email address")
        validator.check(bool(password), "password", "must be provided")
        validator.check(len(password or "") >= self.password_min_length, "password",
                        f"must be at least {self.password_min_length} characters long")
        validator.check(len(password or "") <= self.password_max_length, "password",
                        f"must not be more than {self.password_max_length} characters long")

    def register(self, validator: Validator, name: str, email: str,
                 password: str) -> Tuple[Account, str]:
        """
        Register a new, not yet activated account with a zero balance

        Args:
            validator: Collector for field errors
            name: Display name
            email: Unique (case-insensitive) email address
            password: Plaintext password, hashed before storage

        Returns:
            (Account, activation token plaintext)

        Raises:
            FailedValidationError: Invalid input, nothing persisted
            DuplicateKeyError: Email already registered
        """
        self.validate_registration(validator, name, email, password)
        validator.raise_if_invalid()

        now = datetime.now(timezone.utc)
        salt = secrets.token_hex(16)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            email=email.strip(),
            password_hash=hash_password(password, salt),
            password_salt=salt,
            balance=Money.zero(self.currency)
        )

        with self.storage.atomic():
            self.storage.insert(self.accounts_table, account.id, self._account_to_dict(account))
            _, token_plaintext = self.token_store.new(
                account.id, self.activation_ttl, SCOPE_ACTIVATION
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_REGISTERED,
                entity_type="account",
                entity_id=account.id,
                metadata={"email": account.email}
            )

        log_action(
            self.logger, "info", "Account registered",
            action="register", resource=f"account:{account.id}"
        )

        if self.notifier is not None:
            self.notifier.dispatch(account.email, "user_welcome", {
                "user_id": account.id,
                "user_name": account.name,
                "token": token_plaintext
            })

        return account, token_plaintext

    def activate(self, token_plaintext: str) -> Account:
        """
        Activate the account owning an unexpired activation token

        Raises:
            InvalidTokenError: Token unknown, expired or wrong scope
            EditConflictError: Account changed concurrently
        """
        account_id = self.token_store.get_account_id(token_plaintext, SCOPE_ACTIVATION)
        if account_id is None:
            raise InvalidTokenError("invalid or expired activation token")

        with self.storage.atomic():
            try:
                account = self.get(account_id)
            except NotFoundError:
                raise InvalidTokenError("invalid or expired activation token") from None
            account.activated = True
            self.update(account)
            self.token_store.delete_all_for_account(account.id, SCOPE_ACTIVATION)
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_ACTIVATED,
                entity_type="account",
                entity_id=account.id,
                metadata={"version": account.version}
            )

        return account

    def _account_to_dict(self, account: Account) -> Dict:
        result = account.to_dict()
        result.update(money_to_dict(account.balance, 'balance'))
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        return Account(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            name=data['name'],
            email=data['email'],
            password_hash=data['password_hash'],
            password_salt=data['password_salt'],
            balance=money_from_dict(data, 'balance'),
            activated=data.get('activated', False),
            version=data['version']
        )
