"""
Error Taxonomy Module

Typed failures raised by the record store and the domain engines. Callers map
each kind to a response category; anything outside this hierarchy is treated
as an unrecoverable server fault.
"""

from typing import Dict, List, Optional


class BankCoreError(Exception):
    """Base exception for all bankcore errors"""


class FailedValidationError(BankCoreError):
    """Business input was rejected before any mutation took place"""

    def __init__(self, errors: Dict[str, List[str]]):
        self.errors = {field: list(messages) for field, messages in errors.items()}
        super().__init__(f"failed validation: {self.errors}")


class NotFoundError(BankCoreError):
    """Referenced record is absent or not owned by the caller"""


class DuplicateKeyError(BankCoreError):
    """A uniqueness constraint was violated"""

    def __init__(self, table: str, field: str, value: Optional[str] = None):
        self.table = table
        self.field = field
        self.value = value
        super().__init__(f"duplicate {field} in {table}")


class EditConflictError(BankCoreError):
    """Optimistic-concurrency update lost the race (stale version)"""


class InvalidTokenError(BankCoreError):
    """Authentication artifact was rejected"""


class StorageError(BankCoreError):
    """Generic record store fault, including call timeouts"""


class CompensationFailedError(BankCoreError):
    """
    A transfer debited the sender, failed to credit the recipient, and could
    not re-credit the sender. Persisted state needs manual reconciliation.
    """

    def __init__(
        self,
        original: Exception,
        compensation_error: Exception,
        sender_id: str,
        recipient_id: str,
        amount: str
    ):
        self.original = original
        self.compensation_error = compensation_error
        self.sender_id = sender_id
        self.recipient_id = recipient_id
        self.amount = amount
        super().__init__(
            f"transfer of {amount} from {sender_id} to {recipient_id} left unbalanced: "
            f"credit failed ({original!r}), compensation failed ({compensation_error!r})"
        )
