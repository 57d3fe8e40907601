"""
Validation Collector Module

Accumulates field-level rejection reasons for a single operation. Checks never
raise; operations query the collector at their validation gate and only then
signal FailedValidationError.
"""

import re
from typing import Dict, List

from .errors import FailedValidationError


EMAIL_RX = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


class Validator:
    """Collects validation messages keyed by field name"""

    def __init__(self):
        self.errors: Dict[str, List[str]] = {}

    def add_error(self, field: str, message: str) -> None:
        """Record a message under field (duplicates of the same message are kept once)"""
        messages = self.errors.setdefault(field, [])
        if message not in messages:
            messages.append(message)

    def check(self, condition: bool, field: str, message: str) -> bool:
        """Record message under field if condition is false; returns condition"""
        if not condition:
            self.add_error(field, message)
        return condition

    def is_valid(self) -> bool:
        return not self.errors

    def raise_if_invalid(self) -> None:
        """Signal FailedValidationError when any message has been recorded"""
        if self.errors:
            raise FailedValidationError(self.errors)


def matches_email(value: str) -> bool:
    return bool(value) and EMAIL_RX.match(value) is not None


def value_in_list(value, *permitted) -> bool:
    return value in permitted
