"""
Token Module

Short-lived single-purpose tokens (account activation). Only the SHA-256 hash
of a token is stored; the plaintext is handed to the caller once.
"""

import base64
import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional, Tuple

from .storage import StorageInterface, StorageRecord, parse_timestamp


SCOPE_ACTIVATION = "activation"


@dataclass
class Token(StorageRecord):
    account_id: str
    token_hash: str
    scope: str
    expiry: datetime


def hash_token(plaintext: str) -> str:
    return hashlib.sha256(plaintext.encode('utf-8')).hexdigest()


def generate_plaintext() -> str:
    """16 random bytes, base32 without padding (26 characters)"""
    return base64.b32encode(secrets.token_bytes(16)).decode('ascii').rstrip('=')


class TokenStore:
    """Issues, resolves and revokes tokens"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "tokens"

    def new(self, account_id: str, ttl: timedelta, scope: str) -> Tuple[Token, str]:
        now = datetime.now(timezone.utc)
        plaintext = generate_plaintext()
        token = Token(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            token_hash=hash_token(plaintext),
            scope=scope,
            expiry=now + ttl
        )
        self.storage.insert(self.table_name, token.id, token.to_dict())
        return token, plaintext

    def get_account_id(self, plaintext: str, scope: str) -> Optional[str]:
        """Account owning an unexpired token with this plaintext and scope"""
        if not plaintext:
            return None
        rows = self.storage.find(self.table_name, {
            'token_hash': hash_token(plaintext),
            'scope': scope
        })
        for row in rows:
            if parse_timestamp(row['expiry']) > datetime.now(timezone.utc):
                return row['account_id']
        return None

    def delete_all_for_account(self, account_id: str, scope: str) -> int:
        rows = self.storage.find(self.table_name, {'account_id': account_id, 'scope': scope})
        for row in rows:
            self.storage.delete(self.table_name, row['id'])
        return len(rows)
