"""Per-user AWS credential storage used by the gateway."""

import threading
from dataclasses import dataclass
from typing import Protocol

from ..context import AwsCredentials


@dataclass(frozen=True)
class CredentialRecord:
    user_id: str
    key_id: str
    access_key: str
    region: str
    session_token: str | None = None

    def credentials(self) -> AwsCredentials:
        return AwsCredentials(
            access_key_id=self.key_id,
            secret_access_key=self.access_key,
            session_token=self.session_token,
        )

    def public_dict(self) -> dict:
        """Record without the secret, safe to return to the client."""
        return {
            "user_id": self.user_id,
            "key_id": self.key_id,
            "region": self.region,
            "access_key_masked": self.access_key[:4] + "*" * max(0, len(self.access_key) - 4),
        }


class CredentialStore(Protocol):
    def get(self, user_id: str) -> CredentialRecord | None: ...

    def upsert(self, record: CredentialRecord) -> CredentialRecord: ...

    def delete(self, user_id: str) -> bool: ...

    def has(self, user_id: str) -> bool: ...


class InMemoryCredentialStore:
    """Process-local store, one record per user."""

    def __init__(self):
        self._records: dict[str, CredentialRecord] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> CredentialRecord | None:
        with self._lock:
            return self._records.get(user_id)

    def upsert(self, record: CredentialRecord) -> CredentialRecord:
        with self._lock:
            self._records[record.user_id] = record
        return record

    def delete(self, user_id: str) -> bool:
        with self._lock:
            return self._records.pop(user_id, None) is not None

    def has(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._records
