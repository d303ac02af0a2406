"""Collaborator interfaces the gateway consumes: credentials, model sequences, config.

The SQLite ``Database`` implements all three; the in-memory variants here back
tests and embedded use.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Protocol


@dataclass(frozen=True)
class Account:
    """A user-supplied credential bound to one provider."""

    id: str
    provider_id: str
    email: str
    credential: str

    def with_credential(self, credential: str) -> Account:
        return replace(self, credential=credential)


@dataclass(frozen=True)
class ModelSequence:
    """One entry of the user's ordered model preference list."""

    provider_id: str
    model_id: str
    sequence: int


class CredentialStore(Protocol):
    async def get_by_id(self, account_id: str) -> Account | None: ...

    async def find_by_provider_email(self, provider_id: str, email: str) -> Account | None: ...

    async def list_by_provider(self, provider_id: str) -> list[Account]: ...

    async def list_all(self) -> list[Account]: ...

    async def upsert(self, account: Account) -> None: ...


class ModelSequenceStore(Protocol):
    async def best_sequence_overall(self) -> ModelSequence | None: ...

    async def best_sequence_for_provider(self, provider_id: str) -> str | None: ...


class ConfigStore(Protocol):
    async def get(self, key: str) -> str | None: ...


class MemoryCredentialStore:
    """Dict-backed credential store, insertion ordered."""

    def __init__(self, accounts: list[Account] | None = None) -> None:
        self._accounts: dict[str, Account] = {a.id: a for a in accounts or []}

    async def get_by_id(self, account_id: str) -> Account | None:
        return self._accounts.get(account_id)

    async def find_by_provider_email(self, provider_id: str, email: str) -> Account | None:
        provider_id, email = provider_id.lower(), email.lower()
        for account in self._accounts.values():
            if account.provider_id.lower() == provider_id and account.email.lower() == email:
                return account
        return None

    async def list_by_provider(self, provider_id: str) -> list[Account]:
        provider_id = provider_id.lower()
        return [a for a in self._accounts.values() if a.provider_id.lower() == provider_id]

    async def list_all(self) -> list[Account]:
        return list(self._accounts.values())

    async def upsert(self, account: Account) -> None:
        self._accounts[account.id] = account


class MemorySequenceStore:
    def __init__(self, sequences: list[ModelSequence] | None = None) -> None:
        self.sequences = list(sequences or [])

    def _ordered(self) -> list[ModelSequence]:
        return sorted(self.sequences, key=lambda s: s.sequence)

    async def best_sequence_overall(self) -> ModelSequence | None:
        ordered = self._ordered()
        return ordered[0] if ordered else None

    async def best_sequence_for_provider(self, provider_id: str) -> str | None:
        provider_id = provider_id.lower()
        for seq in self._ordered():
            if seq.provider_id.lower() == provider_id:
                return seq.model_id
        return None


class MemoryConfigStore:
    def __init__(self, values: dict[str, str] | None = None) -> None:
        self.values = dict(values or {})

    async def get(self, key: str) -> str | None:
        return self.values.get(key)
