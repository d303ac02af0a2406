"""Account resolver: turn request hints into one account and adapter."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from elara.errors import AccountConflict, NoAccountFound, ProviderDisabled, ProviderNotFound
from elara.providers.base import Provider
from elara.providers.registry import ProviderRegistry
from elara.stores import Account, CredentialStore, ModelSequenceStore

logger = structlog.get_logger()

AUTO_MODEL = "auto"


@dataclass(frozen=True)
class ResolveHints:
    """What a caller told us about the account it wants.

    ``token`` is an opaque bearer value tried as an account id. ``account_id``
    is an explicit id from the URL and must agree with ``provider``.
    """

    token: str | None = None
    provider: str | None = None
    email: str | None = None
    model: str | None = None
    account_id: str | None = None
    allow_fallback: bool = False


@dataclass(frozen=True)
class Resolution:
    account: Account
    provider: Provider
    model: str


class AccountResolver:
    """Applies the lookup precedence, stopping at the first match:

    1. explicit account id, or a bearer token that is an account id
    2. exact (provider, email), case-insensitive
    3. provider hint, else the provider inferred from the model
    4. ``auto``: provider and model of the best overall sequence
    5. first available account, only when the surface allows it
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        credentials: CredentialStore,
        sequences: ModelSequenceStore,
        disabled_providers: Iterable[str] = (),
    ) -> None:
        self.registry = registry
        self.credentials = credentials
        self.sequences = sequences
        self.disabled = {name.lower() for name in disabled_providers}

    async def resolve(self, hints: ResolveHints) -> Resolution:
        model = hints.model or None
        provider_hint = hints.provider

        # 1. Account id
        if hints.account_id:
            account = await self.credentials.get_by_id(hints.account_id)
            if account is None:
                raise NoAccountFound(f"Account {hints.account_id} not found")
            if provider_hint and account.provider_id.lower() != provider_hint.lower():
                raise AccountConflict(
                    f"Account {hints.account_id} belongs to {account.provider_id}, not {provider_hint}"
                )
            return await self._finish(account, model, rule="account_id")
        if hints.token:
            account = await self.credentials.get_by_id(hints.token)
            if account is not None:
                return await self._finish(account, model, rule="token")

        # 2. Provider + email
        if provider_hint and hints.email:
            self._check_enabled(provider_hint)
            account = await self.credentials.find_by_provider_email(provider_hint, hints.email)
            if account is None:
                raise NoAccountFound(f"No {provider_hint} account for {hints.email}")
            return await self._finish(account, model, rule="provider_email")

        # 4. Auto; a named provider keeps priority and picks its own best model
        auto_fallback = False
        if model == AUTO_MODEL and provider_hint:
            model = None
        elif model == AUTO_MODEL:
            best = await self.sequences.best_sequence_overall()
            if best is not None:
                logger.info("account.auto_selected", provider=best.provider_id, model=best.model_id)
                provider_hint, model = best.provider_id, best.model_id
            else:
                logger.warning("account.auto_without_sequences")
                model = None
                auto_fallback = True

        # 3. Provider hint or model inference
        explicit = bool(hints.provider)
        if not provider_hint and model:
            inferred = self.registry.resolve_by_model(model)
            provider_hint = inferred.name if inferred else None
        if provider_hint:
            if explicit:
                self._check_enabled(provider_hint)
            if not self._is_disabled(provider_hint):
                account = await self._pick(provider_hint, hints.email)
                if account is not None:
                    return await self._finish(account, model, rule="provider")
            if explicit:
                raise NoAccountFound(f"No active {provider_hint} account found")

        # 5. Unqualified fallback
        if hints.allow_fallback or auto_fallback:
            for account in await self.credentials.list_all():
                provider = self.registry.get(account.provider_id)
                if provider is None or self._is_disabled(account.provider_id):
                    continue
                logger.warning(
                    "account.fallback",
                    requested_provider=provider_hint,
                    requested_model=model,
                    provider=account.provider_id,
                    account_id=account.id,
                )
                if model and not provider.is_model_supported(model):
                    model = None
                return await self._finish(account, model, rule="fallback")
        raise NoAccountFound()

    async def _pick(self, provider_id: str, email: str | None) -> Account | None:
        if email:
            match = await self.credentials.find_by_provider_email(provider_id, email)
            if match is not None:
                return match
        accounts = await self.credentials.list_by_provider(provider_id)
        return accounts[0] if accounts else None

    def _is_disabled(self, provider_id: str) -> bool:
        return provider_id.lower() in self.disabled

    def _check_enabled(self, provider_id: str) -> None:
        if self._is_disabled(provider_id):
            raise ProviderDisabled(f"Provider {provider_id} is disabled")

    async def _finish(self, account: Account, model: str | None, *, rule: str) -> Resolution:
        self._check_enabled(account.provider_id)
        provider = self.registry.get(account.provider_id)
        if provider is None:
            raise ProviderNotFound(f"Provider {account.provider_id} is not loaded")
        if not model or model == AUTO_MODEL:
            model = await self.sequences.best_sequence_for_provider(provider.name) or provider.default_model
        logger.info(
            "account.resolved",
            rule=rule,
            account_id=account.id,
            provider=provider.name,
            model=model,
        )
        return Resolution(account=account, provider=provider, model=model)
