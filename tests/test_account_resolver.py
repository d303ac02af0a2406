from __future__ import annotations

import pytest

from elara.accounts import AccountResolver, ResolveHints
from elara.errors import AccountConflict, NoAccountFound, ProviderDisabled
from elara.stores import Account, MemoryCredentialStore, MemorySequenceStore, ModelSequence

ACCOUNTS = [
    Account("ds-1", "DeepSeek", "alice@test", "ds-token-1"),
    Account("ds-2", "DeepSeek", "bob@test", "ds-token-2"),
    Account("cl-1", "Claude", "alice@test", "claude-cookie"),
]


@pytest.fixture
def resolver_for(scripted, registry_of):
    def build(
        sequences: list[ModelSequence] | None = None,
        disabled: tuple[str, ...] = (),
        accounts: list[Account] | None = None,
    ) -> AccountResolver:
        registry = registry_of(
            scripted("DeepSeek", default_model="deepseek-chat", markers=("deepseek",)),
            scripted("Claude", default_model="claude-sonnet-4", markers=("claude",)),
        )
        return AccountResolver(
            registry=registry,
            credentials=MemoryCredentialStore(ACCOUNTS if accounts is None else accounts),
            sequences=MemorySequenceStore(sequences),
            disabled_providers=disabled,
        )

    return build


@pytest.mark.asyncio
async def test_account_id_wins_over_other_hints(resolver_for) -> None:
    resolution = await resolver_for().resolve(
        ResolveHints(account_id="ds-2", email="alice@test", model="deepseek-reasoner")
    )

    assert resolution.account.id == "ds-2"
    assert resolution.provider.name == "DeepSeek"
    assert resolution.model == "deepseek-reasoner"


@pytest.mark.asyncio
async def test_account_id_provider_mismatch_is_conflict(resolver_for) -> None:
    with pytest.raises(AccountConflict):
        await resolver_for().resolve(ResolveHints(account_id="ds-1", provider="Claude"))


@pytest.mark.asyncio
async def test_unknown_account_id_is_not_found(resolver_for) -> None:
    with pytest.raises(NoAccountFound):
        await resolver_for().resolve(ResolveHints(account_id="missing"))


@pytest.mark.asyncio
async def test_bearer_token_matching_account_id(resolver_for) -> None:
    resolution = await resolver_for().resolve(ResolveHints(token="cl-1"))

    assert resolution.account.id == "cl-1"
    assert resolution.model == "claude-sonnet-4"


@pytest.mark.asyncio
async def test_provider_and_email(resolver_for) -> None:
    resolution = await resolver_for().resolve(ResolveHints(provider="deepseek", email="bob@test"))

    assert resolution.account.id == "ds-2"


@pytest.mark.asyncio
async def test_provider_and_unknown_email_does_not_fall_back(resolver_for) -> None:
    with pytest.raises(NoAccountFound):
        await resolver_for().resolve(ResolveHints(provider="DeepSeek", email="carol@test", allow_fallback=True))


@pytest.mark.asyncio
async def test_model_infers_provider(resolver_for) -> None:
    resolution = await resolver_for().resolve(ResolveHints(model="claude-opus-4"))

    assert resolution.account.id == "cl-1"
    assert resolution.model == "claude-opus-4"


@pytest.mark.asyncio
async def test_auto_uses_best_sequence(resolver_for) -> None:
    sequences = [
        ModelSequence("DeepSeek", "deepseek-reasoner", 2),
        ModelSequence("Claude", "claude-haiku-4", 1),
    ]

    resolution = await resolver_for(sequences).resolve(ResolveHints(model="auto"))

    assert resolution.provider.name == "Claude"
    assert resolution.model == "claude-haiku-4"


@pytest.mark.asyncio
async def test_auto_without_sequences_falls_back_to_first_account(resolver_for) -> None:
    resolution = await resolver_for().resolve(ResolveHints(model="auto"))

    assert resolution.account.id == "ds-1"
    assert resolution.model == "deepseek-chat"


@pytest.mark.asyncio
async def test_provider_default_model_prefers_sequence(resolver_for) -> None:
    sequences = [ModelSequence("DeepSeek", "deepseek-reasoner", 5)]

    resolution = await resolver_for(sequences).resolve(ResolveHints(provider="DeepSeek"))

    assert resolution.model == "deepseek-reasoner"


@pytest.mark.asyncio
async def test_unknown_model_needs_fallback_permission(resolver_for) -> None:
    resolver = resolver_for()

    with pytest.raises(NoAccountFound):
        await resolver.resolve(ResolveHints(model="mystery-model"))

    resolution = await resolver.resolve(ResolveHints(model="mystery-model", allow_fallback=True))
    assert resolution.account.id == "ds-1"
    # the fallback adapter does not know the model, so its default is used
    assert resolution.model == "deepseek-chat"


@pytest.mark.asyncio
async def test_disabled_provider_is_rejected_and_skipped(resolver_for) -> None:
    resolver = resolver_for(disabled=("deepseek",))

    with pytest.raises(ProviderDisabled):
        await resolver.resolve(ResolveHints(provider="DeepSeek"))

    resolution = await resolver.resolve(ResolveHints(model="auto"))
    assert resolution.provider.name == "Claude"


@pytest.mark.asyncio
async def test_no_accounts_at_all(resolver_for) -> None:
    with pytest.raises(NoAccountFound):
        await resolver_for(accounts=[]).resolve(ResolveHints(model="auto"))


@pytest.mark.asyncio
async def test_auto_with_provider_hint_keeps_that_provider(resolver_for) -> None:
    sequences = [
        ModelSequence("DeepSeek", "deepseek-reasoner", 1),
        ModelSequence("Claude", "claude-opus-4", 3),
    ]
    resolver = resolver_for(sequences, accounts=[Account("cl-1", "Claude", "alice@test", "cookie")])

    resolution = await resolver.resolve(ResolveHints(provider="Claude", model="auto"))

    assert resolution.account.id == "cl-1"
    assert resolution.provider.name == "Claude"
    assert resolution.model == "claude-opus-4"


@pytest.mark.asyncio
async def test_auto_with_provider_hint_uses_default_without_sequence(resolver_for) -> None:
    sequences = [ModelSequence("DeepSeek", "deepseek-reasoner", 1)]

    resolution = await resolver_for(sequences).resolve(ResolveHints(provider="Claude", model="auto"))

    assert resolution.account.id == "cl-1"
    assert resolution.model == "claude-sonnet-4"
