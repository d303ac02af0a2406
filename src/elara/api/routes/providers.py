"""Provider catalogue endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from elara.api.middleware.auth import verify_api_key
from elara.errors import AccountNotFound

router = APIRouter()


@router.get("/v1/providers")
async def list_providers(request: Request, _api_key: str | None = Depends(verify_api_key)) -> dict:
    config = request.app.state.config
    registry = request.app.state.registry
    providers = [
        {**entry, "enabled": not config.is_provider_disabled(str(entry["name"]))}
        for entry in registry.describe()
    ]
    return {"providers": providers}


@router.get("/v1/providers/{provider_id}/models")
async def provider_models(
    request: Request,
    provider_id: str,
    account_id: str | None = None,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    """Models of one provider, fetched with the given or first stored account."""
    gateway = request.app.state.gateway
    db = request.app.state.db
    provider = gateway.provider(provider_id)

    if account_id:
        account = await db.get_by_id(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
    else:
        accounts = await db.list_by_provider(provider.name)
        account = accounts[0] if accounts else None

    models = await gateway.list_models(
        provider.name,
        account.credential if account else "",
        account.id if account else None,
    )
    return {"provider": provider.name, "models": [m.to_dict() for m in models]}
