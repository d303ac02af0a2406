"""Per-account upstream conversations and file uploads."""

from __future__ import annotations

from dataclasses import asdict

import structlog
from fastapi import APIRouter, Depends, Request

from elara.api.middleware.auth import verify_api_key
from elara.errors import AccountNotFound, InvalidRequest
from elara.stores import Account

logger = structlog.get_logger()

router = APIRouter()


async def _account(request: Request, account_id: str) -> Account:
    account = await request.app.state.db.get_by_id(account_id)
    if account is None:
        raise AccountNotFound(f"Account {account_id} not found")
    return account


@router.get("/v1/accounts/{account_id}/conversations")
async def list_conversations(
    request: Request,
    account_id: str,
    limit: int = 30,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    gateway = request.app.state.gateway
    account = await _account(request, account_id)
    conversations = await gateway.list_conversations(account.provider_id, account.credential, limit)
    return {
        "conversations": [asdict(c) for c in conversations],
        "account": {"id": account.id, "email": account.email, "provider_id": account.provider_id},
    }


@router.get("/v1/accounts/{account_id}/conversations/{conversation_id}")
async def get_conversation(
    request: Request,
    account_id: str,
    conversation_id: str,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    gateway = request.app.state.gateway
    account = await _account(request, account_id)
    detail = await gateway.get_conversation_detail(account.provider_id, account.credential, conversation_id)
    return {
        "id": detail.id,
        "title": detail.title,
        "messages": [m.to_dict() for m in detail.messages],
    }


@router.post("/v1/accounts/{account_id}/files")
async def upload_file(
    request: Request,
    account_id: str,
    filename: str,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    """Upload the raw request body as ``filename`` to the account's provider."""
    gateway = request.app.state.gateway
    account = await _account(request, account_id)
    content = await request.body()
    if not content:
        raise InvalidRequest("Empty upload")
    content_type = request.headers.get("content-type") or "application/octet-stream"
    uploaded = await gateway.upload_file(account.provider_id, account.credential, filename, content, content_type)
    logger.info("files.uploaded", account_id=account.id, file_id=uploaded.id, status=uploaded.status)
    return asdict(uploaded)
