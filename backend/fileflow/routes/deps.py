"""Request dependencies: the service graph and the authenticated principal.

Authentication happens upstream; the gateway hands the verified principal in
as the X-User-Id header.
"""
import secrets

from fastapi import Header, HTTPException, Request

from fileflow.config import settings
from fileflow.services.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_user(request: Request, x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user_id = x_user_id.strip()
    await get_services(request).ledger.ensure_user(user_id)
    return user_id


async def require_operator(x_operator_token: str | None = Header(default=None)) -> None:
    """Gate for quota administration. Users may read their quota, not grant themselves more."""
    if not settings.OPERATOR_TOKEN:
        raise HTTPException(status_code=403, detail="Quota administration is disabled")
    if not x_operator_token or not secrets.compare_digest(x_operator_token, settings.OPERATOR_TOKEN):
        raise HTTPException(status_code=403, detail="Operator token required")
