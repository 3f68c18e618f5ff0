"""Quota API routes."""
from fastapi import APIRouter, Depends

from fileflow.routes.deps import get_current_user, get_services, require_operator
from fileflow.schemas.quota import BaseQuotaUpdate, QuotaExtensionCreate, QuotaUsageResponse
from fileflow.services.container import Services
from fileflow.services.quota_ledger import QuotaUsage

router = APIRouter(prefix="/api/quota", tags=["quota"])


def _to_response(usage: QuotaUsage) -> QuotaUsageResponse:
    return QuotaUsageResponse(
        base_quota=usage.base,
        quota_extensions=usage.extensions,
        total_quota=usage.effective_quota,
        used_storage=usage.used,
        reserved_storage=usage.reserved,
        available_storage=usage.available,
        usage_percentage=usage.usage_percentage,
    )


@router.get("", response_model=QuotaUsageResponse)
async def get_usage(
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return _to_response(await services.ledger.get_usage(user_id))


@router.put("/users/{user_id}/base", response_model=QuotaUsageResponse,
            dependencies=[Depends(require_operator)])
async def set_base_quota(
    user_id: str,
    body: BaseQuotaUpdate,
    services: Services = Depends(get_services),
):
    await services.ledger.ensure_user(user_id)
    await services.ledger.set_base_quota(user_id, body.new_quota)
    usage = await services.ledger.get_usage(user_id)
    await services.dispatcher.notify_quota_update(user_id, usage.used, usage.effective_quota)
    return _to_response(usage)


@router.post("/users/{user_id}/extensions", response_model=QuotaUsageResponse, status_code=201,
             dependencies=[Depends(require_operator)])
async def add_extension(
    user_id: str,
    body: QuotaExtensionCreate,
    services: Services = Depends(get_services),
):
    await services.ledger.ensure_user(user_id)
    await services.ledger.add_extension(user_id, body.additional_space, body.expiry_date, body.reason)
    usage = await services.ledger.get_usage(user_id)
    await services.dispatcher.notify_quota_update(user_id, usage.used, usage.effective_quota)
    return _to_response(usage)


@router.post("/reconcile", response_model=QuotaUsageResponse)
async def reconcile_usage(
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Recompute used storage from live file records."""
    await services.ledger.reconcile_usage(user_id)
    return _to_response(await services.ledger.get_usage(user_id))
