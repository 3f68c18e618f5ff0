"""Quota request/response schemas."""
from datetime import datetime
from typing import Optional

from pydantic import Field

from fileflow.schemas.base import CamelModel


class QuotaUsageResponse(CamelModel):
    base_quota: int
    quota_extensions: int
    total_quota: int
    used_storage: int
    reserved_storage: int
    available_storage: int
    usage_percentage: float


class BaseQuotaUpdate(CamelModel):
    new_quota: int


class QuotaExtensionCreate(CamelModel):
    additional_space: int = Field(gt=0)
    expiry_date: datetime
    reason: Optional[str] = None
