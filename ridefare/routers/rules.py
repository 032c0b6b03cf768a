"""
Rules router: price rule administration (admin tokens only).
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from ridefare.dependencies import Services, get_rule_service, get_services
from ridefare.middleware.auth import require_admin
from ridefare.schemas.rules import RuleApproval, RuleCategory, RuleCreate, RulePatch, RuleResponse, RuleStatus
from ridefare.services.rules import RuleService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/rules", tags=["Rules"], dependencies=[Depends(require_admin)])


class CountResponse(BaseModel):
    count: int


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RuleResponse)
async def create_rule(
    payload: RuleCreate,
    admin_id: str = Depends(require_admin),
    rules: RuleService = Depends(get_rule_service),
):
    return await rules.create_rule(payload, created_by=admin_id)


@router.get("", response_model=list[RuleResponse])
async def list_rules(
    status_filter: Optional[RuleStatus] = Query(None, alias="status"),
    category: Optional[RuleCategory] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    rules: RuleService = Depends(get_rule_service),
):
    return await rules.list_rules(
        status=status_filter,
        category=category.value if category else None,
        limit=limit,
        offset=offset,
    )


@router.post("/expire-due", response_model=CountResponse)
async def expire_due_rules(rules: RuleService = Depends(get_rule_service)):
    return CountResponse(count=await rules.expire_due())


@router.post("/invalidate", status_code=status.HTTP_204_NO_CONTENT)
async def invalidate_catalog(services: Services = Depends(get_services)):
    """Out-of-band signal: the next quote rebuilds the catalog snapshot."""
    await services.catalog.invalidate()


@router.post("/reservations/sweep", response_model=CountResponse)
async def sweep_reservations(services: Services = Depends(get_services)):
    return CountResponse(count=await services.usage.sweep_abandoned())


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: str, rules: RuleService = Depends(get_rule_service)):
    return await rules.get_rule(rule_id)


@router.patch("/{rule_id}", response_model=RuleResponse)
async def patch_rule(rule_id: str, payload: RulePatch, rules: RuleService = Depends(get_rule_service)):
    return await rules.patch_rule(rule_id, payload)


@router.post("/{rule_id}/approve", response_model=RuleResponse)
async def approve_rule(
    rule_id: str,
    payload: RuleApproval,
    admin_id: str = Depends(require_admin),
    rules: RuleService = Depends(get_rule_service),
):
    return await rules.approve(rule_id, approved_by=admin_id, notes=payload.approval_notes)


@router.post("/{rule_id}/pause", response_model=RuleResponse)
async def pause_rule(rule_id: str, rules: RuleService = Depends(get_rule_service)):
    return await rules.pause(rule_id)


@router.post("/{rule_id}/resume", response_model=RuleResponse)
async def resume_rule(rule_id: str, rules: RuleService = Depends(get_rule_service)):
    return await rules.resume(rule_id)


@router.post("/{rule_id}/expire", response_model=RuleResponse)
async def expire_rule(rule_id: str, rules: RuleService = Depends(get_rule_service)):
    return await rules.expire(rule_id)


@router.delete("/{rule_id}", response_model=RuleResponse)
async def delete_rule(rule_id: str, rules: RuleService = Depends(get_rule_service)):
    return await rules.delete(rule_id)
