"""Plans router - FastAPI endpoints for recurring plans"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ...auth import Principal, get_current_principal, require_admin
from ...dependencies import get_plan_scheduler
from ...models import RecurringPlan
from .scheduler import RecurringPlanScheduler
from .schemas import PauseRequest, PlanCreate, PlanRead, PlanRunSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plans", tags=["Plans"])


def _ensure_owner(principal: Principal, plan: RecurringPlan) -> None:
    if not principal.is_admin and principal.id != plan.customer_id:
        raise HTTPException(status_code=403, detail="Not allowed to manage this plan")


@router.post("", response_model=PlanRead, status_code=201)
async def create_plan(
    body: PlanCreate,
    principal: Principal = Depends(get_current_principal),
    scheduler: RecurringPlanScheduler = Depends(get_plan_scheduler),
):
    if not principal.is_admin and principal.id != body.customer_id:
        raise HTTPException(status_code=403, detail="Customers can only create their own plans")
    return scheduler.create_plan(body)


@router.get("", response_model=list[PlanRead])
async def list_plans(
    principal: Principal = Depends(get_current_principal),
    scheduler: RecurringPlanScheduler = Depends(get_plan_scheduler),
):
    if principal.role == "professional":
        return scheduler.list_plans(professional_id=principal.id)
    if principal.is_admin:
        return scheduler.list_plans()
    return scheduler.list_plans(customer_id=principal.id)


@router.get("/{plan_id}", response_model=PlanRead)
async def get_plan(
    plan_id: int,
    principal: Principal = Depends(get_current_principal),
    scheduler: RecurringPlanScheduler = Depends(get_plan_scheduler),
):
    plan = scheduler.get_plan(plan_id)
    if principal.id not in (plan.customer_id, plan.professional_id) and not principal.is_admin:
        raise HTTPException(status_code=403, detail="Not allowed to access this plan")
    return plan


@router.post("/{plan_id}/pause", response_model=PlanRead)
async def pause_plan(
    plan_id: int,
    body: PauseRequest,
    principal: Principal = Depends(get_current_principal),
    scheduler: RecurringPlanScheduler = Depends(get_plan_scheduler),
):
    _ensure_owner(principal, scheduler.get_plan(plan_id))
    return scheduler.pause(plan_id, body.start_date, body.end_date)


@router.post("/{plan_id}/resume", response_model=PlanRead)
async def resume_plan(
    plan_id: int,
    principal: Principal = Depends(get_current_principal),
    scheduler: RecurringPlanScheduler = Depends(get_plan_scheduler),
):
    _ensure_owner(principal, scheduler.get_plan(plan_id))
    return scheduler.resume(plan_id)


@router.post("/{plan_id}/cancel", response_model=PlanRead)
async def cancel_plan(
    plan_id: int,
    principal: Principal = Depends(get_current_principal),
    scheduler: RecurringPlanScheduler = Depends(get_plan_scheduler),
):
    _ensure_owner(principal, scheduler.get_plan(plan_id))
    return scheduler.cancel(plan_id)


@router.post("/run", response_model=PlanRunSummary)
async def run_due_plans(
    _admin: Principal = Depends(require_admin),
    scheduler: RecurringPlanScheduler = Depends(get_plan_scheduler),
):
    """Run the scheduler pass now (the worker runs it on a schedule)"""
    return scheduler.run_due_plans()
