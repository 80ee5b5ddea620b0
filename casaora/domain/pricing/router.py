"""Pricing router - FastAPI endpoints for price previews and rule administration"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import Principal, get_current_principal, require_admin
from ...database import get_db
from ...shared.money import utcnow
from .schemas import PriceQuote, PricingRuleCreate, PricingRuleRead, QuoteRequest, ResolvedTerms
from .service import PricingRuleService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pricing", tags=["Pricing"])


def get_pricing_service(db: Session = Depends(get_db)) -> PricingRuleService:
    """Dependency injection for PricingRuleService"""
    return PricingRuleService(db)


@router.get("/resolve", response_model=ResolvedTerms)
async def resolve_terms(
    country: str,
    city: Optional[str] = None,
    service_category: Optional[str] = None,
    as_of: Optional[date] = None,
    _principal: Principal = Depends(get_current_principal),
    service: PricingRuleService = Depends(get_pricing_service),
):
    """Terms a booking with this scope would be priced with"""
    return service.resolve(service_category, city, country, as_of or utcnow().date())


@router.post("/quote", response_model=PriceQuote)
async def quote_price(
    body: QuoteRequest,
    _principal: Principal = Depends(get_current_principal),
    service: PricingRuleService = Depends(get_pricing_service),
):
    """Price preview; nothing is persisted"""
    terms = service.resolve(body.service_category, body.city, body.country, body.as_of or utcnow().date())
    return service.resolver.quote(
        terms,
        body.hourly_rate,
        body.duration_minutes,
        addons_total=sum(item.amount for item in body.addons),
    )


# ============================================================================
# RULE ADMINISTRATION (operators)
# ============================================================================


@router.get("/rules", response_model=list[PricingRuleRead])
async def list_rules(
    country: Optional[str] = None,
    include_inactive: bool = False,
    _admin: Principal = Depends(require_admin),
    service: PricingRuleService = Depends(get_pricing_service),
):
    return service.list_rules(country, include_inactive)


@router.post("/rules", response_model=PricingRuleRead, status_code=201)
async def create_rule(
    body: PricingRuleCreate,
    admin: Principal = Depends(require_admin),
    service: PricingRuleService = Depends(get_pricing_service),
):
    return service.create_rule(body, created_by=admin.id)


@router.get("/rules/{rule_id}", response_model=PricingRuleRead)
async def get_rule(
    rule_id: int,
    _admin: Principal = Depends(require_admin),
    service: PricingRuleService = Depends(get_pricing_service),
):
    return service.get_rule(rule_id)


@router.post("/rules/{rule_id}/deactivate", response_model=PricingRuleRead)
async def deactivate_rule(
    rule_id: int,
    _admin: Principal = Depends(require_admin),
    service: PricingRuleService = Depends(get_pricing_service),
):
    """Rules are never deleted so past bookings stay auditable"""
    return service.deactivate_rule(rule_id)
