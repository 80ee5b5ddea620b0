"""Credits router - FastAPI endpoints for trial credit read models"""

import logging

from fastapi import APIRouter, Depends

from ...auth import Principal, get_current_principal
from ...dependencies import get_credit_ledger
from .ledger import CreditLedger
from .schemas import CreditInfo, CustomerCreditsResponse, DirectHirePreview

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["Credits"])


@router.get("", response_model=CustomerCreditsResponse)
async def list_my_credits(
    principal: Principal = Depends(get_current_principal),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Trial credit balances for every professional the caller has booked"""
    return CustomerCreditsResponse(credits=ledger.list_customer_credits(principal.id))


@router.get("/professionals/{professional_id}", response_model=CreditInfo)
async def get_credit_with_professional(
    professional_id: str,
    principal: Principal = Depends(get_current_principal),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    return ledger.get_credit_info(principal.id, professional_id)


@router.get("/professionals/{professional_id}/direct-hire-preview", response_model=DirectHirePreview)
async def preview_direct_hire(
    professional_id: str,
    principal: Principal = Depends(get_current_principal),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Direct-hire price after the caller's credit with this professional"""
    return ledger.preview_direct_hire(principal.id, professional_id)
