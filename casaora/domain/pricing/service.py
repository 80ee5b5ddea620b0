"""Pricing service - Operator management of pricing rules"""

import logging
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from ...cache import Cache
from ...cache import cache as default_cache
from ...exceptions import NotFoundError
from ...models import PricingRule
from .repository import PricingRuleRepository
from .resolver import PricingRuleResolver
from .schemas import PricingRuleCreate, ResolvedTerms

logger = logging.getLogger(__name__)


class PricingRuleService:
    """Service layer for pricing rule administration"""

    def __init__(self, db: Session, cache: Optional[Cache] = default_cache):
        self.db = db
        self.repo = PricingRuleRepository()
        self.resolver = PricingRuleResolver(db, cache=cache)

    def resolve(
        self, category: Optional[str], city: Optional[str], country: str, as_of: date
    ) -> ResolvedTerms:
        return self.resolver.resolve(category, city, country, as_of)

    def get_rule(self, rule_id: int) -> PricingRule:
        rule = self.repo.get_rule(self.db, rule_id)
        if not rule:
            raise NotFoundError("Pricing rule not found", rule_id=rule_id)
        return rule

    def list_rules(self, country: Optional[str] = None, include_inactive: bool = False) -> list[PricingRule]:
        return self.repo.list_rules(self.db, country, include_inactive)

    def create_rule(self, data: PricingRuleCreate, created_by: Optional[str] = None) -> PricingRule:
        rule = self.repo.create_rule(self.db, created_by=created_by, **data.model_dump())
        self.resolver.invalidate(rule.country)
        logger.info(f"✅ Pricing rule {rule.id} created for {rule.country}/{rule.city}/{rule.service_category}")
        return rule

    def deactivate_rule(self, rule_id: int) -> PricingRule:
        rule = self.get_rule(rule_id)
        if rule.is_active:
            rule = self.repo.deactivate_rule(self.db, rule)
            self.resolver.invalidate(rule.country)
            logger.info(f"✅ Pricing rule {rule.id} deactivated")
        return rule
