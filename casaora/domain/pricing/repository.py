"""Pricing repository - Database operations for pricing rules"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import PricingRule
from ...shared.money import utcnow


class PricingRuleRepository:
    """Repository for pricing rule database operations"""

    @staticmethod
    def get_rule(db: Session, rule_id: int) -> Optional[PricingRule]:
        """Get a pricing rule by ID"""
        return db.query(PricingRule).filter(PricingRule.id == rule_id).first()

    @staticmethod
    def list_rules(
        db: Session, country: Optional[str] = None, include_inactive: bool = False
    ) -> list[PricingRule]:
        """List rules, newest first"""
        query = db.query(PricingRule)
        if country:
            query = query.filter(PricingRule.country == country.upper())
        if not include_inactive:
            query = query.filter(PricingRule.is_active.is_(True))
        return query.order_by(PricingRule.effective_from.desc(), PricingRule.id.desc()).all()

    @staticmethod
    def get_active_rules_for_country(db: Session, country: str) -> list[PricingRule]:
        """All active rules for a country; date filtering happens in the resolver"""
        return (
            db.query(PricingRule)
            .filter(PricingRule.country == country.upper(), PricingRule.is_active.is_(True))
            .all()
        )

    @staticmethod
    def create_rule(db: Session, **rule_data) -> PricingRule:
        """Create a new pricing rule"""
        rule = PricingRule(**rule_data)
        db.add(rule)
        db.commit()
        db.refresh(rule)
        return rule

    @staticmethod
    def deactivate_rule(db: Session, rule: PricingRule) -> PricingRule:
        """Deactivate a rule; rules are never deleted"""
        rule.is_active = False
        rule.deactivated_at = utcnow()
        db.commit()
        db.refresh(rule)
        return rule
