"""
Pricing Rule Resolver
Selects the single applicable pricing rule for a booking scope and derives
the booking amounts from it.

Selection order:
    1. active rules whose effective window contains the as-of date
    2. scoped dimensions (category, city) must match; unscoped ones are wildcards
    3. highest specificity wins (category +2, city +2; category beats city on a tie)
    4. then latest effective_from, then most recently created
If nothing matches, the platform default applies. Pricing never blocks booking creation.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ...cache import Cache, build_pricing_rules_key
from ...cache import cache as default_cache
from ...config import PRICING_CACHE_TTL
from ...exceptions import ValidationError
from ...models import PricingRule
from ...shared.money import apply_rate, round_minor
from ...shared.validators import validate_country_code
from .repository import PricingRuleRepository
from .schemas import PriceQuote, ResolvedTerms

logger = logging.getLogger(__name__)

DEFAULT_COMMISSION_RATE = 0.18
DEFAULT_LATE_CANCEL_HOURS = 24
DEFAULT_LATE_CANCEL_FEE_PERCENTAGE = 0.5

CATEGORY_MATCH_SCORE = 2
CITY_MATCH_SCORE = 2


def default_terms(country: str) -> ResolvedTerms:
    """Platform-wide fallback terms"""
    return ResolvedTerms(
        rule_id=None,
        country=country.upper(),
        commission_rate=DEFAULT_COMMISSION_RATE,
        deposit_percentage=None,
        late_cancel_hours=DEFAULT_LATE_CANCEL_HOURS,
        late_cancel_fee_percentage=DEFAULT_LATE_CANCEL_FEE_PERCENTAGE,
    )


def terms_from_rule(rule: PricingRule) -> ResolvedTerms:
    return ResolvedTerms(
        rule_id=rule.id,
        service_category=rule.service_category,
        city=rule.city,
        country=rule.country,
        commission_rate=rule.commission_rate,
        background_check_fee=rule.background_check_fee or 0,
        min_price=rule.min_price,
        max_price=rule.max_price,
        deposit_percentage=rule.deposit_percentage,
        late_cancel_hours=rule.late_cancel_hours,
        late_cancel_fee_percentage=rule.late_cancel_fee_percentage,
        effective_from=rule.effective_from,
        effective_until=rule.effective_until,
        created_at=rule.created_at,
    )


def _scope_key(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().casefold()
    return value or None


def _rank(terms: ResolvedTerms) -> tuple:
    score = 0
    if terms.service_category:
        score += CATEGORY_MATCH_SCORE
    if terms.city:
        score += CITY_MATCH_SCORE
    return (
        score,
        1 if terms.service_category else 0,
        terms.effective_from or date.min,
        terms.created_at or datetime.min,
        terms.rule_id or 0,
    )


def select_rule(
    rules: Iterable[ResolvedTerms],
    category: Optional[str],
    city: Optional[str],
    country: str,
    as_of: date,
) -> Optional[ResolvedTerms]:
    """Pure selection over active rule snapshots; None when nothing applies"""
    country = country.upper()
    category_key = _scope_key(category)
    city_key = _scope_key(city)

    candidates = []
    for terms in rules:
        if terms.country.upper() != country:
            continue
        if terms.effective_from is None or terms.effective_from > as_of:
            continue
        if terms.effective_until is not None and terms.effective_until < as_of:
            continue
        rule_category = _scope_key(terms.service_category)
        if rule_category is not None and rule_category != category_key:
            continue
        rule_city = _scope_key(terms.city)
        if rule_city is not None and rule_city != city_key:
            continue
        candidates.append(terms)

    if not candidates:
        return None
    return max(candidates, key=_rank)


def compute_base_amount(hourly_rate: int, duration_minutes: int) -> int:
    """round(hourly_rate x duration_hours)"""
    return round_minor(Decimal(hourly_rate) * Decimal(duration_minutes) / Decimal(60))


def compute_late_cancel_fee(
    base_amount: int,
    late_cancel_hours: int,
    late_cancel_fee_percentage: float,
    scheduled_start: datetime,
    cancelled_at: datetime,
) -> int:
    """Fee owed when cancelling inside the late window; 0 otherwise"""
    if late_cancel_hours <= 0:
        return 0
    if scheduled_start - cancelled_at >= timedelta(hours=late_cancel_hours):
        return 0
    return apply_rate(base_amount, late_cancel_fee_percentage)


class PricingRuleResolver:
    """Resolves pricing terms with an injected, time-bounded rule cache"""

    def __init__(self, db: Session, cache: Optional[Cache] = default_cache, ttl: int = PRICING_CACHE_TTL):
        self.db = db
        self.cache = cache
        self.ttl = ttl
        self.repo = PricingRuleRepository()

    def _load_rules(self, country: str) -> list[ResolvedTerms]:
        key = build_pricing_rules_key(country)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return [ResolvedTerms.model_validate(item) for item in cached]

        rules = [terms_from_rule(r) for r in self.repo.get_active_rules_for_country(self.db, country)]
        if self.cache is not None:
            self.cache.set(key, [r.model_dump(mode="json") for r in rules], self.ttl)
        return rules

    def invalidate(self, country: str) -> None:
        if self.cache is not None:
            self.cache.delete(build_pricing_rules_key(country))

    def resolve(
        self,
        category: Optional[str],
        city: Optional[str],
        country: str,
        as_of: date,
    ) -> ResolvedTerms:
        """Return the single applicable terms snapshot (or the platform default)"""
        try:
            country = validate_country_code(country)
        except ValueError as e:
            raise ValidationError(str(e), country=country) from e
        terms = select_rule(self._load_rules(country), category, city, country, as_of)
        if terms is None:
            logger.info(
                f"ℹ️ No pricing rule for category={category} city={city} country={country} "
                f"on {as_of}; using platform default"
            )
            return default_terms(country)

        logger.debug(f"💰 Pricing rule {terms.rule_id} selected for {category}/{city}/{country}")
        return terms

    def quote(
        self,
        terms: ResolvedTerms,
        hourly_rate: int,
        duration_minutes: int,
        addons_total: int = 0,
        discount_percentage: float = 0,
    ) -> PriceQuote:
        """Derive booking amounts; a plan discount reduces the base before commission"""
        base = compute_base_amount(hourly_rate, duration_minutes)
        if terms.min_price is not None and base < terms.min_price:
            base = terms.min_price
        if terms.max_price is not None and base > terms.max_price:
            base = terms.max_price

        discount = 0
        if discount_percentage:
            discount = apply_rate(base, Decimal(str(discount_percentage)) / Decimal(100))
        base -= discount

        commission = apply_rate(base, terms.commission_rate)
        deposit = None
        if terms.deposit_percentage:
            deposit = apply_rate(base, terms.deposit_percentage)

        return PriceQuote(
            base_amount=base,
            discount_amount=discount,
            commission=commission,
            addons_total=addons_total,
            deposit_amount=deposit,
            amount_estimated=base + commission + addons_total,
            terms=terms,
        )
