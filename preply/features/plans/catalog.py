"""
preply/features/plans/catalog.py

Plan catalog: billing cycle -> price, currency, duration, display metadata.

Pure lookup, no I/O. Amounts and durations only ever come from here,
never from client input.
"""

from typing import Dict, Iterable, List, Optional, Union

from preply.models.billing import BillingCycle, Plan


PRO_FEATURES = (
    "Everything in Free",
    "Unlimited interviews",
    "Unlimited report downloads",
    "Dashboard access",
    "Progress tracking",
    "Interview history",
)

FREE_FEATURES = (
    "1 interview (lifetime)",
    "1 report download",
    "AI-powered feedback",
    "Dashboard access",
    "Progress tracking",
    "Interview history",
)

# Duration per cycle is fixed by the product; prices come from settings.
CYCLE_DURATION_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.YEARLY: 12,
}


class PlanCatalog:
    """Immutable mapping of billing cycle to Plan (exactly one per cycle)."""

    def __init__(self, plans: Iterable[Plan]):
        by_cycle: Dict[BillingCycle, Plan] = {}
        for plan in plans:
            if plan.cycle_id in by_cycle:
                raise ValueError(f"Duplicate plan for cycle: {plan.cycle_id.value}")
            by_cycle[plan.cycle_id] = plan
        self._plans = by_cycle

    def get_plan(self, cycle_id: Union[BillingCycle, str, None]) -> Optional[Plan]:
        """Return the plan for a cycle, or None when the cycle is unknown."""
        cycle = BillingCycle.parse(cycle_id) if cycle_id is not None else None
        if cycle is None:
            return None
        return self._plans.get(cycle)

    def plans(self) -> List[Plan]:
        return [self._plans[c] for c in BillingCycle if c in self._plans]

    def __contains__(self, cycle_id) -> bool:
        return self.get_plan(cycle_id) is not None


def build_catalog(settings_obj) -> PlanCatalog:
    """Build the Pro catalog from pricing settings."""
    currency = settings_obj.PAYMENT_CURRENCY
    return PlanCatalog([
        Plan(
            cycle_id=BillingCycle.MONTHLY,
            amount_minor_units=settings_obj.PRO_MONTHLY_AMOUNT,
            currency_code=currency,
            duration_months=CYCLE_DURATION_MONTHS[BillingCycle.MONTHLY],
            display_features=PRO_FEATURES,
        ),
        Plan(
            cycle_id=BillingCycle.YEARLY,
            amount_minor_units=settings_obj.PRO_YEARLY_AMOUNT,
            currency_code=currency,
            duration_months=CYCLE_DURATION_MONTHS[BillingCycle.YEARLY],
            display_features=PRO_FEATURES,
        ),
    ])
