from datetime import datetime
from typing import Iterable, List, Optional

from . import config
from .schemas import DeliveryFeeRule, FeeCalculation, FeeConditions, FeeContext, FeeQuote
from .utils import as_utc, round_half_up

ALL_BRANCHES = "ALL"


def _local_now() -> datetime:
    return datetime.now().astimezone()


def _minutes_of_day(hhmm):
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def _day_of_week(now):
    # 0 = Sunday ... 6 = Saturday
    return now.isoweekday() % 7


def is_within_time_range(now: datetime, start_time: Optional[str], end_time: Optional[str]) -> bool:
    if not start_time or not end_time:
        return True

    current = now.hour * 60 + now.minute
    start = _minutes_of_day(start_time)
    end = _minutes_of_day(end_time)

    # Overnight ranges such as 22:00-06:00
    if end < start:
        return current >= start or current <= end
    return start <= current <= end


def is_allowed_day(now: datetime, days_of_week: Optional[List[int]]) -> bool:
    if not days_of_week:
        return True
    return _day_of_week(now) in days_of_week


def applicable_rules(rules: Iterable[DeliveryFeeRule], branch_id: str, now: datetime) -> List[DeliveryFeeRule]:
    """Active rules for the branch (or ALL) valid at `now`, highest priority first."""
    moment = as_utc(now)
    selected = []
    for rule in rules:
        if not rule.active:
            continue
        if rule.branch_id not in (branch_id, ALL_BRANCHES):
            continue
        if rule.valid_from and as_utc(rule.valid_from) > moment:
            continue
        if rule.valid_until and as_utc(rule.valid_until) < moment:
            continue
        selected.append(rule)
    return sorted(selected, key=lambda r: r.priority, reverse=True)


def conditions_match(conditions: FeeConditions, context: FeeContext, now: datetime) -> bool:
    if conditions.min_order_amount is not None and context.order_amount < conditions.min_order_amount:
        return False

    if conditions.customer_segments:
        if not context.customer_segment or context.customer_segment not in conditions.customer_segments:
            return False

    # Unknown distance skips the check instead of failing it
    if conditions.max_distance_km is not None and context.distance_km is not None:
        if context.distance_km > conditions.max_distance_km:
            return False

    if not is_allowed_day(now, conditions.days_of_week):
        return False

    return is_within_time_range(now, conditions.start_time, conditions.end_time)


def calculate_rule_fee(
    calculation: FeeCalculation,
    context: FeeContext,
    default_distance_km: float = config.DEFAULT_DISTANCE_KM,
) -> int:
    if calculation.type == "free":
        fee = 0.0
    elif calculation.type == "fixed":
        fee = calculation.value
    elif calculation.type == "per_km":
        distance = context.distance_km if context.distance_km is not None else default_distance_km
        fee = calculation.value * distance
    elif calculation.type == "percentage":
        fee = calculation.value / 100 * context.order_amount
    else:
        raise ValueError(f"Unknown fee type '{calculation.type}'")

    if calculation.min_fee is not None and fee < calculation.min_fee:
        fee = calculation.min_fee
    if calculation.max_fee is not None and fee > calculation.max_fee:
        fee = calculation.max_fee

    return round_half_up(fee)


def explain_fee(rule: DeliveryFeeRule, fee: int, currency: str = config.CURRENCY) -> str:
    calc = rule.fee_calculation
    if calc.type == "free":
        return "Free delivery"
    if calc.type == "fixed":
        return f"{currency} {fee} flat rate"
    if calc.type == "per_km":
        return f"{currency} {calc.value:g}/km ({currency} {fee} total)"
    if calc.type == "percentage":
        return f"{calc.value:g}% of order ({currency} {fee})"
    return f"{currency} {fee}"


def compute_fee(
    context: FeeContext,
    rules: Iterable[DeliveryFeeRule],
    now: Optional[datetime] = None,
    default_fee: int = config.DEFAULT_DELIVERY_FEE,
) -> FeeQuote:
    now = now or _local_now()

    for rule in applicable_rules(rules, context.branch_id, now):
        if not conditions_match(rule.conditions, context, now):
            continue

        fee = calculate_rule_fee(rule.fee_calculation, context)
        reason = f"Free delivery: {rule.name}" if fee == 0 else f"{rule.name}: {explain_fee(rule, fee)}"
        return FeeQuote(
            fee=fee,
            is_free=fee == 0,
            rule_applied=rule.rule_id,
            rule_name=rule.name,
            fee_type=rule.fee_calculation.type,
            reason=reason,
        )

    return FeeQuote(
        fee=default_fee,
        is_free=default_fee == 0,
        rule_applied=None,
        rule_name=None,
        fee_type="fixed",
        reason="Standard delivery fee",
    )


def preview_fees(
    branch_id: str,
    scenarios: Iterable[dict],
    rules: Iterable[DeliveryFeeRule],
    now: Optional[datetime] = None,
) -> List[FeeQuote]:
    """Price several hypothetical orders against the same rule set."""
    rules = list(rules)
    now = now or _local_now()
    return [compute_fee(FeeContext(branch_id=branch_id, **scenario), rules, now) for scenario in scenarios]


# --- Seed rules ---

DEFAULT_DELIVERY_FEE_RULES: List[dict] = [
    {
        "name": "VIP Free Delivery",
        "priority": 100,
        "conditions": {"customer_segments": ["vip"]},
        "fee_calculation": {"type": "free", "value": 0},
    },
    {
        "name": "Corporate Free Delivery",
        "priority": 95,
        "conditions": {"customer_segments": ["corporate"]},
        "fee_calculation": {"type": "free", "value": 0},
    },
    {
        "name": "High Value Order - Free Delivery",
        "priority": 80,
        "conditions": {"min_order_amount": 5000},
        "fee_calculation": {"type": "free", "value": 0},
    },
    {
        "name": "Medium Value Order - Reduced Delivery",
        "priority": 70,
        "conditions": {"min_order_amount": 2500},
        "fee_calculation": {"type": "fixed", "value": 100},
    },
    {
        "name": "Distance-Based Fee",
        "priority": 50,
        "conditions": {"max_distance_km": 50},
        "fee_calculation": {"type": "per_km", "value": 20, "min_fee": 200, "max_fee": 1000},
    },
    {
        "name": "Standard Delivery Fee",
        "priority": 10,
        "conditions": {},
        "fee_calculation": {"type": "fixed", "value": 200},
    },
]


def default_rules(branch_id: str = ALL_BRANCHES, valid_from: Optional[datetime] = None) -> List[DeliveryFeeRule]:
    return [
        DeliveryFeeRule(
            rule_id=f"DFRULE-{branch_id}-{index:02d}".upper(),
            branch_id=branch_id,
            valid_from=valid_from,
            **data,
        )
        for index, data in enumerate(DEFAULT_DELIVERY_FEE_RULES, start=1)
    ]
