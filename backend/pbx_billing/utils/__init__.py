from pbx_billing.utils.money import apply_rate, format_cents, line_amount, round_half_up
from pbx_billing.utils.periods import (
    add_months,
    billing_period_key,
    end_of_day,
    next_period_bounds,
    parse_billing_period,
)

__all__ = [
    "add_months",
    "apply_rate",
    "billing_period_key",
    "end_of_day",
    "format_cents",
    "line_amount",
    "next_period_bounds",
    "parse_billing_period",
    "round_half_up",
]
