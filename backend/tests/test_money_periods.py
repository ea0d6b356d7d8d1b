from datetime import datetime
from decimal import Decimal

import pytest

from pbx_billing.core.exceptions import ValidationError
from pbx_billing.utils import (
    add_months,
    apply_rate,
    billing_period_key,
    end_of_day,
    format_cents,
    line_amount,
    next_period_bounds,
    parse_billing_period,
    round_half_up,
)


def test_round_half_up_rounds_halves_away_from_zero():
    assert round_half_up(Decimal("232.5")) == 233
    assert round_half_up(Decimal("232.4")) == 232
    assert round_half_up(0.5) == 1


def test_tax_and_line_amounts():
    assert apply_rate(2900, Decimal("0.08")) == 232
    assert apply_rate(2905, Decimal("0.08")) == 232
    assert apply_rate(0, Decimal("0.08")) == 0
    assert line_amount(1, 5) == 5
    assert line_amount(2.5, 5) == 13
    assert line_amount(3, 29000) == 87000


def test_format_cents():
    assert format_cents(3132) == "31.32 USD"
    assert format_cents(123456789, "eur") == "1,234,567.89 EUR"
    assert format_cents(-5) == "-0.05 USD"


def test_billing_period_keys():
    assert billing_period_key(datetime(2026, 3, 9, 10, 30)) == "2026-03"
    start, end = parse_billing_period("2026-12")
    assert start == datetime(2026, 12, 1)
    assert end == datetime(2027, 1, 1)


@pytest.mark.parametrize("key", ["2026-13", "26-01", "2026/01", "", "2026-1"])
def test_parse_billing_period_rejects_malformed_keys(key):
    with pytest.raises(ValidationError):
        parse_billing_period(key)


def test_month_arithmetic_clamps_to_month_end():
    assert add_months(datetime(2026, 1, 31), 1) == datetime(2026, 2, 28)
    assert add_months(datetime(2028, 1, 31), 1) == datetime(2028, 2, 29)
    assert add_months(datetime(2026, 11, 15), 3) == datetime(2027, 2, 15)
    assert add_months(datetime(2026, 2, 1), 12) == datetime(2027, 2, 1)


def test_next_period_starts_the_day_after_the_current_end():
    assert next_period_bounds(datetime(2026, 1, 31)) == (datetime(2026, 2, 1), datetime(2026, 3, 1))
    assert next_period_bounds(datetime(2026, 1, 31), 12) == (datetime(2026, 2, 1), datetime(2027, 2, 1))
    assert end_of_day(datetime(2026, 1, 31, 8)) == datetime(2026, 1, 31, 23, 59, 59, 999999)
