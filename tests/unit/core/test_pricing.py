from decimal import Decimal

import pytest

from proposal_lifecycle.core.common.errors import ProposalValidationError
from proposal_lifecycle.core.proposals import compute_totals
from proposal_lifecycle.core.proposals.pricing import round_minor
from proposal_lifecycle.core.proposals.versions import price_snapshot
from tests.factories import line_item, snapshot


def test_compute_totals_sums_lines_and_applies_tax():
    pricing = compute_totals(
        [line_item("Cabinets", "2", 10000), line_item("Install", "1", 5000)],
        Decimal("10"),
        0,
    )

    assert pricing.subtotal == 25000
    assert pricing.tax == 2500
    assert pricing.discount == 0
    assert pricing.total == 27500


def test_compute_totals_rounds_subtotal_before_tax_half_up():
    pricing = compute_totals(
        [line_item("Paint", "0.5", 333), line_item("Primer", "0.5", 1)],
        Decimal("8.25"),
        0,
    )

    # 166.5 + 0.5 = 167 exactly; tax 167 * 8.25% = 13.7775 -> 14
    assert pricing.subtotal == 167
    assert pricing.tax == 14
    assert pricing.total == 181


def test_compute_totals_subtracts_discount_without_clamping():
    pricing = compute_totals([line_item("Labor", "1", 1000)], Decimal("0"), 2500)

    assert pricing.total == -1500


def test_compute_totals_is_pure_for_identical_inputs():
    items = [line_item("Labor", "3", 3333)]

    first = compute_totals(items, Decimal("7.5"), 100)
    second = compute_totals(items, Decimal("7.5"), 100)

    assert first == second


def test_compute_totals_empty_line_items_is_zero():
    pricing = compute_totals([], Decimal("10"), 0)

    assert pricing.subtotal == 0
    assert pricing.tax == 0
    assert pricing.total == 0


@pytest.mark.parametrize(
    ("value", "expected"),
    [("0.5", 1), ("1.49", 1), ("2.5", 3), ("-0.5", -1)],
)
def test_round_minor_rounds_half_away_from_zero(value, expected):
    assert round_minor(Decimal(value)) == expected


def test_price_snapshot_rejects_negative_total():
    with pytest.raises(ProposalValidationError) as exc:
        price_snapshot(snapshot(line_items=[line_item("Labor", "1", 1000)], discount_minor=5000))

    assert str(exc.value).startswith("NEGATIVE_TOTAL")
