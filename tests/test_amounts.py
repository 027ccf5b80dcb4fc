from decimal import Decimal

import pytest

from wager_client.amounts import (
    AmountBounds,
    DecimalAmount,
    FixedPointAmount,
    denormalize,
    format_amount,
    normalize,
    parse_amount,
)
from wager_client.errors import InvalidStakeError

BOUNDS = AmountBounds(min=10_000_000, max=100_000_000_000)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (1, 100_000_000),
        ("1.5", 150_000_000),
        (2.25, 225_000_000),
        ("12 APTC", 1_200_000_000),
        (250_000_000, 250_000_000),  # above the threshold, already scaled
        (0.05, 10_000_000),  # clamped up to the minimum
        (5_000, 100_000_000_000),  # clamped down to the maximum
    ],
)
def test_normalize_untagged(raw, expected):
    assert normalize(raw, bounds=BOUNDS).value == expected


def test_threshold_value_itself_is_scaled():
    assert normalize(100_000_000, bounds=BOUNDS).value == BOUNDS.max


def test_tagged_amounts_skip_the_heuristic():
    assert normalize(DecimalAmount(Decimal("300000000")), bounds=AmountBounds(1, 10**20)).value == 300_000_000 * 10**8
    assert normalize(FixedPointAmount(50_000_000), bounds=BOUNDS).value == 50_000_000
    assert normalize(FixedPointAmount(5, scale_factor=10), bounds=BOUNDS).value == 50_000_000


@pytest.mark.parametrize("raw", [0, -1, "-2.5", "abc", "", True, float("nan"), DecimalAmount(Decimal(0))])
def test_normalize_rejects_non_positive_and_garbage(raw):
    with pytest.raises(InvalidStakeError):
        normalize(raw, bounds=BOUNDS)


def test_denormalize():
    assert denormalize(FixedPointAmount(150_000_000)).value == Decimal("1.5")


def test_parse_amount():
    assert parse_amount("1,250.5 APTC") == 125_050_000_000
    assert parse_amount("") == 0
    assert parse_amount("n/a") == 0


def test_format_amount_rounds_down():
    assert format_amount(199_999_999) == "1.99 APTC"
    assert format_amount(123_456_789_012) == "1,234.56 APTC"
    assert format_amount(123_456_789_012, with_commas=False, include_symbol=False) == "1234.56"
    assert format_amount(FixedPointAmount(50_000_000), decimals=4) == "0.5000 APTC"
    assert format_amount(None) == "0.00 APTC"


@pytest.mark.parametrize("scaled", [10_000_000, 123_456_789, 100_000_000_000])
def test_denormalize_then_normalize_is_identity(scaled):
    amount = FixedPointAmount(scaled)
    assert normalize(denormalize(amount), bounds=BOUNDS) == amount
