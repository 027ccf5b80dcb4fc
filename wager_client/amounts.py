"""
Conversion between human-entered stakes and the ledger's fixed-point integers.

Untagged input is disambiguated by magnitude: an integer above the configured
threshold is taken to be already scaled. That guess is lossy (an entry of
200000000 whole tokens looks scaled), so boundaries that know their unit should
pass a ``DecimalAmount`` or ``FixedPointAmount`` instead.
"""
import re
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Optional, Union

from wager_client.config import settings
from wager_client.errors import InvalidStakeError

_NON_NUMERIC = re.compile(r"[^0-9.\-]")


@dataclass(frozen=True)
class DecimalAmount:
    value: Decimal


@dataclass(frozen=True)
class FixedPointAmount:
    value: int
    scale_factor: int = settings.scale_factor


@dataclass(frozen=True)
class AmountBounds:
    min: int
    max: int

    @classmethod
    def from_settings(cls) -> "AmountBounds":
        return cls(min=settings.min_stake, max=settings.max_stake)


RawAmount = Union[DecimalAmount, FixedPointAmount, int, float, str, Decimal]


def _to_decimal(raw) -> Decimal:
    if isinstance(raw, str):
        cleaned = _NON_NUMERIC.sub("", raw)
        if not cleaned:
            raise InvalidStakeError(f"not a number: {raw!r}")
        raw = cleaned
    try:
        value = Decimal(str(raw)) if isinstance(raw, float) else Decimal(raw)
    except InvalidOperation as exc:
        raise InvalidStakeError(f"not a number: {raw!r}") from exc
    if not value.is_finite():
        raise InvalidStakeError(f"not a finite amount: {raw!r}")
    return value


def _scale(value: Decimal, scale_factor: int) -> int:
    return int((value * scale_factor).to_integral_value(rounding=ROUND_DOWN))


def normalize(
    raw_amount: RawAmount,
    scale_factor: Optional[int] = None,
    bounds: Optional[AmountBounds] = None,
    threshold: Optional[int] = None,
) -> FixedPointAmount:
    """
    Produce a validated fixed-point stake from user- or wire-supplied input.

    Tagged amounts are converted exactly. Plain integers above ``threshold``
    are treated as already scaled; anything else is multiplied by
    ``scale_factor`` and truncated. The result is clamped to ``bounds``.
    Zero, negative and non-numeric input raises ``InvalidStakeError``.
    """
    scale_factor = scale_factor or settings.scale_factor
    bounds = bounds or AmountBounds.from_settings()
    threshold = settings.already_scaled_threshold if threshold is None else threshold

    if isinstance(raw_amount, bool):
        raise InvalidStakeError("boolean is not an amount")
    if isinstance(raw_amount, FixedPointAmount):
        if raw_amount.scale_factor == scale_factor:
            scaled = raw_amount.value
        else:
            scaled = _scale(Decimal(raw_amount.value) / raw_amount.scale_factor, scale_factor)
    elif isinstance(raw_amount, DecimalAmount):
        scaled = _scale(_to_decimal(raw_amount.value), scale_factor)
    elif isinstance(raw_amount, int):
        scaled = raw_amount if abs(raw_amount) > threshold else raw_amount * scale_factor
    else:
        value = _to_decimal(raw_amount)
        if value == value.to_integral_value() and abs(value) > threshold:
            scaled = int(value)
        else:
            scaled = _scale(value, scale_factor)

    if scaled <= 0:
        raise InvalidStakeError(f"stake must be positive, got {raw_amount!r}")
    clamped = min(max(scaled, bounds.min), bounds.max)
    return FixedPointAmount(value=clamped, scale_factor=scale_factor)


def denormalize(amount: FixedPointAmount) -> DecimalAmount:
    return DecimalAmount(Decimal(amount.value) / Decimal(amount.scale_factor))


def parse_amount(text: str, scale_factor: Optional[int] = None) -> int:
    """Parse display text such as ``"1,250.5 APTC"`` into a scaled integer."""
    if not text:
        return 0
    cleaned = _NON_NUMERIC.sub("", text)
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return 0
    return _scale(value, scale_factor or settings.scale_factor)


def format_amount(
    amount: Union[FixedPointAmount, int, None],
    decimals: int = 2,
    include_symbol: bool = True,
    with_commas: bool = True,
) -> str:
    if isinstance(amount, FixedPointAmount):
        value = denormalize(amount).value
    elif amount is None:
        value = Decimal(0)
    else:
        value = Decimal(amount) / Decimal(settings.scale_factor)
    quantum = Decimal(1).scaleb(-decimals)
    rounded = value.quantize(quantum, rounding=ROUND_DOWN)
    formatted = f"{rounded:,.{decimals}f}" if with_commas else f"{rounded:.{decimals}f}"
    return f"{formatted} {settings.currency_symbol}" if include_symbol else formatted
