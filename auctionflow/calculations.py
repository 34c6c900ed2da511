"""
Invoice calculation engine.

Turns a list of priced lots plus a rate configuration into an itemized,
audit-reproducible invoice total. The pipeline is fixed:

    subtotal -> buyer's premium (off the full subtotal)
             -> tax (off subtotal + premium)
             -> grand total (exact sum of the three)

All arithmetic is done on ``decimal.Decimal`` inside a private context, so
the result never depends on the caller's decimal context and never touches
binary floating point.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from decimal import (
    Context, Decimal, InvalidOperation, ROUND_HALF_EVEN, localcontext
)
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from . import config
from .errors import ConflictError, FieldError, ValidationError

MONEY_CONTEXT = Context(prec=34, rounding=ROUND_HALF_EVEN)
CENT = Decimal("0.01")
ZERO = Decimal(0)
ONE = Decimal(1)

CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£"}

# per-category overrides of the default rates
CATEGORY_RATES: Dict[str, Dict[str, Decimal]] = {
    "art": {"buyers_premium_rate": Decimal("0.15"), "tax_rate": Decimal("0.085")},
    "jewelry": {"buyers_premium_rate": Decimal("0.20"), "tax_rate": Decimal("0.085")},
    "watches": {"buyers_premium_rate": Decimal("0.15"), "tax_rate": Decimal("0.085")},
    "antiques": {"buyers_premium_rate": Decimal("0.12"), "tax_rate": Decimal("0.085")},
}


# ----------------------------
# Input / output types
# ----------------------------
@dataclass(frozen=True)
class LineItem:
    lot_id: str
    title: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class PremiumTier:
    min_amount: Decimal
    max_amount: Optional[Decimal]  # None = unbounded
    rate: Decimal

    def contains(self, amount: Decimal) -> bool:
        if amount < self.min_amount:
            return False
        return self.max_amount is None or amount < self.max_amount

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "min_amount": str(self.min_amount),
            "max_amount": (
                None if self.max_amount is None else str(self.max_amount)
            ),
            "rate": str(self.rate),
        }


@dataclass(frozen=True)
class RateConfig:
    tax_rate: Decimal
    buyers_premium_rate: Optional[Decimal] = None
    premium_tiers: Tuple[PremiumTier, ...] = ()
    currency: str = "USD"


@dataclass(frozen=True)
class PremiumResult:
    rate: Decimal
    amount: Decimal
    applied_tier: Optional[PremiumTier] = None


@dataclass(frozen=True)
class TaxResult:
    rate: Decimal
    taxable_amount: Decimal
    amount: Decimal


@dataclass(frozen=True)
class ItemLine:
    lot_id: str
    title: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal


@dataclass(frozen=True)
class Breakdown:
    items: Tuple[ItemLine, ...]
    buyers_premium: PremiumResult
    tax: TaxResult


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    buyers_premium_amount: Decimal
    tax_amount: Decimal
    grand_total: Decimal
    currency: str
    breakdown: Breakdown = field(repr=False)


# ----------------------------
# Rounding / presentation
# ----------------------------
def quantize_money(value: Decimal) -> Decimal:
    """Round to cents, half-even. Only at presentation or persistence."""
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


def format_currency(amount: Decimal | int | str, currency: str = "USD") -> str:
    value = quantize_money(Decimal(str(amount)))
    sign = "-" if value < 0 else ""
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    if symbol is None:
        return f"{sign}{abs(value):,.2f} {currency.upper()}"
    return f"{sign}{symbol}{abs(value):,.2f}"


# ----------------------------
# Pipeline steps
# ----------------------------
def compute_subtotal(items: Sequence[LineItem]) -> Decimal:
    with localcontext(MONEY_CONTEXT):
        total = ZERO
        for item in items:
            total += Decimal(item.quantity) * item.unit_price
        return total


def _check_rate(name: str, rate: Decimal) -> None:
    if not ZERO <= rate <= ONE:
        raise ValidationError(
            [FieldError(name, "must be between 0 and 1")]
        )


def select_premium_tier(
        subtotal: Decimal, tiers: Sequence[PremiumTier]
) -> Optional[PremiumTier]:
    # tiers are expected in ascending order; the first containing one wins
    for tier in tiers:
        if tier.contains(subtotal):
            return tier
    return None


def compute_buyers_premium(
    subtotal: Decimal,
    rate: Optional[Decimal] = None,
    tiers: Optional[Sequence[PremiumTier]] = None,
) -> PremiumResult:
    """
    The selected rate applies to the *whole* subtotal. Tiers pick which
    rate, they are not marginal brackets.
    """
    applied = select_premium_tier(subtotal, tiers) if tiers else None
    if applied is not None:
        premium_rate = applied.rate
    elif rate is not None:
        premium_rate = rate
    elif tiers:
        raise ConflictError(
            f"no premium tier covers subtotal {subtotal} and no flat "
            f"buyer's premium rate is configured"
        )
    else:
        raise ConflictError("no buyer's premium rate resolvable")

    _check_rate("buyers_premium_rate", premium_rate)
    with localcontext(MONEY_CONTEXT):
        amount = subtotal * premium_rate
    return PremiumResult(rate=premium_rate, amount=amount,
                         applied_tier=applied)


def compute_tax(
        subtotal: Decimal, premium_amount: Decimal, tax_rate: Decimal
) -> TaxResult:
    # tax is owed on the premium-inclusive price
    _check_rate("tax_rate", tax_rate)
    with localcontext(MONEY_CONTEXT):
        taxable = subtotal + premium_amount
        amount = taxable * tax_rate
    return TaxResult(rate=tax_rate, taxable_amount=taxable, amount=amount)


def compute_grand_total(
        subtotal: Decimal, premium_amount: Decimal, tax_amount: Decimal
) -> Decimal:
    with localcontext(MONEY_CONTEXT):
        return subtotal + premium_amount + tax_amount


def compute_invoice_totals(
    items: Sequence[LineItem],
    rate_config: RateConfig,
    round_steps: bool = False,
) -> InvoiceTotals:
    """
    Full calculation. Raises ``ValidationError`` with every violation found,
    or ``ConflictError`` when no premium rate can be resolved; otherwise the
    result is complete.

    ``round_steps=True`` rounds subtotal, premium and tax to cents before
    each is used by the next step. Use it when the values are persisted, so
    the stored components add up to the stored grand total.
    """
    errors = validate_calculation_inputs(items, rate_config)
    if errors:
        raise ValidationError(errors)

    step = quantize_money if round_steps else (lambda v: v)

    subtotal = step(compute_subtotal(items))
    premium = compute_buyers_premium(
        subtotal,
        rate_config.buyers_premium_rate,
        rate_config.premium_tiers,
    )
    premium = PremiumResult(premium.rate, step(premium.amount),
                            premium.applied_tier)
    tax = compute_tax(subtotal, premium.amount, rate_config.tax_rate)
    tax = TaxResult(tax.rate, tax.taxable_amount, step(tax.amount))
    grand_total = compute_grand_total(subtotal, premium.amount, tax.amount)

    with localcontext(MONEY_CONTEXT):
        lines = tuple(
            ItemLine(
                lot_id=item.lot_id,
                title=item.title,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total_price=Decimal(item.quantity) * item.unit_price,
            )
            for item in items
        )

    return InvoiceTotals(
        subtotal=subtotal,
        buyers_premium_amount=premium.amount,
        tax_amount=tax.amount,
        grand_total=grand_total,
        currency=rate_config.currency,
        breakdown=Breakdown(items=lines, buyers_premium=premium, tax=tax),
    )


# ----------------------------
# Validation
# ----------------------------
def _lot_id_errors(i: int, lot_id: str) -> List[FieldError]:
    if not lot_id or not lot_id.strip():
        return [FieldError(f"items[{i}].lot_id", "lot_id is required")]
    return []


def _quantity_errors(i: int, quantity: Any) -> List[FieldError]:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        return [FieldError(f"items[{i}].quantity",
                           "quantity must be an integer")]
    if quantity <= 0:
        return [FieldError(f"items[{i}].quantity",
                           "quantity must be greater than 0")]
    return []


def _unit_price_errors(i: int, unit_price: Decimal) -> List[FieldError]:
    if not unit_price.is_finite():
        return [FieldError(f"items[{i}].unit_price",
                           "unit_price must be a finite number")]
    if unit_price < 0:
        return [FieldError(f"items[{i}].unit_price",
                           "unit_price must not be negative")]
    return []


def _rate_errors(name: str, rate: Optional[Decimal]) -> List[FieldError]:
    if rate is None:
        return []
    if not rate.is_finite() or not ZERO <= rate <= ONE:
        return [FieldError(name, "must be between 0 and 1")]
    return []


def _tier_errors(tiers: Sequence[PremiumTier]) -> List[FieldError]:
    errors: List[FieldError] = []
    prev: Optional[PremiumTier] = None
    for i, tier in enumerate(tiers):
        name = f"premium_tiers[{i}]"
        bounds_ok = True
        if not tier.min_amount.is_finite():
            errors.append(FieldError(f"{name}.min_amount",
                                     "min_amount must be a finite number"))
            bounds_ok = False
        elif tier.min_amount < 0:
            errors.append(FieldError(f"{name}.min_amount",
                                     "min_amount must not be negative"))
        if tier.max_amount is not None and not tier.max_amount.is_finite():
            errors.append(FieldError(f"{name}.max_amount",
                                     "max_amount must be a finite number"))
            bounds_ok = False
        elif (bounds_ok and tier.max_amount is not None
              and tier.max_amount <= tier.min_amount):
            errors.append(FieldError(f"{name}.max_amount",
                                     "max_amount must exceed min_amount"))
        errors.extend(_rate_errors(f"{name}.rate", tier.rate))
        if not bounds_ok:
            # nothing to compare the next tier against
            prev = None
            continue
        if prev is not None:
            if tier.min_amount < prev.min_amount:
                errors.append(FieldError(
                    name, "tiers must be ordered by min_amount ascending"))
            elif prev.max_amount is None:
                errors.append(FieldError(
                    name, f"overlaps unbounded tier premium_tiers[{i - 1}]"))
            elif tier.min_amount < prev.max_amount:
                errors.append(FieldError(
                    name, f"overlaps premium_tiers[{i - 1}]"))
        prev = tier
    return errors


def validate_calculation_inputs(
        items: Sequence[LineItem], rate_config: RateConfig
) -> List[FieldError]:
    """Collect every violation; an empty list means the input is valid."""
    errors: List[FieldError] = []
    if not items:
        errors.append(FieldError("items", "at least one item is required"))
    for i, item in enumerate(items):
        errors.extend(_lot_id_errors(i, item.lot_id))
        errors.extend(_quantity_errors(i, item.quantity))
        errors.extend(_unit_price_errors(i, item.unit_price))
    errors.extend(_rate_errors("buyers_premium_rate",
                               rate_config.buyers_premium_rate))
    errors.extend(_rate_errors("tax_rate", rate_config.tax_rate))
    errors.extend(_tier_errors(rate_config.premium_tiers))
    return errors


# ----------------------------
# Request boundary
# ----------------------------
def _to_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float, str)):
        try:
            # floats go through their shortest repr, never their binary value
            out = Decimal(str(value).strip())
        except InvalidOperation:
            return None
        return out if out.is_finite() else None
    return None


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _parse_tiers(raw: Any, errors: List[FieldError]) -> Tuple[PremiumTier, ...]:
    if raw in (None, []):
        return ()
    if not isinstance(raw, list):
        errors.append(FieldError("premium_tiers", "must be a list"))
        return ()
    tiers = []
    for i, t in enumerate(raw):
        name = f"premium_tiers[{i}]"
        if not isinstance(t, Mapping):
            errors.append(FieldError(name, "must be an object"))
            continue
        bad = False
        lo = _to_decimal(t.get("min_amount", 0))
        if lo is None:
            errors.append(FieldError(f"{name}.min_amount",
                                     "must be a number"))
            bad = True
        hi = None
        if t.get("max_amount") is not None:
            hi = _to_decimal(t["max_amount"])
            if hi is None:
                errors.append(FieldError(f"{name}.max_amount",
                                         "must be a number or null"))
                bad = True
        rate = _to_decimal(t.get("rate"))
        if rate is None:
            errors.append(FieldError(f"{name}.rate", "must be a number"))
            bad = True
        if not bad:
            tiers.append(PremiumTier(min_amount=lo, max_amount=hi, rate=rate))
    return tuple(tiers)


def parse_calculation_request(
    payload: Mapping[str, Any],
    default_premium_rate: Decimal = config.DEFAULT_BUYERS_PREMIUM_RATE,
    default_tax_rate: Decimal = config.DEFAULT_TAX_RATE,
    currency: str = config.DEFAULT_CURRENCY,
) -> Tuple[List[LineItem], RateConfig]:
    """
    Coerce a loosely typed request body into ``LineItem``s and a
    ``RateConfig``. Coercion problems and validation problems are reported
    together in one ``ValidationError``.
    """
    errors: List[FieldError] = []
    raw_items = payload.get("items")
    if raw_items is None:
        raw_items = []
    if not isinstance(raw_items, list):
        errors.append(FieldError("items", "must be a list"))
        raw_items = []
    if not raw_items:
        errors.append(FieldError("items", "at least one item is required"))

    items: List[LineItem] = []
    for i, raw in enumerate(raw_items):
        if not isinstance(raw, Mapping):
            errors.append(FieldError(f"items[{i}]", "must be an object"))
            continue
        lot_id = str(raw.get("lot_id") or "")
        title = str(raw.get("title") or "")
        quantity = _to_int(raw.get("quantity"))
        unit_price = _to_decimal(raw.get("unit_price"))

        item_errors = _lot_id_errors(i, lot_id)
        if quantity is None:
            item_errors.append(FieldError(f"items[{i}].quantity",
                                          "quantity must be an integer"))
        else:
            item_errors.extend(_quantity_errors(i, quantity))
        if unit_price is None:
            item_errors.append(FieldError(f"items[{i}].unit_price",
                                          "unit_price must be a number"))
        else:
            item_errors.extend(_unit_price_errors(i, unit_price))

        if item_errors:
            errors.extend(item_errors)
            continue
        items.append(LineItem(lot_id=lot_id, title=title,
                              quantity=quantity, unit_price=unit_price))

    tiers = _parse_tiers(payload.get("premium_tiers"), errors)

    def _rate(name: str, default: Optional[Decimal]) -> Optional[Decimal]:
        if payload.get(name) is None:
            return default
        value = _to_decimal(payload[name])
        if value is None:
            errors.append(FieldError(name, "must be a number"))
        return value

    premium_rate = _rate(
        "buyers_premium_rate",
        # with tiers, a missing flat rate stays missing so gaps surface
        None if tiers else default_premium_rate,
    )
    tax_rate = _rate("tax_rate", default_tax_rate)

    rate_config = RateConfig(
        tax_rate=tax_rate if tax_rate is not None else default_tax_rate,
        buyers_premium_rate=premium_rate,
        premium_tiers=tiers,
        currency=str(payload.get("currency") or currency).upper(),
    )

    errors.extend(_rate_errors("buyers_premium_rate", premium_rate))
    errors.extend(_rate_errors("tax_rate", tax_rate))
    errors.extend(_tier_errors(tiers))
    if errors:
        raise ValidationError(errors)
    return items, rate_config


def rates_for_category(category: Optional[str] = None) -> Dict[str, Any]:
    defaults = {
        "buyers_premium_rate": config.DEFAULT_BUYERS_PREMIUM_RATE,
        "tax_rate": config.DEFAULT_TAX_RATE,
    }
    if category:
        rates = CATEGORY_RATES.get(category.lower(), defaults)
        return {
            "category": category.lower(),
            "rates": {k: str(v) for k, v in rates.items()},
        }
    return {
        "default_rates": {k: str(v) for k, v in defaults.items()},
        "category_rates": {
            name: {k: str(v) for k, v in r.items()}
            for name, r in CATEGORY_RATES.items()
        },
        "currency": config.DEFAULT_CURRENCY,
    }


def totals_to_dict(totals: InvoiceTotals) -> Dict[str, Any]:
    """JSON-ready view, money rounded to cents, rates kept exact."""
    premium = totals.breakdown.buyers_premium
    tax = totals.breakdown.tax
    return {
        "subtotal": str(quantize_money(totals.subtotal)),
        "buyers_premium_amount": str(
            quantize_money(totals.buyers_premium_amount)
        ),
        "tax_amount": str(quantize_money(totals.tax_amount)),
        "grand_total": str(quantize_money(totals.grand_total)),
        "currency": totals.currency,
        "breakdown": {
            "items": [
                {
                    "lot_id": line.lot_id,
                    "title": line.title,
                    "quantity": line.quantity,
                    "unit_price": str(line.unit_price),
                    "total_price": str(quantize_money(line.total_price)),
                }
                for line in totals.breakdown.items
            ],
            "buyers_premium": {
                "rate": str(premium.rate),
                "amount": str(quantize_money(premium.amount)),
                "applied_tier": (
                    premium.applied_tier.to_dict()
                    if premium.applied_tier else None
                ),
            },
            "tax": {
                "rate": str(tax.rate),
                "taxable_amount": str(quantize_money(tax.taxable_amount)),
                "amount": str(quantize_money(tax.amount)),
            },
        },
    }
