"""Sales tax policies.

Two interchangeable strategies turn cart lines into a :class:`TaxBreakdown`:

* :class:`PerItemTaxPolicy` taxes every line at the product's own rate.
* :class:`BracketTaxPolicy` taxes the whole cart at one rate picked by a
  subtotal threshold.

Both produce breakdowns of identical shape (every configured rate has a bucket)
so that carts, checkout and reports never need to know which one is active.
Nothing is rounded here; :func:`round_money` is applied only when values are
presented or persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Optional, Protocol, Sequence

from . import log
from .constants import CENT, ZERO, TaxStrategy
from .data_manager import TaxSettings


HUNDRED = Decimal("100")


class TaxableLine(Protocol):
    """Anything carrying a unit cost, a quantity and a nominal tax rate."""

    unit_cost: Decimal
    quantity: int
    tax_rate: int


@dataclass(frozen=True)
class TaxBreakdown:
    """Derived tax totals for a set of lines. Never stored on its own."""

    strategy: TaxStrategy
    subtotal: Decimal
    subtotal_by_rate: Dict[int, Decimal] = field(default_factory=dict)
    tax_by_rate: Dict[int, Decimal] = field(default_factory=dict)
    total_tax: Decimal = ZERO
    grand_total: Decimal = ZERO
    applied_rate: Optional[int] = None

    def rounded(self) -> "TaxBreakdown":
        """Return a copy with every amount rounded half-up to 2 places."""

        return replace(
            self,
            subtotal=round_money(self.subtotal),
            subtotal_by_rate={rate: round_money(amount) for rate, amount in self.subtotal_by_rate.items()},
            tax_by_rate={rate: round_money(amount) for rate, amount in self.tax_by_rate.items()},
            total_tax=round_money(self.total_tax),
            grand_total=round_money(self.grand_total),
        )


def round_money(value: Decimal) -> Decimal:
    """Round a currency amount half-up to two decimal places."""

    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def line_subtotal(line: TaxableLine) -> Decimal:
    return Decimal(line.unit_cost) * line.quantity


class TaxPolicy:
    """Base class for tax strategies."""

    strategy: TaxStrategy

    def __init__(self, rates: Iterable[int]) -> None:
        self.rates: tuple[int, ...] = tuple(sorted(set(rates)))

    def compute_breakdown(self, lines: Sequence[TaxableLine]) -> TaxBreakdown:
        raise NotImplementedError

    def _empty_buckets(self) -> Dict[int, Decimal]:
        return {rate: ZERO for rate in self.rates}


class PerItemTaxPolicy(TaxPolicy):
    """Apply each line's own declared rate independently."""

    strategy = TaxStrategy.PER_ITEM

    def compute_breakdown(self, lines: Sequence[TaxableLine]) -> TaxBreakdown:
        subtotal_by_rate = self._empty_buckets()
        tax_by_rate = self._empty_buckets()
        subtotal = ZERO
        for line in lines:
            if line.tax_rate not in subtotal_by_rate:
                log.error("Line carries unsupported tax rate %s", line.tax_rate)
                raise ValueError(f"Unsupported tax rate: {line.tax_rate}")
            amount = line_subtotal(line)
            subtotal += amount
            subtotal_by_rate[line.tax_rate] += amount
            tax_by_rate[line.tax_rate] += amount * line.tax_rate / HUNDRED

        total_tax = sum(tax_by_rate.values(), ZERO)
        return TaxBreakdown(
            strategy=self.strategy,
            subtotal=subtotal,
            subtotal_by_rate=subtotal_by_rate,
            tax_by_rate=tax_by_rate,
            total_tax=total_tax,
            grand_total=subtotal + total_tax,
        )


class BracketTaxPolicy(TaxPolicy):
    """Apply one rate to the whole cart, chosen by a subtotal threshold.

    A subtotal strictly above ``threshold`` is taxed at ``upper_rate``;
    anything at or below it at ``lower_rate``. Each line's nominal rate is
    ignored.
    """

    strategy = TaxStrategy.BRACKET

    def __init__(self, threshold: Decimal, lower_rate: int, upper_rate: int) -> None:
        super().__init__((lower_rate, upper_rate))
        self.threshold = Decimal(threshold)
        self.lower_rate = lower_rate
        self.upper_rate = upper_rate

    def applied_rate_for(self, subtotal: Decimal) -> int:
        return self.upper_rate if subtotal > self.threshold else self.lower_rate

    def compute_breakdown(self, lines: Sequence[TaxableLine]) -> TaxBreakdown:
        subtotal_by_rate = self._empty_buckets()
        tax_by_rate = self._empty_buckets()
        if not lines:
            return TaxBreakdown(
                strategy=self.strategy,
                subtotal=ZERO,
                subtotal_by_rate=subtotal_by_rate,
                tax_by_rate=tax_by_rate,
            )

        subtotal = sum((line_subtotal(line) for line in lines), ZERO)
        applied_rate = self.applied_rate_for(subtotal)
        total_tax = subtotal * applied_rate / HUNDRED
        subtotal_by_rate[applied_rate] = subtotal
        tax_by_rate[applied_rate] = total_tax
        return TaxBreakdown(
            strategy=self.strategy,
            subtotal=subtotal,
            subtotal_by_rate=subtotal_by_rate,
            tax_by_rate=tax_by_rate,
            total_tax=total_tax,
            grand_total=subtotal + total_tax,
            applied_rate=applied_rate,
        )


def build_tax_policy(settings: TaxSettings) -> TaxPolicy:
    """Instantiate the strategy selected by configuration."""

    if settings.strategy is TaxStrategy.BRACKET:
        log.info(
            "Using bracket tax policy (threshold=%s, rates=%s/%s)",
            settings.bracket_threshold,
            settings.lower_rate,
            settings.upper_rate,
        )
        return BracketTaxPolicy(settings.bracket_threshold, settings.lower_rate, settings.upper_rate)
    log.info("Using per-item tax policy (rates=%s)", settings.rates)
    return PerItemTaxPolicy(settings.rates)
