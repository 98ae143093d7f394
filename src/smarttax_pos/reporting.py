"""Sales reporting over a heterogeneous sale history.

Sale documents changed shape over the product's lifetime. Reports therefore
run in two steps:

1. :func:`parse_sale` reads a raw document into a tagged variant,
   :class:`PerItemSale` or :class:`BracketSale`, with every optional field
   modelled as ``None`` instead of a silent zero.
2. :func:`normalize_sale` turns either variant into one canonical
   :class:`NormalizedSale`.

Revenue is the stored ``total`` when present and non-zero, otherwise it is
recomputed from the items, otherwise rebuilt from the per-rate figures.

The per-rate breakdown uses exactly one tier per sale, the first whose fields
are present:

* ``ITEMIZED``: ``subtotal{rate}`` / ``tax{rate}Total`` fields;
* ``ITEMS``: items bucketed by their own rate (bracket sales use the
  sale-level ``appliedTaxRate``);
* ``LEGACY_RATE``: the sale-level ``gstRate``, whole sale in one bucket.

A record matching no tier raises :class:`AggregationInconsistencyError`; the
summary counts it but keeps it out of every money figure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from . import log
from .constants import (
    DEFAULT_LOWER_RATE,
    DEFAULT_REPORT_TIMEZONE,
    DEFAULT_UPPER_RATE,
    RECENT_SALES_LIMIT,
    ZERO,
    ReconciliationTier,
    TaxStrategy,
)
from .exceptions import AggregationInconsistencyError
from .tax_policy import round_money


HUNDRED = Decimal("100")
DEFAULT_RATES: Tuple[int, ...] = (DEFAULT_LOWER_RATE, DEFAULT_UPPER_RATE)


@dataclass(frozen=True)
class SaleItem:
    """One line of a stored sale."""

    product_id: Optional[str]
    name: Optional[str]
    unit_cost: Decimal
    tax_rate: Optional[int]
    quantity: int


@dataclass(frozen=True)
class StoredSale:
    """Fields shared by every sale variant; absent fields are ``None``."""

    sale_id: Optional[str]
    timestamp: Optional[datetime] = None
    items: Tuple[SaleItem, ...] = ()
    subtotal: Optional[Decimal] = None
    gst_amount: Optional[Decimal] = None
    total: Optional[Decimal] = None
    itemized: Mapping[int, Tuple[Decimal, Decimal]] = field(default_factory=dict)
    legacy_rate: Optional[int] = None
    cashier: Optional[str] = None


@dataclass(frozen=True)
class PerItemSale(StoredSale):
    """Sale taxed per item, including legacy records with only ``gstRate``."""


@dataclass(frozen=True)
class BracketSale(StoredSale):
    """Sale taxed at one rate picked from the subtotal bracket."""

    applied_rate: Optional[int] = None


ParsedSale = Union[PerItemSale, BracketSale]


@dataclass(frozen=True)
class NormalizedSale:
    """Canonical shape every sale is reduced to before aggregation."""

    sale_id: Optional[str]
    timestamp: Optional[datetime]
    revenue: Decimal
    tax: Decimal
    by_rate: Mapping[int, Tuple[Decimal, Decimal]]
    tier: ReconciliationTier


@dataclass(frozen=True)
class RateStats:
    count: int = 0
    revenue: Decimal = ZERO
    tax: Decimal = ZERO


@dataclass(frozen=True)
class DailyPoint:
    date: date
    revenue: Decimal


@dataclass(frozen=True)
class SalesSummary:
    """Dashboard statistics. ``by_rate`` revenue is the pre-tax base."""

    count: int
    total_revenue: Decimal
    total_tax: Decimal
    avg_transaction: Decimal
    by_rate: Mapping[int, RateStats]
    daily_series: Tuple[DailyPoint, ...]
    anomalies: Tuple[AggregationInconsistencyError, ...] = ()


@dataclass(frozen=True)
class RecentSaleRow:
    sale_id: Optional[str]
    timestamp: Optional[datetime]
    item_count: int
    total: Decimal
    rate_label: str
    gst_amount: Decimal


def resolve_timezone(name: str) -> tzinfo:
    """Return the reporting timezone; ``UTC`` never needs tz data."""

    if name.strip().upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown report timezone: {name}") from exc


def _optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        log.warning("Ignoring non-numeric amount %r", value)
        return None


def _optional_int(value: Any) -> Optional[int]:
    number = _optional_decimal(value)
    return int(number) if number is not None else None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes, ISO strings, epoch seconds or ``{"seconds": ...}`` maps.

    Naive values are taken to be UTC.
    """
    moment: Optional[datetime] = None
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value:
        try:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    elif isinstance(value, Mapping) and "seconds" in value:
        moment = datetime.fromtimestamp(float(value["seconds"]), tz=timezone.utc)
    elif isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        moment = datetime.fromtimestamp(float(value), tz=timezone.utc)
    if moment is not None and moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _parse_item(raw: Any) -> Optional[SaleItem]:
    if not isinstance(raw, Mapping):
        return None
    unit_cost = _optional_decimal(raw.get("unitCost", raw.get("cost")))
    if unit_cost is None:
        return None
    quantity = _optional_int(raw.get("quantity"))
    product_id = raw.get("productId", raw.get("id"))
    return SaleItem(
        product_id=str(product_id) if product_id is not None else None,
        name=raw.get("name"),
        unit_cost=unit_cost,
        tax_rate=_optional_int(raw.get("taxRate")),
        quantity=quantity if quantity is not None else 1,
    )


def parse_sale(document: Mapping[str, Any], *, rates: Sequence[int] = DEFAULT_RATES) -> ParsedSale:
    """Read a raw sale document into its tagged variant.

    A document is a :class:`BracketSale` when it carries ``appliedTaxRate`` or
    is tagged ``taxStrategy == "bracket"``; everything else is a
    :class:`PerItemSale`.
    """
    sale_id = document.get("id")
    items: List[SaleItem] = []
    for raw_item in document.get("items") or ():
        item = _parse_item(raw_item)
        if item is None:
            log.warning("Sale '%s': skipping unreadable item %r", sale_id, raw_item)
            continue
        items.append(item)

    itemized: Dict[int, Tuple[Decimal, Decimal]] = {}
    for rate in rates:
        base = _optional_decimal(document.get(f"subtotal{rate}"))
        tax = _optional_decimal(document.get(f"tax{rate}Total"))
        if base is not None or tax is not None:
            itemized[rate] = (base or ZERO, tax or ZERO)
    if not any(base or tax for base, tax in itemized.values()):
        # All-zero buckets were written by releases that did not itemize.
        itemized = {}

    fields: Dict[str, Any] = dict(
        sale_id=sale_id,
        timestamp=_parse_timestamp(document.get("timestamp")),
        items=tuple(items),
        subtotal=_optional_decimal(document.get("subtotal")),
        gst_amount=_optional_decimal(document.get("gstAmount")),
        total=_optional_decimal(document.get("total")),
        itemized=itemized,
        legacy_rate=_optional_int(document.get("gstRate")),
        cashier=document.get("cashier"),
    )
    applied_rate = _optional_int(document.get("appliedTaxRate"))
    if applied_rate is not None or document.get("taxStrategy") == TaxStrategy.BRACKET.value:
        return BracketSale(applied_rate=applied_rate, **fields)
    return PerItemSale(**fields)


def _item_rate(sale: ParsedSale, item: SaleItem) -> Optional[int]:
    if isinstance(sale, BracketSale) and sale.applied_rate is not None:
        return sale.applied_rate
    if item.tax_rate is not None:
        return item.tax_rate
    return sale.legacy_rate


def _items_by_rate(sale: ParsedSale) -> Dict[int, Tuple[Decimal, Decimal]]:
    buckets: Dict[int, Tuple[Decimal, Decimal]] = {}
    for item in sale.items:
        rate = _item_rate(sale, item)
        if rate is None:
            raise AggregationInconsistencyError(sale.sale_id, f"item '{item.product_id}' has no tax rate")
        base = item.unit_cost * item.quantity
        current_base, current_tax = buckets.get(rate, (ZERO, ZERO))
        buckets[rate] = (current_base + base, current_tax + base * rate / HUNDRED)
    return buckets


def _legacy_by_rate(sale: ParsedSale, rate: int) -> Dict[int, Tuple[Decimal, Decimal]]:
    total = sale.total if sale.total else None
    if sale.gst_amount is not None and total is not None:
        return {rate: (total - sale.gst_amount, sale.gst_amount)}
    if sale.subtotal:
        tax = sale.gst_amount if sale.gst_amount is not None else sale.subtotal * rate / HUNDRED
        return {rate: (sale.subtotal, tax)}
    if total is not None:
        base = total * HUNDRED / (HUNDRED + rate)
        return {rate: (base, total - base)}
    raise AggregationInconsistencyError(sale.sale_id, "legacy record carries neither total nor subtotal")


def select_tier(sale: ParsedSale) -> ReconciliationTier:
    """Pick the single reconciliation tier for ``sale``.

    Raises:
        AggregationInconsistencyError: If the sale matches no tier.
    """
    if sale.itemized:
        return ReconciliationTier.ITEMIZED
    if sale.items:
        return ReconciliationTier.ITEMS
    if sale.legacy_rate is not None:
        return ReconciliationTier.LEGACY_RATE
    raise AggregationInconsistencyError(sale.sale_id, "no itemized totals, items or gstRate")


def normalize_sale(sale: ParsedSale) -> NormalizedSale:
    """Reduce a parsed sale to the canonical aggregation shape.

    Raises:
        AggregationInconsistencyError: If the sale matches no tier.
    """
    tier = select_tier(sale)
    if tier is ReconciliationTier.ITEMIZED:
        by_rate = dict(sale.itemized)
    elif tier is ReconciliationTier.ITEMS:
        by_rate = _items_by_rate(sale)
    else:
        by_rate = _legacy_by_rate(sale, sale.legacy_rate)

    if sale.total:
        revenue = sale.total
    elif sale.items:
        revenue = sum((base + tax for base, tax in _items_by_rate(sale).values()), ZERO)
    else:
        revenue = sum((base + tax for base, tax in by_rate.values()), ZERO)

    if sale.gst_amount:
        tax_total = sale.gst_amount
    else:
        tax_total = sum((tax for _, tax in by_rate.values()), ZERO)

    return NormalizedSale(
        sale_id=sale.sale_id,
        timestamp=sale.timestamp,
        revenue=revenue,
        tax=tax_total,
        by_rate=by_rate,
        tier=tier,
    )


def summarize(
    sales: Iterable[Mapping[str, Any]],
    *,
    rates: Sequence[int] = DEFAULT_RATES,
    report_timezone: str = DEFAULT_REPORT_TIMEZONE,
) -> SalesSummary:
    """Aggregate a full sale history into dashboard statistics.

    ``count`` includes unreconcilable records; they are reported under
    ``anomalies`` and excluded from every money figure. Sales without a usable
    timestamp still count toward the totals but are left out of
    ``daily_series``, which is bucketed by calendar date in
    ``report_timezone``.
    """
    tz = resolve_timezone(report_timezone)
    count = 0
    total_revenue = ZERO
    total_tax = ZERO
    rate_counts: Dict[int, int] = {rate: 0 for rate in rates}
    rate_revenue: Dict[int, Decimal] = {rate: ZERO for rate in rates}
    rate_tax: Dict[int, Decimal] = {rate: ZERO for rate in rates}
    daily: Dict[date, Decimal] = {}
    anomalies: List[AggregationInconsistencyError] = []

    for document in sales:
        count += 1
        try:
            normalized = normalize_sale(parse_sale(document, rates=rates))
        except AggregationInconsistencyError as exc:
            log.warning("Excluding sale from revenue: %s", exc)
            anomalies.append(AggregationInconsistencyError(exc.sale_id, exc.reason, document))
            continue

        total_revenue += normalized.revenue
        total_tax += normalized.tax
        for rate, (base, tax) in normalized.by_rate.items():
            if base > 0 or tax > 0:
                rate_counts[rate] = rate_counts.get(rate, 0) + 1
            rate_revenue[rate] = rate_revenue.get(rate, ZERO) + base
            rate_tax[rate] = rate_tax.get(rate, ZERO) + tax

        if normalized.timestamp is None:
            log.info("Sale '%s' has no usable timestamp; left out of daily series", normalized.sale_id)
        else:
            day = normalized.timestamp.astimezone(tz).date()
            daily[day] = daily.get(day, ZERO) + normalized.revenue

    by_rate = {
        rate: RateStats(
            count=rate_counts.get(rate, 0),
            revenue=round_money(rate_revenue[rate]),
            tax=round_money(rate_tax[rate]),
        )
        for rate in sorted(rate_revenue)
    }
    avg = total_revenue / count if count else ZERO
    summary = SalesSummary(
        count=count,
        total_revenue=round_money(total_revenue),
        total_tax=round_money(total_tax),
        avg_transaction=round_money(avg),
        by_rate=by_rate,
        daily_series=tuple(DailyPoint(day, round_money(daily[day])) for day in sorted(daily)),
        anomalies=tuple(anomalies),
    )
    log.debug(
        "Summarized %d sales: revenue=%s tax=%s anomalies=%d",
        summary.count,
        summary.total_revenue,
        summary.total_tax,
        len(anomalies),
    )
    return summary


def rate_label(sale: ParsedSale) -> str:
    """Short label for the rate(s) a sale was taxed at, e.g. ``"18%"`` or ``"Mixed"``."""

    rates = sorted(rate for rate, (base, _) in sale.itemized.items() if base > 0)
    if not rates and isinstance(sale, BracketSale) and sale.applied_rate is not None:
        rates = [sale.applied_rate]
    if not rates and sale.items:
        rates = sorted({rate for rate in (_item_rate(sale, item) for item in sale.items) if rate is not None})
    if not rates and sale.legacy_rate is not None:
        rates = [sale.legacy_rate]
    if not rates:
        return "0%"
    if len(rates) > 1:
        return "Mixed"
    return f"{rates[0]}%"


def recent_sales(
    sales: Iterable[Mapping[str, Any]],
    *,
    limit: int = RECENT_SALES_LIMIT,
    rates: Sequence[int] = DEFAULT_RATES,
) -> List[RecentSaleRow]:
    """Newest ``limit`` sales first; undated sales sort last."""

    oldest = datetime.min.replace(tzinfo=timezone.utc)
    parsed = [parse_sale(document, rates=rates) for document in sales]
    parsed.sort(key=lambda sale: sale.timestamp or oldest, reverse=True)

    rows: List[RecentSaleRow] = []
    for sale in parsed[:limit]:
        try:
            normalized = normalize_sale(sale)
            total, gst_amount = normalized.revenue, normalized.tax
        except AggregationInconsistencyError:
            total, gst_amount = sale.total or ZERO, sale.gst_amount or ZERO
        rows.append(
            RecentSaleRow(
                sale_id=sale.sale_id,
                timestamp=sale.timestamp,
                item_count=len(sale.items),
                total=round_money(total),
                rate_label=rate_label(sale),
                gst_amount=round_money(gst_amount),
            )
        )
    return rows
