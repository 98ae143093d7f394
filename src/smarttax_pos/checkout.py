"""Checkout protocol: validate, persist the sale, then adjust inventory.

The sale ledger and the inventory store only guarantee atomicity per document,
so a checkout runs as two separately fallible phases::

    IDLE -> VALIDATING -> PERSISTING -> ADJUSTING_INVENTORY -> COMPLETED
                 \\             \\                 \\
                  `-------------`-----------------`--> FAILED(reason)

* A failure in ``VALIDATING`` or ``PERSISTING`` leaves no trace and keeps the
  cart so the cashier can retry.
* ``PERSISTING`` is retried a bounded number of times under one idempotency key,
  so a retry can never record the sale twice. A key already on record
  completes straight from the stored sale without touching stock.
* ``ADJUSTING_INVENTORY`` runs only once the sale is durable and is never
  retried. If any decrement fails, or the store raises, the sale still stands and
  :class:`InventoryAdjustmentError` is raised for manual stock reconciliation.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from . import log
from .cart import CartAggregator
from .constants import DEFAULT_PHONE_DIGITS, SALE_DOCUMENT_VERSION, CheckoutState, TaxStrategy
from .data_manager import CheckoutSettings
from .exceptions import (
    EmptyCartError,
    InvalidCustomerError,
    InventoryAdjustmentError,
    PersistenceError,
)
from .inventory import DecrementRequest, InventoryStore
from .ledger import LedgerEntry, SaleLedger
from .tax_policy import TaxBreakdown, round_money


@dataclass(frozen=True)
class Customer:
    """Optional customer details attached to a sale."""

    name: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class CustomerPolicy:
    """Tenant rules for customer fields."""

    require_name: bool = False
    require_phone: bool = False
    phone_digits: int = DEFAULT_PHONE_DIGITS

    @classmethod
    def from_settings(cls, settings: CheckoutSettings) -> "CustomerPolicy":
        return cls(
            require_name=settings.require_customer_name,
            require_phone=settings.require_customer_phone,
            phone_digits=settings.phone_digits,
        )

    def validate(self, customer: Optional[Customer]) -> Optional[Customer]:
        """Return the customer with whitespace stripped, or ``None`` if empty.

        A phone number, whenever given, must be exactly ``phone_digits``
        digits.

        Raises:
            InvalidCustomerError: If a required field is missing or the phone
                number is malformed.
        """
        name = (customer.name or "").strip() if customer else ""
        phone = (customer.phone or "").strip() if customer else ""

        if self.require_name and not name:
            raise InvalidCustomerError("Customer name is required")
        if self.require_phone and not phone:
            raise InvalidCustomerError("Customer phone number is required")
        if phone and (not phone.isdigit() or len(phone) != self.phone_digits):
            raise InvalidCustomerError(f"Customer phone number must be exactly {self.phone_digits} digits")

        if not name and not phone:
            return None
        return Customer(name=name or None, phone=phone or None)


@dataclass(frozen=True)
class CompletedSale:
    """A sale as persisted, together with the breakdown it was built from.

    ``breakdown`` is ``None`` when the sale was an idempotent replay and
    ``document`` came back from the ledger.
    """

    sale_id: str
    document: Mapping[str, Any]
    breakdown: Optional[TaxBreakdown]

    @property
    def total(self) -> Decimal:
        return self.document["total"]

    @property
    def gst_amount(self) -> Decimal:
        return self.document["gstAmount"]


@dataclass
class CheckoutAttempt:
    """State of one checkout attempt, including every state it passed through."""

    session_id: str
    idempotency_key: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: CheckoutState = CheckoutState.IDLE
    history: List[CheckoutState] = field(default_factory=lambda: [CheckoutState.IDLE])
    failure: Optional[Exception] = None

    def transition(self, state: CheckoutState) -> None:
        log.debug("Checkout %s: %s -> %s", self.idempotency_key, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def fail(self, reason: Exception) -> None:
        self.failure = reason
        self.transition(CheckoutState.FAILED)


def build_sale_document(
    cart: CartAggregator,
    breakdown: TaxBreakdown,
    *,
    timestamp: datetime,
    customer: Optional[Customer] = None,
    idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Flatten a cart and its breakdown into an immutable sale document.

    Money is rounded half-up to cents here and nowhere earlier. Bracket sales
    carry ``appliedTaxRate`` and every item's ``taxRate`` is a copy of it.
    """
    rounded = breakdown.rounded()
    bracket = breakdown.strategy is TaxStrategy.BRACKET

    items = [
        {
            "productId": line.product_id,
            "name": line.name,
            "unitCost": round_money(line.unit_cost),
            "taxRate": breakdown.applied_rate if bracket else line.tax_rate,
            "quantity": line.quantity,
        }
        for line in cart.lines
    ]
    document: Dict[str, Any] = {
        "schemaVersion": SALE_DOCUMENT_VERSION,
        "taxStrategy": breakdown.strategy.value,
        "items": items,
        "subtotal": rounded.subtotal,
        "gstAmount": rounded.total_tax,
        "total": rounded.grand_total,
        "cashier": cart.cashier,
        "timestamp": timestamp.isoformat(),
    }
    for rate in sorted(rounded.subtotal_by_rate):
        document[f"subtotal{rate}"] = rounded.subtotal_by_rate[rate]
        document[f"tax{rate}Total"] = rounded.tax_by_rate[rate]
    if bracket:
        document["appliedTaxRate"] = breakdown.applied_rate
    if customer is not None:
        if customer.name:
            document["customerName"] = customer.name
        if customer.phone:
            document["customerPhone"] = customer.phone
    if idempotency_key is not None:
        document["idempotencyKey"] = idempotency_key
    return document


class CheckoutCoordinator:
    """Commit a cart as a sale and take the sold units out of stock."""

    def __init__(
        self,
        ledger: SaleLedger,
        inventory: InventoryStore,
        *,
        customer_policy: Optional[CustomerPolicy] = None,
        persist_attempts: int = 3,
        retry_delay: float = 0.0,
        clock: Optional[Callable[[], datetime]] = None,
        on_stock_change: Optional[Callable[[], None]] = None,
    ) -> None:
        if persist_attempts < 1:
            raise ValueError("persist_attempts must be at least 1")
        self._ledger = ledger
        self._inventory = inventory
        self._customer_policy = customer_policy or CustomerPolicy()
        self._persist_attempts = persist_attempts
        self._retry_delay = retry_delay
        self._clock = clock or (lambda: datetime.now(UTC))
        self._on_stock_change = on_stock_change

    async def checkout(
        self,
        cart: CartAggregator,
        *,
        customer: Optional[Customer] = None,
        idempotency_key: Optional[str] = None,
        attempt: Optional[CheckoutAttempt] = None,
    ) -> CompletedSale:
        """Run one checkout attempt for ``cart``.

        Pass the same ``idempotency_key`` when retrying after a
        :class:`PersistenceError` to make sure the sale is recorded at most
        once. If the key is already on record, the stored sale is returned,
        the cart is cleared and stock is left alone. Pass ``attempt`` to
        observe the state history.

        Raises:
            EmptyCartError: The cart has no lines.
            InvalidCustomerError: Customer data violates the policy.
            PersistenceError: The ledger rejected every write attempt; the cart
                is untouched.
            InventoryAdjustmentError: The sale was recorded but stock could
                not be adjusted for some lines; the cart is cleared.
        """
        if attempt is None:
            attempt = CheckoutAttempt(session_id=cart.session_id)
        if idempotency_key is not None:
            attempt.idempotency_key = idempotency_key

        attempt.transition(CheckoutState.VALIDATING)
        try:
            if cart.is_empty:
                raise EmptyCartError("Cart is empty. Add items before completing sale.")
            validated_customer = self._customer_policy.validate(customer)
        except (EmptyCartError, InvalidCustomerError) as exc:
            log.warning("Session %s: checkout rejected: %s", cart.session_id, exc)
            attempt.fail(exc)
            raise

        attempt.transition(CheckoutState.PERSISTING)
        breakdown = cart.current_breakdown()
        document = build_sale_document(
            cart,
            breakdown,
            timestamp=self._clock(),
            customer=validated_customer,
            idempotency_key=attempt.idempotency_key,
        )
        try:
            entry = await self._persist(document, attempt.idempotency_key)
        except PersistenceError as exc:
            log.error("Session %s: sale not recorded, cart kept for retry: %s", cart.session_id, exc)
            attempt.fail(exc)
            raise

        if not entry.created:
            cart.clear()
            attempt.transition(CheckoutState.COMPLETED)
            log.info(
                "Session %s: key '%s' already recorded as sale '%s', stock left unchanged",
                cart.session_id,
                attempt.idempotency_key,
                entry.sale_id,
            )
            return CompletedSale(sale_id=entry.sale_id, document=entry.document, breakdown=None)

        sale = CompletedSale(sale_id=entry.sale_id, document=document, breakdown=breakdown)
        attempt.transition(CheckoutState.ADJUSTING_INVENTORY)
        requests = [DecrementRequest(line.product_id, line.quantity) for line in cart.lines]
        # The sale exists from here on, so the cart must not be checked out again.
        cart.clear()

        adjustment = asyncio.ensure_future(self._inventory.decrement_many(requests))
        if self._on_stock_change is not None:
            on_stock_change = self._on_stock_change
            adjustment.add_done_callback(lambda _task: on_stock_change())
        try:
            result = await asyncio.shield(adjustment)
        except asyncio.CancelledError:
            log.error(
                "Sale '%s' recorded; checkout cancelled during inventory adjustment, decrements still running",
                sale.sale_id,
            )
            raise
        except Exception as exc:
            # Which decrements landed is unknown; report every line.
            error = InventoryAdjustmentError(sale, [(request.product_id, exc) for request in requests])
            log.exception("RECONCILE STOCK: %s", error)
            attempt.fail(error)
            raise error from exc

        if not result.ok:
            error = InventoryAdjustmentError(sale, result.failed)
            log.error("RECONCILE STOCK: %s", error)
            attempt.fail(error)
            raise error

        attempt.transition(CheckoutState.COMPLETED)
        log.info(
            "Recorded sale '%s' by %s (items=%d, total=%s)",
            sale.sale_id,
            cart.cashier,
            len(requests),
            document["total"],
        )
        return sale

    async def _persist(self, document: Mapping[str, Any], idempotency_key: str) -> LedgerEntry:
        for attempt_number in range(1, self._persist_attempts + 1):
            try:
                return await self._ledger.record(document, idempotency_key=idempotency_key)
            except PersistenceError as exc:
                log.warning(
                    "Ledger write %d/%d failed for key '%s': %s",
                    attempt_number,
                    self._persist_attempts,
                    idempotency_key,
                    exc,
                )
                if attempt_number == self._persist_attempts:
                    raise
                if self._retry_delay:
                    await asyncio.sleep(self._retry_delay * attempt_number)
        raise PersistenceError(f"No ledger write attempted for key '{idempotency_key}'")
