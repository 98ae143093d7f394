"""Session-scoped shopping cart.

A :class:`CartAggregator` belongs to exactly one cashier session. It is created
when the session starts, mutated by add/remove, and cleared on checkout or
logout. Carts never share mutable state, so no locking is involved.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Mapping, Optional, Tuple

from . import log
from .data_manager import ProductRow
from .exceptions import NotFoundError
from .tax_policy import TaxBreakdown, TaxPolicy


@dataclass
class CartLine:
    """One product entry with the price and rate captured at add time."""

    product_id: str
    name: str
    unit_cost: Decimal
    tax_rate: int
    quantity: int = 1


class CartAggregator:
    """Mutable collection of cart lines exposing live tax totals.

    ``catalog`` is a snapshot of the products known when the session started;
    later price changes do not reach lines already in the cart.
    """

    def __init__(
        self,
        catalog: Mapping[str, ProductRow],
        tax_policy: TaxPolicy,
        *,
        cashier: str,
        session_id: Optional[str] = None,
    ) -> None:
        self._catalog = dict(catalog)
        self._tax_policy = tax_policy
        self._lines: Dict[str, CartLine] = {}
        self.cashier = cashier
        self.session_id = session_id or uuid.uuid4().hex

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def is_empty(self) -> bool:
        return not self._lines

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        """Copies of the current lines in insertion order."""

        return tuple(replace(line) for line in self._lines.values())

    @property
    def tax_policy(self) -> TaxPolicy:
        return self._tax_policy

    def add_item(self, product_id: str) -> CartLine:
        """Add one unit of ``product_id``, merging with an existing line.

        Returns:
            CartLine: A copy of the updated line.

        Raises:
            NotFoundError: If the product is not in the catalog snapshot.
        """

        product = self._catalog.get(product_id)
        if product is None:
            log.warning("Session %s: rejected unknown product '%s'", self.session_id, product_id)
            raise NotFoundError(f"Unknown product id: {product_id}")

        line = self._lines.get(product_id)
        if line is None:
            line = CartLine(
                product_id=product.product_id,
                name=product.name,
                unit_cost=product.unit_cost,
                tax_rate=product.tax_rate,
            )
            self._lines[product_id] = line
        else:
            line.quantity += 1
        log.debug("Session %s: '%s' quantity now %d", self.session_id, product_id, line.quantity)
        return replace(line)

    def remove_item(self, product_id: str) -> None:
        """Drop the whole line for ``product_id``; absent ids are ignored."""

        if self._lines.pop(product_id, None) is not None:
            log.debug("Session %s: removed '%s'", self.session_id, product_id)

    def clear(self) -> None:
        self._lines.clear()

    def current_breakdown(self) -> TaxBreakdown:
        # Never cached.
        return self._tax_policy.compute_breakdown(list(self._lines.values()))
