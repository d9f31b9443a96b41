from __future__ import annotations

from typing import Any, Dict, List, Tuple

from portal.contexts.procurement.application.order_lifecycle import OrderLifecycleService
from portal.contexts.procurement.infrastructure.order_store import OrderStore
from portal.contexts.procurement.infrastructure.quote_store import QuoteStore
from portal.domain.contracts import Actor, Allocation, Order, Quote, Totals, totals_to_dict
from portal.errors import NotFoundError
from portal.procurement import pricing


class AdjudicationEngine:
    """Comparison data and allocations derived from the stored order and its current quotes.

    Everything except `commit` is read-only; the same inputs always give the same result.
    """

    def __init__(
        self,
        order_store: OrderStore,
        quote_store: QuoteStore,
        lifecycle: OrderLifecycleService,
    ) -> None:
        self.order_store = order_store
        self.quote_store = quote_store
        self.lifecycle = lifecycle

    def _snapshot(self, order_id: str) -> Tuple[Order, List[Quote]]:
        order = self.order_store.get(str(order_id or "").strip())
        if order is None:
            raise NotFoundError(code="order_not_found", payload={"order_id": order_id})
        return order, self.quote_store.list_by_order(order.order_id)

    def best_price_for(self, order_id: str, line_id: int) -> str | None:
        order, quotes = self._snapshot(order_id)
        if order.line(line_id) is None:
            raise NotFoundError(payload={"order_id": order_id, "line_id": line_id})
        winner = pricing.best_quote_for_line(quotes, line_id)
        return winner.supplier_id if winner else None

    def compute_best_allocation(self, order_id: str) -> Allocation:
        order, quotes = self._snapshot(order_id)
        return pricing.best_allocation(order, quotes)

    def compute_totals(self, order_id: str, allocation: Allocation) -> Totals:
        order, quotes = self._snapshot(order_id)
        return pricing.compute_totals(order, allocation, quotes)

    def apply_manual_override(self, allocation: Allocation, line_id: int, supplier_id: str) -> Allocation:
        order, quotes = self._snapshot(allocation.order_id)
        return pricing.override(order, allocation, line_id, supplier_id, quotes)

    def missing_lines(self, order_id: str, allocation: Allocation) -> List[int]:
        order, quotes = self._snapshot(order_id)
        return pricing.missing_line_ids(order, allocation, quotes)

    def commit(self, order_id: str, allocation: Allocation, actor: Actor) -> Order:
        return self.lifecycle.adjudicate(order_id, allocation, actor)

    def comparison_table(self, order_id: str) -> Dict[str, Any]:
        order, quotes = self._snapshot(order_id)
        table = pricing.comparison_rows(order, quotes)
        allocation = pricing.best_allocation(order, quotes)
        table["best_allocation"] = {
            "lines": [{"line_id": line.line_id, "supplier_id": line.supplier_id} for line in allocation.lines],
            "unassigned_line_ids": list(allocation.unassigned_line_ids),
        }
        table["best_totals"] = totals_to_dict(pricing.compute_totals(order, allocation, quotes))
        return table
