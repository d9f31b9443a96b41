from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, Inexact, Overflow, localcontext
from typing import Any, Dict, Iterable, Iterator, List, Sequence, Tuple

from portal.domain.contracts import (
    ALLOCATION_SOURCE_BEST_PRICE,
    ALLOCATION_SOURCE_MANUAL,
    Allocation,
    AllocationLine,
    Award,
    AwardedLine,
    Order,
    Quote,
    Totals,
)
from portal.errors import (
    IncompleteAllocationError,
    InvalidOverrideError,
    InvariantViolationError,
    LineItemMismatchError,
)


ZERO = Decimal("0")
MAX_UNIT_PRICE = Decimal("1000000000")
MAX_PRICE_DECIMAL_PLACES = 4
MONEY_PRECISION = 28


def _quotes_by_supplier(quotes: Iterable[Quote]) -> Dict[str, Quote]:
    return {quote.supplier_id: quote for quote in quotes}


@contextmanager
def exact_money(order_id: str) -> Iterator[None]:
    """Money arithmetic that either stays exact or raises InvariantViolationError."""
    with localcontext() as ctx:
        ctx.prec = MONEY_PRECISION
        ctx.traps[Inexact] = True
        ctx.traps[Overflow] = True
        try:
            yield
        except (Inexact, Overflow) as exc:
            raise InvariantViolationError(
                details=f"money arithmetic for order {order_id} cannot be represented exactly",
                payload={"order_id": order_id},
            ) from exc


def price_decimal_places(price: Decimal) -> int:
    _sign, digits, exponent = price.as_tuple()
    significant = list(digits)
    while exponent < 0 and len(significant) > 1 and significant[-1] == 0:
        significant.pop()
        exponent += 1
    return max(0, -exponent)


def is_acceptable_price(price: Decimal) -> bool:
    if not price.is_finite() or price < ZERO or price >= MAX_UNIT_PRICE:
        return False
    if price == ZERO:
        return True
    return price_decimal_places(price) <= MAX_PRICE_DECIMAL_PLACES


def _guard_amount(amount: Decimal, *, label: str, order_id: str) -> Decimal:
    if not amount.is_finite() or amount < ZERO:
        raise InvariantViolationError(
            details=f"{label} for order {order_id} is {amount}",
            payload={"order_id": order_id, "amount": str(amount)},
        )
    return amount


def valid_offers_for_line(quotes: Iterable[Quote], line_id: int) -> List[Tuple[Quote, Decimal]]:
    """Quotes with a strictly positive price on `line_id`, in tie-break order."""
    offers: List[Tuple[Quote, Decimal]] = []
    for quote in quotes:
        price = quote.price_for(line_id)
        if price is not None:
            offers.append((quote, price))
    offers.sort(key=lambda item: (item[1], item[0].submitted_at, item[0].supplier_id))
    return offers


def best_quote_for_line(quotes: Iterable[Quote], line_id: int) -> Quote | None:
    offers = valid_offers_for_line(quotes, line_id)
    if not offers:
        return None
    return offers[0][0]


def best_allocation(order: Order, quotes: Sequence[Quote]) -> Allocation:
    lines = []
    for item in order.items:
        winner = best_quote_for_line(quotes, item.line_id)
        lines.append(
            AllocationLine(
                line_id=item.line_id,
                supplier_id=winner.supplier_id if winner else None,
                source=ALLOCATION_SOURCE_BEST_PRICE,
            )
        )
    return Allocation(order_id=order.order_id, lines=tuple(lines))


def missing_line_ids(order: Order, allocation: Allocation, quotes: Sequence[Quote]) -> List[int]:
    by_supplier = _quotes_by_supplier(quotes)
    missing: List[int] = []
    for item in order.items:
        supplier_id = allocation.supplier_for(item.line_id)
        quote = by_supplier.get(supplier_id or "")
        if quote is None or quote.price_for(item.line_id) is None:
            missing.append(item.line_id)
    return missing


def ensure_complete(order: Order, allocation: Allocation, quotes: Sequence[Quote]) -> None:
    known = set(order.line_ids)
    unknown = sorted({line.line_id for line in allocation.lines} - known)
    if unknown:
        raise LineItemMismatchError(
            details=f"allocation references unknown lines {unknown}",
            payload={"order_id": order.order_id, "unknown_line_ids": unknown},
        )
    missing = missing_line_ids(order, allocation, quotes)
    if missing:
        raise IncompleteAllocationError(
            details=f"lines without a valid winning offer: {missing}",
            payload={"order_id": order.order_id, "missing_line_ids": missing},
        )


def compute_totals(order: Order, allocation: Allocation, quotes: Sequence[Quote]) -> Totals:
    with exact_money(order.order_id):
        return _compute_totals(order, allocation, quotes)


def _compute_totals(order: Order, allocation: Allocation, quotes: Sequence[Quote]) -> Totals:
    by_supplier = _quotes_by_supplier(quotes)
    per_supplier: Dict[str, Decimal] = {}
    unpriced: List[int] = []
    for item in order.items:
        supplier_id = allocation.supplier_for(item.line_id)
        quote = by_supplier.get(supplier_id or "")
        price = quote.price_for(item.line_id) if quote else None
        if price is None:
            unpriced.append(item.line_id)
            continue
        line_total = _guard_amount(price * item.quantity, label=f"line {item.line_id} total", order_id=order.order_id)
        per_supplier[quote.supplier_id] = per_supplier.get(quote.supplier_id, ZERO) + line_total

    ordered = tuple(
        (supplier_id, _guard_amount(total, label=f"{supplier_id} total", order_id=order.order_id))
        for supplier_id, total in sorted(per_supplier.items())
    )
    grand_total = _guard_amount(
        sum((total for _supplier_id, total in ordered), ZERO),
        label="grand total",
        order_id=order.order_id,
    )
    return Totals(per_supplier_total=ordered, grand_total=grand_total, unpriced_line_ids=tuple(unpriced))


def override(
    order: Order,
    allocation: Allocation,
    line_id: int,
    supplier_id: str,
    quotes: Sequence[Quote],
) -> Allocation:
    if order.line(line_id) is None:
        raise InvalidOverrideError(
            details=f"line {line_id} does not exist",
            payload={"order_id": order.order_id, "line_id": line_id, "supplier_id": supplier_id},
        )
    quote = _quotes_by_supplier(quotes).get(supplier_id)
    if quote is None or quote.price_for(line_id) is None:
        raise InvalidOverrideError(
            details=f"supplier {supplier_id} has no valid offer for line {line_id}",
            payload={"order_id": order.order_id, "line_id": line_id, "supplier_id": supplier_id},
        )

    current = allocation.as_mapping()
    lines = []
    for item in order.items:
        if item.line_id == line_id:
            lines.append(AllocationLine(line_id=line_id, supplier_id=supplier_id, source=ALLOCATION_SOURCE_MANUAL))
        else:
            lines.append(
                AllocationLine(
                    line_id=item.line_id,
                    supplier_id=current.get(item.line_id),
                    source=allocation.source_for(item.line_id) or ALLOCATION_SOURCE_BEST_PRICE,
                )
            )
    return Allocation(order_id=order.order_id, lines=tuple(lines))


def build_award(
    order: Order,
    allocation: Allocation,
    quotes: Sequence[Quote],
    *,
    awarded_at: datetime,
    awarded_by: str,
) -> Award:
    ensure_complete(order, allocation, quotes)
    by_supplier = _quotes_by_supplier(quotes)
    totals = compute_totals(order, allocation, quotes)
    lines = []
    with exact_money(order.order_id):
        for item in order.items:
            quote = by_supplier[allocation.supplier_for(item.line_id) or ""]
            price = quote.price_for(item.line_id)
            lines.append(
                AwardedLine(
                    line_id=item.line_id,
                    supplier_id=quote.supplier_id,
                    supplier_name=quote.supplier_name,
                    unit_price=price,
                    quantity=item.quantity,
                    line_total=price * item.quantity,
                    source=allocation.source_for(item.line_id) or ALLOCATION_SOURCE_BEST_PRICE,
                )
            )
    return Award(
        lines=tuple(lines),
        per_supplier_total=totals.per_supplier_total,
        grand_total=totals.grand_total,
        awarded_at=awarded_at,
        awarded_by=awarded_by,
        quote_revisions=tuple(sorted((quote.supplier_id, quote.revision) for quote in quotes)),
    )


def comparison_rows(order: Order, quotes: Sequence[Quote]) -> Dict[str, Any]:
    """Per-line price grid plus per-supplier quoted totals, as plain JSON-ready data."""
    with exact_money(order.order_id):
        return _comparison_rows(order, quotes)


def _comparison_rows(order: Order, quotes: Sequence[Quote]) -> Dict[str, Any]:
    ordered_quotes = list(quotes)
    rows: List[Dict[str, Any]] = []
    quoted_totals: Dict[str, Decimal] = {quote.supplier_id: ZERO for quote in ordered_quotes}
    for item in order.items:
        best = best_quote_for_line(ordered_quotes, item.line_id)
        cells = []
        for quote in ordered_quotes:
            offer = quote.offer_for(item.line_id)
            price = quote.price_for(item.line_id)
            if price is not None:
                quoted_totals[quote.supplier_id] += _guard_amount(
                    price * item.quantity,
                    label=f"{quote.supplier_id} line {item.line_id}",
                    order_id=order.order_id,
                )
            cells.append(
                {
                    "supplier_id": quote.supplier_id,
                    "unit_price": str(price) if price is not None else None,
                    "line_total": str(price * item.quantity) if price is not None else None,
                    "offered_brand": offer.offered_brand if offer else "",
                    "note": offer.note if offer else None,
                    "is_best": best is not None and best.supplier_id == quote.supplier_id,
                }
            )
        rows.append(
            {
                "line_id": item.line_id,
                "product": item.product,
                "quantity": item.quantity,
                "preferred_brand": item.preferred_brand,
                "best_supplier_id": best.supplier_id if best else None,
                "cells": cells,
            }
        )

    suppliers = [
        {
            "supplier_id": quote.supplier_id,
            "supplier_name": quote.supplier_name,
            "payment_term": quote.terms.payment_term,
            "delivery_days": quote.terms.delivery_days,
            "valid_until": quote.terms.valid_until.isoformat() if quote.terms.valid_until else None,
            "quoted_lines": quote.quoted_line_count,
            "quoted_total": str(quoted_totals[quote.supplier_id]),
            "revision": quote.revision,
        }
        for quote in ordered_quotes
    ]
    return {"order_id": order.order_id, "rows": rows, "suppliers": suppliers}
