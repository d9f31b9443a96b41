from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Sequence

from portal.contexts.procurement.infrastructure.notifications import (
    EventBusNotificationEmitter,
    NotificationEmitter,
)
from portal.contexts.procurement.infrastructure.order_store import OrderStore
from portal.contexts.procurement.infrastructure.quote_store import QuoteStore
from portal.domain.contracts import Actor, Order, Quote, QuoteLineOffer, QuoteTerms, to_utc
from portal.errors import (
    ConcurrentModificationError,
    LineItemMismatchError,
    NotFoundError,
    OrderNotOpenError,
    PermissionError as AppPermissionError,
    ValidationError,
)
from portal.observability import observe_store_conflict
from portal.policies import normalize_role, require_roles
from portal.procurement import pricing
from portal.procurement.flow_policy import OrderStatus, action_allowed
from portal.ui_strings import PAYMENT_TERM_LABELS


BOARD_PENDING = "pending"
BOARD_QUOTED = "quoted"
BOARD_EXPIRED = "expired"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuoteLedger:
    """Accepts supplier quotes while an order is open and keeps every accepted revision."""

    def __init__(
        self,
        order_store: OrderStore,
        quote_store: QuoteStore,
        notifier: NotificationEmitter | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        retry_attempts: int = 3,
        bid_expiration_enforced: bool = True,
    ) -> None:
        self.order_store = order_store
        self.quote_store = quote_store
        self.notifier = notifier or EventBusNotificationEmitter()
        self.clock = clock or _utc_now
        self.retry_attempts = max(0, int(retry_attempts))
        self.bid_expiration_enforced = bool(bid_expiration_enforced)
        self._logger = logging.getLogger("portal")

    def _now(self) -> datetime:
        return to_utc(self.clock())

    def _get_order(self, order_id: str) -> Order:
        order = self.order_store.get(str(order_id or "").strip())
        if order is None:
            raise NotFoundError(code="order_not_found", payload={"order_id": order_id})
        return order

    def _is_expired(self, order: Order, now: datetime) -> bool:
        return order.expiration_date is not None and now >= order.expiration_date

    def _ensure_open(self, order: Order, now: datetime) -> None:
        if not action_allowed(order.status, "submit_quote"):
            raise OrderNotOpenError(payload={"order_id": order.order_id, "status": order.status.value})
        if self.bid_expiration_enforced and self._is_expired(order, now):
            raise OrderNotOpenError(
                details="bid expiration has passed",
                payload={"order_id": order.order_id, "status": order.status.value, "expired": True},
            )

    @staticmethod
    def _ensure_lines_match(order: Order, line_offers: Sequence[QuoteLineOffer]) -> None:
        offered = [offer.line_id for offer in line_offers]
        expected = list(order.line_ids)
        if len(offered) != len(expected) or sorted(offered) != sorted(expected):
            raise LineItemMismatchError(
                payload={"order_id": order.order_id, "expected_line_ids": expected, "offered_line_ids": offered}
            )

    @staticmethod
    def _validate_offer_values(line_offers: Sequence[QuoteLineOffer], terms: QuoteTerms) -> None:
        for offer in line_offers:
            price = offer.unit_price
            if price is None:
                continue
            if not pricing.is_acceptable_price(price):
                raise ValidationError(
                    message_key="offer_invalid",
                    payload={
                        "field": "unit_price",
                        "line_id": offer.line_id,
                        "max_unit_price": str(pricing.MAX_UNIT_PRICE),
                        "max_decimal_places": pricing.MAX_PRICE_DECIMAL_PLACES,
                    },
                )
        if terms.payment_term not in PAYMENT_TERM_LABELS:
            raise ValidationError(
                message_key="payment_term_invalid",
                payload={"field": "payment_term", "allowed": sorted(PAYMENT_TERM_LABELS)},
            )
        days = terms.delivery_days
        if isinstance(days, bool) or not isinstance(days, int) or days < 1:
            raise ValidationError(message_key="delivery_days_invalid", payload={"field": "delivery_days"})

    def submit_quote(
        self,
        order_id: str,
        supplier_id: str,
        supplier_name: str,
        line_offers: Sequence[QuoteLineOffer],
        terms: QuoteTerms,
        *,
        actor: Actor | None = None,
    ) -> Quote:
        supplier_key = str(supplier_id or "").strip()
        if not supplier_key:
            raise ValidationError(payload={"field": "supplier_id"})
        if actor is not None:
            require_roles(actor, "supplier", "admin", action="submit_quote")
            if normalize_role(actor.role) == "supplier" and actor.actor_id != supplier_key:
                raise AppPermissionError(payload={"action": "submit_quote", "role": actor.role})

        order = self._get_order(order_id)
        self._ensure_open(order, self._now())
        self._ensure_lines_match(order, line_offers)
        self._validate_offer_values(line_offers, terms)
        offers = tuple(sorted(line_offers, key=lambda offer: offer.line_id))

        attempts = self.retry_attempts + 1
        for attempt in range(1, attempts + 1):
            order = self._get_order(order_id)
            now = self._now()
            self._ensure_open(order, now)
            previous = self.quote_store.get(order.order_id, supplier_key)
            quote = Quote(
                order_id=order.order_id,
                supplier_id=supplier_key,
                supplier_name=str(supplier_name or "").strip() or supplier_key,
                offers=offers,
                terms=terms,
                submitted_at=now,
                first_submitted_at=previous.first_submitted_at if previous else now,
                revision=previous.revision + 1 if previous else 1,
            )
            expected_revision = previous.revision if previous else None
            if not self.quote_store.put(quote, expected_revision=expected_revision):
                observe_store_conflict("quotes")
                self._logger.warning(
                    "quote_write_conflict",
                    extra={"order_id": order.order_id, "supplier_id": supplier_key, "attempt": attempt},
                )
                continue

            self._fence_order(order, quote)
            self._logger.info(
                "quote_submitted",
                extra={"order_id": order.order_id, "supplier_id": supplier_key, "revision": quote.revision},
            )
            self._emit(
                "quote_submitted",
                {
                    "order_id": order.order_id,
                    "supplier_id": supplier_key,
                    "revision": quote.revision,
                    "quoted_lines": quote.quoted_line_count,
                },
            )
            return quote

        raise ConcurrentModificationError(
            details=f"quote for {supplier_key} kept changing after {attempts} attempts",
            payload={"order_id": order_id, "supplier_id": supplier_key, "attempts": attempts},
        )

    def _fence_order(self, order: Order, quote: Quote) -> None:
        """Bump the order version so an adjudication that read the order earlier must re-read the quotes."""
        attempts = self.retry_attempts + 1
        current = order
        for attempt in range(1, attempts + 2):
            if current.status != OrderStatus.IN_REVIEW:
                self._settle_closed_order(current, quote)
                return
            if attempt > attempts:
                break
            fenced = replace(current, version=current.version + 1, last_quote_at=quote.submitted_at)
            if self.order_store.put(fenced, expected_version=current.version):
                return
            observe_store_conflict("orders")
            self._logger.warning(
                "order_write_conflict",
                extra={"order_id": current.order_id, "attempt": attempt, "expected_version": current.version},
            )
            current = self._get_order(current.order_id)

        self._retract(quote, current)
        raise ConcurrentModificationError(payload={"order_id": order.order_id, "supplier_id": quote.supplier_id})

    def _settle_closed_order(self, current: Order, quote: Quote) -> None:
        """Keep a revision the award was computed from; otherwise take it back and refuse the quote."""
        if current.award is not None and current.award.was_computed_from(quote.supplier_id, quote.revision):
            self._logger.info(
                "quote_included_in_award",
                extra={
                    "order_id": quote.order_id,
                    "supplier_id": quote.supplier_id,
                    "revision": quote.revision,
                    "to_status": current.status.value,
                },
            )
            return
        self._retract(quote, current)
        raise OrderNotOpenError(payload={"order_id": current.order_id, "status": current.status.value})

    def _retract(self, quote: Quote, current: Order) -> None:
        self.quote_store.retract(quote.order_id, quote.supplier_id, quote.revision)
        self._logger.warning(
            "quote_retracted",
            extra={
                "order_id": quote.order_id,
                "supplier_id": quote.supplier_id,
                "revision": quote.revision,
                "to_status": current.status.value,
            },
        )

    def _emit(self, kind: str, payload: Dict[str, Any]) -> None:
        try:
            self.notifier.emit(kind, payload)
        except Exception:  # noqa: BLE001
            self._logger.exception("notification_emit_failed", extra={"event_kind": kind})

    def list_quotes(self, order_id: str) -> List[Quote]:
        order = self._get_order(order_id)
        return self.quote_store.list_by_order(order.order_id)

    def get_quote(self, order_id: str, supplier_id: str) -> Quote:
        quote = self.quote_store.get(str(order_id or "").strip(), str(supplier_id or "").strip())
        if quote is None:
            raise NotFoundError(
                code="quote_not_found",
                payload={"order_id": order_id, "supplier_id": supplier_id},
            )
        return quote

    def quote_history(self, order_id: str, supplier_id: str) -> List[Quote]:
        history = self.quote_store.history(str(order_id or "").strip(), str(supplier_id or "").strip())
        if not history:
            raise NotFoundError(
                code="quote_not_found",
                payload={"order_id": order_id, "supplier_id": supplier_id},
            )
        return history

    def supplier_board(self, supplier_id: str, *, actor: Actor | None = None) -> List[Dict[str, Any]]:
        supplier_key = str(supplier_id or "").strip()
        if actor is not None and normalize_role(actor.role) != "admin" and actor.actor_id != supplier_key:
            raise AppPermissionError(payload={"action": "supplier_board", "role": actor.role})

        now = self._now()
        open_orders = self.order_store.list(lambda order: order.status == OrderStatus.IN_REVIEW)
        far_future = datetime.max.replace(tzinfo=timezone.utc)
        open_orders.sort(key=lambda order: (order.expiration_date or far_future, order.order_id))

        board: List[Dict[str, Any]] = []
        for order in open_orders:
            quote = self.quote_store.get(order.order_id, supplier_key)
            remaining = None
            if order.expiration_date is not None:
                remaining = max(0, int((order.expiration_date - now).total_seconds()))
            if self._is_expired(order, now):
                status = BOARD_EXPIRED
            elif quote is not None:
                status = BOARD_QUOTED
            else:
                status = BOARD_PENDING
            board.append(
                {
                    "order_id": order.order_id,
                    "buyer_name": order.buyer_name,
                    "items_total": len(order.items),
                    "items_quoted": quote.quoted_line_count if quote else 0,
                    "status": status,
                    "remaining_seconds": remaining,
                    "expiration_date": order.expiration_date.isoformat() if order.expiration_date else None,
                    "revision": quote.revision if quote else None,
                }
            )
        return board
