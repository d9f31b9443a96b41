from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Tuple

from portal.contexts.procurement.application.adjudication import AdjudicationEngine
from portal.contexts.procurement.application.order_lifecycle import OrderLifecycleService
from portal.contexts.procurement.application.quote_ledger import QuoteLedger
from portal.contexts.procurement.infrastructure.notifications import RecordingNotificationEmitter
from portal.contexts.procurement.infrastructure.order_store import InMemoryOrderStore, OrderStore
from portal.contexts.procurement.infrastructure.quote_store import InMemoryQuoteStore, QuoteStore
from portal.domain.contracts import Actor, LineItemDraft, Order, QuoteLineOffer, QuoteTerms


ADMIN = Actor(actor_id="admin-1", role="admin", display_name="Administracion Central")
BUYER = Actor(actor_id="school-1", role="buyer", display_name="Escuela Norte")
OTHER_BUYER = Actor(actor_id="school-2", role="buyer", display_name="Escuela Sur")
SUPPLIER_X = Actor(actor_id="supplier-x", role="supplier", display_name="Libreria X")
SUPPLIER_Y = Actor(actor_id="supplier-y", role="supplier", display_name="Distribuidora Y")

BASE_TIME = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class ManualClock:
    """Deterministic clock; each call advances by `step` so timestamps stay strictly ordered."""

    def __init__(self, start: datetime = BASE_TIME, step: timedelta = timedelta(seconds=1)) -> None:
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta


class Harness:
    def __init__(
        self,
        *,
        order_store: OrderStore | None = None,
        quote_store: QuoteStore | None = None,
        retry_attempts: int = 3,
        bid_expiration_enforced: bool = True,
    ) -> None:
        self.clock = ManualClock()
        self.order_store = order_store or InMemoryOrderStore()
        self.quote_store = quote_store or InMemoryQuoteStore()
        self.notifier = RecordingNotificationEmitter()
        self.lifecycle = OrderLifecycleService(
            self.order_store,
            self.quote_store,
            self.notifier,
            clock=self.clock,
            retry_attempts=retry_attempts,
        )
        self.ledger = QuoteLedger(
            self.order_store,
            self.quote_store,
            self.notifier,
            clock=self.clock,
            retry_attempts=retry_attempts,
            bid_expiration_enforced=bid_expiration_enforced,
        )
        self.engine = AdjudicationEngine(self.order_store, self.quote_store, self.lifecycle)

    def create_order(self, items: Iterable[Tuple[int, str]] = ((10, "Cuadernos"), (5, "Marcadores"))) -> Order:
        drafts = [LineItemDraft(quantity=quantity, product=product) for quantity, product in items]
        return self.lifecycle.create(BUYER, drafts, BASE_TIME + timedelta(days=7))

    def open_order(self, items: Iterable[Tuple[int, str]] = ((10, "Cuadernos"), (5, "Marcadores"))) -> Order:
        order = self.create_order(items)
        return self.lifecycle.publish(order.order_id, ADMIN)

    def submit(self, order: Order, supplier: Actor, prices: Dict[int, str | None], **terms_kwargs):
        return self.ledger.submit_quote(
            order.order_id,
            supplier.actor_id,
            supplier.display_name,
            offers(prices),
            terms(**terms_kwargs),
            actor=supplier,
        )


def offers(prices: Dict[int, str | None]) -> List[QuoteLineOffer]:
    return [
        QuoteLineOffer(line_id=line_id, unit_price=Decimal(price) if price is not None else None)
        for line_id, price in prices.items()
    ]


def terms(payment_term: str = "cash", delivery_days: int = 5) -> QuoteTerms:
    return QuoteTerms(payment_term=payment_term, delivery_days=delivery_days)


class RacingOrderStore(InMemoryOrderStore):
    """Runs a one-shot hook right before the next versioned write, simulating a concurrent writer."""

    def __init__(self) -> None:
        super().__init__()
        self.before_update = None

    def put(self, order, expected_version=None):
        hook, self.before_update = self.before_update, None
        if hook is not None and expected_version is not None:
            hook()
        elif hook is not None:
            self.before_update = hook
        return super().put(order, expected_version)


class RacingQuoteStore(InMemoryQuoteStore):
    def __init__(self) -> None:
        super().__init__()
        self.before_put = None
        self.after_put = None

    def put(self, quote, expected_revision=None):
        hook, self.before_put = self.before_put, None
        if hook is not None:
            hook()
        stored = super().put(quote, expected_revision)
        after, self.after_put = self.after_put, None
        if after is not None and stored:
            after()
        return stored
