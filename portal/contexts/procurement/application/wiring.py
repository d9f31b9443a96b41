from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping

from portal.contexts.procurement.application.adjudication import AdjudicationEngine
from portal.contexts.procurement.application.order_lifecycle import OrderLifecycleService
from portal.contexts.procurement.application.quote_ledger import QuoteLedger
from portal.contexts.procurement.infrastructure.notifications import (
    EventBusNotificationEmitter,
    NotificationEmitter,
)
from portal.contexts.procurement.infrastructure.order_store import (
    InMemoryOrderStore,
    OrderStore,
    SqlOrderStore,
)
from portal.contexts.procurement.infrastructure.quote_store import (
    InMemoryQuoteStore,
    QuoteStore,
    SqlQuoteStore,
)
from portal.db import Database


@dataclass(frozen=True)
class ProcurementServices:
    order_store: OrderStore
    quote_store: QuoteStore
    lifecycle: OrderLifecycleService
    ledger: QuoteLedger
    engine: AdjudicationEngine


def build_services(
    config: Mapping[str, Any],
    db_provider: Callable[[], Database] | None = None,
    *,
    notifier: NotificationEmitter | None = None,
    clock=None,
) -> ProcurementServices:
    backend = str(config.get("STORE_BACKEND") or "sql").strip().lower()
    if backend == "memory":
        order_store: OrderStore = InMemoryOrderStore()
        quote_store: QuoteStore = InMemoryQuoteStore()
    elif backend == "sql":
        if db_provider is None:
            raise RuntimeError("STORE_BACKEND=sql requiere una conexion de base de datos.")
        order_store = SqlOrderStore(db_provider)
        quote_store = SqlQuoteStore(db_provider)
    else:
        raise RuntimeError(f"STORE_BACKEND desconocido: {backend}")

    retry_attempts = int(config.get("STORE_WRITE_RETRY_ATTEMPTS", 3))
    emitter = notifier or EventBusNotificationEmitter()
    lifecycle = OrderLifecycleService(
        order_store,
        quote_store,
        emitter,
        clock=clock,
        retry_attempts=retry_attempts,
    )
    ledger = QuoteLedger(
        order_store,
        quote_store,
        emitter,
        clock=clock,
        retry_attempts=retry_attempts,
        bid_expiration_enforced=bool(config.get("BID_EXPIRATION_ENFORCED", True)),
    )
    engine = AdjudicationEngine(order_store, quote_store, lifecycle)
    return ProcurementServices(
        order_store=order_store,
        quote_store=quote_store,
        lifecycle=lifecycle,
        ledger=ledger,
        engine=engine,
    )
