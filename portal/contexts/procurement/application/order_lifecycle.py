from __future__ import annotations

import logging
import secrets
import string
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple

from portal.contexts.procurement.infrastructure.notifications import (
    EventBusNotificationEmitter,
    NotificationEmitter,
)
from portal.contexts.procurement.infrastructure.order_store import OrderStore
from portal.contexts.procurement.infrastructure.quote_store import QuoteStore
from portal.domain.contracts import (
    Actor,
    Allocation,
    Comment,
    DispatchInfo,
    LineItem,
    LineItemDraft,
    Order,
    StatusChange,
    to_utc,
)
from portal.errors import (
    AlreadyTerminalError,
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from portal.observability import observe_store_conflict
from portal.policies import require_order_access, require_roles
from portal.procurement import pricing
from portal.procurement.flow_policy import (
    ADMIN_TABS,
    OrderStatus,
    action_label,
    allowed_actions,
    normalize_status,
    transition_target,
)


Notification = Tuple[str, Dict[str, Any]]
Mutation = Callable[[Order], Tuple[Order, List[Notification]]]

_TRACKING_ALPHABET = string.ascii_uppercase + string.digits


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return to_utc(value).isoformat().replace("+00:00", "Z")


def generate_tracking_reference() -> str:
    return "TRK-" + "".join(secrets.choice(_TRACKING_ALPHABET) for _ in range(9))


class OrderLifecycleService:
    """Owns every order status transition; each one is a single compare-and-swap write."""

    def __init__(
        self,
        order_store: OrderStore,
        quote_store: QuoteStore,
        notifier: NotificationEmitter | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        retry_attempts: int = 3,
        tracking_reference_factory: Callable[[], str] | None = None,
    ) -> None:
        self.order_store = order_store
        self.quote_store = quote_store
        self.notifier = notifier or EventBusNotificationEmitter()
        self.clock = clock or _utc_now
        self.retry_attempts = max(0, int(retry_attempts))
        self.tracking_reference_factory = tracking_reference_factory or generate_tracking_reference
        self._logger = logging.getLogger("portal")

    def _now(self) -> datetime:
        return to_utc(self.clock())

    def _emit(self, kind: str, payload: Dict[str, Any]) -> None:
        try:
            self.notifier.emit(kind, payload)
        except Exception:  # noqa: BLE001
            self._logger.exception("notification_emit_failed", extra={"event_kind": kind})

    def get_order(self, order_id: str) -> Order:
        order = self.order_store.get(str(order_id or "").strip())
        if order is None:
            raise NotFoundError(code="order_not_found", payload={"order_id": order_id})
        return order

    def _write_with_retry(self, order_id: str, mutate: Mutation) -> Order:
        attempts = self.retry_attempts + 1
        for attempt in range(1, attempts + 1):
            current = self.get_order(order_id)
            updated, notifications = mutate(current)
            updated = replace(updated, version=current.version + 1)
            if self.order_store.put(updated, expected_version=current.version):
                for kind, payload in notifications:
                    self._emit(kind, payload)
                return updated
            observe_store_conflict("orders")
            self._logger.warning(
                "order_write_conflict",
                extra={"order_id": order_id, "attempt": attempt, "expected_version": current.version},
            )
        raise ConcurrentModificationError(
            details=f"order {order_id} kept changing after {attempts} attempts",
            payload={"order_id": order_id, "attempts": attempts},
        )

    def _transition(
        self,
        order_id: str,
        action: str,
        actor: Actor,
        *,
        authorize: Callable[[Order], None] | None = None,
        apply: Callable[[Order, datetime], Order] | None = None,
        follow_up: Callable[[Order], List[Notification]] | None = None,
        reason: str | None = None,
    ) -> Order:
        def mutate(current: Order) -> Tuple[Order, List[Notification]]:
            if authorize is not None:
                authorize(current)
            target = transition_target(action, current.status)
            if target is None:
                payload = {
                    "order_id": current.order_id,
                    "status": current.status.value,
                    "action": action,
                    "action_label": action_label(action),
                    "allowed_actions": allowed_actions(current.status),
                }
                if action == "reject" and current.is_terminal:
                    raise AlreadyTerminalError(payload=payload)
                raise InvalidTransitionError(
                    details=f"{action} is not allowed from {current.status.value}",
                    payload=payload,
                )

            now = self._now()
            change = StatusChange(
                from_status=current.status,
                to_status=target,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                occurred_at=now,
                reason=reason,
            )
            updated = replace(current, status=target, status_history=current.status_history + (change,))
            if apply is not None:
                updated = apply(updated, now)
            notifications: List[Notification] = [
                (
                    "order_status_changed",
                    {
                        "order_id": current.order_id,
                        "from_state": current.status.value,
                        "to_state": target.value,
                        "actor_role": actor.role,
                        "actor_id": actor.actor_id,
                        "timestamp": _iso(now),
                    },
                )
            ]
            if follow_up is not None:
                notifications.extend(follow_up(updated))
            return updated, notifications

        updated = self._write_with_retry(order_id, mutate)
        self._logger.info(
            "order_status_changed",
            extra={
                "order_id": updated.order_id,
                "action": action,
                "to_status": updated.status.value,
                "actor_id": actor.actor_id,
                "actor_role": actor.role,
            },
        )
        return updated

    @staticmethod
    def _validate_items(items: Sequence[LineItemDraft]) -> Tuple[LineItem, ...]:
        if not items:
            raise ValidationError(message_key="items_required", payload={"field": "items"})
        lines: List[LineItem] = []
        for position, draft in enumerate(items, start=1):
            quantity = draft.quantity
            product = str(draft.product or "").strip()
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1 or not product:
                raise ValidationError(
                    message_key="item_invalid",
                    payload={"field": "items", "line_id": position},
                )
            brand = str(draft.preferred_brand or "").strip() or None
            lines.append(LineItem(line_id=position, quantity=quantity, product=product, preferred_brand=brand))
        return tuple(lines)

    def create(
        self,
        actor: Actor,
        items: Sequence[LineItemDraft],
        expiration_date: datetime | None,
        requested_delivery_date: datetime | None = None,
        terms: str | None = None,
        *,
        buyer_id: str | None = None,
        buyer_name: str | None = None,
    ) -> Order:
        require_roles(actor, "buyer", "admin", action="create")
        lines = self._validate_items(items)
        now = self._now()
        if expiration_date is None:
            raise ValidationError(message_key="expiration_required", payload={"field": "expiration_date"})
        expiration = to_utc(expiration_date)
        if expiration <= now:
            raise ValidationError(message_key="expiration_in_past", payload={"field": "expiration_date"})

        owner_id = actor.actor_id
        owner_name = actor.display_name
        if actor.is_admin and buyer_id:
            owner_id = str(buyer_id).strip()
            owner_name = str(buyer_name or "").strip()

        order = Order(
            order_id=uuid.uuid4().hex,
            buyer_id=owner_id,
            buyer_name=owner_name or owner_id,
            items=lines,
            status=OrderStatus.PENDING_APPROVAL,
            created_at=now,
            expiration_date=expiration,
            requested_delivery_date=to_utc(requested_delivery_date),
            terms=str(terms or "").strip() or None,
            status_history=(
                StatusChange(
                    from_status=None,
                    to_status=OrderStatus.PENDING_APPROVAL,
                    actor_id=actor.actor_id,
                    actor_role=actor.role,
                    occurred_at=now,
                ),
            ),
            version=1,
        )
        if not self.order_store.put(order, expected_version=None):
            raise ConcurrentModificationError(payload={"order_id": order.order_id})
        self._logger.info(
            "order_created",
            extra={"order_id": order.order_id, "buyer_id": order.buyer_id, "items_count": len(lines)},
        )
        self._emit(
            "order_created",
            {"order_id": order.order_id, "buyer_id": order.buyer_id, "items_count": len(lines)},
        )
        return order

    def publish(self, order_id: str, actor: Actor) -> Order:
        require_roles(actor, "admin", action="publish")
        return self._transition(order_id, "publish", actor)

    def adjudicate(self, order_id: str, allocation: Allocation, actor: Actor) -> Order:
        require_roles(actor, "admin", action="adjudicate")
        if allocation.order_id and allocation.order_id != order_id:
            raise ValidationError(
                details="allocation belongs to another order",
                payload={"order_id": order_id, "allocation_order_id": allocation.order_id},
            )

        def apply(updated: Order, now: datetime) -> Order:
            # Quotes are re-read on every attempt so a retry validates against what is stored now.
            quotes = self.quote_store.list_by_order(order_id)
            award = pricing.build_award(updated, allocation, quotes, awarded_at=now, awarded_by=actor.actor_id)
            return replace(updated, award=award)

        def follow_up(updated: Order) -> List[Notification]:
            return [
                (
                    "order_adjudicated",
                    {
                        "order_id": updated.order_id,
                        "grand_total": str(updated.award.grand_total),
                        "supplier_ids": updated.award.supplier_ids,
                    },
                )
            ]

        return self._transition(order_id, "adjudicate", actor, apply=apply, follow_up=follow_up)

    def dispatch(self, order_id: str, actor: Actor, driver_name: str, vehicle_id: str) -> Order:
        driver = str(driver_name or "").strip()
        vehicle = str(vehicle_id or "").strip().upper()

        def apply(updated: Order, now: datetime) -> Order:
            if not driver or not vehicle:
                raise ValidationError(
                    message_key="dispatch_details_required",
                    payload={"order_id": updated.order_id, "fields": ["driver_name", "vehicle_id"]},
                )
            info = DispatchInfo(
                driver_name=driver,
                vehicle_id=vehicle,
                dispatched_at=now,
                tracking_reference=self.tracking_reference_factory(),
            )
            return replace(updated, dispatch_info=info)

        return self._transition(
            order_id,
            "dispatch",
            actor,
            authorize=lambda current: require_order_access(actor, current, "dispatch"),
            apply=apply,
        )

    def confirm_delivery(self, order_id: str, actor: Actor) -> Order:
        return self._transition(
            order_id,
            "confirm_delivery",
            actor,
            authorize=lambda current: require_order_access(actor, current, "confirm_delivery"),
        )

    def reject(self, order_id: str, actor: Actor, reason: str | None = None) -> Order:
        cleaned_reason = str(reason or "").strip() or None

        def apply(updated: Order, _now: datetime) -> Order:
            return replace(updated, rejection_reason=cleaned_reason)

        return self._transition(
            order_id,
            "reject",
            actor,
            authorize=lambda current: require_order_access(actor, current, "reject"),
            apply=apply,
            reason=cleaned_reason,
        )

    def add_comment(self, order_id: str, actor: Actor, text: str) -> Order:
        body = str(text or "").strip()
        if not body:
            raise ValidationError(message_key="comment_required", payload={"field": "text"})

        def mutate(current: Order) -> Tuple[Order, List[Notification]]:
            comment = Comment(
                comment_id=uuid.uuid4().hex,
                author_id=actor.actor_id,
                author_name=actor.display_name or actor.actor_id,
                text=body,
                created_at=self._now(),
                is_admin=actor.is_admin,
            )
            updated = replace(current, comments=current.comments + (comment,))
            return updated, [
                (
                    "comment_added",
                    {
                        "order_id": current.order_id,
                        "comment_id": comment.comment_id,
                        "author_id": comment.author_id,
                        "is_admin": comment.is_admin,
                    },
                )
            ]

        return self._write_with_retry(order_id, mutate)

    def list_orders(
        self,
        buyer_id: str | None = None,
        statuses: Iterable[OrderStatus | str] | None = None,
        tab: str | None = None,
    ) -> List[Order]:
        wanted = None
        if tab:
            wanted = ADMIN_TABS.get(str(tab).strip().lower())
            if wanted is None:
                raise ValidationError(payload={"field": "tab", "allowed": sorted(ADMIN_TABS)})
        if statuses:
            normalized = {normalize_status(status) for status in statuses}
            if None in normalized:
                raise ValidationError(payload={"field": "status"})
            wanted = normalized if wanted is None else wanted & normalized

        def predicate(order: Order) -> bool:
            if buyer_id and order.buyer_id != buyer_id:
                return False
            return wanted is None or order.status in wanted

        orders = self.order_store.list(predicate)
        return sorted(orders, key=lambda order: (order.created_at, order.order_id), reverse=True)

    def status_counts(self, buyer_id: str | None = None) -> Dict[str, int]:
        counts = {status.value: 0 for status in OrderStatus}
        for order in self.list_orders(buyer_id=buyer_id):
            counts[order.status.value] += 1
        counts["total"] = sum(counts.values())
        return counts
