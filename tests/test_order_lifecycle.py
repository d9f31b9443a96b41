import re
import unittest
from datetime import timedelta
from decimal import Decimal

from portal.contexts.procurement.application.order_lifecycle import OrderLifecycleService
from portal.contexts.procurement.infrastructure.notifications import NotificationEmitter
from portal.contexts.procurement.infrastructure.order_store import InMemoryOrderStore
from portal.contexts.procurement.infrastructure.quote_store import InMemoryQuoteStore
from portal.domain.contracts import Actor, LineItemDraft
from portal.errors import (
    AlreadyTerminalError,
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    PermissionError as AppPermissionError,
    ValidationError,
)
from portal.procurement.flow_policy import OrderStatus
from tests.helpers.builders import (
    ADMIN,
    BASE_TIME,
    BUYER,
    OTHER_BUYER,
    SUPPLIER_X,
    SUPPLIER_Y,
    Harness,
    ManualClock,
)


class _ExplodingEmitter(NotificationEmitter):
    def emit(self, event_kind, payload):
        raise RuntimeError("notification sink down")


class _AlwaysConflictingOrderStore(InMemoryOrderStore):
    def __init__(self) -> None:
        super().__init__()
        self.update_attempts = 0

    def put(self, order, expected_version=None):
        if expected_version is None:
            return super().put(order, expected_version)
        self.update_attempts += 1
        return False


class OrderCreationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.h = Harness()
        self.expiration = BASE_TIME + timedelta(days=3)

    def test_create_numbers_lines_and_starts_pending(self) -> None:
        order = self.h.lifecycle.create(
            BUYER,
            [
                LineItemDraft(quantity=10, product=" Cuadernos ", preferred_brand="Rivadavia"),
                LineItemDraft(quantity=5, product="Marcadores"),
            ],
            self.expiration,
            terms="Entrega en porteria",
        )

        self.assertEqual(order.status, OrderStatus.PENDING_APPROVAL)
        self.assertEqual(order.line_ids, (1, 2))
        self.assertEqual(order.items[0].product, "Cuadernos")
        self.assertEqual(order.items[0].preferred_brand, "Rivadavia")
        self.assertEqual(order.buyer_id, BUYER.actor_id)
        self.assertEqual(order.buyer_name, BUYER.display_name)
        self.assertEqual(order.version, 1)
        self.assertEqual(self.h.order_store.get(order.order_id), order)
        self.assertEqual(self.h.notifier.kinds(), ["order_created"])

    def test_create_rejects_empty_items(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.h.lifecycle.create(BUYER, [], self.expiration)
        self.assertEqual(ctx.exception.message_key, "items_required")

    def test_create_rejects_malformed_items(self) -> None:
        for draft in (
            LineItemDraft(quantity=0, product="Tizas"),
            LineItemDraft(quantity=2, product="   "),
            LineItemDraft(quantity="3", product="Tizas"),
        ):
            with self.subTest(draft=draft):
                with self.assertRaises(ValidationError) as ctx:
                    self.h.lifecycle.create(BUYER, [draft], self.expiration)
                self.assertEqual(ctx.exception.message_key, "item_invalid")

    def test_create_requires_future_expiration(self) -> None:
        drafts = [LineItemDraft(quantity=1, product="Tizas")]
        with self.assertRaises(ValidationError) as missing:
            self.h.lifecycle.create(BUYER, drafts, None)
        self.assertEqual(missing.exception.message_key, "expiration_required")

        with self.assertRaises(ValidationError) as past:
            self.h.lifecycle.create(BUYER, drafts, BASE_TIME - timedelta(hours=1))
        self.assertEqual(past.exception.message_key, "expiration_in_past")
        self.assertEqual(self.h.order_store.list(), [])

    def test_suppliers_cannot_create_orders(self) -> None:
        with self.assertRaises(AppPermissionError):
            self.h.lifecycle.create(SUPPLIER_X, [LineItemDraft(quantity=1, product="Tizas")], self.expiration)

    def test_admin_can_create_on_behalf_of_buyer(self) -> None:
        order = self.h.lifecycle.create(
            ADMIN,
            [LineItemDraft(quantity=1, product="Tizas")],
            self.expiration,
            buyer_id=OTHER_BUYER.actor_id,
            buyer_name=OTHER_BUYER.display_name,
        )
        self.assertEqual(order.buyer_id, OTHER_BUYER.actor_id)
        self.assertEqual(order.buyer_name, OTHER_BUYER.display_name)

    def test_actor_roles_are_normalized(self) -> None:
        admin = Actor(actor_id="admin-2", role=" Admin ", display_name="Supervision")
        self.assertEqual(admin.role, "admin")
        self.assertTrue(admin.is_admin)

        order = self.h.lifecycle.create(
            admin,
            [LineItemDraft(quantity=1, product="Tizas")],
            self.expiration,
            buyer_id=OTHER_BUYER.actor_id,
        )
        self.assertEqual(order.buyer_id, OTHER_BUYER.actor_id)
        self.assertTrue(self.h.lifecycle.add_comment(order.order_id, admin, "Revisado").comments[-1].is_admin)


class OrderTransitionTest(unittest.TestCase):
    def setUp(self) -> None:
        self.h = Harness()

    def _adjudicated(self):
        order = self.h.open_order()
        self.h.submit(order, SUPPLIER_X, {1: "100", 2: "50"})
        self.h.submit(order, SUPPLIER_Y, {1: "90", 2: None})
        allocation = self.h.engine.compute_best_allocation(order.order_id)
        return self.h.engine.commit(order.order_id, allocation, ADMIN)

    def test_full_lifecycle_follows_edges_and_emits_one_event_per_transition(self) -> None:
        adjudicated = self._adjudicated()
        self.assertEqual(adjudicated.status, OrderStatus.IN_PREPARATION)
        self.assertEqual(adjudicated.award.grand_total, Decimal("1150"))

        dispatched = self.h.lifecycle.dispatch(adjudicated.order_id, SUPPLIER_Y, "Juan Perez", "ab123cd")
        self.assertEqual(dispatched.status, OrderStatus.ON_ITS_WAY)
        self.assertEqual(dispatched.dispatch_info.vehicle_id, "AB123CD")
        self.assertRegex(dispatched.dispatch_info.tracking_reference, re.compile(r"^TRK-[A-Z0-9]{9}$"))

        delivered = self.h.lifecycle.confirm_delivery(adjudicated.order_id, BUYER)
        self.assertEqual(delivered.status, OrderStatus.DELIVERED)
        self.assertTrue(delivered.is_terminal)
        self.assertEqual(
            [change.to_status for change in delivered.status_history],
            [
                OrderStatus.PENDING_APPROVAL,
                OrderStatus.IN_REVIEW,
                OrderStatus.IN_PREPARATION,
                OrderStatus.ON_ITS_WAY,
                OrderStatus.DELIVERED,
            ],
        )
        self.assertEqual(
            self.h.notifier.kinds(),
            [
                "order_created",
                "order_status_changed",
                "quote_submitted",
                "quote_submitted",
                "order_status_changed",
                "order_adjudicated",
                "order_status_changed",
                "order_status_changed",
            ],
        )

        status_events = [payload for kind, payload in self.h.notifier.emitted if kind == "order_status_changed"]
        self.assertEqual(
            [(event["from_state"], event["to_state"]) for event in status_events],
            [
                ("pending_approval", "in_review"),
                ("in_review", "in_preparation"),
                ("in_preparation", "on_its_way"),
                ("on_its_way", "delivered"),
            ],
        )
        last = status_events[-1]
        self.assertEqual(last["actor_role"], "buyer")
        self.assertEqual(last["actor_id"], BUYER.actor_id)
        self.assertTrue(last["timestamp"].endswith("Z"))

    def test_skipping_states_is_an_invalid_transition(self) -> None:
        order = self.h.create_order()
        before = self.h.order_store.get(order.order_id)

        with self.assertRaises(InvalidTransitionError) as ctx:
            self.h.lifecycle.dispatch(order.order_id, ADMIN, "Juan", "AB123")
        self.assertEqual(ctx.exception.payload["status"], "pending_approval")
        self.assertIn("publish", ctx.exception.payload["allowed_actions"])

        with self.assertRaises(InvalidTransitionError):
            self.h.lifecycle.confirm_delivery(order.order_id, ADMIN)
        with self.assertRaises(InvalidTransitionError):
            self.h.engine.commit(order.order_id, self.h.engine.compute_best_allocation(order.order_id), ADMIN)

        self.assertEqual(self.h.order_store.get(order.order_id), before)

    def test_publish_twice_fails(self) -> None:
        order = self.h.open_order()
        with self.assertRaises(InvalidTransitionError):
            self.h.lifecycle.publish(order.order_id, ADMIN)

    def test_reject_from_every_open_state(self) -> None:
        pending = self.h.create_order()
        in_review = self.h.open_order()
        in_preparation = self._adjudicated()

        for order in (pending, in_review, in_preparation):
            with self.subTest(status=order.status):
                rejected = self.h.lifecycle.reject(order.order_id, ADMIN, reason="  Presupuesto agotado ")
                self.assertEqual(rejected.status, OrderStatus.REJECTED)
                self.assertEqual(rejected.rejection_reason, "Presupuesto agotado")
                self.assertEqual(rejected.status_history[-1].reason, "Presupuesto agotado")

    def test_reject_on_delivered_order_is_already_terminal_and_changes_nothing(self) -> None:
        order = self._adjudicated()
        self.h.lifecycle.dispatch(order.order_id, ADMIN, "Juan Perez", "AB123CD")
        self.h.lifecycle.confirm_delivery(order.order_id, ADMIN)
        before = self.h.order_store.get(order.order_id)
        emitted_before = len(self.h.notifier.emitted)

        with self.assertRaises(AlreadyTerminalError) as ctx:
            self.h.lifecycle.reject(order.order_id, ADMIN)

        self.assertIsInstance(ctx.exception, InvalidTransitionError)
        self.assertEqual(ctx.exception.payload["status"], "delivered")
        self.assertEqual(self.h.order_store.get(order.order_id), before)
        self.assertEqual(len(self.h.notifier.emitted), emitted_before)

    def test_reject_twice_is_already_terminal(self) -> None:
        order = self.h.create_order()
        self.h.lifecycle.reject(order.order_id, BUYER)
        with self.assertRaises(AlreadyTerminalError):
            self.h.lifecycle.reject(order.order_id, BUYER)

    def test_role_policy(self) -> None:
        order = self.h.create_order()
        with self.assertRaises(AppPermissionError):
            self.h.lifecycle.publish(order.order_id, BUYER)
        with self.assertRaises(AppPermissionError):
            self.h.lifecycle.reject(order.order_id, OTHER_BUYER)

        adjudicated = self._adjudicated()
        losing_supplier = Actor(actor_id="supplier-z", role="supplier", display_name="Papelera Z")
        with self.assertRaises(AppPermissionError):
            self.h.lifecycle.dispatch(adjudicated.order_id, losing_supplier, "Juan", "AB123")
        with self.assertRaises(AppPermissionError):
            self.h.lifecycle.dispatch(adjudicated.order_id, BUYER, "Juan", "AB123")
        dispatched = self.h.lifecycle.dispatch(adjudicated.order_id, SUPPLIER_X, "Juan", "AB123")
        self.assertEqual(dispatched.status, OrderStatus.ON_ITS_WAY)
        with self.assertRaises(AppPermissionError):
            self.h.lifecycle.confirm_delivery(adjudicated.order_id, OTHER_BUYER)

    def test_dispatch_requires_driver_and_vehicle(self) -> None:
        order = self._adjudicated()
        with self.assertRaises(ValidationError) as ctx:
            self.h.lifecycle.dispatch(order.order_id, ADMIN, "Juan", "  ")
        self.assertEqual(ctx.exception.message_key, "dispatch_details_required")

    def test_dispatch_state_is_checked_before_dispatch_details(self) -> None:
        order = self.h.create_order()
        with self.assertRaises(InvalidTransitionError) as ctx:
            self.h.lifecycle.dispatch(order.order_id, ADMIN, "", "")
        self.assertEqual(ctx.exception.payload["status"], "pending_approval")
        self.assertEqual(ctx.exception.payload["action_label"], "Despachar pedido")

    def test_unknown_order_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            self.h.lifecycle.publish("missing", ADMIN)
        self.assertEqual(ctx.exception.code, "order_not_found")


class OrderCommentsTest(unittest.TestCase):
    def test_comments_append_in_any_state_including_terminal(self) -> None:
        h = Harness()
        order = h.create_order()
        h.lifecycle.add_comment(order.order_id, BUYER, "Necesitamos factura A")
        h.lifecycle.reject(order.order_id, ADMIN)
        updated = h.lifecycle.add_comment(order.order_id, ADMIN, "Rechazado por duplicado")

        self.assertEqual(updated.status, OrderStatus.REJECTED)
        self.assertEqual([comment.text for comment in updated.comments], ["Necesitamos factura A", "Rechazado por duplicado"])
        self.assertFalse(updated.comments[0].is_admin)
        self.assertTrue(updated.comments[1].is_admin)
        self.assertEqual(h.notifier.kinds().count("comment_added"), 2)

    def test_empty_comment_is_rejected(self) -> None:
        h = Harness()
        order = h.create_order()
        with self.assertRaises(ValidationError):
            h.lifecycle.add_comment(order.order_id, BUYER, "   ")


class OrderListingTest(unittest.TestCase):
    def setUp(self) -> None:
        self.h = Harness()
        self.pending = self.h.create_order()
        self.bidding = self.h.open_order()
        self.rejected = self.h.create_order()
        self.h.lifecycle.reject(self.rejected.order_id, ADMIN)

    def test_tabs_group_statuses(self) -> None:
        self.assertEqual([o.order_id for o in self.h.lifecycle.list_orders(tab="pending")], [self.pending.order_id])
        self.assertEqual([o.order_id for o in self.h.lifecycle.list_orders(tab="bidding")], [self.bidding.order_id])
        self.assertEqual([o.order_id for o in self.h.lifecycle.list_orders(tab="history")], [self.rejected.order_id])
        self.assertEqual(self.h.lifecycle.list_orders(tab="logistics"), [])
        with self.assertRaises(ValidationError):
            self.h.lifecycle.list_orders(tab="archive")

    def test_newest_first_and_buyer_filter(self) -> None:
        listed = self.h.lifecycle.list_orders()
        self.assertEqual(
            [order.order_id for order in listed],
            [self.rejected.order_id, self.bidding.order_id, self.pending.order_id],
        )
        self.assertEqual(self.h.lifecycle.list_orders(buyer_id=OTHER_BUYER.actor_id), [])
        self.assertEqual(len(self.h.lifecycle.list_orders(buyer_id=BUYER.actor_id, statuses=["in_review"])), 1)

    def test_status_counts(self) -> None:
        counts = self.h.lifecycle.status_counts()
        self.assertEqual(counts["pending_approval"], 1)
        self.assertEqual(counts["in_review"], 1)
        self.assertEqual(counts["rejected"], 1)
        self.assertEqual(counts["delivered"], 0)
        self.assertEqual(counts["total"], 3)


class LifecycleResilienceTest(unittest.TestCase):
    def test_notification_failures_never_break_a_transition(self) -> None:
        lifecycle = OrderLifecycleService(
            InMemoryOrderStore(),
            InMemoryQuoteStore(),
            _ExplodingEmitter(),
            clock=ManualClock(),
        )
        with self.assertLogs("portal", level="ERROR") as logs:
            order = lifecycle.create(BUYER, [LineItemDraft(quantity=1, product="Tizas")], BASE_TIME + timedelta(days=1))
            published = lifecycle.publish(order.order_id, ADMIN)

        self.assertEqual(published.status, OrderStatus.IN_REVIEW)
        self.assertTrue(any("notification_emit_failed" in line for line in logs.output))

    def test_persistent_conflicts_raise_concurrent_modification(self) -> None:
        store = _AlwaysConflictingOrderStore()
        h = Harness(order_store=store, retry_attempts=2)
        order = h.create_order()

        with self.assertRaises(ConcurrentModificationError) as ctx:
            h.lifecycle.publish(order.order_id, ADMIN)

        self.assertEqual(store.update_attempts, 3)
        self.assertEqual(ctx.exception.payload["attempts"], 3)
        self.assertEqual(h.order_store.get(order.order_id).status, OrderStatus.PENDING_APPROVAL)


if __name__ == "__main__":
    unittest.main()
