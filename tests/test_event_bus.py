import unittest

from portal.contexts.procurement.infrastructure.notifications import EventBusNotificationEmitter
from portal.core import CommentAdded, DomainEvent, EventBus, OrderCreated, OrderStatusChanged, QuoteSubmitted
from portal.core.event_schemas import validate_event
from portal.procurement.flow_policy import OrderStatus
from tests.helpers.builders import ADMIN, SUPPLIER_X, Harness


class EventBusTest(unittest.TestCase):
    def test_handler_execution_order_is_predictable(self) -> None:
        bus = EventBus()
        execution_trace = []

        bus.subscribe(OrderCreated, lambda _event: execution_trace.append("first"))
        bus.subscribe(OrderCreated, lambda _event: execution_trace.append("second"))
        bus.subscribe(DomainEvent, lambda _event: execution_trace.append("catch_all"))
        bus.publish(OrderCreated(order_id="o-1", buyer_id="school-1", items_count=2))

        self.assertEqual(execution_trace, ["first", "second", "catch_all"])

    def test_handlers_only_receive_their_event_type(self) -> None:
        bus = EventBus()
        received = []
        bus.subscribe(QuoteSubmitted, received.append)

        bus.publish(OrderCreated(order_id="o-1", buyer_id="school-1"))
        bus.publish(QuoteSubmitted(order_id="o-1", supplier_id="supplier-x", revision=1))

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0].supplier_id, "supplier-x")

    def test_failing_handler_does_not_stop_the_others(self) -> None:
        bus = EventBus()
        received = []

        def broken_handler(_event):
            raise RuntimeError("handler down")

        bus.subscribe(CommentAdded, broken_handler)
        bus.subscribe(CommentAdded, received.append)

        with self.assertLogs("portal", level="ERROR") as logs:
            bus.publish(CommentAdded(order_id="o-1", comment_id="c-1", author_id="school-1"))

        self.assertEqual(len(received), 1)
        self.assertTrue(any("event_handler_failed" in line for line in logs.output))

    def test_unsubscribe_and_clear(self) -> None:
        bus = EventBus()
        received = []
        bus.subscribe(OrderCreated, received.append)
        bus.unsubscribe(OrderCreated, received.append)
        bus.publish(OrderCreated(order_id="o-1", buyer_id="school-1"))
        self.assertEqual(received, [])

        bus.subscribe(OrderCreated, received.append)
        bus.clear()
        bus.publish(OrderCreated(order_id="o-2", buyer_id="school-1"))
        self.assertEqual(received, [])

    def test_events_get_an_id_and_utc_timestamp(self) -> None:
        event = OrderCreated(order_id="o-1", buyer_id="school-1", event_id="  ")
        self.assertTrue(event.event_id)
        self.assertEqual(event.occurred_at.utcoffset().total_seconds(), 0)


class EventSchemaTest(unittest.TestCase):
    def test_missing_required_fields_are_reported(self) -> None:
        with self.assertLogs("portal", level="ERROR") as logs:
            valid = validate_event(OrderCreated(order_id="", buyer_id="school-1"))
        self.assertFalse(valid)
        self.assertTrue(any("domain_event_schema_invalid" in line for line in logs.output))

    def test_complete_event_is_valid(self) -> None:
        event = OrderStatusChanged(
            order_id="o-1",
            from_state="pending_approval",
            to_state="in_review",
            actor_role="admin",
            actor_id="admin-1",
            timestamp="2026-03-02T12:00:00Z",
        )
        self.assertTrue(validate_event(event))


class NotificationEmitterTest(unittest.TestCase):
    def test_lifecycle_notifications_reach_the_bus_as_domain_events(self) -> None:
        bus = EventBus()
        received = []
        bus.subscribe(DomainEvent, received.append)

        h = Harness()
        emitter = EventBusNotificationEmitter(bus)
        h.lifecycle.notifier = emitter
        h.ledger.notifier = emitter

        order = h.open_order()
        h.submit(order, SUPPLIER_X, {1: "10", 2: "5"})

        self.assertEqual(
            [type(event).__name__ for event in received],
            ["OrderCreated", "OrderStatusChanged", "QuoteSubmitted"],
        )
        status_event = received[1]
        self.assertEqual(status_event.from_state, OrderStatus.PENDING_APPROVAL.value)
        self.assertEqual(status_event.to_state, OrderStatus.IN_REVIEW.value)
        self.assertEqual(status_event.actor_id, ADMIN.actor_id)

    def test_unknown_kinds_and_bad_payloads_are_dropped(self) -> None:
        bus = EventBus()
        received = []
        bus.subscribe(DomainEvent, received.append)
        emitter = EventBusNotificationEmitter(bus)

        with self.assertLogs("portal", level="WARNING"):
            emitter.emit("order_archived", {"order_id": "o-1"})
        with self.assertLogs("portal", level="ERROR"):
            emitter.emit("order_created", {"order_id": "o-1", "unexpected": True})

        self.assertEqual(received, [])


if __name__ == "__main__":
    unittest.main()
