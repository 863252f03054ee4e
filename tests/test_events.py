"""
Tests for the Event System (Observer Pattern)
"""

from unittest.mock import Mock

from wallet_core.events import DomainEvent, EventPayload, EventDispatcher


def make_event(event_type=DomainEvent.TRANSACTION_POSTED):
    return EventPayload(
        event_type=event_type,
        entity_type="transaction",
        entity_id="test-123",
        data={"amount": "100.00"}
    )


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        event = make_event()

        assert event.timestamp.tzinfo is not None
        assert len(event.event_id) > 0

    def test_to_dict(self):
        event_dict = make_event(DomainEvent.ACCOUNT_CREATED).to_dict()

        assert event_dict["event_type"] == "account.created"
        assert event_dict["entity_id"] == "test-123"
        assert event_dict["data"] == {"amount": "100.00"}


class TestEventDispatcher:
    """Test subscription and publishing"""

    def test_subscribe_and_publish(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.TRANSACTION_POSTED, handler)

        event = make_event()
        dispatcher.publish(event)

        handler.assert_called_once_with(event)

    def test_handler_only_receives_its_event_type(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.TRANSACTION_FAILED, handler)

        dispatcher.publish(make_event(DomainEvent.TRANSACTION_POSTED))

        handler.assert_not_called()

    def test_global_handler_receives_everything(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)

        dispatcher.publish(make_event(DomainEvent.TRANSACTION_POSTED))
        dispatcher.publish(make_event(DomainEvent.ACCOUNT_CREATED))

        assert handler.call_count == 2

    def test_unsubscribe(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.TRANSACTION_POSTED, handler)
        dispatcher.unsubscribe(DomainEvent.TRANSACTION_POSTED, handler)

        dispatcher.publish(make_event())

        handler.assert_not_called()
        # Unsubscribing twice only logs a warning
        dispatcher.unsubscribe(DomainEvent.TRANSACTION_POSTED, handler)

    def test_failing_handler_is_isolated(self):
        """One broken handler does not stop the others"""
        dispatcher = EventDispatcher()
        broken = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        dispatcher.subscribe(DomainEvent.TRANSACTION_POSTED, broken)
        dispatcher.subscribe(DomainEvent.TRANSACTION_POSTED, healthy)

        dispatcher.publish(make_event())

        healthy.assert_called_once()

    def test_handler_count_and_clear(self):
        dispatcher = EventDispatcher()
        dispatcher.subscribe(DomainEvent.TRANSACTION_POSTED, Mock())
        dispatcher.subscribe(DomainEvent.ACCOUNT_CREATED, Mock())
        dispatcher.subscribe_all(Mock())

        assert dispatcher.get_handler_count(DomainEvent.TRANSACTION_POSTED) == 1
        assert dispatcher.get_handler_count() == 3

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0
