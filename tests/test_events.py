"""
Tests for the Event System (Observer Pattern)

Tests the event dispatcher and the payloads the ledger and bank publish.
"""

import logging
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock

from atm_bank.events import (
    DomainEvent, EventPayload, EventDispatcher,
    create_transaction_event, create_account_event
)
from atm_bank.accounts import Account, AccountType
from atm_bank.transactions import Transaction, TransactionType


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        """Test creating event payloads"""
        event = EventPayload(
            event_type=DomainEvent.TRANSACTION_POSTED,
            entity_type="transaction",
            entity_id="12",
            data={"amount": "100.00"}
        )

        assert event.entity_id == "12"
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_to_dict(self):
        event = EventPayload(
            event_type=DomainEvent.ACCOUNT_CREATED,
            entity_type="account",
            entity_id="3",
            data={}
        )
        result = event.to_dict()

        assert result["event_type"] == "account.created"
        assert result["entity_id"] == "3"
        assert result["timestamp"] == event.timestamp.isoformat()


class TestEventDispatcher:
    """Test subscribe/publish behaviour"""

    def setup_method(self):
        self.dispatcher = EventDispatcher()

    def _event(self, event_type=DomainEvent.TRANSACTION_POSTED):
        return EventPayload(event_type=event_type, entity_type="transaction", entity_id="1", data={})

    def test_subscribe_and_publish(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_POSTED, handler)

        event = self._event()
        self.dispatcher.publish(event)
        self.dispatcher.publish(self._event(DomainEvent.TRANSACTION_FAILED))

        handler.assert_called_once_with(event)

    def test_global_handler_sees_everything(self):
        handler = Mock()
        self.dispatcher.subscribe_all(handler)

        self.dispatcher.publish(self._event())
        self.dispatcher.publish(self._event(DomainEvent.BANK_RELOADED))

        assert handler.call_count == 2

    def test_unsubscribe(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_POSTED, handler)
        self.dispatcher.unsubscribe(DomainEvent.TRANSACTION_POSTED, handler)

        self.dispatcher.publish(self._event())

        handler.assert_not_called()
        assert self.dispatcher.get_handler_count(DomainEvent.TRANSACTION_POSTED) == 0

    def test_failing_handler_does_not_stop_others(self, caplog):
        failing = Mock(side_effect=RuntimeError("handler broke"))
        failing.__name__ = "failing"
        working = Mock()
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_POSTED, failing)
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_POSTED, working)

        with caplog.at_level(logging.ERROR, logger="atm_bank"):
            self.dispatcher.publish(self._event())

        working.assert_called_once()
        assert "handler broke" in caplog.text

    def test_handler_count_and_clear(self):
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_POSTED, Mock())
        self.dispatcher.subscribe(DomainEvent.ACCOUNT_CREATED, Mock())
        self.dispatcher.subscribe_all(Mock())

        assert self.dispatcher.get_handler_count() == 3

        self.dispatcher.clear()
        assert self.dispatcher.get_handler_count() == 0


class TestEventFactories:

    def test_transaction_event(self):
        t = Transaction(1001, 1, Decimal('20'), TransactionType.TRANSFER,
                        counterparty_number=2, transaction_id=5)
        event = create_transaction_event(DomainEvent.TRANSACTION_POSTED, t)

        assert event.entity_type == "transaction"
        assert event.entity_id == "5"
        assert event.data["transaction_type"] == "Transfer"
        assert event.data["amount"] == "20.00"
        assert event.data["counterparty_number"] == 2
        assert event.data["undoable"] is True

    def test_account_event(self):
        account = Account(3, 1001, AccountType.CHEQUING, Decimal('0'), is_primary=True)
        event = create_account_event(DomainEvent.ACCOUNT_CREATED, account)

        assert event.entity_id == "3"
        assert event.data["account_type"] == "ChequingAccount"
        assert event.data["is_primary"] is True
