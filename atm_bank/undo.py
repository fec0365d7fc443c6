"""
Undo Engine Module

Undo never edits history. Reversing a transaction posts a new Reversal
entry whose effect is the exact inverse of the original's, so balances
return to their pre-transaction values while both log lines remain.
"""

from typing import Optional

from .transactions import (
    Transaction, TransactionLedger, LedgerSession, inverse_effects
)
from .events import EventDispatcher, DomainEvent, create_transaction_event
from .logging_config import get_logger, log_action


class UndoEngine:
    """Reverses posted transactions through the ledger"""

    def __init__(self, ledger: TransactionLedger, event_dispatcher: Optional[EventDispatcher] = None):
        self.ledger = ledger
        self.logger = get_logger("atm_bank.undo")
        self._event_dispatcher = event_dispatcher

    def is_reversible(self, transaction: Transaction) -> bool:
        """Undoable, not itself a reversal, and not reversed before"""
        return (
            bool(transaction.undoable)
            and not transaction.is_reversing_entry
            and not self.ledger.is_reversed(transaction.transaction_id)
        )

    def undo_most_recent_transaction(self, session: Optional[LedgerSession] = None) -> bool:
        """
        Undo the session's most recent transaction

        Returns False, changing nothing, when no transaction is tracked or the
        tracked one cannot be reversed. The pointer is cleared after a
        successful undo.
        """
        session = session or self.ledger.session
        with self.ledger.write_lock:
            transaction = session.most_recent
            if transaction is None:
                log_action(self.logger, "info", "No recent transaction to undo",
                           action="undo_most_recent_transaction")
                return False
            if not self._reverse(transaction):
                return False
            session.clear()
        return True

    def undo_transaction(self, transaction_id: int, session: Optional[LedgerSession] = None) -> bool:
        """Undo any posted transaction by id"""
        session = session or self.ledger.session
        with self.ledger.write_lock:
            transaction = self.ledger.get_transaction(transaction_id)
            if transaction is None:
                log_action(
                    self.logger, "warning", f"Transaction {transaction_id} not found",
                    action="undo_transaction", resource=f"transaction:{transaction_id}"
                )
                return False
            if not self._reverse(transaction):
                return False
            if session.most_recent is not None and session.most_recent.transaction_id == transaction_id:
                session.clear()
        return True

    def _reverse(self, transaction: Transaction) -> bool:
        if not self.is_reversible(transaction):
            log_action(
                self.logger, "warning", f"Transaction {transaction.transaction_id} cannot be undone",
                action="undo_transaction", resource=f"transaction:{transaction.transaction_id}",
                extra={
                    "undoable": transaction.undoable,
                    "is_reversing_entry": transaction.is_reversing_entry,
                    "already_reversed": self.ledger.is_reversed(transaction.transaction_id)
                }
            )
            return False

        reversal = Transaction.reversal_of(transaction)
        if not self.ledger.post(reversal, inverse_effects(transaction), track=False):
            return False

        log_action(
            self.logger, "info", f"Transaction {transaction.transaction_id} reversed",
            action="undo_transaction", resource=f"transaction:{transaction.transaction_id}",
            extra={"reversal_transaction_id": reversal.transaction_id}
        )
        if self._event_dispatcher:
            self._event_dispatcher.publish(
                create_transaction_event(DomainEvent.TRANSACTION_REVERSED, transaction)
            )
        return True
