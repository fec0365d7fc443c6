"""
Transaction Ledger Module

Handles every kind of ATM transaction: deposits (domestic and foreign),
withdrawals, transfers, payments and the reversing entries written by undo.
Each kind is a row in the TRANSACTION_KINDS operation table describing its
effect on account balances.

Posting a transaction is all-or-nothing: the log line and the rewritten
account file are written inside one storage atomic unit, and the in-memory
indexes only change after that unit committed. The transaction log is
append-only; nothing in it is ever rewritten or removed.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple, Union
import threading

from .currency import ZERO, Currency, CurrencyConverter, floor_amount, decimal_from_string, format_amount
from .storage import (
    StorageInterface, RecordFile, RecordKind,
    format_timestamp, parse_timestamp, format_bool, parse_bool
)
from .accounts import Account, AccountRegistry
from .events import EventDispatcher, DomainEvent, create_transaction_event
from .logging_config import get_logger, log_action


# (account_number, funds moved into the account; negative when taken out)
Effect = Tuple[int, Decimal]


class TransactionType(Enum):
    """Kinds of transactions as named in the transaction file"""
    DEPOSIT = "Deposit"
    FOREIGN_DEPOSIT = "ForeignDeposit"
    WITHDRAWAL = "Withdrawal"
    TRANSFER = "Transfer"
    PAYMENT = "Payment"
    REVERSAL = "Reversal"


@dataclass
class Transaction:
    """
    One ledger entry

    amount is always positive; the transaction type implies its direction.
    counterparty_number is the second account of a transfer or payment, the
    id of the reversed transaction for a reversal, and 0 otherwise.
    foreign_amount and foreign_currency are kept for display only and are
    not written to the log.
    """
    customer_number: int
    account_number: int
    amount: Decimal
    transaction_type: TransactionType
    timestamp: datetime = field(default_factory=datetime.now)
    counterparty_number: int = 0
    undoable: Optional[bool] = None
    is_reversing_entry: bool = False
    transaction_id: int = 0
    foreign_amount: Optional[Decimal] = None
    foreign_currency: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            self.amount = decimal_from_string(str(self.amount))
        self.amount = floor_amount(self.amount)
        if self.amount <= ZERO:
            raise ValueError("Transaction amount must be positive")

        kind = self.kind
        if self.undoable is None:
            self.undoable = kind.undoable
        if self.undoable and not kind.undoable:
            raise ValueError(f"{self.transaction_type.value} transactions cannot be undoable")

        if self.is_reversing_entry != (self.transaction_type == TransactionType.REVERSAL):
            raise ValueError("Only Reversal transactions are reversing entries")

        if kind.needs_counterparty and not self.counterparty_number:
            raise ValueError(f"{self.transaction_type.value} requires a counterparty account")

    @property
    def kind(self) -> "TransactionKind":
        return TRANSACTION_KINDS[self.transaction_type]

    @classmethod
    def deposit(cls, account: Account, amount: Decimal,
                timestamp: Optional[datetime] = None) -> "Transaction":
        """Domestic deposit; undoable"""
        return cls(account.customer_number, account.account_number, amount,
                   TransactionType.DEPOSIT, timestamp or datetime.now())

    @classmethod
    def foreign_deposit(cls, account: Account, foreign_amount: Decimal, amount_cad: Decimal,
                        foreign_currency: str, timestamp: Optional[datetime] = None) -> "Transaction":
        """Deposit converted from a foreign currency; never undoable"""
        return cls(account.customer_number, account.account_number, amount_cad,
                   TransactionType.FOREIGN_DEPOSIT, timestamp or datetime.now(),
                   foreign_amount=floor_amount(foreign_amount),
                   foreign_currency=Currency.from_code(foreign_currency).code)

    @classmethod
    def withdrawal(cls, account: Account, amount: Decimal,
                   timestamp: Optional[datetime] = None) -> "Transaction":
        return cls(account.customer_number, account.account_number, amount,
                   TransactionType.WITHDRAWAL, timestamp or datetime.now())

    @classmethod
    def transfer(cls, account: Account, to_account: Account, amount: Decimal,
                 timestamp: Optional[datetime] = None) -> "Transaction":
        return cls(account.customer_number, account.account_number, amount,
                   TransactionType.TRANSFER, timestamp or datetime.now(),
                   counterparty_number=to_account.account_number)

    @classmethod
    def payment(cls, account: Account, payee_account: Account, amount: Decimal,
                timestamp: Optional[datetime] = None) -> "Transaction":
        return cls(account.customer_number, account.account_number, amount,
                   TransactionType.PAYMENT, timestamp or datetime.now(),
                   counterparty_number=payee_account.account_number)

    @classmethod
    def reversal_of(cls, original: "Transaction",
                    timestamp: Optional[datetime] = None) -> "Transaction":
        """Reversing entry for original; never undoable"""
        return cls(original.customer_number, original.account_number, original.amount,
                   TransactionType.REVERSAL, timestamp or datetime.now(),
                   counterparty_number=original.transaction_id,
                   undoable=False, is_reversing_entry=True)


def _credit_effects(transaction: Transaction) -> List[Effect]:
    return [(transaction.account_number, transaction.amount)]


def _debit_effects(transaction: Transaction) -> List[Effect]:
    return [(transaction.account_number, -transaction.amount)]


def _move_effects(transaction: Transaction) -> List[Effect]:
    return [
        (transaction.account_number, -transaction.amount),
        (transaction.counterparty_number, transaction.amount),
    ]


def _reversal_effects(transaction: Transaction) -> List[Effect]:
    raise ValueError("Reversal effects are derived from the reversed transaction")


@dataclass(frozen=True)
class TransactionKind:
    """Operation table row for one transaction type"""
    undoable: bool
    effects: Callable[[Transaction], List[Effect]]
    debits_source: bool = False
    needs_counterparty: bool = False
    same_owner: bool = False


TRANSACTION_KINDS: Dict[TransactionType, TransactionKind] = {
    TransactionType.DEPOSIT: TransactionKind(True, _credit_effects),
    # Conversion used an external rate, so the posting is not exactly invertible
    TransactionType.FOREIGN_DEPOSIT: TransactionKind(False, _credit_effects),
    TransactionType.WITHDRAWAL: TransactionKind(True, _debit_effects, debits_source=True),
    TransactionType.TRANSFER: TransactionKind(True, _move_effects, debits_source=True,
                                              needs_counterparty=True, same_owner=True),
    TransactionType.PAYMENT: TransactionKind(True, _move_effects, debits_source=True,
                                             needs_counterparty=True),
    TransactionType.REVERSAL: TransactionKind(False, _reversal_effects),
}


def inverse_effects(transaction: Transaction) -> List[Effect]:
    """Effects that exactly cancel those of transaction"""
    return [(number, -funds) for number, funds in transaction.kind.effects(transaction)]


def transaction_to_fields(transaction: Transaction) -> List[str]:
    return [
        str(transaction.transaction_id),
        str(transaction.customer_number),
        transaction.transaction_type.value,
        format_amount(transaction.amount),
        str(transaction.account_number),
        format_timestamp(transaction.timestamp),
        str(transaction.counterparty_number),
        format_bool(transaction.undoable),
        format_bool(transaction.is_reversing_entry),
    ]


def transaction_from_fields(fields: List[str]) -> Transaction:
    if len(fields) != 9:
        raise ValueError(f"Expected 9 transaction fields, got {len(fields)}")
    return Transaction(
        transaction_id=int(fields[0]),
        customer_number=int(fields[1]),
        transaction_type=TransactionType(fields[2]),
        amount=decimal_from_string(fields[3]),
        account_number=int(fields[4]),
        timestamp=parse_timestamp(fields[5]),
        counterparty_number=int(fields[6]),
        undoable=parse_bool(fields[7]),
        is_reversing_entry=parse_bool(fields[8])
    )


@dataclass
class LedgerSession:
    """Holds the most recent transaction, the default target of undo"""
    most_recent: Optional[Transaction] = None

    def track(self, transaction: Transaction) -> None:
        self.most_recent = transaction

    def clear(self) -> None:
        self.most_recent = None


class TransactionLedger:
    """
    Applies transactions to accounts and keeps the append-only log
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountRegistry,
        converter: Optional[CurrencyConverter] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        session: Optional[LedgerSession] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.converter = converter or CurrencyConverter.with_default_rates()
        self.session = session or LedgerSession()
        self.logger = get_logger("atm_bank.transactions")
        # Single writer: every mutating sequence runs under this lock
        self.write_lock = threading.RLock()
        self._event_dispatcher = event_dispatcher
        self._log = RecordFile(storage, RecordKind.TRANSACTIONS, transaction_from_fields,
                               transaction_to_fields, self.logger)
        self._transactions: List[Transaction] = []
        self._reversed_ids: Set[int] = set()

    def _publish_event(self, event_type: DomainEvent, transaction: Transaction) -> None:
        """Publish a domain event if event dispatcher is available"""
        if self._event_dispatcher:
            self._event_dispatcher.publish(create_transaction_event(event_type, transaction))

    def reload(self) -> None:
        """Rebuild the transaction index from the log"""
        with self.write_lock:
            self._transactions = self._log.read_all()
            self._reversed_ids = {
                t.counterparty_number for t in self._transactions if t.is_reversing_entry
            }

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        """Find a transaction by id"""
        for transaction in self._transactions:
            if transaction.transaction_id == transaction_id:
                return transaction
        return None

    def get_all_transactions(self) -> List[Transaction]:
        return list(self._transactions)

    def get_account_transactions(self, account_number: int) -> List[Transaction]:
        """
        Transactions touching an account, oldest first

        A Reversal touches every account its reversed transaction touched.
        """
        by_id = {t.transaction_id: t for t in self._transactions}

        def touches(t: Transaction) -> bool:
            if t.is_reversing_entry:
                reversed_transaction = by_id.get(t.counterparty_number)
                if reversed_transaction is not None and not reversed_transaction.is_reversing_entry:
                    return touches(reversed_transaction)
                return t.account_number == account_number
            return (
                t.account_number == account_number
                or (t.kind.needs_counterparty and t.counterparty_number == account_number)
            )

        return [t for t in self._transactions if touches(t)]

    def is_reversed(self, transaction_id: int) -> bool:
        return transaction_id in self._reversed_ids

    def next_transaction_id(self) -> int:
        if not self._transactions:
            return 1
        return max(t.transaction_id for t in self._transactions) + 1

    def deposit(self, account_number: int, amount: Decimal,
                session: Optional[LedgerSession] = None) -> Optional[Transaction]:
        """Deposit cash or a cheque"""
        return self._build_and_apply(
            lambda account: Transaction.deposit(account, amount),
            account_number, session
        )

    def deposit_foreign(self, account_number: int, foreign_amount: Decimal,
                        currency: Union[str, Currency], amount_cad: Optional[Decimal] = None,
                        session: Optional[LedgerSession] = None) -> Optional[Transaction]:
        """
        Deposit foreign currency, posting its base-currency equivalent

        amount_cad overrides the converter when the teller already knows the
        converted amount.
        """
        def build(account: Account) -> Transaction:
            code = currency if isinstance(currency, Currency) else Currency.from_code(currency)
            foreign = floor_amount(foreign_amount)
            converted = amount_cad if amount_cad is not None else self.converter.to_base(foreign, code)
            return Transaction.foreign_deposit(account, foreign, converted, code.code)

        return self._build_and_apply(build, account_number, session)

    def withdraw(self, account_number: int, amount: Decimal,
                 session: Optional[LedgerSession] = None) -> Optional[Transaction]:
        return self._build_and_apply(
            lambda account: Transaction.withdrawal(account, amount),
            account_number, session
        )

    def transfer(self, account_number: int, to_account_number: int, amount: Decimal,
                 session: Optional[LedgerSession] = None) -> Optional[Transaction]:
        """Move money between two accounts of the same customer"""
        def build(account: Account) -> Transaction:
            to_account = self._require_account(to_account_number)
            return Transaction.transfer(account, to_account, amount)

        return self._build_and_apply(build, account_number, session)

    def pay(self, account_number: int, payee_account_number: int, amount: Decimal,
            session: Optional[LedgerSession] = None) -> Optional[Transaction]:
        """Pay into another account, e.g. a credit card or another customer's account"""
        def build(account: Account) -> Transaction:
            payee = self._require_account(payee_account_number)
            return Transaction.payment(account, payee, amount)

        return self._build_and_apply(build, account_number, session)

    def _require_account(self, account_number: int) -> Account:
        account = self.accounts.get_account(account_number)
        if account is None:
            raise ValueError(f"Account {account_number} not found")
        return account

    def _build_and_apply(self, build: Callable[[Account], Transaction], account_number: int,
                         session: Optional[LedgerSession]) -> Optional[Transaction]:
        try:
            transaction = build(self._require_account(account_number))
        except ValueError as e:
            log_action(
                self.logger, "warning", f"Transaction rejected: {e}",
                action="create_transaction", resource=f"account:{account_number}"
            )
            return None
        return transaction if self.apply(transaction, session) else None

    def validate(self, transaction: Transaction) -> List[Effect]:
        """
        Check a transaction against the current accounts and compute its effects

        Raises:
            ValueError: If an account is missing or a kind rule is violated
        """
        kind = transaction.kind
        if transaction.is_reversing_entry:
            raise ValueError("Reversing entries are posted by the undo engine")

        account = self._require_account(transaction.account_number)
        if account.customer_number != transaction.customer_number:
            raise ValueError(
                f"Account {account.account_number} does not belong to customer {transaction.customer_number}"
            )

        if kind.needs_counterparty:
            other = self._require_account(transaction.counterparty_number)
            if other.account_number == account.account_number:
                raise ValueError("Cannot move money from an account into itself")
            if kind.same_owner and other.customer_number != account.customer_number:
                raise ValueError("Transfers are only allowed between a customer's own accounts")

        if kind.debits_source and not self.accounts.can_debit(account, transaction.amount):
            raise ValueError(
                f"Account {account.account_number} cannot be debited {format_amount(transaction.amount)}"
            )

        return kind.effects(transaction)

    def apply(self, transaction: Transaction, session: Optional[LedgerSession] = None) -> bool:
        """
        Carry out a transaction

        Returns True when the balances, the account file and the log were all
        updated; False when nothing was changed.
        """
        with self.write_lock:
            try:
                effects = self.validate(transaction)
            except ValueError as e:
                log_action(
                    self.logger, "warning", f"Transaction rejected: {e}",
                    action="apply_transaction", resource=f"account:{transaction.account_number}",
                    extra={"transaction_type": transaction.transaction_type.value,
                           "amount": format_amount(transaction.amount)}
                )
                self._publish_event(DomainEvent.TRANSACTION_FAILED, transaction)
                return False
            return self.post(transaction, effects, session)

    def post(self, transaction: Transaction, effects: List[Effect],
             session: Optional[LedgerSession] = None, track: bool = True) -> bool:
        """
        Write effects and the log line as one unit, then publish the new state

        Skips kind validation; callers are expected to have computed effects
        through validate() or inverse_effects().
        """
        with self.write_lock:
            assigned_id = transaction.transaction_id == 0
            if assigned_id:
                transaction.transaction_id = self.next_transaction_id()
            elif self.get_transaction(transaction.transaction_id) is not None:
                log_action(
                    self.logger, "warning", f"Transaction {transaction.transaction_id} already posted",
                    action="post_transaction", resource=f"transaction:{transaction.transaction_id}"
                )
                return False

            try:
                updated = self._updated_accounts(transaction, effects)
            except ValueError as e:
                log_action(
                    self.logger, "warning", f"Transaction {transaction.transaction_id} not posted: {e}",
                    action="post_transaction", resource=f"transaction:{transaction.transaction_id}"
                )
                if assigned_id:
                    transaction.transaction_id = 0
                return False

            try:
                with self.storage.atomic():
                    self._log.append(transaction)
                    self.accounts.write_snapshot(updated.values())
            except (OSError, ValueError) as e:
                log_action(
                    self.logger, "error", f"Transaction {transaction.transaction_id} not stored: {e}",
                    action="post_transaction", resource=f"transaction:{transaction.transaction_id}"
                )
                if assigned_id:
                    transaction.transaction_id = 0
                return False

            self._transactions.append(transaction)
            if transaction.is_reversing_entry:
                self._reversed_ids.add(transaction.counterparty_number)
            self.accounts.commit(updated.values())
            if track:
                (session or self.session).track(transaction)

        log_action(
            self.logger, "info", f"Transaction posted: {transaction.transaction_type.value}",
            action="post_transaction", resource=f"transaction:{transaction.transaction_id}",
            extra={
                "customer_number": transaction.customer_number,
                "account_number": transaction.account_number,
                "amount": format_amount(transaction.amount),
                "counterparty_number": transaction.counterparty_number,
                "undoable": transaction.undoable,
                "balances": {str(n): format_amount(a.balance) for n, a in updated.items()}
            }
        )
        self._publish_event(DomainEvent.TRANSACTION_POSTED, transaction)
        return True

    def _updated_accounts(self, transaction: Transaction, effects: List[Effect]) -> Dict[int, Account]:
        """
        Copies of the touched accounts with effects applied

        Raises:
            ValueError: If an account is missing or a new balance is out of range
        """
        updated: Dict[int, Account] = {}
        for account_number, funds in effects:
            account = updated.get(account_number)
            if account is None:
                account = replace(self._require_account(account_number))
            account.add_amount(account.balance_delta(funds))
            account.recent_transaction_id = transaction.transaction_id
            updated[account_number] = account
        return updated
