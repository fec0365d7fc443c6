"""
Bank Facade Module

Wires the record store, registries, ledger and undo engine together and is
the only entry point the presentation layer uses. Every public operation
returns a success flag or an empty result; nothing raises to the caller.
"""

from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Union

from .config import AtmBankConfig, get_config
from .currency import Currency, CurrencyConverter
from .storage import StorageInterface, FlatFileStorage
from .customers import Customer, CustomerRegistry
from .accounts import Account, AccountType, AccountRegistry
from .account_requests import AccountRequest, AccountRequestBook
from .transactions import Transaction, TransactionLedger, LedgerSession
from .undo import UndoEngine
from .events import EventDispatcher, EventPayload, DomainEvent, create_account_event
from .logging_config import get_logger, log_action


class Bank:
    """
    The bank as seen by tellers, customers and managers
    """

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[AtmBankConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        converter: Optional[CurrencyConverter] = None
    ):
        self.config = config or get_config()
        self.storage = storage or FlatFileStorage.from_config(self.config)
        self.event_dispatcher = event_dispatcher or EventDispatcher()
        self.logger = get_logger("atm_bank.bank")

        self.customers = CustomerRegistry(self.storage, self.config.first_customer_number)
        self.accounts = AccountRegistry(
            self.storage,
            chequing_overdraft_limit=Decimal(self.config.chequing_overdraft_limit),
            credit_card_limit=Decimal(self.config.credit_card_limit),
            line_of_credit_limit=Decimal(self.config.line_of_credit_limit),
            first_account_number=self.config.first_account_number
        )
        self.ledger = TransactionLedger(
            self.storage, self.accounts,
            converter=converter or self._default_converter(),
            event_dispatcher=self.event_dispatcher
        )
        self.undo_engine = UndoEngine(self.ledger, self.event_dispatcher)
        self.requests = AccountRequestBook(self.storage)

        self.reload_bank()

    def _default_converter(self) -> CurrencyConverter:
        base = Currency.from_code(self.config.base_currency)
        if base == Currency.CAD:
            return CurrencyConverter.with_default_rates()
        return CurrencyConverter(base)

    @property
    def write_lock(self):
        return self.ledger.write_lock

    @property
    def session(self) -> LedgerSession:
        return self.ledger.session

    @property
    def most_recent_transaction(self) -> Optional[Transaction]:
        return self.ledger.session.most_recent

    # Store / registries

    def reload_bank(self) -> None:
        """Re-read every record file and rebuild the in-memory registries"""
        with self.write_lock:
            self.customers.reload()
            self.accounts.reload()
            self.ledger.reload()
            self._link_primary_accounts()

        log_action(
            self.logger, "debug", "Bank reloaded",
            action="reload_bank",
            extra={
                "customers": len(self.customers.get_all_customers()),
                "accounts": len(self.accounts.get_all_accounts()),
                "transactions": len(self.ledger.get_all_transactions())
            }
        )
        self.event_dispatcher.publish(EventPayload(
            event_type=DomainEvent.BANK_RELOADED, entity_type="bank", entity_id="bank", data={}
        ))

    def _link_primary_accounts(self) -> None:
        for customer in self.customers.get_all_customers():
            customer.primary_chequing_account = None
        for account in self.accounts.get_all_accounts():
            if account.account_type == AccountType.CHEQUING and account.is_primary:
                customer = self.customers.get_customer(account.customer_number)
                if customer is not None:
                    customer.primary_chequing_account = account.account_number

    def _after_mutation(self) -> None:
        if self.config.full_reload_after_mutation:
            self.reload_bank()

    # Lookups

    def find_customer(self, customer_number: int) -> Optional[Customer]:
        return self.customers.get_customer(customer_number)

    def find_account(self, account_number: int) -> Optional[Account]:
        return self.accounts.get_account(account_number)

    def find_transaction(self, transaction_id: int) -> Optional[Transaction]:
        return self.ledger.get_transaction(transaction_id)

    def get_all_customers(self) -> List[Customer]:
        return self.customers.get_all_customers()

    def get_customer_accounts(self, customer_number: int) -> List[Account]:
        return self.accounts.get_customer_accounts(customer_number)

    def get_all_transactions(self) -> List[Transaction]:
        return self.ledger.get_all_transactions()

    def get_account_transactions(self, account_number: int) -> List[Transaction]:
        return self.ledger.get_account_transactions(account_number)

    # Customers and account requests

    def add_customer(self, username: str, sin_number: int) -> Optional[Customer]:
        """Register a new customer; None if the record cannot be created"""
        with self.write_lock:
            try:
                customer = self.customers.add_customer(username, sin_number)
            except (ValueError, OSError) as e:
                log_action(self.logger, "warning", f"Customer not created: {e}", action="create_customer")
                return None

        self.event_dispatcher.publish(EventPayload(
            event_type=DomainEvent.CUSTOMER_CREATED, entity_type="customer",
            entity_id=str(customer.customer_number), data={"username": customer.username}
        ))
        self._after_mutation()
        return customer

    def get_new_account_requests(self) -> List[AccountRequest]:
        """Pending account requests, oldest first"""
        return self.requests.read_all()

    def update_account_request_file(self, requests: Iterable[AccountRequest]) -> bool:
        """Rewrite the pending request list"""
        with self.write_lock:
            return self.requests.write_all(requests)

    def request_account(self, customer_number: int, account_type: str) -> Optional[AccountRequest]:
        """File a request for a new account on behalf of a customer"""
        if self.find_customer(customer_number) is None:
            log_action(
                self.logger, "warning", f"Customer {customer_number} not found",
                action="request_account", resource=f"customer:{customer_number}"
            )
            return None

        request = AccountRequest(customer_number=customer_number, account_type=account_type)
        with self.write_lock:
            if not self.requests.add_request(request):
                return None

        self.event_dispatcher.publish(EventPayload(
            event_type=DomainEvent.ACCOUNT_REQUESTED, entity_type="customer",
            entity_id=str(customer_number), data={"account_type": account_type}
        ))
        return request

    def create_account(self, request: AccountRequest) -> bool:
        """
        Open the account described by a request

        The customer's first chequing account becomes their primary account.
        Returns False for an unknown customer, an unrecognized account type or
        a failed write.
        """
        with self.write_lock:
            customer = self.find_customer(request.customer_number)
            if customer is None:
                log_action(
                    self.logger, "warning", f"Customer {request.customer_number} not found",
                    action="create_account", resource=f"customer:{request.customer_number}"
                )
                return False

            account_type = AccountType.from_name(request.account_type)
            if account_type is None:
                log_action(
                    self.logger, "warning", f"Unrecognized account type {request.account_type!r}",
                    action="create_account", resource=f"customer:{request.customer_number}"
                )
                return False

            is_primary = (
                account_type == AccountType.CHEQUING
                and customer.primary_chequing_account is None
            )
            account = self.accounts.new_account(customer.customer_number, account_type,
                                                is_primary=is_primary)
            try:
                self.accounts.add_account(account)
            except (OSError, ValueError) as e:
                log_action(
                    self.logger, "error", f"Account not created: {e}",
                    action="create_account", resource=f"customer:{request.customer_number}"
                )
                return False

            if is_primary:
                customer.primary_chequing_account = account.account_number

        self.event_dispatcher.publish(create_account_event(DomainEvent.ACCOUNT_CREATED, account))
        self._after_mutation()
        return True

    def find_account_request(self, customer_number: int, account_type: str,
                             request_datetime: Optional[datetime] = None) -> Optional[AccountRequest]:
        """Oldest matching pending request, or None"""
        return self.requests.find_request(customer_number, account_type, request_datetime)

    def approve_account_request(self, request: AccountRequest) -> bool:
        """
        Create the requested account and drop the request from the pending list

        Returns False, creating nothing, when the request is not pending, and
        False when the request file could not be rewritten afterwards.
        """
        with self.write_lock:
            if request not in self.requests.read_all():
                log_action(
                    self.logger, "warning", "Request is not in the pending list",
                    action="approve_account_request", resource=f"customer:{request.customer_number}"
                )
                return False
            if not self.create_account(request):
                return False
            if not self.requests.remove_request(request):
                log_action(
                    self.logger, "error", "Account created but the request is still pending",
                    action="approve_account_request", resource=f"customer:{request.customer_number}"
                )
                return False
        return True

    # Transactions

    def _finish(self, transaction: Optional[Transaction]) -> Optional[Transaction]:
        if transaction is not None:
            self._after_mutation()
        return transaction

    def deposit(self, account_number: int, amount: Decimal) -> Optional[Transaction]:
        return self._finish(self.ledger.deposit(account_number, amount))

    def deposit_foreign(self, account_number: int, foreign_amount: Decimal,
                        currency: Union[str, Currency],
                        amount_cad: Optional[Decimal] = None) -> Optional[Transaction]:
        return self._finish(self.ledger.deposit_foreign(account_number, foreign_amount, currency, amount_cad))

    def withdraw(self, account_number: int, amount: Decimal) -> Optional[Transaction]:
        return self._finish(self.ledger.withdraw(account_number, amount))

    def transfer(self, account_number: int, to_account_number: int, amount: Decimal) -> Optional[Transaction]:
        return self._finish(self.ledger.transfer(account_number, to_account_number, amount))

    def pay(self, account_number: int, payee_account_number: int, amount: Decimal) -> Optional[Transaction]:
        return self._finish(self.ledger.pay(account_number, payee_account_number, amount))

    def undo_most_recent_transaction(self) -> bool:
        """Undo the most recent transaction made at this bank"""
        result = self.undo_engine.undo_most_recent_transaction()
        if result:
            self._after_mutation()
        return result

    def undo_transaction(self, transaction_id: int) -> bool:
        """Undo a particular transaction"""
        result = self.undo_engine.undo_transaction(transaction_id)
        if result:
            self._after_mutation()
        return result
