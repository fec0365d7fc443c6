"""
Test suite for the Bank facade

Covers customer and account creation, the account request workflow,
end-to-end transaction scenarios and persistence across restarts.
"""

import pytest
from decimal import Decimal
from datetime import datetime

from atm_bank.config import AtmBankConfig
from atm_bank.storage import InMemoryStorage, FlatFileStorage, RecordKind
from atm_bank.accounts import AccountType
from atm_bank.account_requests import AccountRequest
from atm_bank.events import DomainEvent
from atm_bank.bank import Bank


class ReadOnlyStorage(InMemoryStorage):
    """Storage whose files can be read but never rewritten"""

    def write_lines(self, kind, lines):
        raise OSError("read-only file system")

    def append_line(self, kind, line):
        raise OSError("read-only file system")


class FailingRequestWrites(InMemoryStorage):
    """Storage that refuses to rewrite the account request file while fail is set"""

    def __init__(self):
        super().__init__()
        self.fail = False

    def write_lines(self, kind, lines):
        if self.fail and kind == RecordKind.ACCOUNT_REQUESTS:
            raise OSError("disk full")
        super().write_lines(kind, lines)


def new_bank(storage=None, **overrides):
    return Bank(storage=storage or InMemoryStorage(), config=AtmBankConfig(**overrides))


def open_account(bank, customer_number, account_type):
    assert bank.create_account(AccountRequest(customer_number, account_type))
    return bank.get_customer_accounts(customer_number)[-1]


class TestCustomersAndAccounts:

    def setup_method(self):
        self.bank = new_bank()

    def test_customer_numbers(self):
        alice = self.bank.add_customer("alice", 123456789)
        bob = self.bank.add_customer("bob", 987654321)

        assert alice.customer_number == 1001
        assert bob.customer_number == 1002
        assert self.bank.find_customer(1002) is bob

    def test_duplicate_username(self):
        self.bank.add_customer("alice", 1)
        assert self.bank.add_customer("alice", 2) is None
        assert len(self.bank.get_all_customers()) == 1

    def test_empty_username(self):
        assert self.bank.add_customer("", 1) is None

    def test_first_chequing_account_is_primary(self):
        customer = self.bank.add_customer("alice", 1)

        first = open_account(self.bank, customer.customer_number, "ChequingAccount")
        second = open_account(self.bank, customer.customer_number, "ChequingAccount")

        assert first.is_primary
        assert not second.is_primary
        assert customer.primary_chequing_account == first.account_number

    def test_primary_survives_reload(self):
        customer = self.bank.add_customer("alice", 1)
        open_account(self.bank, customer.customer_number, "SavingAccount")
        chequing = open_account(self.bank, customer.customer_number, "ChequingAccount")

        restarted = Bank(storage=self.bank.storage, config=self.bank.config)

        assert restarted.find_customer(1001).primary_chequing_account == chequing.account_number

    def test_unknown_customer(self):
        assert not self.bank.create_account(AccountRequest(4242, "ChequingAccount"))
        assert not self.bank.storage.exists(RecordKind.ACCOUNTS)

    def test_unknown_account_type(self):
        self.bank.add_customer("alice", 1)
        assert not self.bank.create_account(AccountRequest(1001, "GoldAccount"))
        assert self.bank.get_customer_accounts(1001) == []

    def test_account_type_names_ignore_case(self):
        self.bank.add_customer("alice", 1)
        account = open_account(self.bank, 1001, "powersavingaccount")
        assert account.account_type == AccountType.POWER_SAVING

    def test_credit_accounts_use_configured_limits(self):
        bank = new_bank(credit_card_limit="750.00")
        bank.add_customer("alice", 1)

        card = open_account(bank, 1001, "CreditCardAccount")
        line = open_account(bank, 1001, "LineOfCreditAccount")

        assert card.credit_limit == Decimal('750.00')
        assert line.credit_limit == Decimal('5000.00')

    def test_account_created_event(self):
        events = []
        self.bank.event_dispatcher.subscribe(DomainEvent.ACCOUNT_CREATED, events.append)
        self.bank.add_customer("alice", 1)

        account = open_account(self.bank, 1001, "ChequingAccount")

        assert len(events) == 1
        assert events[0].entity_id == str(account.account_number)
        assert events[0].data["is_primary"] is True


class TestAccountRequests:

    def setup_method(self):
        self.bank = new_bank()
        self.bank.add_customer("alice", 1)

    def test_request_file_round_trip(self):
        requests = [
            AccountRequest(1001, "SavingAccount", datetime(2024, 1, 1, 10, 0)),
            AccountRequest(1001, "CreditCardAccount", datetime(2024, 1, 2, 11, 30)),
            AccountRequest(1002, "ChequingAccount", datetime(2024, 1, 3, 9, 15)),
        ]

        assert self.bank.update_account_request_file(requests)
        assert self.bank.get_new_account_requests() == requests

        assert self.bank.update_account_request_file([])
        assert self.bank.get_new_account_requests() == []

    def test_request_for_unknown_customer(self):
        assert self.bank.request_account(9999, "SavingAccount") is None
        assert self.bank.get_new_account_requests() == []

    def test_approve_removes_request(self):
        first = self.bank.request_account(1001, "ChequingAccount")
        second = self.bank.request_account(1001, "SavingAccount")

        assert self.bank.approve_account_request(first)

        assert self.bank.get_new_account_requests() == [second]
        accounts = self.bank.get_customer_accounts(1001)
        assert [a.account_type for a in accounts] == [AccountType.CHEQUING]

    def test_rejected_approval_keeps_request(self):
        bad = self.bank.request_account(1001, "GoldAccount")

        assert not self.bank.approve_account_request(bad)
        assert self.bank.get_new_account_requests() == [bad]

    def test_approving_a_request_twice_opens_one_account(self):
        request = self.bank.request_account(1001, "SavingAccount")

        assert self.bank.approve_account_request(request)
        assert not self.bank.approve_account_request(request)

        assert len(self.bank.get_customer_accounts(1001)) == 1

    def test_request_that_was_never_filed_is_not_approved(self):
        assert not self.bank.approve_account_request(AccountRequest(1001, "SavingAccount"))
        assert self.bank.get_customer_accounts(1001) == []

    def test_find_oldest_matching_request(self):
        first = self.bank.request_account(1001, "SavingAccount")
        second = self.bank.request_account(1001, "SavingAccount")

        assert self.bank.find_account_request(1001, "savingaccount") == first
        assert self.bank.find_account_request(1001, "SavingAccount", second.request_datetime) == second
        assert self.bank.find_account_request(1001, "ChequingAccount") is None
        assert self.bank.find_account_request(1002, "SavingAccount") is None

    def test_approval_reports_request_file_failure(self):
        storage = FailingRequestWrites()
        bank = new_bank(storage)
        bank.add_customer("alice", 1)
        request = bank.request_account(1001, "SavingAccount")
        storage.fail = True

        assert not bank.approve_account_request(request)
        assert bank.get_new_account_requests() == [request]

    def test_unwritable_request_file(self):
        bank = new_bank(ReadOnlyStorage())
        assert not bank.update_account_request_file([AccountRequest(1001, "SavingAccount")])


class TestBankScenarios:

    def setup_method(self):
        self.bank = new_bank()
        self.bank.add_customer("alice", 1)
        self.bank.add_customer("bob", 2)
        self.chequing = open_account(self.bank, 1001, "ChequingAccount").account_number
        self.saving = open_account(self.bank, 1001, "SavingAccount").account_number
        self.card = open_account(self.bank, 1001, "CreditCardAccount").account_number
        self.bobs = open_account(self.bank, 1002, "ChequingAccount").account_number

    def balance(self, account_number):
        return self.bank.find_account(account_number).balance

    def test_deposit_and_undo(self):
        self.bank.deposit(self.chequing, Decimal('100'))
        self.bank.deposit(self.chequing, Decimal('50'))
        assert self.balance(self.chequing) == Decimal('150.00')

        assert self.bank.undo_most_recent_transaction()
        assert self.balance(self.chequing) == Decimal('100.00')
        assert not self.bank.undo_most_recent_transaction()

        types = [t.transaction_type.value for t in self.bank.get_all_transactions()]
        assert types == ["Deposit", "Deposit", "Reversal"]

    def test_out_of_range_amounts_are_rejected(self):
        assert self.bank.deposit(self.chequing, Decimal('1e30')) is None
        assert self.bank.deposit(self.chequing, Decimal('NaN')) is None
        assert self.bank.pay(self.chequing, self.card, Decimal('1e30')) is None
        assert self.balance(self.chequing) == Decimal('0.00')
        assert self.bank.get_all_transactions() == []

    def test_most_recent_transaction(self):
        t = self.bank.deposit(self.chequing, Decimal('5'))
        assert self.bank.most_recent_transaction is t

    def test_overdraft_then_blocked(self):
        assert self.bank.withdraw(self.chequing, Decimal('100')) is not None
        assert self.balance(self.chequing) == Decimal('-100.00')
        assert self.bank.withdraw(self.chequing, Decimal('1')) is None

    def test_payment_into_credit_card(self):
        self.bank.deposit(self.chequing, Decimal('200'))

        assert self.bank.pay(self.chequing, self.card, Decimal('80')) is not None

        assert self.balance(self.chequing) == Decimal('120.00')
        assert self.balance(self.card) == Decimal('-80.00')

    def test_transfer_to_other_customer_refused(self):
        self.bank.deposit(self.chequing, Decimal('50'))
        assert self.bank.transfer(self.chequing, self.bobs, Decimal('10')) is None
        assert self.bank.pay(self.chequing, self.bobs, Decimal('10')) is not None
        assert self.balance(self.bobs) == Decimal('10.00')

    def test_undo_specific_transaction(self):
        first = self.bank.deposit(self.saving, Decimal('30'))
        self.bank.deposit(self.saving, Decimal('20'))

        assert self.bank.undo_transaction(first.transaction_id)
        assert self.balance(self.saving) == Decimal('20.00')
        assert self.bank.find_transaction(3).counterparty_number == first.transaction_id

    def test_foreign_deposit(self):
        t = self.bank.deposit_foreign(self.saving, Decimal('100'), "USD")
        assert t.amount == Decimal('135.00')
        assert not self.bank.undo_most_recent_transaction()

    def test_account_history(self):
        self.bank.deposit(self.chequing, Decimal('50'))
        self.bank.transfer(self.chequing, self.saving, Decimal('20'))

        history = self.bank.get_account_transactions(self.saving)
        assert [t.transaction_type.value for t in history] == ["Transfer"]

    def test_full_reload_after_mutation(self):
        bank = new_bank(full_reload_after_mutation=True)
        reloads = []
        bank.event_dispatcher.subscribe(DomainEvent.BANK_RELOADED, reloads.append)
        bank.add_customer("carol", 3)
        account = open_account(bank, 1001, "ChequingAccount")

        bank.deposit(account.account_number, Decimal('10'))
        assert bank.undo_most_recent_transaction()

        assert len(reloads) == 4
        assert bank.find_account(account.account_number).balance == Decimal('0.00')


class TestPersistence:

    def test_state_survives_restart(self, tmp_path):
        config = AtmBankConfig(data_dir=str(tmp_path))
        bank = Bank(storage=FlatFileStorage.from_config(config), config=config)
        bank.add_customer("alice", 1)
        open_account(bank, 1001, "ChequingAccount")
        bank.deposit(1, Decimal('100'))
        bank.withdraw(1, Decimal('30.50'))
        bank.request_account(1001, "SavingAccount")

        restarted = Bank(storage=FlatFileStorage.from_config(config), config=config)

        assert restarted.find_customer(1001).username == "alice"
        assert restarted.find_account(1).balance == Decimal('69.50')
        assert restarted.find_account(1).recent_transaction_id == 2
        assert len(restarted.get_all_transactions()) == 2
        assert len(restarted.get_new_account_requests()) == 1
        assert restarted.most_recent_transaction is None

        assert (tmp_path / "transactions.txt").read_text(encoding="utf-8").count("\n") == 2

    def test_malformed_account_line_is_skipped(self, tmp_path):
        config = AtmBankConfig(data_dir=str(tmp_path))
        (tmp_path / "accounts.txt").write_text(
            "SavingAccount\t1\t1001\t10.00\t2024-01-01T00:00:00\t0\n"
            "SavingAccount\tnot-a-number\n",
            encoding="utf-8"
        )

        bank = Bank(storage=FlatFileStorage.from_config(config), config=config)

        assert [a.account_number for a in bank.accounts.get_all_accounts()] == [1]

    def test_storage_failure_reports_false(self):
        storage = InMemoryStorage()
        bank = new_bank(storage)
        bank.add_customer("alice", 1)
        open_account(bank, 1001, "ChequingAccount")

        read_only = ReadOnlyStorage()
        read_only._data = storage._data
        restarted = new_bank(read_only)

        assert restarted.deposit(1, Decimal('10')) is None
        assert restarted.add_customer("bob", 2) is None
        assert not restarted.create_account(AccountRequest(1001, "SavingAccount"))
        assert restarted.find_account(1).balance == Decimal('0.00')
