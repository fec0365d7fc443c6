"""
Account Management Module

Accounts are one dataclass tagged by AccountType. Behaviour that differs by
kind (sign of the balance, debit rules, type-specific file fields) lives in
the ACCOUNT_KINDS operation table rather than in subclasses.

Asset accounts (chequing, saving, power saving) hold the customer's funds.
Debt accounts (credit card, line of credit) hold what the customer owes, so
money paid in lowers their balance.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from .currency import ZERO, floor_amount, decimal_from_string, format_amount
from .storage import (
    StorageInterface, RecordFile, RecordKind,
    format_timestamp, parse_timestamp, format_bool, parse_bool
)
from .logging_config import get_logger, log_action


class AccountType(Enum):
    """Account kinds as they are named in the account file and in requests"""
    CHEQUING = "ChequingAccount"
    SAVING = "SavingAccount"
    POWER_SAVING = "PowerSavingAccount"
    CREDIT_CARD = "CreditCardAccount"
    LINE_OF_CREDIT = "LineOfCreditAccount"

    @classmethod
    def from_name(cls, name: str) -> Optional["AccountType"]:
        """Match a requested account type name, ignoring case"""
        if not name:
            return None
        wanted = name.strip().lower()
        for account_type in cls:
            if account_type.value.lower() == wanted:
                return account_type
        return None


@dataclass
class Account:
    """
    Bank account with a fixed-point balance

    is_primary applies to chequing accounts only; credit_limit applies to
    credit card and line of credit accounts only.
    """
    account_number: int
    customer_number: int
    account_type: AccountType
    balance: Decimal = ZERO
    open_datetime: datetime = field(default_factory=datetime.now)
    recent_transaction_id: int = 0
    is_primary: bool = False
    credit_limit: Optional[Decimal] = None

    def __post_init__(self):
        self.balance = floor_amount(self.balance)
        kind = self.kind

        if self.is_primary and not kind.has_primary_flag:
            raise ValueError(f"{self.account_type.value} cannot be a primary account")

        if kind.has_credit_limit:
            if self.credit_limit is None:
                raise ValueError(f"{self.account_type.value} requires a credit limit")
            self.credit_limit = floor_amount(self.credit_limit)
        elif self.credit_limit is not None:
            raise ValueError(f"{self.account_type.value} does not carry a credit limit")

    @property
    def kind(self) -> "AccountKind":
        return ACCOUNT_KINDS[self.account_type]

    @property
    def is_debt_account(self) -> bool:
        """Balance is an amount owed rather than funds held"""
        return self.kind.is_debt

    def add_amount(self, delta: Decimal) -> None:
        """Add delta (may be negative) to the balance, floored to 2 places"""
        self.balance = floor_amount(self.balance + delta)

    def balance_delta(self, funds_delta: Decimal) -> Decimal:
        """Translate money moved into the account into a balance change"""
        return -funds_delta if self.is_debt_account else funds_delta


def _asset_debit(account: Account, amount: Decimal, overdraft_limit: Decimal) -> bool:
    return account.balance - amount >= ZERO


def _chequing_debit(account: Account, amount: Decimal, overdraft_limit: Decimal) -> bool:
    # Overdraft is only available while the account is not already overdrawn
    return account.balance >= ZERO and account.balance - amount >= -overdraft_limit


def _no_debit(account: Account, amount: Decimal, overdraft_limit: Decimal) -> bool:
    return False


def _credit_debit(account: Account, amount: Decimal, overdraft_limit: Decimal) -> bool:
    return account.balance + amount <= account.credit_limit


@dataclass(frozen=True)
class AccountKind:
    """Operation table row for one account type"""
    is_debt: bool
    has_primary_flag: bool
    has_credit_limit: bool
    can_debit: Callable[[Account, Decimal, Decimal], bool]


ACCOUNT_KINDS: Dict[AccountType, AccountKind] = {
    AccountType.CHEQUING: AccountKind(False, True, False, _chequing_debit),
    AccountType.SAVING: AccountKind(False, False, False, _asset_debit),
    AccountType.POWER_SAVING: AccountKind(False, False, False, _asset_debit),
    AccountType.CREDIT_CARD: AccountKind(True, False, True, _no_debit),
    AccountType.LINE_OF_CREDIT: AccountKind(True, False, True, _credit_debit),
}


def account_to_fields(account: Account) -> List[str]:
    fields = [
        account.account_type.value,
        str(account.account_number),
        str(account.customer_number),
        format_amount(account.balance),
        format_timestamp(account.open_datetime),
        str(account.recent_transaction_id),
    ]
    if account.kind.has_primary_flag:
        fields.append(format_bool(account.is_primary))
    elif account.kind.has_credit_limit:
        fields.append(format_amount(account.credit_limit))
    return fields


def account_from_fields(fields: List[str]) -> Account:
    account_type = AccountType(fields[0])
    kind = ACCOUNT_KINDS[account_type]
    expected = 7 if (kind.has_primary_flag or kind.has_credit_limit) else 6
    if len(fields) != expected:
        raise ValueError(f"Expected {expected} fields for {account_type.value}, got {len(fields)}")

    return Account(
        account_number=int(fields[1]),
        customer_number=int(fields[2]),
        account_type=account_type,
        balance=decimal_from_string(fields[3]),
        open_datetime=parse_timestamp(fields[4]),
        recent_transaction_id=int(fields[5]),
        is_primary=parse_bool(fields[6]) if kind.has_primary_flag else False,
        credit_limit=decimal_from_string(fields[6]) if kind.has_credit_limit else None
    )


class AccountRegistry:
    """
    In-memory index of live accounts keyed by account number

    The index only ever holds committed state: writers build modified copies,
    persist them with write_snapshot and swap them in with commit once the
    store accepted the write.
    """

    def __init__(
        self,
        storage: StorageInterface,
        chequing_overdraft_limit: Decimal = Decimal("100.00"),
        credit_card_limit: Decimal = Decimal("1000.00"),
        line_of_credit_limit: Decimal = Decimal("5000.00"),
        first_account_number: int = 1
    ):
        self.storage = storage
        self.chequing_overdraft_limit = floor_amount(chequing_overdraft_limit)
        self.default_credit_limits = {
            AccountType.CREDIT_CARD: floor_amount(credit_card_limit),
            AccountType.LINE_OF_CREDIT: floor_amount(line_of_credit_limit),
        }
        self.first_account_number = first_account_number
        self.logger = get_logger("atm_bank.accounts")
        self._file = RecordFile(storage, RecordKind.ACCOUNTS, account_from_fields,
                                account_to_fields, self.logger)
        self._accounts: Dict[int, Account] = {}

    def reload(self) -> None:
        """Rebuild the index from the store"""
        self._accounts = {a.account_number: a for a in self._file.read_all()}

    def get_account(self, account_number: int) -> Optional[Account]:
        return self._accounts.get(account_number)

    def get_customer_accounts(self, customer_number: int) -> List[Account]:
        return [a for a in self.get_all_accounts() if a.customer_number == customer_number]

    def get_all_accounts(self) -> List[Account]:
        return sorted(self._accounts.values(), key=lambda a: a.account_number)

    def next_account_number(self) -> int:
        if not self._accounts:
            return self.first_account_number
        return max(max(self._accounts), self.first_account_number - 1) + 1

    def new_account(
        self,
        customer_number: int,
        account_type: AccountType,
        is_primary: bool = False,
        open_datetime: Optional[datetime] = None
    ) -> Account:
        """Build (but do not persist) an empty account with the next free number"""
        return Account(
            account_number=self.next_account_number(),
            customer_number=customer_number,
            account_type=account_type,
            open_datetime=open_datetime or datetime.now(),
            is_primary=is_primary,
            credit_limit=self.default_credit_limits.get(account_type)
        )

    def add_account(self, account: Account) -> None:
        """
        Persist a new account and index it

        Raises:
            ValueError: If the account number is already in use
            OSError: If the account file cannot be written
        """
        if account.account_number in self._accounts:
            raise ValueError(f"Account {account.account_number} already exists")
        self.write_snapshot([account])
        self.commit([account])

        log_action(
            self.logger, "info", f"Account created: {account.account_number}",
            action="create_account", resource=f"account:{account.account_number}",
            extra={
                "customer_number": account.customer_number,
                "account_type": account.account_type.value,
                "is_primary": account.is_primary
            }
        )

    def can_debit(self, account: Account, amount: Decimal) -> bool:
        """Check the account kind's rule for taking amount out of the account"""
        return account.kind.can_debit(account, amount, self.chequing_overdraft_limit)

    def add_amount(self, account_number: int, delta: Decimal) -> Optional[Account]:
        """
        Change one account's balance by delta and persist it

        Returns the updated account, or None if the account does not exist or
        the account file could not be written (the index is then unchanged).
        """
        account = self.get_account(account_number)
        if account is None:
            return None

        updated = replace(account)
        updated.add_amount(delta)
        try:
            self.write_snapshot([updated])
        except (OSError, ValueError) as e:
            log_action(
                self.logger, "error", f"Cannot persist account {account_number}: {e}",
                action="add_amount", resource=f"account:{account_number}"
            )
            return None
        self.commit([updated])
        return updated

    def write_snapshot(self, updated: Iterable[Account]) -> None:
        """Rewrite the whole account file with updated accounts substituted"""
        merged = dict(self._accounts)
        for account in updated:
            merged[account.account_number] = account
        self._file.write_all(sorted(merged.values(), key=lambda a: a.account_number))

    def commit(self, updated: Iterable[Account]) -> None:
        """Swap persisted copies into the index"""
        for account in updated:
            self._accounts[account.account_number] = account
