"""
Customer Module

Minimal customer identity records. The bank only needs to know that a
customer number exists and which chequing account is the customer's
primary one; the latter is a cached back-reference rebuilt on reload.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from .storage import StorageInterface, RecordFile, RecordKind
from .logging_config import get_logger, log_action


@dataclass
class Customer:
    """A bank customer"""
    customer_number: int
    username: str
    sin_number: int
    primary_chequing_account: Optional[int] = None  # not persisted

    def __post_init__(self):
        if not self.username or not self.username.strip():
            raise ValueError("Customer username must not be empty")


def customer_to_fields(customer: Customer) -> List[str]:
    return [str(customer.customer_number), customer.username, str(customer.sin_number)]


def customer_from_fields(fields: List[str]) -> Customer:
    if len(fields) != 3:
        raise ValueError(f"Expected 3 customer fields, got {len(fields)}")
    return Customer(
        customer_number=int(fields[0]),
        username=fields[1],
        sin_number=int(fields[2])
    )


class CustomerRegistry:
    """In-memory index of customers keyed by customer number"""

    def __init__(self, storage: StorageInterface, first_customer_number: int = 1001):
        self.storage = storage
        self.first_customer_number = first_customer_number
        self.logger = get_logger("atm_bank.customers")
        self._file = RecordFile(storage, RecordKind.CUSTOMERS, customer_from_fields,
                                customer_to_fields, self.logger)
        self._customers: Dict[int, Customer] = {}

    def reload(self) -> None:
        """Rebuild the index from the store"""
        self._customers = {c.customer_number: c for c in self._file.read_all()}

    def get_customer(self, customer_number: int) -> Optional[Customer]:
        return self._customers.get(customer_number)

    def get_all_customers(self) -> List[Customer]:
        return sorted(self._customers.values(), key=lambda c: c.customer_number)

    def next_customer_number(self) -> int:
        if not self._customers:
            return self.first_customer_number
        return max(max(self._customers), self.first_customer_number - 1) + 1

    def add_customer(self, username: str, sin_number: int) -> Customer:
        """
        Create and persist a new customer

        Raises:
            ValueError: If the username is empty or already taken
            OSError: If the customer file cannot be written
        """
        if any(c.username == username for c in self._customers.values()):
            raise ValueError(f"Username {username!r} is already taken")

        customer = Customer(
            customer_number=self.next_customer_number(),
            username=username,
            sin_number=sin_number
        )
        self._file.write_all(self.get_all_customers() + [customer])
        self._customers[customer.customer_number] = customer

        log_action(
            self.logger, "info", f"Customer created: {customer.customer_number}",
            action="create_customer", resource=f"customer:{customer.customer_number}"
        )
        return customer
