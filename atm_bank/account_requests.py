"""
Account Request Module

Pending requests for new accounts, waiting for a manager's approval. The
request file is always rewritten wholesale from the in-memory list.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from .storage import StorageInterface, RecordFile, RecordKind, format_timestamp, parse_timestamp
from .logging_config import get_logger, log_action


@dataclass
class AccountRequest:
    """A customer's request for a new account of a given type"""
    customer_number: int
    account_type: str
    request_datetime: datetime = field(default_factory=datetime.now)


def request_to_fields(request: AccountRequest) -> List[str]:
    return [
        str(request.customer_number),
        request.account_type,
        format_timestamp(request.request_datetime),
    ]


def request_from_fields(fields: List[str]) -> AccountRequest:
    if len(fields) != 3:
        raise ValueError(f"Expected 3 account request fields, got {len(fields)}")
    return AccountRequest(
        customer_number=int(fields[0]),
        account_type=fields[1],
        request_datetime=parse_timestamp(fields[2])
    )


class AccountRequestBook:
    """Reads and rewrites the account request file"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.logger = get_logger("atm_bank.account_requests")
        self._file = RecordFile(storage, RecordKind.ACCOUNT_REQUESTS, request_from_fields,
                                request_to_fields, self.logger)

    def read_all(self) -> List[AccountRequest]:
        """All pending requests in file order"""
        return self._file.read_all()

    def write_all(self, requests: Iterable[AccountRequest]) -> bool:
        """Replace the request file with requests; False if it cannot be written"""
        requests = list(requests)
        try:
            self._file.write_all(requests)
        except (OSError, ValueError) as e:
            log_action(
                self.logger, "error", f"Cannot update account request file: {e}",
                action="update_account_requests", resource="store:account_requests"
            )
            return False
        return True

    def add_request(self, request: AccountRequest) -> bool:
        if not self.write_all(self.read_all() + [request]):
            return False
        log_action(
            self.logger, "info", f"Account requested by customer {request.customer_number}",
            action="request_account", resource=f"customer:{request.customer_number}",
            extra={"account_type": request.account_type}
        )
        return True

    def find_request(self, customer_number: int, account_type: str,
                     request_datetime: Optional[datetime] = None) -> Optional[AccountRequest]:
        """
        Oldest pending request of a customer for an account type

        The type matches case-insensitively. When request_datetime is given
        only the request filed at that moment matches.
        """
        wanted = account_type.strip().casefold()
        for request in self.read_all():
            if request.customer_number != customer_number:
                continue
            if request.account_type.strip().casefold() != wanted:
                continue
            if request_datetime is None or request.request_datetime == request_datetime:
                return request
        return None

    def remove_request(self, request: AccountRequest) -> bool:
        """Drop the first pending request equal to request"""
        pending = self.read_all()
        try:
            pending.remove(request)
        except ValueError:
            return False
        return self.write_all(pending)
