"""
Storage Backend Module

Provides the record store: an abstract line-oriented storage interface with
flat-file (persistence) and in-memory (testing) implementations, plus the
RecordFile codec layer that turns tab-delimited lines into records.

Account, customer and request files are rewritten wholesale; the transaction
file is only ever appended to. All monetary values are stored as decimal text.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Generic, Iterable, List, Optional, TypeVar, Union
import logging
import os
import tempfile
import threading

from .logging_config import get_logger, log_action


FIELD_DELIMITER = "\t"

T = TypeVar("T")


class RecordKind(Enum):
    """Kinds of records held by the store"""
    CUSTOMERS = "customers"
    ACCOUNTS = "accounts"
    TRANSACTIONS = "transactions"
    ACCOUNT_REQUESTS = "account_requests"


def format_timestamp(value: datetime) -> str:
    """Local date-time text, symmetric with parse_timestamp"""
    return value.isoformat()


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.strip())


def format_bool(value: bool) -> str:
    return "true" if value else "false"


def parse_bool(value: str) -> bool:
    text = value.strip().lower()
    if text == "true":
        return True
    if text == "false":
        return False
    raise ValueError(f"Not a boolean: {value!r}")


class StorageInterface(ABC):
    """Abstract interface for line-oriented storage backends"""

    @abstractmethod
    def read_lines(self, kind: RecordKind) -> List[str]:
        """Read every line of a record kind (without line terminators)"""
        pass

    @abstractmethod
    def write_lines(self, kind: RecordKind, lines: Iterable[str]) -> None:
        """Replace the whole content of a record kind"""
        pass

    @abstractmethod
    def append_line(self, kind: RecordKind, line: str) -> None:
        """Append one line to a record kind"""
        pass

    @abstractmethod
    def exists(self, kind: RecordKind) -> bool:
        """Check whether any storage has been created for a record kind"""
        pass

    def close(self) -> None:
        """Release backend resources (default no-op)"""
        pass

    def begin_transaction(self) -> None:
        """Start an atomic unit (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit the current atomic unit (default no-op)"""
        pass

    def rollback(self) -> None:
        """Undo every write made since begin_transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class _SnapshotTransactionMixin:
    """
    Atomic units for backends without native transactions: the content of
    each record kind is captured before its first write and put back on
    rollback.
    """

    def _init_transactions(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Dict[RecordKind, Optional[List[str]]] = {}

    def _remember(self, kind: RecordKind) -> None:
        if self._depth and kind not in self._snapshot:
            self._snapshot[kind] = self._capture(kind)

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = {}
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = {}
        self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        try:
            if self._depth == 0:
                snapshot, self._snapshot = self._snapshot, {}
                for kind, lines in snapshot.items():
                    self._restore(kind, lines)
        finally:
            self._lock.release()


class InMemoryStorage(_SnapshotTransactionMixin, StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[RecordKind, List[str]] = {}
        self._init_transactions()

    def read_lines(self, kind: RecordKind) -> List[str]:
        with self._lock:
            return list(self._data.get(kind, []))

    def write_lines(self, kind: RecordKind, lines: Iterable[str]) -> None:
        with self._lock:
            self._remember(kind)
            self._data[kind] = list(lines)

    def append_line(self, kind: RecordKind, line: str) -> None:
        with self._lock:
            self._remember(kind)
            self._data.setdefault(kind, []).append(line)

    def exists(self, kind: RecordKind) -> bool:
        with self._lock:
            return kind in self._data

    def _capture(self, kind: RecordKind) -> Optional[List[str]]:
        if kind not in self._data:
            return None
        return list(self._data[kind])

    def _restore(self, kind: RecordKind, lines: Optional[List[str]]) -> None:
        if lines is None:
            self._data.pop(kind, None)
        else:
            self._data[kind] = lines


class FlatFileStorage(_SnapshotTransactionMixin, StorageInterface):
    """
    Flat-file storage: one newline-terminated text file per record kind.

    Handles are opened and closed inside each call. Rewrites go through a
    temporary file in the same directory followed by os.replace.
    """

    def __init__(self, data_dir: Union[str, Path], file_names: Optional[Dict[RecordKind, str]] = None):
        self.data_dir = Path(data_dir)
        self.file_names = {kind: f"{kind.value}.txt" for kind in RecordKind}
        if file_names:
            self.file_names.update(file_names)
        self._init_transactions()

    @classmethod
    def from_config(cls, config) -> "FlatFileStorage":
        return cls(config.data_dir, {
            RecordKind.CUSTOMERS: config.customer_file,
            RecordKind.ACCOUNTS: config.account_file,
            RecordKind.TRANSACTIONS: config.transaction_file,
            RecordKind.ACCOUNT_REQUESTS: config.account_request_file,
        })

    def path_for(self, kind: RecordKind) -> Path:
        return self.data_dir / self.file_names[kind]

    def read_lines(self, kind: RecordKind) -> List[str]:
        path = self.path_for(kind)
        with self._lock:
            if not path.is_file():
                return []
            with open(path, "r", encoding="utf-8", newline="\n") as handle:
                return [line.rstrip("\r\n") for line in handle if line.strip()]

    def write_lines(self, kind: RecordKind, lines: Iterable[str]) -> None:
        with self._lock:
            self._remember(kind)
            self._replace(self.path_for(kind), list(lines))

    def append_line(self, kind: RecordKind, line: str) -> None:
        path = self.path_for(kind)
        with self._lock:
            self._remember(kind)
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8", newline="\n") as handle:
                handle.write(line + "\n")

    def exists(self, kind: RecordKind) -> bool:
        return self.path_for(kind).is_file()

    def _replace(self, path: Path, lines: List[str]) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.data_dir), prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
                for line in lines:
                    handle.write(line + "\n")
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _capture(self, kind: RecordKind) -> Optional[List[str]]:
        if not self.exists(kind):
            return None
        return self.read_lines(kind)

    def _restore(self, kind: RecordKind, lines: Optional[List[str]]) -> None:
        path = self.path_for(kind)
        if lines is None:
            if path.exists():
                path.unlink()
        else:
            self._replace(path, lines)


class RecordFile(Generic[T]):
    """
    Positional, tab-delimited codec over one record kind.

    read_all never raises: unreadable storage and malformed lines are
    reported on the operator log and whatever parsed is returned. Writes
    propagate OSError so the caller can turn it into a failed result.
    """

    def __init__(
        self,
        storage: StorageInterface,
        kind: RecordKind,
        parse: Callable[[List[str]], T],
        render: Callable[[T], List[str]],
        logger: Optional[logging.Logger] = None
    ):
        self.storage = storage
        self.kind = kind
        self._parse = parse
        self._render = render
        self.logger = logger or get_logger("atm_bank.storage")

    def read_all(self) -> List[T]:
        """Parse every line of the record kind, skipping malformed ones"""
        try:
            lines = self.storage.read_lines(self.kind)
        except OSError as e:
            log_action(
                self.logger, "error", f"Cannot read {self.kind.value} records: {e}",
                action="read_records", resource=f"store:{self.kind.value}"
            )
            return []

        records: List[T] = []
        for line_number, line in enumerate(lines, start=1):
            try:
                records.append(self._parse(line.split(FIELD_DELIMITER)))
            except (ValueError, IndexError, KeyError) as e:
                log_action(
                    self.logger, "warning", f"Skipping malformed {self.kind.value} line {line_number}: {e}",
                    action="read_records", resource=f"store:{self.kind.value}",
                    extra={"line_number": line_number, "line": line}
                )
        return records

    def format_line(self, record: T) -> str:
        fields = self._render(record)
        for value in fields:
            if FIELD_DELIMITER in value or "\n" in value:
                raise ValueError(f"Field value {value!r} contains a delimiter")
        return FIELD_DELIMITER.join(fields)

    def write_all(self, records: Iterable[T]) -> None:
        """Rewrite the whole record kind from records, in order"""
        self.storage.write_lines(self.kind, [self.format_line(record) for record in records])

    def append(self, record: T) -> None:
        """Append one record"""
        self.storage.append_line(self.kind, self.format_line(record))
