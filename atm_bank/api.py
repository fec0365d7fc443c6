"""
FastAPI REST API Module

Thin presentation layer over the Bank facade: read-only projected views of
customers, accounts, pending account requests and the transaction log, plus
commands to post transactions, approve requests and undo. It never touches
the record files directly.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from pydantic import BaseModel, Field
import uvicorn

from .bank import Bank
from .accounts import Account
from .account_requests import AccountRequest
from .customers import Customer
from .transactions import Transaction
from .currency import decimal_from_string, format_amount
from .config import get_config
from .logging_config import setup_logging


class CreateCustomerRequest(BaseModel):
    username: str
    sin_number: int


class AccountRequestModel(BaseModel):
    customer_number: int
    account_type: str = Field(..., description="ChequingAccount, SavingAccount, PowerSavingAccount, "
                                               "CreditCardAccount or LineOfCreditAccount")
    request_datetime: Optional[datetime] = Field(None, description="Picks one request when several match; "
                                                               "the oldest match is used when omitted")


class AmountRequest(BaseModel):
    account_number: int
    amount: str = Field(..., description="Decimal amount as string")

    def to_decimal(self) -> Decimal:
        return _parse_amount(self.amount)


class ForeignDepositRequest(AmountRequest):
    currency: str = Field(..., description="3-letter currency code (USD, EUR, etc.)")


class MoveRequest(AmountRequest):
    counterparty_account_number: int


def _parse_amount(value: str) -> Decimal:
    try:
        return decimal_from_string(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def customer_to_dict(customer: Customer) -> Dict[str, Any]:
    return {
        "customer_number": customer.customer_number,
        "username": customer.username,
        "primary_chequing_account": customer.primary_chequing_account,
    }


def account_to_dict(account: Account) -> Dict[str, Any]:
    return {
        "account_number": account.account_number,
        "customer_number": account.customer_number,
        "account_type": account.account_type.value,
        "balance": format_amount(account.balance),
        "open_datetime": account.open_datetime.isoformat(),
        "recent_transaction_id": account.recent_transaction_id,
        "is_primary": account.is_primary,
        "credit_limit": format_amount(account.credit_limit) if account.credit_limit is not None else None,
    }


def request_to_dict(request: AccountRequest) -> Dict[str, Any]:
    return {
        "customer_number": request.customer_number,
        "account_type": request.account_type,
        "request_datetime": request.request_datetime.isoformat(),
    }


def transaction_to_dict(transaction: Transaction) -> Dict[str, Any]:
    result = {
        "transaction_id": transaction.transaction_id,
        "customer_number": transaction.customer_number,
        "account_number": transaction.account_number,
        "transaction_type": transaction.transaction_type.value,
        "amount": format_amount(transaction.amount),
        "timestamp": transaction.timestamp.isoformat(),
        "counterparty_number": transaction.counterparty_number,
        "undoable": transaction.undoable,
        "is_reversing_entry": transaction.is_reversing_entry,
    }
    if transaction.foreign_currency:
        result["foreign_amount"] = format_amount(transaction.foreign_amount)
        result["foreign_currency"] = transaction.foreign_currency
    return result


def get_bank(request: Request) -> Bank:
    return request.app.state.bank


def _posted(transaction: Optional[Transaction], what: str) -> Dict[str, Any]:
    if transaction is None:
        raise HTTPException(status_code=400, detail=f"{what} was not carried out")
    return transaction_to_dict(transaction)


def create_app(bank: Optional[Bank] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="ATM Bank API",
        description="Teaching ATM back end with an append-only ledger and undo",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.bank = bank if bank is not None else Bank()

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now().isoformat()}

    @app.post("/customers", status_code=201)
    async def create_customer(body: CreateCustomerRequest, bank: Bank = Depends(get_bank)):
        customer = bank.add_customer(body.username, body.sin_number)
        if customer is None:
            raise HTTPException(status_code=400, detail="Customer was not created")
        return customer_to_dict(customer)

    @app.get("/customers/{customer_number}")
    async def get_customer(customer_number: int, bank: Bank = Depends(get_bank)):
        customer = bank.find_customer(customer_number)
        if customer is None:
            raise HTTPException(status_code=404, detail="Customer not found")
        result = customer_to_dict(customer)
        result["accounts"] = [account_to_dict(a) for a in bank.get_customer_accounts(customer_number)]
        return result

    @app.get("/accounts/{account_number}")
    async def get_account(account_number: int, bank: Bank = Depends(get_bank)):
        account = bank.find_account(account_number)
        if account is None:
            raise HTTPException(status_code=404, detail="Account not found")
        return account_to_dict(account)

    @app.get("/accounts/{account_number}/transactions")
    async def get_account_transactions(account_number: int, bank: Bank = Depends(get_bank)):
        if bank.find_account(account_number) is None:
            raise HTTPException(status_code=404, detail="Account not found")
        return [transaction_to_dict(t) for t in bank.get_account_transactions(account_number)]

    @app.get("/account-requests")
    async def list_account_requests(bank: Bank = Depends(get_bank)) -> List[Dict[str, Any]]:
        return [request_to_dict(r) for r in bank.get_new_account_requests()]

    @app.post("/account-requests", status_code=201)
    async def file_account_request(body: AccountRequestModel, bank: Bank = Depends(get_bank)):
        request = bank.request_account(body.customer_number, body.account_type)
        if request is None:
            raise HTTPException(status_code=404, detail="Customer not found")
        return request_to_dict(request)

    @app.post("/account-requests/approve")
    async def approve_account_request(body: AccountRequestModel, bank: Bank = Depends(get_bank)):
        if bank.find_customer(body.customer_number) is None:
            raise HTTPException(status_code=404, detail="Customer not found")
        pending = bank.find_account_request(body.customer_number, body.account_type, body.request_datetime)
        if pending is None:
            raise HTTPException(status_code=404, detail="Account request not found")
        if not bank.approve_account_request(pending):
            raise HTTPException(status_code=400, detail="Account was not created")
        return {"message": "Account created",
                "accounts": [account_to_dict(a) for a in bank.get_customer_accounts(body.customer_number)]}

    @app.get("/transactions")
    async def list_transactions(bank: Bank = Depends(get_bank)):
        return [transaction_to_dict(t) for t in bank.get_all_transactions()]

    @app.get("/transactions/{transaction_id}")
    async def get_transaction(transaction_id: int, bank: Bank = Depends(get_bank)):
        transaction = bank.find_transaction(transaction_id)
        if transaction is None:
            raise HTTPException(status_code=404, detail="Transaction not found")
        return transaction_to_dict(transaction)

    @app.post("/transactions/deposit")
    async def deposit(body: AmountRequest, bank: Bank = Depends(get_bank)):
        return _posted(bank.deposit(body.account_number, body.to_decimal()), "Deposit")

    @app.post("/transactions/foreign-deposit")
    async def foreign_deposit(body: ForeignDepositRequest, bank: Bank = Depends(get_bank)):
        return _posted(bank.deposit_foreign(body.account_number, body.to_decimal(), body.currency),
                       "Foreign deposit")

    @app.post("/transactions/withdraw")
    async def withdraw(body: AmountRequest, bank: Bank = Depends(get_bank)):
        return _posted(bank.withdraw(body.account_number, body.to_decimal()), "Withdrawal")

    @app.post("/transactions/transfer")
    async def transfer(body: MoveRequest, bank: Bank = Depends(get_bank)):
        return _posted(bank.transfer(body.account_number, body.counterparty_account_number,
                                     body.to_decimal()), "Transfer")

    @app.post("/transactions/payment")
    async def payment(body: MoveRequest, bank: Bank = Depends(get_bank)):
        return _posted(bank.pay(body.account_number, body.counterparty_account_number,
                                body.to_decimal()), "Payment")

    @app.post("/transactions/undo")
    async def undo_most_recent(bank: Bank = Depends(get_bank)):
        if not bank.undo_most_recent_transaction():
            raise HTTPException(status_code=400, detail="Nothing to undo")
        return {"message": "Most recent transaction undone"}

    @app.post("/transactions/{transaction_id}/undo")
    async def undo_transaction(transaction_id: int, bank: Bank = Depends(get_bank)):
        if bank.find_transaction(transaction_id) is None:
            raise HTTPException(status_code=404, detail="Transaction not found")
        if not bank.undo_transaction(transaction_id):
            raise HTTPException(status_code=400, detail="Transaction cannot be undone")
        return {"message": f"Transaction {transaction_id} undone"}

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the API server with the configured logging and data directory"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        create_app(),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level="debug" if debug else "info"
    )
