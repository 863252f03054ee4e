"""
FastAPI REST API Module

Thin HTTP surface over the wallet core: account creation, balance lookup,
deposits/withdrawals and transaction history. Core errors are mapped to
status codes here and rendered in one consistent JSON shape.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from .system import WalletSystem
from .accounts import Account
from .transactions import Transaction
from .errors import WalletError, ErrorKind
from .logging_config import get_logger, setup_logging


logger = get_logger("wallet.api")


STATUS_BY_KIND = {
    ErrorKind.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_TRANSACTION_TYPE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.ACCOUNT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INSUFFICIENT_FUNDS: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INTERNAL_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# Pydantic models for API requests/responses
class CreateTransactionRequest(BaseModel):
    account_id: str = Field(..., description="Account ID", examples=["123e4567-e89b-12d3-a456-426655440000"])
    amount: Decimal = Field(..., description="Transaction amount", examples=["100"])
    type: str = Field(..., description="DEPOSIT or WITHDRAWAL", examples=["DEPOSIT"])


class AccountResponse(BaseModel):
    id: str
    balance: str
    created_at: str

    @classmethod
    def from_account(cls, account: Account) -> 'AccountResponse':
        return cls(id=account.id, balance=str(account.balance), created_at=account.created_at.isoformat())


class BalanceResponse(BaseModel):
    account_id: str
    balance: str


class TransactionResponse(BaseModel):
    id: str
    account_id: str
    amount: str
    type: str
    sequence: int
    created_at: str

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> 'TransactionResponse':
        return cls(
            id=transaction.id,
            account_id=transaction.account_id,
            amount=str(transaction.amount),
            type=transaction.transaction_type.value,
            sequence=transaction.sequence,
            created_at=transaction.created_at.isoformat(),
        )


class ReconciliationResponse(BaseModel):
    account_id: str
    recorded_balance: str
    replayed_balance: str
    transaction_count: int
    is_consistent: bool


def _error_body(status_code: int, request: Request, message: str, kind: Optional[str] = None) -> Dict[str, Any]:
    body = {
        "status_code": status_code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": request.url.path,
        "message": message,
    }
    if kind:
        body["kind"] = kind
    return body


def _require_uuid(value: str, message: str) -> str:
    try:
        uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)
    return value


def get_system(request: Request) -> WalletSystem:
    return request.app.state.system


def create_app(system: Optional[WalletSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    system = system or WalletSystem()

    app = FastAPI(
        title="Wallet Core API",
        description="Account balances with an append-only transaction log",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=system.config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(WalletError)
    async def wallet_error_handler(request: Request, exc: WalletError):
        status_code = STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
        return JSONResponse(
            status_code=status_code,
            content=_error_body(status_code, request, exc.message, exc.kind.value)
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.status_code, request, str(exc.detail))
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return JSONResponse(
            status_code=status_code,
            content=_error_body(status_code, request, "Internal server error", ErrorKind.INTERNAL_FAILURE.value)
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/accounts", status_code=status.HTTP_201_CREATED, response_model=AccountResponse)
    def create_account(system: WalletSystem = Depends(get_system)):
        """Create a new account with a zero balance"""
        return AccountResponse.from_account(system.account_manager.create_account())

    @app.get("/accounts/{account_id}", response_model=BalanceResponse)
    def get_balance(account_id: str, system: WalletSystem = Depends(get_system)):
        """Get the current balance of an account"""
        _require_uuid(account_id, "Invalid account ID format")
        balance = system.account_manager.get_balance(account_id)
        return BalanceResponse(account_id=account_id, balance=str(balance))

    @app.get("/accounts/{account_id}/reconciliation", response_model=ReconciliationResponse)
    def reconcile_account(account_id: str, system: WalletSystem = Depends(get_system)):
        """Replay the account's history and compare it with the stored balance"""
        _require_uuid(account_id, "Invalid account ID format")
        result = system.transaction_processor.reconcile(account_id)
        return ReconciliationResponse(
            account_id=result.account_id,
            recorded_balance=str(result.recorded_balance),
            replayed_balance=str(result.replayed_balance),
            transaction_count=result.transaction_count,
            is_consistent=result.is_consistent,
        )

    @app.post("/transactions", status_code=status.HTTP_201_CREATED, response_model=TransactionResponse)
    def create_transaction(request: CreateTransactionRequest, system: WalletSystem = Depends(get_system)):
        """Deposit into or withdraw from an account"""
        _require_uuid(request.account_id, "Invalid account ID format")
        transaction = system.transaction_processor.apply_transaction(
            request.account_id, request.amount, request.type
        )
        return TransactionResponse.from_transaction(transaction)

    @app.get("/transactions/{account_id}", response_model=List[TransactionResponse])
    def list_transactions(account_id: str, system: WalletSystem = Depends(get_system)):
        """List an account's transactions, newest first"""
        _require_uuid(account_id, "Invalid account ID format")
        return [
            TransactionResponse.from_transaction(t)
            for t in system.transaction_processor.list_transactions(account_id)
        ]

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, system: Optional[WalletSystem] = None):
    """Configure logging and serve the API with uvicorn"""
    system = system or WalletSystem()
    config = system.config
    setup_logging(config.log_level, "wallet", config.log_format, config.log_file)
    uvicorn.run(
        create_app(system),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level=config.log_level.lower()
    )
