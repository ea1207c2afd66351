"""
Canonical Bank Data Model

Provider-agnostic shapes every provider implementation maps into, plus the
results returned by the connection lifecycle manager and the sync engine.
"""

from pydantic import BaseModel, Field, model_validator
from typing import Annotated, Optional, List, Union, Literal
from datetime import date, datetime
from decimal import Decimal

from banklink.app.models import (
    AccountType, ConnectionState, ProviderKind, TransactionKind
)


# Authorization initiation variants

class RedirectAuth(BaseModel):
    type: Literal["redirect"] = "redirect"
    url: str


class ClientHandleAuth(BaseModel):
    type: Literal["client_handle"] = "client_handle"
    token: str
    expires_at: Optional[datetime] = None


AuthInitiation = Annotated[Union[RedirectAuth, ClientHandleAuth], Field(discriminator="type")]


class CredentialGrant(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    provider_account_ref: Optional[str] = None


class CredentialRefresh(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


# Canonical account / transaction

class CanonicalAccount(BaseModel):
    provider_account_ref: str
    account_name: str
    account_type: AccountType
    currency: str
    current_balance: Decimal = Decimal("0.00")
    available_balance: Decimal = Decimal("0.00")
    account_mask: Optional[str] = None


class AccountBalance(BaseModel):
    current: Decimal
    available: Decimal


class CanonicalTransaction(BaseModel):
    provider_transaction_id: str
    amount: Decimal
    currency: str
    description: str = ""
    merchant_name: Optional[str] = None
    category: str = "Other"
    kind: TransactionKind
    transaction_date: date
    posted_date: Optional[date] = None
    pending: bool = False

    @model_validator(mode="after")
    def _sign_matches_kind(self):
        if self.kind == TransactionKind.DEBIT and self.amount > 0:
            raise ValueError(f"Debit {self.provider_transaction_id} has positive amount {self.amount}")
        if self.kind == TransactionKind.CREDIT and self.amount < 0:
            raise ValueError(f"Credit {self.provider_transaction_id} has negative amount {self.amount}")
        return self


# Lifecycle manager results

class ConnectResult(BaseModel):
    initiation: AuthInitiation
    correlation_state: str
    provider_kind: ProviderKind
    expires_at: datetime
    state: ConnectionState = ConnectionState.AUTH_PENDING


class ConnectionSummary(BaseModel):
    provider_kind: ProviderKind
    accounts_discovered: int
    connection_ids: List[int]
    state: ConnectionState = ConnectionState.CONNECTED


class BankConnectionInfo(BaseModel):
    """Credential-free view of a stored connection."""
    id: int
    provider_kind: ProviderKind
    provider_account_ref: str
    account_name: str
    account_type: AccountType
    account_mask: Optional[str] = None
    currency: str
    current_balance: Decimal
    available_balance: Decimal
    is_active: bool
    status: ConnectionState
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None

    class Config:
        from_attributes = True


# Sync engine results

class ConnectionSyncError(BaseModel):
    connection_id: int
    provider_kind: ProviderKind
    error_type: str
    message: str


class SyncSummary(BaseModel):
    connections_attempted: int = 0
    connections_succeeded: int = 0
    transactions_upserted: int = 0
    transactions_created: int = 0
    per_connection_errors: List[ConnectionSyncError] = []

    @property
    def accounts_synced(self) -> int:
        return self.connections_succeeded

    @property
    def is_complete(self) -> bool:
        return self.connections_succeeded == self.connections_attempted

    @property
    def is_partial(self) -> bool:
        return 0 < self.connections_succeeded < self.connections_attempted
