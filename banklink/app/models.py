from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Date, DECIMAL, Text, ForeignKey,
    UniqueConstraint, Index, Enum as SQLEnum, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from banklink.database import Base


class ProviderKind(str, enum.Enum):
    TRUELAYER = "truelayer"
    PLAID = "plaid"
    MOCK = "mock"


class AccountType(str, enum.Enum):
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT_CARD = "credit_card"


class TransactionKind(str, enum.Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    AUTH_PENDING = "auth_pending"
    EXCHANGING = "exchanging"
    CONNECTED = "connected"
    SYNCING = "syncing"
    ERROR = "error"


class BankSyncType(str, enum.Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class BankSyncStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


class BankConnection(Base):
    __tablename__ = "bank_connections"
    __table_args__ = (
        UniqueConstraint("provider_kind", "provider_account_ref", name="uq_bank_connections_provider_account"),
        Index("ix_bank_connections_user_active", "user_id", "is_active"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    provider_kind = Column(SQLEnum(ProviderKind), nullable=False)

    # External identifiers
    provider_account_ref = Column(String(255), nullable=False)
    provider_item_ref = Column(String(255), nullable=True)
    credential_group = Column(String(64), nullable=False, index=True)

    # Account details
    account_name = Column(String(255), nullable=False)
    account_type = Column(SQLEnum(AccountType), nullable=False)
    account_mask = Column(String(8), nullable=True)
    currency = Column(String(3), nullable=False)
    current_balance = Column(DECIMAL(15, 2), nullable=False, default=0)
    available_balance = Column(DECIMAL(15, 2), nullable=False, default=0)

    # Credentials (vault-encrypted)
    encrypted_access_token = Column(Text, nullable=True)
    encrypted_refresh_token = Column(Text, nullable=True)
    credential_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Connection status
    is_active = Column(Boolean, nullable=False, default=True)
    status = Column(SQLEnum(ConnectionState), nullable=False, default=ConnectionState.CONNECTED)
    last_error = Column(Text, nullable=True)

    # Sync bookkeeping
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_attempt_at = Column(DateTime(timezone=True), nullable=True)

    # Metadata
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    transactions = relationship("Transaction", back_populates="connection")
    sync_logs = relationship("BankSyncLog", back_populates="connection")

    __mapper_args__ = {"version_id_col": version}


class Transaction(Base):
    __tablename__ = "bank_transactions"
    __table_args__ = (
        UniqueConstraint("provider_kind", "provider_transaction_id", name="uq_bank_transactions_provider_tx"),
        Index("ix_bank_transactions_user_date", "user_id", "transaction_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    bank_connection_id = Column(Integer, ForeignKey("bank_connections.id"), nullable=False, index=True)

    # External identifiers
    provider_kind = Column(SQLEnum(ProviderKind), nullable=False)
    provider_transaction_id = Column(String(255), nullable=False)

    # Transaction data
    amount = Column(DECIMAL(15, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    description = Column(Text, nullable=False, default="")
    merchant_name = Column(String(255), nullable=True)
    category = Column(String(100), nullable=False, default="Other")
    kind = Column(SQLEnum(TransactionKind), nullable=False)
    transaction_date = Column(Date, nullable=False)
    posted_date = Column(Date, nullable=True)
    pending = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    connection = relationship("BankConnection", back_populates="transactions")


class AuthorizationAttempt(Base):
    __tablename__ = "authorization_attempts"
    __table_args__ = (
        Index("ix_authorization_attempts_user_provider", "user_id", "provider_kind"),
        # At most one live attempt per user and provider
        Index(
            "uq_authorization_attempts_live",
            "user_id",
            "provider_kind",
            unique=True,
            postgresql_where=text("NOT consumed"),
            sqlite_where=text("consumed = 0")
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    correlation_state = Column(String(64), unique=True, nullable=False)
    user_id = Column(String(64), nullable=False)
    provider_kind = Column(SQLEnum(ProviderKind), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed = Column(Boolean, nullable=False, default=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)


class BankSyncLog(Base):
    __tablename__ = "bank_sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    bank_connection_id = Column(Integer, ForeignKey("bank_connections.id"), nullable=False, index=True)

    # Sync operation
    sync_type = Column(SQLEnum(BankSyncType), nullable=False)
    sync_status = Column(SQLEnum(BankSyncStatus), nullable=False)

    # Results
    transactions_fetched = Column(Integer, default=0)
    transactions_created = Column(Integer, default=0)

    # Date range
    sync_from_date = Column(Date, nullable=True)
    sync_to_date = Column(Date, nullable=True)

    # Error handling
    error_message = Column(Text, nullable=True)

    # Timing
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    connection = relationship("BankConnection", back_populates="sync_logs")
