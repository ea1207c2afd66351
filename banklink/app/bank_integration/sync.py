"""
Transaction Sync Engine

Reconciles remote transaction history into local storage:
1. Load the user's active connections and decrypt their credentials
2. Fetch transactions and balances from providers in parallel, one task per
   credential group, bounded by a global limit
3. Upsert results and update connection rows one at a time on the caller
4. Record a sync log per connection and return a summary

A failing connection never stops the others; vault and database errors do.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from datetime import date, datetime, timedelta

from sqlalchemy import or_
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from banklink.app.models import (
    BankConnection, BankSyncLog, BankSyncStatus, BankSyncType, ConnectionState, ProviderKind
)
from banklink.config import get_settings

from .deduplication import TransactionDeduplicator
from .encryption import CredentialVault
from .errors import UnsupportedOperationError
from .providers.registry import ProviderRegistry
from .schemas import (
    AccountBalance, CanonicalTransaction, ConnectionSyncError, CredentialRefresh, SyncSummary
)
from .service import ensure_aware, ensure_transition, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CredentialGroupPlan:
    """Connections sharing one decrypted credential."""
    credential_group: str
    provider_kind: ProviderKind
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    accounts: List[Tuple[int, str]] = field(default_factory=list)
    refreshed: Optional[CredentialRefresh] = None


@dataclass
class ConnectionFetch:
    connection_id: int
    provider_kind: ProviderKind
    transactions: List[CanonicalTransaction] = field(default_factory=list)
    balance: Optional[AccountBalance] = None
    error: Optional[Exception] = None


class TransactionSyncEngine:
    """
    Sync transactions for every active connection of a user.

    Example:
        >>> engine = TransactionSyncEngine(db, registry, vault)
        >>> summary = await engine.sync_user("user-1")
        >>> print(f"{summary.accounts_synced} accounts, {summary.transactions_created} new transactions")
    """

    def __init__(
        self,
        db: Session,
        providers: ProviderRegistry,
        vault: CredentialVault,
        settings=None
    ):
        self.db = db
        self.providers = providers
        self.vault = vault
        self.settings = settings or get_settings()

    async def sync_user(
        self,
        user_id: str,
        window_days: Optional[int] = None,
        sync_type: BankSyncType = BankSyncType.MANUAL
    ) -> SyncSummary:
        """
        Sync all active connections of a user over the trailing window.

        Args:
            user_id: Whose connections to sync
            window_days: Days of history to fetch (default: settings.sync_window_days)
            sync_type: MANUAL or SCHEDULED, recorded in the sync log

        Returns:
            SyncSummary with per-connection errors for failed connections

        Raises:
            VaultError: A stored credential cannot be decrypted
            SQLAlchemyError: Writing results failed
        """
        started_at = utcnow()
        if window_days is None:
            window_days = self.settings.sync_window_days
        to_date = date.today()
        from_date = to_date - timedelta(days=window_days)

        connections = self.db.query(BankConnection).filter(
            BankConnection.user_id == user_id,
            BankConnection.is_active == True  # noqa: E712
        ).order_by(BankConnection.id).all()

        summary = SyncSummary(connections_attempted=len(connections))
        if not connections:
            logger.info(f"No active bank connections for user {user_id}")
            return summary

        # Decrypt before any provider call so a vault problem aborts the whole batch
        plans = self._plan_groups(connections)

        logger.info(
            f"Syncing {len(connections)} connection(s) in {len(plans)} credential group(s) "
            f"for user {user_id}: {from_date} to {to_date}"
        )

        semaphore = asyncio.Semaphore(max(1, self.settings.sync_max_concurrency))
        results = await asyncio.gather(*(
            self._fetch_group(plan, from_date, to_date, semaphore, started_at) for plan in plans
        ))

        by_id = {connection.id: connection for connection in connections}
        for plan, fetches in zip(plans, results):
            credentials = self._seal_refresh(plan)
            for fetch in fetches:
                connection = by_id[fetch.connection_id]
                if fetch.error is None:
                    upserted, created = self._store_success(connection, fetch, credentials, started_at)
                    summary.connections_succeeded += 1
                    summary.transactions_upserted += upserted
                    summary.transactions_created += created
                    self._write_log(fetch, sync_type, started_at, from_date, to_date, created=created)
                else:
                    self._store_failure(connection, fetch, credentials, started_at)
                    summary.per_connection_errors.append(ConnectionSyncError(
                        connection_id=fetch.connection_id,
                        provider_kind=fetch.provider_kind,
                        error_type=type(fetch.error).__name__,
                        message=str(fetch.error)
                    ))
                    self._write_log(fetch, sync_type, started_at, from_date, to_date)

        logger.info(
            f"Sync complete for user {user_id}: {summary.connections_succeeded}/{summary.connections_attempted} "
            f"connections, upserted={summary.transactions_upserted}, created={summary.transactions_created}"
        )
        return summary

    async def sync_due_users(self, now: Optional[datetime] = None) -> Dict[str, SyncSummary]:
        """
        Scheduled sync for every user with a connection not synced within
        ``sync_interval_hours`` (or never synced).
        """
        now = now or utcnow()
        cutoff = now - timedelta(hours=self.settings.sync_interval_hours)

        rows = self.db.query(BankConnection.user_id).filter(
            BankConnection.is_active == True,  # noqa: E712
            or_(BankConnection.last_synced_at.is_(None), BankConnection.last_synced_at < cutoff)
        ).distinct().all()

        user_ids = sorted(row[0] for row in rows)
        logger.info(f"Scheduled sync: {len(user_ids)} user(s) due")

        results = {}
        for user_id in user_ids:
            results[user_id] = await self.sync_user(user_id, sync_type=BankSyncType.SCHEDULED)
        return results

    def _plan_groups(self, connections: List[BankConnection]) -> List[CredentialGroupPlan]:
        plans: Dict[str, CredentialGroupPlan] = {}
        for connection in connections:
            plan = plans.get(connection.credential_group)
            if plan is None:
                plan = CredentialGroupPlan(
                    credential_group=connection.credential_group,
                    provider_kind=connection.provider_kind,
                    access_token=self.vault.decrypt(connection.encrypted_access_token),
                    refresh_token=(
                        self.vault.decrypt(connection.encrypted_refresh_token)
                        if connection.encrypted_refresh_token else None
                    ),
                    expires_at=ensure_aware(connection.credential_expires_at)
                )
                plans[connection.credential_group] = plan
            plan.accounts.append((connection.id, connection.provider_account_ref))
        return list(plans.values())

    async def _fetch_group(
        self,
        plan: CredentialGroupPlan,
        from_date: date,
        to_date: date,
        semaphore: asyncio.Semaphore,
        now: datetime
    ) -> List[ConnectionFetch]:
        """
        Fetch every account of one credential group sequentially.

        Never raises: failures are returned on the affected fetches.
        """
        async with semaphore:
            try:
                provider = self.providers.get(plan.provider_kind)
                access_token = plan.access_token

                if plan.refresh_token and plan.expires_at and plan.expires_at <= now:
                    try:
                        plan.refreshed = await provider.refresh_credential(plan.refresh_token)
                        access_token = plan.refreshed.access_token
                        logger.info(f"Refreshed {plan.provider_kind.value} credential for group {plan.credential_group}")
                    except UnsupportedOperationError as e:
                        logger.warning(f"Credential for group {plan.credential_group} not refreshed: {e}")
            except Exception as e:
                logger.error(f"Credential group {plan.credential_group} failed before fetching: {e}")
                return [
                    ConnectionFetch(connection_id, plan.provider_kind, error=e)
                    for connection_id, _ in plan.accounts
                ]

            fetches = []
            for connection_id, account_ref in plan.accounts:
                try:
                    transactions = await provider.list_transactions(access_token, account_ref, from_date, to_date)
                    balance = await provider.get_account_balance(access_token, account_ref)
                    logger.info(f"Connection {connection_id}: fetched {len(transactions)} transactions")
                    fetches.append(ConnectionFetch(
                        connection_id, plan.provider_kind, transactions=transactions, balance=balance
                    ))
                except Exception as e:
                    logger.error(f"Connection {connection_id} sync failed: {type(e).__name__}: {e}")
                    fetches.append(ConnectionFetch(connection_id, plan.provider_kind, error=e))
            return fetches

    def _seal_refresh(self, plan: CredentialGroupPlan) -> Optional[Dict]:
        if plan.refreshed is None:
            return None
        return {
            'encrypted_access_token': self.vault.encrypt(plan.refreshed.access_token),
            'encrypted_refresh_token': (
                self.vault.encrypt(plan.refreshed.refresh_token) if plan.refreshed.refresh_token else None
            ),
            'credential_expires_at': plan.refreshed.expires_at,
        }

    def _store_success(
        self,
        connection: BankConnection,
        fetch: ConnectionFetch,
        credentials: Optional[Dict],
        now: datetime
    ) -> Tuple[int, int]:
        upserted, created = TransactionDeduplicator.upsert_transactions(self.db, connection, fetch.transactions)
        # Transactions are committed before the versioned connection write
        self.db.commit()

        def apply(row: BankConnection):
            self._apply_credentials(row, credentials)
            row.last_sync_attempt_at = now
            if not row.is_active:
                return
            last_synced_at = ensure_aware(row.last_synced_at)
            if last_synced_at is None or last_synced_at < now:
                row.last_synced_at = now
            row.current_balance = fetch.balance.current
            row.available_balance = fetch.balance.available
            row.status = self._finish_state(row.status, ConnectionState.CONNECTED)
            row.last_error = None

        self._write_connection(connection, apply)
        return upserted, created

    def _store_failure(
        self,
        connection: BankConnection,
        fetch: ConnectionFetch,
        credentials: Optional[Dict],
        now: datetime
    ):
        def apply(row: BankConnection):
            self._apply_credentials(row, credentials)
            row.last_sync_attempt_at = now
            if not row.is_active:
                return
            row.status = self._finish_state(row.status, ConnectionState.ERROR)
            row.last_error = f"{type(fetch.error).__name__}: {fetch.error}"

        self._write_connection(connection, apply)

    def _write_connection(self, connection: BankConnection, apply):
        """
        Apply changes to a connection row and commit under the version check.

        A concurrent writer bumps the version; the row is reloaded and the
        changes re-applied once.
        """
        for attempt in range(2):
            apply(connection)
            try:
                self.db.commit()
                return
            except StaleDataError:
                self.db.rollback()
                if attempt:
                    raise
                logger.warning(f"Connection {connection.id} changed concurrently, retrying write")
                self.db.refresh(connection)

    @staticmethod
    def _apply_credentials(row: BankConnection, credentials: Optional[Dict]):
        if credentials and row.is_active:
            for name, value in credentials.items():
                setattr(row, name, value)

    @staticmethod
    def _finish_state(current: ConnectionState, target: ConnectionState) -> ConnectionState:
        ensure_transition(current, ConnectionState.SYNCING)
        return ensure_transition(ConnectionState.SYNCING, target)

    def _write_log(
        self,
        fetch: ConnectionFetch,
        sync_type: BankSyncType,
        started_at: datetime,
        from_date: date,
        to_date: date,
        created: int = 0
    ):
        completed_at = utcnow()
        self.db.add(BankSyncLog(
            bank_connection_id=fetch.connection_id,
            sync_type=sync_type,
            sync_status=BankSyncStatus.SUCCESS if fetch.error is None else BankSyncStatus.FAILED,
            transactions_fetched=len(fetch.transactions),
            transactions_created=created,
            sync_from_date=from_date,
            sync_to_date=to_date,
            error_message=None if fetch.error is None else str(fetch.error),
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=int((completed_at - started_at).total_seconds())
        ))
        self.db.commit()
