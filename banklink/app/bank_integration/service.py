"""
Connection Lifecycle Manager

Orchestrates connecting a user's bank through a provider:
- Starting authorization (single-use correlation state)
- Completing authorization and persisting discovered accounts
- Listing and disconnecting connections
"""

import secrets
import uuid
import logging
from typing import List, Optional
from datetime import datetime, timedelta, timezone
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from banklink.app.models import AuthorizationAttempt, BankConnection, ConnectionState, ProviderKind
from banklink.config import get_settings

from .encryption import CredentialVault
from .errors import (
    AccountAlreadyLinkedError, AuthAlreadyConsumedError, AuthExpiredError,
    AuthStateMismatchError, ConnectionNotFoundError, InvalidStateTransitionError,
    NoAccountsFoundError
)
from .providers.registry import ProviderRegistry
from .schemas import BankConnectionInfo, CanonicalAccount, ConnectResult, ConnectionSummary, CredentialGrant

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.AUTH_PENDING},
    ConnectionState.AUTH_PENDING: {ConnectionState.EXCHANGING, ConnectionState.DISCONNECTED},
    ConnectionState.EXCHANGING: {ConnectionState.CONNECTED, ConnectionState.ERROR, ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTED: {ConnectionState.SYNCING, ConnectionState.AUTH_PENDING, ConnectionState.DISCONNECTED},
    ConnectionState.SYNCING: {ConnectionState.CONNECTED, ConnectionState.ERROR},
    ConnectionState.ERROR: {ConnectionState.SYNCING, ConnectionState.AUTH_PENDING, ConnectionState.DISCONNECTED},
}


def ensure_transition(current: ConnectionState, target: ConnectionState) -> ConnectionState:
    """
    Validate a connection state change and return the target state.

    Raises:
        InvalidStateTransitionError: If the lifecycle does not allow it
    """
    current = ConnectionState(current)
    target = ConnectionState(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransitionError(f"Cannot move connection from {current.value} to {target.value}")
    return target


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConnectionLifecycleManager:
    """
    Main service for connecting banks.

    Provides high-level operations for:
    - Starting authorization flows (redirect or client-handle style)
    - Completing authorization and creating connections
    - Listing connections without credentials
    - Disconnecting banks
    """

    def __init__(
        self,
        db: Session,
        providers: ProviderRegistry,
        vault: CredentialVault,
        settings=None
    ):
        """
        Args:
            db: SQLAlchemy database session
            providers: Registry with one provider per ProviderKind
            vault: Credential vault used to seal provider tokens
            settings: Optional Settings override (defaults to get_settings())
        """
        self.db = db
        self.providers = providers
        self.vault = vault
        self.settings = settings or get_settings()

    async def connect(self, user_id: str, provider_kind: ProviderKind) -> ConnectResult:
        """
        Start authorization with a provider.

        Any earlier unconsumed attempt for the same user and provider is
        discarded, so at most one attempt is live at a time.

        Args:
            user_id: User connecting a bank
            provider_kind: Which provider to use

        Returns:
            ConnectResult with either a redirect URL or a client handle

        Raises:
            ProviderNotConfiguredError: If no provider is registered for the kind
            ProviderError: If the provider cannot start authorization

        Example:
            >>> result = await manager.connect("user-1", ProviderKind.TRUELAYER)
            >>> # Redirect user to result.initiation.url
        """
        provider = self.providers.get(provider_kind)
        provider_kind = provider.kind
        now = utcnow()

        # Random correlation state (CSRF protection)
        correlation_state = secrets.token_urlsafe(32)
        expires_at = now + timedelta(minutes=self.settings.auth_attempt_ttl_minutes)

        # Committed before the provider call so no write transaction spans the await
        attempt_id = self._store_attempt(user_id, provider_kind, correlation_state, now, expires_at)

        try:
            initiation = await provider.initiate_auth(user_id, correlation_state)
        except Exception:
            self.db.rollback()
            self.db.query(AuthorizationAttempt).filter(
                AuthorizationAttempt.id == attempt_id
            ).delete(synchronize_session=False)
            self.db.commit()
            raise

        logger.info(f"Started {provider_kind.value} authorization ({initiation.type}) for user {user_id}")

        return ConnectResult(
            initiation=initiation,
            correlation_state=correlation_state,
            provider_kind=provider_kind,
            expires_at=expires_at
        )

    def _discard_pending_attempts(self, user_id: str, provider_kind: ProviderKind) -> int:
        discarded = self.db.query(AuthorizationAttempt).filter(
            AuthorizationAttempt.user_id == user_id,
            AuthorizationAttempt.provider_kind == provider_kind,
            AuthorizationAttempt.consumed == False  # noqa: E712
        ).delete(synchronize_session=False)
        if discarded:
            logger.info(f"Discarded {discarded} pending {provider_kind.value} attempt(s) for user {user_id}")
        return discarded

    def _store_attempt(
        self,
        user_id: str,
        provider_kind: ProviderKind,
        correlation_state: str,
        created_at: datetime,
        expires_at: datetime
    ) -> int:
        """
        Replace the user's pending attempt with a new one and commit.

        A concurrent connect can insert its attempt between our delete and
        insert. The live-attempt index rejects the second insert, and we
        retry once so the newest attempt replaces the other.
        """
        for retry in range(2):
            self._discard_pending_attempts(user_id, provider_kind)
            attempt = AuthorizationAttempt(
                correlation_state=correlation_state,
                user_id=user_id,
                provider_kind=provider_kind,
                created_at=created_at,
                expires_at=expires_at,
                consumed=False
            )
            self.db.add(attempt)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                if retry:
                    raise
                logger.info(f"Concurrent {provider_kind.value} attempt for user {user_id}, replacing it")
                continue
            return attempt.id

    def _raise_unusable_attempt(self, attempt: Optional[AuthorizationAttempt], now: datetime) -> None:
        """Raise the error matching why an attempt cannot be completed, if it cannot."""
        if not attempt:
            raise AuthExpiredError("Unknown authorization state")

        if attempt.consumed:
            raise AuthAlreadyConsumedError("Authorization state already used")

        if ensure_aware(attempt.expires_at) <= now:
            raise AuthExpiredError("Authorization state expired")

    async def complete_connection(
        self,
        correlation_state: str,
        code_or_handle: str,
        *,
        user_id: Optional[str] = None,
        provider_kind: Optional[ProviderKind] = None
    ) -> ConnectionSummary:
        """
        Complete authorization and persist one connection per discovered account.

        The attempt is consumed atomically in the same database transaction
        that writes the connections. A failure at any step persists nothing.

        Args:
            correlation_state: State returned by connect() and echoed by the provider
            code_or_handle: Authorization code or public token from the client
            user_id: Caller's user, checked against the attempt when given
            provider_kind: Caller's provider, checked against the attempt when given

        Returns:
            ConnectionSummary with the ids of created or re-activated connections

        Raises:
            AuthExpiredError: Unknown or expired correlation state
            AuthAlreadyConsumedError: State was already used
            AuthStateMismatchError: State belongs to another user or provider
            NoAccountsFoundError: Provider returned no accounts
            AccountAlreadyLinkedError: An account is linked by another user
            ProviderError: Exchange or account listing failed
        """
        now = utcnow()

        attempt = self.db.query(AuthorizationAttempt).filter(
            AuthorizationAttempt.correlation_state == correlation_state
        ).first()

        self._raise_unusable_attempt(attempt, now)

        if user_id is not None and attempt.user_id != user_id:
            raise AuthStateMismatchError("Authorization state belongs to a different user")

        if provider_kind is not None and attempt.provider_kind != ProviderKind(provider_kind):
            raise AuthStateMismatchError(
                f"Authorization state was issued for {attempt.provider_kind.value}, not {ProviderKind(provider_kind).value}"
            )

        attempt_id = attempt.id
        owner_id = attempt.user_id
        kind = attempt.provider_kind
        provider = self.providers.get(kind)

        # Provider calls happen outside any write
        grant = await provider.complete_auth(code_or_handle)
        accounts = await provider.list_accounts(grant.access_token)

        if not accounts:
            logger.warning(f"{kind.value} authorization for user {owner_id} returned no accounts")
            raise NoAccountsFoundError("No accounts found at the bank")

        now = utcnow()
        claimed = self.db.query(AuthorizationAttempt).filter(
            AuthorizationAttempt.id == attempt_id,
            AuthorizationAttempt.consumed == False,  # noqa: E712
            AuthorizationAttempt.expires_at > now
        ).update({'consumed': True, 'consumed_at': now}, synchronize_session=False)

        if claimed != 1:
            # Attempt changed while the provider call was in flight
            self.db.rollback()
            attempt = self.db.query(AuthorizationAttempt).filter(AuthorizationAttempt.id == attempt_id).first()
            self._raise_unusable_attempt(attempt, now)
            raise AuthExpiredError("Authorization state no longer usable")

        try:
            connections = self._store_connections(owner_id, kind, grant, accounts)
            self.db.commit()
        except AccountAlreadyLinkedError:
            self.db.rollback()
            raise
        except IntegrityError as e:
            # Another writer linked one of the accounts between our check and insert
            self.db.rollback()
            raise AccountAlreadyLinkedError("Bank account is already connected") from e

        connection_ids = [connection.id for connection in connections]
        logger.info(
            f"Connected {len(connection_ids)} {kind.value} account(s) for user {owner_id}: {connection_ids}"
        )

        return ConnectionSummary(
            provider_kind=kind,
            accounts_discovered=len(accounts),
            connection_ids=connection_ids
        )

    def _store_connections(
        self,
        user_id: str,
        provider_kind: ProviderKind,
        grant: CredentialGrant,
        accounts: List[CanonicalAccount]
    ) -> List[BankConnection]:
        """
        Insert new connections or re-authorize existing ones.

        All accounts from one exchange share the access token, so they are put
        in one credential group.
        """
        credential_group = uuid.uuid4().hex
        access_token = self.vault.encrypt(grant.access_token)
        refresh_token = self.vault.encrypt(grant.refresh_token) if grant.refresh_token else None

        connections = []
        for account in accounts:
            connection = self.db.query(BankConnection).filter(
                BankConnection.provider_kind == provider_kind,
                BankConnection.provider_account_ref == account.provider_account_ref
            ).first()

            if connection and connection.user_id != user_id:
                raise AccountAlreadyLinkedError(
                    f"Account {account.account_name} is already connected by another user"
                )

            if connection:
                # Re-authorization: refresh credentials and re-activate the existing row
                logger.info(f"Re-authorizing existing connection {connection.id}")
            else:
                connection = BankConnection(
                    user_id=user_id,
                    provider_kind=provider_kind,
                    provider_account_ref=account.provider_account_ref
                )
                self.db.add(connection)

            connection.provider_item_ref = grant.provider_account_ref
            connection.credential_group = credential_group
            connection.account_name = account.account_name
            connection.account_type = account.account_type
            connection.account_mask = account.account_mask
            connection.currency = account.currency
            connection.current_balance = account.current_balance
            connection.available_balance = account.available_balance
            connection.encrypted_access_token = access_token
            connection.encrypted_refresh_token = refresh_token
            connection.credential_expires_at = grant.expires_at
            connection.is_active = True
            connection.status = ConnectionState.CONNECTED
            connection.last_error = None

            connections.append(connection)

        self.db.flush()
        return connections

    def list_connections(self, user_id: str, include_inactive: bool = False) -> List[BankConnectionInfo]:
        query = self.db.query(BankConnection).filter(BankConnection.user_id == user_id)
        if not include_inactive:
            query = query.filter(BankConnection.is_active == True)  # noqa: E712

        connections = query.order_by(BankConnection.id).all()
        return [BankConnectionInfo.model_validate(connection) for connection in connections]

    async def disconnect(self, connection_id: int) -> BankConnectionInfo:
        """
        Disconnect a bank account.

        Revokes the credential at the provider (best effort) and marks the
        connection inactive. The row is kept for history. The credential is
        only revoked once no other active connection shares it.

        Raises:
            ConnectionNotFoundError: Unknown connection id

        Example:
            >>> await manager.disconnect(connection.id)
            >>> # Connection is now DISCONNECTED and excluded from sync
        """
        connection = self.db.query(BankConnection).filter(BankConnection.id == connection_id).first()
        if not connection:
            raise ConnectionNotFoundError(f"Bank connection {connection_id} not found")

        if not connection.is_active:
            logger.info(f"Connection {connection_id} is already disconnected")
            return BankConnectionInfo.model_validate(connection)

        ensure_transition(connection.status, ConnectionState.DISCONNECTED)

        siblings = self.db.query(BankConnection).filter(
            BankConnection.credential_group == connection.credential_group,
            BankConnection.id != connection.id,
            BankConnection.is_active == True  # noqa: E712
        ).count()

        if siblings:
            logger.info(f"Keeping credential for connection {connection_id}: {siblings} sibling(s) still active")
        elif connection.encrypted_access_token:
            try:
                provider = self.providers.get(connection.provider_kind)
                await provider.revoke(self.vault.decrypt(connection.encrypted_access_token))
            except Exception as e:
                # Connection is marked disconnected regardless
                logger.warning(f"Credential revocation failed for connection {connection_id}: {e}")

        connection.is_active = False
        connection.status = ConnectionState.DISCONNECTED
        if not siblings:
            connection.encrypted_access_token = None
            connection.encrypted_refresh_token = None
            connection.credential_expires_at = None
            if connection.credential_group:
                # Earlier disconnected siblings still hold the now revoked credential
                self.db.execute(
                    update(BankConnection)
                    .where(
                        BankConnection.credential_group == connection.credential_group,
                        BankConnection.id != connection.id,
                        BankConnection.encrypted_access_token.isnot(None)
                    )
                    .values(
                        encrypted_access_token=None,
                        encrypted_refresh_token=None,
                        credential_expires_at=None,
                        version=BankConnection.version + 1
                    )
                    .execution_options(synchronize_session=False)
                )

        self.db.commit()
        self.db.refresh(connection)
        logger.info(f"Disconnected connection {connection_id}")

        return BankConnectionInfo.model_validate(connection)

    def purge_expired_attempts(self, now: Optional[datetime] = None) -> int:
        """Delete authorization attempts past their expiry. Returns the number removed."""
        now = now or utcnow()
        deleted = self.db.query(AuthorizationAttempt).filter(
            AuthorizationAttempt.expires_at <= now
        ).delete(synchronize_session=False)
        self.db.commit()

        if deleted:
            logger.info(f"Purged {deleted} expired authorization attempt(s)")
        return deleted
