"""Tests for the transaction sync engine."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from banklink.app.bank_integration.errors import (
    CredentialDecryptionError, InvalidCredentialError, UnsupportedOperationError
)
from banklink.app.bank_integration.providers import MockBankingProvider, ProviderRegistry
from banklink.app.bank_integration.service import ConnectionLifecycleManager, ensure_aware
from banklink.app.bank_integration.sync import TransactionSyncEngine
from banklink.app.models import (
    AccountType, BankConnection, BankSyncLog, BankSyncStatus, BankSyncType, ConnectionState, ProviderKind,
    Transaction
)
from banklink.database import Base

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


def make_services(db_session, provider, vault, settings):
    registry = ProviderRegistry([provider])
    return (
        ConnectionLifecycleManager(db_session, registry, vault, settings),
        TransactionSyncEngine(db_session, registry, vault, settings),
    )


async def link(manager, user_id=USER_ID):
    result = await manager.connect(user_id, ProviderKind.MOCK)
    state = result.correlation_state
    return await manager.complete_connection(state, f"mock-code-{state}")


def connection_by_ref(db_session, account_ref):
    return db_session.query(BankConnection).filter_by(provider_account_ref=account_ref).one()


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_connect_then_sync_twice(self, link_mock_bank, sync_engine, db_session):
        summary = await link_mock_bank()
        assert summary.accounts_discovered == 2

        first = await sync_engine.sync_user(USER_ID)

        assert first.connections_attempted == 2
        assert first.accounts_synced == 2
        assert first.is_complete
        assert first.transactions_upserted >= 30
        assert first.transactions_created == first.transactions_upserted
        assert first.per_connection_errors == []
        assert db_session.query(Transaction).count() == first.transactions_upserted

        second = await sync_engine.sync_user(USER_ID)

        assert second.accounts_synced == 2
        assert second.transactions_created == 0
        assert second.transactions_upserted == first.transactions_upserted
        assert db_session.query(Transaction).count() == first.transactions_upserted

    @pytest.mark.asyncio
    async def test_synced_rows_follow_sign_convention(self, link_mock_bank, sync_engine, db_session):
        await link_mock_bank()
        await sync_engine.sync_user(USER_ID)

        checking = connection_by_ref(db_session, "mock_checking_1")
        shop = db_session.query(Transaction).filter_by(description="Weekly shop").one()
        salary = db_session.query(Transaction).filter_by(description="Salary Payment").one()

        assert shop.amount == Decimal("-42.10")
        assert salary.amount == Decimal("2000.00")
        assert shop.bank_connection_id == checking.id
        assert shop.user_id == USER_ID
        assert shop.provider_kind == ProviderKind.MOCK

    @pytest.mark.asyncio
    async def test_no_connections(self, sync_engine):
        summary = await sync_engine.sync_user("nobody")

        assert summary.connections_attempted == 0
        assert summary.transactions_upserted == 0


class TestIdempotence:

    @pytest.mark.asyncio
    async def test_repeated_syncs_never_duplicate(self, link_mock_bank, sync_engine, db_session):
        await link_mock_bank()

        for _ in range(3):
            await sync_engine.sync_user(USER_ID)

        ids = [row[0] for row in db_session.query(Transaction.provider_transaction_id).all()]
        assert len(ids) == len(set(ids))

    @pytest.mark.asyncio
    async def test_noop_resync_advances_last_synced_at(self, link_mock_bank, sync_engine, db_session):
        await link_mock_bank()
        await sync_engine.sync_user(USER_ID)
        first = ensure_aware(connection_by_ref(db_session, "mock_checking_1").last_synced_at)

        summary = await sync_engine.sync_user(USER_ID)
        second = ensure_aware(connection_by_ref(db_session, "mock_checking_1").last_synced_at)

        assert summary.transactions_created == 0
        assert second > first

    @pytest.mark.asyncio
    async def test_window_limits_history(self, link_mock_bank, sync_engine, db_session):
        await link_mock_bank()

        narrow = await sync_engine.sync_user(USER_ID, window_days=0)
        wide = await sync_engine.sync_user(USER_ID, window_days=30)

        assert 0 < narrow.transactions_upserted < wide.transactions_upserted
        assert wide.transactions_created == wide.transactions_upserted - narrow.transactions_upserted


class TestPartialFailure:

    @pytest.mark.asyncio
    async def test_one_failing_connection_does_not_stop_the_other(self, db_session, vault, settings):
        provider = MockBankingProvider(fail_account_refs=["mock_savings_1"])
        manager, engine = make_services(db_session, provider, vault, settings)
        await link(manager)

        summary = await engine.sync_user(USER_ID)

        savings = connection_by_ref(db_session, "mock_savings_1")
        checking = connection_by_ref(db_session, "mock_checking_1")

        assert summary.connections_attempted == 2
        assert summary.connections_succeeded == 1
        assert summary.is_partial
        assert len(summary.per_connection_errors) == 1
        error = summary.per_connection_errors[0]
        assert error.connection_id == savings.id
        assert error.error_type == "ProviderUnavailableError"

        assert savings.status == ConnectionState.ERROR
        assert "ProviderUnavailableError" in savings.last_error
        assert savings.last_synced_at is None
        assert savings.last_sync_attempt_at is not None

        assert checking.status == ConnectionState.CONNECTED
        assert checking.last_synced_at is not None
        assert db_session.query(Transaction).filter_by(bank_connection_id=checking.id).count() == \
            summary.transactions_upserted
        assert db_session.query(Transaction).filter_by(bank_connection_id=savings.id).count() == 0

    @pytest.mark.asyncio
    async def test_recovered_connection_clears_error(self, db_session, vault, settings):
        provider = MockBankingProvider(fail_account_refs=["mock_savings_1"])
        manager, engine = make_services(db_session, provider, vault, settings)
        await link(manager)
        await engine.sync_user(USER_ID)

        provider.fail_account_refs.clear()
        summary = await engine.sync_user(USER_ID)

        savings = connection_by_ref(db_session, "mock_savings_1")
        assert summary.is_complete
        assert savings.status == ConnectionState.CONNECTED
        assert savings.last_error is None

    @pytest.mark.asyncio
    async def test_sync_logs_record_each_connection(self, db_session, vault, settings):
        provider = MockBankingProvider(fail_account_refs=["mock_savings_1"])
        manager, engine = make_services(db_session, provider, vault, settings)
        await link(manager)

        await engine.sync_user(USER_ID)

        logs = {log.bank_connection_id: log for log in db_session.query(BankSyncLog).all()}
        checking = connection_by_ref(db_session, "mock_checking_1")
        savings = connection_by_ref(db_session, "mock_savings_1")

        assert logs[checking.id].sync_status == BankSyncStatus.SUCCESS
        assert logs[checking.id].sync_type == BankSyncType.MANUAL
        assert logs[checking.id].transactions_created > 0
        assert logs[savings.id].sync_status == BankSyncStatus.FAILED
        assert logs[savings.id].error_message

    @pytest.mark.asyncio
    async def test_disconnected_connections_are_skipped(self, link_mock_bank, manager, sync_engine, db_session):
        summary = await link_mock_bank()
        await manager.disconnect(summary.connection_ids[1])

        result = await sync_engine.sync_user(USER_ID)

        assert result.connections_attempted == 1
        assert db_session.query(Transaction).filter_by(bank_connection_id=summary.connection_ids[1]).count() == 0

    @pytest.mark.asyncio
    async def test_undecryptable_credential_aborts_batch(self, link_mock_bank, sync_engine, db_session):
        await link_mock_bank()
        savings = connection_by_ref(db_session, "mock_savings_1")
        savings.encrypted_access_token = "v1:k1:corrupted"
        savings.credential_group = "corrupted-group"
        db_session.commit()

        with pytest.raises(CredentialDecryptionError):
            await sync_engine.sync_user(USER_ID)

        assert db_session.query(Transaction).count() == 0


class TestCredentialRefresh:

    @staticmethod
    def _expire_credentials(db_session):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        for connection in db_session.query(BankConnection).all():
            connection.credential_expires_at = past
        db_session.commit()

    @pytest.mark.asyncio
    async def test_expired_credential_is_refreshed_for_the_group(self, link_mock_bank, sync_engine, db_session, vault):
        await link_mock_bank()
        old_token = vault.decrypt(connection_by_ref(db_session, "mock_checking_1").encrypted_access_token)
        self._expire_credentials(db_session)

        summary = await sync_engine.sync_user(USER_ID)

        assert summary.is_complete
        connections = db_session.query(BankConnection).all()
        tokens = {vault.decrypt(c.encrypted_access_token) for c in connections}
        assert len(tokens) == 1
        assert old_token not in tokens
        assert all(ensure_aware(c.credential_expires_at) > datetime.now(timezone.utc) for c in connections)

    @pytest.mark.asyncio
    async def test_unsupported_refresh_is_ignored(self, db_session, vault, settings):
        class NonExpiringProvider(MockBankingProvider):
            async def refresh_credential(self, refresh_token):
                raise UnsupportedOperationError("credentials never expire", provider="mock")

        manager, engine = make_services(db_session, NonExpiringProvider(), vault, settings)
        await link(manager)
        self._expire_credentials(db_session)

        summary = await engine.sync_user(USER_ID)

        assert summary.is_complete

    @pytest.mark.asyncio
    async def test_rejected_refresh_fails_the_whole_group(self, db_session, vault, settings):
        class RevokedProvider(MockBankingProvider):
            async def refresh_credential(self, refresh_token):
                raise InvalidCredentialError("refresh token revoked", provider="mock", status_code=400)

        manager, engine = make_services(db_session, RevokedProvider(), vault, settings)
        await link(manager)
        self._expire_credentials(db_session)

        summary = await engine.sync_user(USER_ID)

        assert summary.connections_succeeded == 0
        assert {e.error_type for e in summary.per_connection_errors} == {"InvalidCredentialError"}
        assert all(c.status == ConnectionState.ERROR for c in db_session.query(BankConnection).all())


class TestConcurrentWrites:

    @pytest.mark.asyncio
    async def test_overlapping_syncs_for_one_user(self, file_sessions, mock_provider, vault, settings):
        registry = ProviderRegistry([mock_provider])
        manager = ConnectionLifecycleManager(file_sessions(), registry, vault, settings)
        await link(manager)

        engines = [TransactionSyncEngine(file_sessions(), registry, vault, settings) for _ in range(2)]
        first, second = await asyncio.gather(*(engine.sync_user(USER_ID) for engine in engines))

        db = file_sessions()
        rows = db.query(Transaction).count()
        assert rows > 0
        assert first.transactions_created + second.transactions_created == rows
        assert first.per_connection_errors == [] and second.per_connection_errors == []

        connections = db.query(BankConnection).all()
        assert all(c.status == ConnectionState.CONNECTED and c.last_error is None for c in connections)
        assert all(c.last_synced_at is not None for c in connections)
        assert db.query(BankSyncLog).count() == 2 * len(connections)

    @pytest.mark.asyncio
    async def test_last_synced_at_never_moves_backwards(self, link_mock_bank, sync_engine, db_session):
        await link_mock_bank()
        future = datetime.now(timezone.utc) + timedelta(days=1)
        db_session.execute(
            update(BankConnection)
            .where(BankConnection.provider_account_ref == "mock_checking_1")
            .values(last_synced_at=future, version=BankConnection.version + 1)
        )
        db_session.commit()

        await sync_engine.sync_user(USER_ID)

        checking = connection_by_ref(db_session, "mock_checking_1")
        assert ensure_aware(checking.last_synced_at) == future

    def test_stale_write_is_retried_once(self, tmp_path, registry, vault, settings):
        engine = create_engine(f"sqlite:///{tmp_path / 'stale.db'}")
        Base.metadata.create_all(bind=engine)
        Session = sessionmaker(autoflush=False, bind=engine)
        db, other = Session(), Session()

        try:
            connection = BankConnection(
                user_id=USER_ID,
                provider_kind=ProviderKind.MOCK,
                provider_account_ref="mock_checking_1",
                credential_group="group-1",
                account_name="Current Account",
                account_type=AccountType.CHECKING,
                currency="GBP",
                encrypted_access_token=vault.encrypt("mock-access-1"),
            )
            db.add(connection)
            db.commit()
            assert connection.version == 1

            # Another writer bumps the row after we loaded it
            concurrent = other.query(BankConnection).filter_by(id=connection.id).one()
            concurrent.account_name = "Renamed elsewhere"
            other.commit()

            seen_versions = []

            def apply(row):
                seen_versions.append(row.version)
                row.last_error = None
                row.status = ConnectionState.CONNECTED
                row.current_balance = 100

            TransactionSyncEngine(db, registry, vault, settings)._write_connection(connection, apply)

            assert seen_versions == [1, 2]
            db.refresh(connection)
            assert connection.version == 3
            assert connection.account_name == "Renamed elsewhere"
        finally:
            db.close()
            other.close()
            engine.dispose()


class TestScheduledSync:

    @pytest.mark.asyncio
    async def test_only_due_users_are_synced(self, link_mock_bank, sync_engine, db_session):
        await link_mock_bank(USER_ID)
        await sync_engine.sync_user(USER_ID)

        results = await sync_engine.sync_due_users()
        assert results == {}

        later = datetime.now(timezone.utc) + timedelta(hours=25)
        results = await sync_engine.sync_due_users(now=later)

        assert list(results) == [USER_ID]
        assert results[USER_ID].accounts_synced == 2
        logs = db_session.query(BankSyncLog).filter_by(sync_type=BankSyncType.SCHEDULED).all()
        assert len(logs) == 2

    @pytest.mark.asyncio
    async def test_never_synced_users_are_due(self, db_session, vault, settings):
        accounts = [{
            "ref": f"{user}_checking", "name": "Current Account", "type": "current",
            "currency": "GBP", "balance": "10.00", "available": "10.00", "number": "00001111",
        } for user in (USER_ID, OTHER_USER_ID)]

        for user_id, account in zip((USER_ID, OTHER_USER_ID), accounts):
            manager, _ = make_services(db_session, MockBankingProvider(accounts=[account]), vault, settings)
            await link(manager, user_id)

        _, engine = make_services(db_session, MockBankingProvider(accounts=accounts), vault, settings)
        results = await engine.sync_due_users()

        assert sorted(results) == [USER_ID, OTHER_USER_ID]
        assert all(summary.is_complete for summary in results.values())
