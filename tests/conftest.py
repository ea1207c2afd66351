"""
Shared pytest fixtures.

Every test gets a fresh in-memory SQLite database, a real Fernet-backed
credential vault and a registry holding the deterministic mock provider.
"""

from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import banklink.app.models  # noqa: F401
from banklink.app.bank_integration.encryption import CredentialVault
from banklink.app.bank_integration.providers import MockBankingProvider, ProviderRegistry
from banklink.app.bank_integration.service import ConnectionLifecycleManager
from banklink.app.bank_integration.sync import TransactionSyncEngine
from banklink.app.models import ProviderKind
from banklink.config import Settings
from banklink.database import Base

TEST_USER_ID = "user-1"
TEST_USER_ID_2 = "user-2"
CALLBACK_URL = "http://testserver/api/banking/callback"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def encryption_key():
    return CredentialVault.generate_key()


@pytest.fixture
def settings(encryption_key):
    return Settings(
        _env_file=None,
        environment="test",
        credential_encryption_keys=f"k1:{encryption_key}",
        credential_active_key_id="k1",
        truelayer_redirect_uri=CALLBACK_URL,
    )


@pytest.fixture
def vault(settings):
    """Create a real Fernet vault for tests."""
    return CredentialVault.from_settings(settings)


@pytest.fixture
def mock_provider():
    return MockBankingProvider({'redirect_uri': CALLBACK_URL})


@pytest.fixture
def registry(mock_provider):
    return ProviderRegistry([mock_provider])


@pytest.fixture
def manager(db_session, registry, vault, settings):
    return ConnectionLifecycleManager(db_session, registry, vault, settings)


@pytest.fixture
def sync_engine(db_session, registry, vault, settings):
    return TransactionSyncEngine(db_session, registry, vault, settings)


def code_from_redirect(url: str) -> str:
    return parse_qs(urlparse(url).query)['code'][0]


@pytest.fixture
def link_mock_bank(manager):
    """Run the full redirect flow against the mock provider and return the summary."""

    async def _link(user_id: str = TEST_USER_ID):
        result = await manager.connect(user_id, ProviderKind.MOCK)
        code = code_from_redirect(result.initiation.url)
        return await manager.complete_connection(result.correlation_state, code, user_id=user_id)

    return _link


@pytest.fixture
def file_sessions(tmp_path):
    """Open sessions on separate connections to one file-backed database."""
    engine = create_engine(f"sqlite:///{tmp_path / 'banklink.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    sessions = []

    def _open():
        session = factory()
        sessions.append(session)
        return session

    yield _open
    for session in sessions:
        session.close()
    engine.dispose()
