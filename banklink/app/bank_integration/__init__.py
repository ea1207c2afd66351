"""
Bank Integration Module

Connects bank accounts through third-party data providers (TrueLayer, Plaid,
and a deterministic mock), stores vault-encrypted credentials, and keeps local
transactions in sync with an extensible provider architecture.
"""

from .service import ConnectionLifecycleManager
from .sync import TransactionSyncEngine
from .encryption import CredentialVault
from .deduplication import TransactionDeduplicator
from .providers import ProviderRegistry, build_provider_registry

__all__ = [
    'ConnectionLifecycleManager', 'TransactionSyncEngine', 'CredentialVault',
    'TransactionDeduplicator', 'ProviderRegistry', 'build_provider_registry'
]
