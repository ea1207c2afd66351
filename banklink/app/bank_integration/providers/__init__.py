"""
Bank Provider Implementations

Abstract base class, concrete implementations for different banking APIs,
and the registry binding each ProviderKind to one implementation.
"""

from .base import BaseBankProvider
from .mock import MockBankingProvider
from .plaid import PlaidProvider
from .truelayer import TrueLayerProvider
from .registry import ProviderRegistry, build_provider_registry

__all__ = [
    'BaseBankProvider', 'MockBankingProvider', 'PlaidProvider', 'TrueLayerProvider',
    'ProviderRegistry', 'build_provider_registry'
]
