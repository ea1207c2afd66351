"""
Provider Registry

Holds exactly one provider implementation per ProviderKind. Built once at
startup and passed to the lifecycle manager and sync engine.
"""

import logging
from typing import Dict, Iterable, Optional

import httpx

from banklink.app.models import ProviderKind
from ..errors import ProviderNotConfiguredError
from .base import BaseBankProvider
from .mock import MockBankingProvider
from .plaid import PlaidProvider
from .truelayer import TrueLayerProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:

    def __init__(self, providers: Iterable[BaseBankProvider] = ()):
        self._providers: Dict[ProviderKind, BaseBankProvider] = {}
        for provider in providers:
            if provider.kind in self._providers:
                raise ValueError(f"Duplicate provider for {provider.kind.value}")
            self._providers[provider.kind] = provider

    def get(self, kind: ProviderKind) -> BaseBankProvider:
        try:
            return self._providers[ProviderKind(kind)]
        except (KeyError, ValueError):
            raise ProviderNotConfiguredError(f"Provider {getattr(kind, 'value', kind)} is not configured") from None

    def kinds(self):
        return sorted(self._providers, key=lambda kind: kind.value)

    def __contains__(self, kind) -> bool:
        return kind in self._providers


def build_provider_registry(settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> ProviderRegistry:
    """
    Construct every provider the settings allow.

    The mock provider is only registered outside production. TrueLayer and
    Plaid are registered when their client credentials are set.
    """
    providers = []
    timeout = settings.provider_timeout_seconds

    if not settings.is_production:
        providers.append(MockBankingProvider({'redirect_uri': settings.banking_callback_url}))

    if settings.truelayer_client_id and settings.truelayer_client_secret:
        providers.append(TrueLayerProvider({
            'client_id': settings.truelayer_client_id,
            'client_secret': settings.truelayer_client_secret,
            'redirect_uri': settings.banking_callback_url,
            'environment': settings.truelayer_environment,
            'timeout': timeout,
        }, transport=transport))

    if settings.plaid_client_id and settings.plaid_secret:
        providers.append(PlaidProvider({
            'client_id': settings.plaid_client_id,
            'secret': settings.plaid_secret,
            'environment': settings.plaid_environment,
            'client_name': settings.plaid_client_name,
            'timeout': timeout,
        }, transport=transport))

    registry = ProviderRegistry(providers)
    logger.info(f"Bank providers configured: {', '.join(kind.value for kind in registry.kinds()) or 'none'}")
    return registry
