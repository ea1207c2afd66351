"""Tests for the provider registry."""

import pytest

from banklink.app.bank_integration.errors import ProviderNotConfiguredError
from banklink.app.bank_integration.providers import (
    MockBankingProvider, PlaidProvider, ProviderRegistry, TrueLayerProvider, build_provider_registry
)
from banklink.app.models import ProviderKind
from banklink.config import Settings


class TestProviderRegistry:

    def test_lookup_by_kind_or_value(self, mock_provider):
        registry = ProviderRegistry([mock_provider])

        assert registry.get(ProviderKind.MOCK) is mock_provider
        assert registry.get("mock") is mock_provider
        assert ProviderKind.MOCK in registry

    def test_unregistered_kind(self, mock_provider):
        registry = ProviderRegistry([mock_provider])

        with pytest.raises(ProviderNotConfiguredError):
            registry.get(ProviderKind.PLAID)
        with pytest.raises(ProviderNotConfiguredError):
            registry.get("open-banking-xyz")

    def test_one_implementation_per_kind(self):
        with pytest.raises(ValueError):
            ProviderRegistry([MockBankingProvider(), MockBankingProvider()])


class TestBuildProviderRegistry:

    def test_development_defaults_to_mock_only(self):
        registry = build_provider_registry(Settings(_env_file=None, environment="development"))

        assert registry.kinds() == [ProviderKind.MOCK]

    def test_production_never_registers_mock(self):
        registry = build_provider_registry(Settings(_env_file=None, environment="production"))

        assert registry.kinds() == []

    def test_configured_providers_are_registered(self):
        settings = Settings(
            _env_file=None,
            environment="production",
            truelayer_client_id="tl-id",
            truelayer_client_secret="tl-secret",
            plaid_client_id="plaid-id",
            plaid_secret="plaid-secret",
        )

        registry = build_provider_registry(settings)

        assert registry.kinds() == [ProviderKind.PLAID, ProviderKind.TRUELAYER]
        assert isinstance(registry.get(ProviderKind.TRUELAYER), TrueLayerProvider)
        assert isinstance(registry.get(ProviderKind.PLAID), PlaidProvider)
        assert registry.get(ProviderKind.TRUELAYER).redirect_uri == settings.banking_callback_url
