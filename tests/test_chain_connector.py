"""
Tests for the connector registry.
"""

import pytest
from eth_account import Account

from rollup_bridge.bridge_config import PARENT, ChainEndpoint
from rollup_bridge.chain_connector import ConnectorRegistry
from rollup_bridge.errors import ConfigurationError
from tests.fakes import PARENT_CHAIN_ID


@pytest.fixture
def endpoint():
    return ChainEndpoint(PARENT_CHAIN_ID, "http://localhost:8547", PARENT, "Parent")


class TestConnectorRegistry:
    """Test connector caching per chain and signer"""

    def test_same_account_returns_cached(self, endpoint):
        registry = ConnectorRegistry()
        account = Account.create()

        first = registry.get(endpoint, account)
        assert registry.get(endpoint, account) is first
        assert first.account is account
        assert len(registry) == 1

    def test_without_account_returns_cached(self, endpoint):
        registry = ConnectorRegistry()
        first = registry.get(endpoint, Account.create())
        assert registry.get(endpoint) is first

    def test_different_account_rejected(self, endpoint):
        registry = ConnectorRegistry()
        cached = registry.get(endpoint, Account.create())

        with pytest.raises(ConfigurationError) as excinfo:
            registry.get(endpoint, Account.create())

        assert cached.account.address in excinfo.value.detail
        assert len(registry) == 1

    def test_account_on_accountless_connector_rejected(self, endpoint):
        registry = ConnectorRegistry()
        registry.get(endpoint)

        with pytest.raises(ConfigurationError):
            registry.get(endpoint, Account.create())

    def test_reset_allows_new_signer(self, endpoint):
        registry = ConnectorRegistry()
        registry.get(endpoint, Account.create())
        registry.reset()

        account = Account.create()
        assert registry.get(endpoint, account).account is account
