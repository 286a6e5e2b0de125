"""
Tests for bridge configuration loading.
"""

import json

import pytest

from rollup_bridge.bridge_config import CHILD, PARENT, AddressRegistry, BridgeConfig, load_config
from rollup_bridge.errors import ConfigurationError


CONFIG_YAML = """
parent:
  chain_id: 421614
  rpc_url: https://parent.example
  name: Parent
child:
  chain_id: 412346
  rpc_url: http://localhost:8449
eth_bridge:
  inbox: "0x00000000000000000000000000000000000000b1"
  outbox: "0x00000000000000000000000000000000000000b2"
addresses:
  "412346":
    CommunitasNFT:
      General: "0x00000000000000000000000000000000000000c1"
confirmation_buffer_minutes: 90
deposit_wait_timeout_minutes: 5
"""


class TestLoadConfig:
    """Test YAML loading and fallbacks"""

    def test_load(self, tmp_path):
        path = tmp_path / "bridge_config.yaml"
        path.write_text(CONFIG_YAML)

        config = load_config(str(path))

        assert config.parent.chain_id == 421614
        assert config.parent.role == PARENT
        assert config.child.chain_id == 412346
        assert config.child.role == CHILD
        assert config.child.rpc_url == "http://localhost:8449"
        assert config.eth_bridge.outbox.endswith("b2")
        assert config.confirmation_buffer_minutes == 90
        assert config.deposit_wait_timeout_minutes == 5
        assert config.status_poll_interval_seconds == 60
        assert config.addresses.lookup(412346, "CommunitasNFT").endswith("c1")

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"))
        assert config.confirmation_buffer_minutes == 70
        assert config.challenge_period_days == 7

    def test_invalid_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("parent: [unclosed")
        assert load_config(str(path)).confirmation_buffer_minutes == 70

    def test_endpoint_by_role(self):
        config = BridgeConfig()
        assert config.endpoint(PARENT) is config.parent
        with pytest.raises(ConfigurationError):
            config.endpoint("sidechain")


class TestAddressRegistry:

    def test_lookup_unknown(self):
        registry = AddressRegistry({"1": {"CommunitasNFT": {"General": "0x01"}}})
        assert registry.has(1, "CommunitasNFT")
        assert not registry.has(1, "CommunitasNFT", "Europe")
        with pytest.raises(ConfigurationError):
            registry.lookup(2, "CommunitasNFT")

    def test_from_json(self, tmp_path):
        path = tmp_path / "addresses.json"
        path.write_text(json.dumps({"5": {"Marketplace": {"General": "0x05"}}}))
        assert AddressRegistry.from_json(str(path)).lookup(5, "Marketplace") == "0x05"
