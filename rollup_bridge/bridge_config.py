"""
Bridge Configuration

Loads bridge_config.yaml into typed settings:
- Parent and child chain endpoints
- Rollup contract addresses on the parent chain (bridge, inbox, outbox, rollup)
- Application contract address registry (chainId -> contract -> region)
- Confirmation buffer, polling intervals and timeouts
"""

import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml
from loguru import logger

from .errors import ConfigurationError


PARENT = "parent"
CHILD = "child"

DEFAULT_REGION = "General"


@dataclass
class ChainEndpoint:
    """Chain endpoint (one per chain role)"""
    chain_id: int
    rpc_url: str
    role: str
    name: str = ""

    def __repr__(self):
        return f"ChainEndpoint({self.role}: {self.name or self.chain_id} @ {self.rpc_url})"


@dataclass
class EthBridgeAddresses:
    """Rollup contracts deployed on the parent chain"""
    bridge: str = ""
    inbox: str = ""
    outbox: str = ""
    rollup: str = ""


class AddressRegistry:
    """
    Contract address lookup keyed by (chain_id, contract_name, region)

    Mirrors the addresses.json layout used by the web client:
    {"<chainId>": {"<ContractName>": {"<Region>": "0x..."}}}
    """

    def __init__(self, addresses: Optional[Dict] = None):
        self._addresses: Dict[str, Dict[str, Dict[str, str]]] = {}
        for chain_id, contracts in (addresses or {}).items():
            self._addresses[str(chain_id)] = contracts or {}

    @classmethod
    def from_json(cls, path: str) -> 'AddressRegistry':
        with open(path, 'r', encoding='utf-8') as f:
            return cls(json.load(f))

    def lookup(self, chain_id: int, contract_name: str, region: str = DEFAULT_REGION) -> str:
        """
        Get a contract address

        Args:
            chain_id: Chain the contract is deployed on
            contract_name: Contract name (e.g. 'CommunitasNFT')
            region: Region key (default 'General')

        Returns:
            Contract address

        Raises:
            ConfigurationError: If no address is registered
        """
        try:
            return self._addresses[str(chain_id)][contract_name][region]
        except KeyError:
            raise ConfigurationError(
                f"No address for {contract_name}/{region} on chain {chain_id}"
            ) from None

    def has(self, chain_id: int, contract_name: str, region: str = DEFAULT_REGION) -> bool:
        return region in self._addresses.get(str(chain_id), {}).get(contract_name, {})


@dataclass
class BridgeConfig:
    """Complete bridge configuration"""
    parent: ChainEndpoint = field(
        default_factory=lambda: ChainEndpoint(421614, "https://sepolia-rollup.arbitrum.io/rpc", PARENT, "Arbitrum Sepolia")
    )
    child: ChainEndpoint = field(
        default_factory=lambda: ChainEndpoint(0, "http://localhost:8449", CHILD, "Child Rollup")
    )
    eth_bridge: EthBridgeAddresses = field(default_factory=EthBridgeAddresses)
    addresses: AddressRegistry = field(default_factory=AddressRegistry)

    # Business constants
    confirmation_buffer_minutes: int = 70
    challenge_period_days: int = 7

    # Polling
    status_poll_interval_seconds: int = 60
    deadline_poll_interval_seconds: int = 60
    confirmation_check_interval_seconds: int = 10
    deposit_wait_timeout_minutes: int = 30

    # Log scanning
    scan_from_block: int = 0
    deposit_lookback_blocks: int = 10_368_000  # ~1 month of parent blocks
    rollup_from_block: int = 0

    store_path: str = "pending_transfers.db"
    metadata_timeout_seconds: int = 10
    rpc_timeout_seconds: int = 30
    log_level: str = "INFO"

    def endpoint(self, role: str) -> ChainEndpoint:
        if role == PARENT:
            return self.parent
        if role == CHILD:
            return self.child
        raise ConfigurationError(f"Unknown chain role: {role}")


def _endpoint_from_dict(data: Dict, role: str, default: ChainEndpoint) -> ChainEndpoint:
    if not data:
        return default
    return ChainEndpoint(
        chain_id=int(data.get('chain_id', default.chain_id)),
        rpc_url=data.get('rpc_url', default.rpc_url),
        role=role,
        name=data.get('name', default.name),
    )


def load_config(config_path: str = "bridge_config.yaml") -> BridgeConfig:
    """
    Load bridge configuration from YAML

    A missing or unreadable file falls back to defaults.

    Args:
        config_path: Path to bridge config YAML

    Returns:
        BridgeConfig
    """
    config = BridgeConfig()
    path = Path(config_path)

    if not path.exists():
        logger.warning(f"Config file {path} not found, using defaults")
        return config

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load bridge config from {path}: {e}, using defaults")
        return config

    config.parent = _endpoint_from_dict(data.get('parent'), PARENT, config.parent)
    config.child = _endpoint_from_dict(data.get('child'), CHILD, config.child)

    bridge_data = data.get('eth_bridge') or {}
    config.eth_bridge = EthBridgeAddresses(
        bridge=bridge_data.get('bridge', ''),
        inbox=bridge_data.get('inbox', ''),
        outbox=bridge_data.get('outbox', ''),
        rollup=bridge_data.get('rollup', ''),
    )
    config.addresses = AddressRegistry(data.get('addresses'))

    for key in (
        'confirmation_buffer_minutes', 'challenge_period_days',
        'status_poll_interval_seconds', 'deadline_poll_interval_seconds',
        'confirmation_check_interval_seconds', 'deposit_wait_timeout_minutes',
        'scan_from_block', 'deposit_lookback_blocks', 'rollup_from_block',
        'metadata_timeout_seconds', 'rpc_timeout_seconds',
    ):
        if key in data:
            setattr(config, key, int(data[key]))

    config.store_path = data.get('store_path', config.store_path)
    config.log_level = data.get('log_level', config.log_level)

    logger.info(f"Bridge config loaded: {config.parent!r} <-> {config.child!r}")
    logger.info(f"  Confirmation buffer: {config.confirmation_buffer_minutes}min")
    return config


def configure_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Replace loguru's default sink and optionally log to a rotating file"""
    logger.remove()
    logger.add(sys.stderr, level=level)
    if log_file:
        logger.add(log_file, level=level, rotation="10 MB", retention="7 days")
