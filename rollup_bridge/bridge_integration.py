"""
Bridge Integration

Wires the tracker components for one wallet from a BridgeConfig:
connectors (from the process registry), outbox and deposit readers,
resolver, deadline estimator, pending store, scanner, reconciler,
poller, history and orchestrator.
"""

from typing import Dict, List, Optional

from eth_account.signers.local import LocalAccount
from loguru import logger

from .bridge_config import DEFAULT_REGION, BridgeConfig
from .bridge_history import BridgeHistory, HistoryEntry
from .chain_connector import ConnectorRegistry, get_registry
from .deadline_estimator import DeadlineEstimator
from .deposits import DepositTracker, RetryableGasEstimator
from .event_scanner import EventLogScanner
from .message_resolver import MessageStateResolver
from .metadata import TokenMetadataFetcher
from .outbox import OutboxClient
from .pending_store import PendingTransferRecord, PendingTransferStore, SqliteKeyValueStore
from .reconciliation import PendingTransferReconciler
from .status_poller import MessagePoller
from .transfer_orchestrator import NFT_CONTRACT_NAME, TransferOrchestrator, WalletSession


class BridgeIntegration:
    """
    Complete bridge tracker for one wallet

    Features:
    - Transfer flows (deposit, withdrawal, claim)
    - Pending NFT transfers (store + event log scan)
    - ETH bridge history
    - Status and deadline polling
    """

    def __init__(
        self,
        config: BridgeConfig,
        wallet: WalletSession,
        account: Optional[LocalAccount] = None,
        registry: Optional[ConnectorRegistry] = None,
        store: Optional[PendingTransferStore] = None,
        region: str = DEFAULT_REGION,
    ):
        """
        Initialize integration

        Args:
            config: Bridge configuration
            wallet: Wallet session (address and active network)
            account: Optional local signing account
            registry: Connector registry (process-wide registry by default)
            store: Pending store (SQLite at config.store_path by default)
            region: Contract region key
        """
        self.config = config
        self.wallet = wallet
        registry = registry or get_registry()

        self.parent = registry.get(config.parent, account)
        self.child = registry.get(config.child, account)

        self.outbox = OutboxClient(self.parent, self.child, config.eth_bridge, config.rollup_from_block)
        self.deposits = DepositTracker(self.parent, self.child)
        self.gas_estimator = RetryableGasEstimator(self.parent, self.child, config.eth_bridge)
        self.resolver = MessageStateResolver(self.child, self.outbox)
        self.estimator = DeadlineEstimator(self.child, config.confirmation_buffer_minutes)
        self.store = store or PendingTransferStore(SqliteKeyValueStore(config.store_path))
        self.metadata = TokenMetadataFetcher(config.metadata_timeout_seconds)

        self.scanner = EventLogScanner(
            self.child,
            self.resolver,
            parent_nft_address=config.addresses.lookup(config.parent.chain_id, NFT_CONTRACT_NAME, region),
            child_nft_address=config.addresses.lookup(config.child.chain_id, NFT_CONTRACT_NAME, region),
            metadata_fetcher=self.metadata,
            from_block=config.scan_from_block,
        )
        self.reconciler = PendingTransferReconciler(self.store, self.resolver, self.scanner)
        self.poller = MessagePoller(
            self.resolver,
            self.estimator,
            status_interval_seconds=config.status_poll_interval_seconds,
            deadline_interval_seconds=config.deadline_poll_interval_seconds,
        )
        self.history = BridgeHistory(
            self.parent,
            self.resolver,
            self.deposits,
            inbox_address=config.eth_bridge.inbox,
            parent_name=config.parent.name or str(config.parent.chain_id),
            child_name=config.child.name or str(config.child.chain_id),
            lookback_blocks=config.deposit_lookback_blocks,
        )
        self.orchestrator = TransferOrchestrator(
            config,
            self.parent,
            self.child,
            wallet,
            self.store,
            self.resolver,
            self.outbox,
            self.deposits,
            self.gas_estimator,
            region=region,
        )

        logger.info(f"Bridge integration initialized for {wallet.address}")

    async def pending_nfts(self) -> List[PendingTransferRecord]:
        return await self.reconciler.pending_transfers(self.wallet.address)

    async def eth_history(self) -> List[HistoryEntry]:
        return await self.history.history(self.wallet.address)

    async def balances(self) -> Dict[str, int]:
        """Native balances of the wallet on both chains (wei)"""
        return {
            self.config.parent.role: await self.parent.get_balance(self.wallet.address),
            self.config.child.role: await self.child.get_balance(self.wallet.address),
        }

    async def close(self):
        await self.metadata.close()
        backend = self.store.backend
        if isinstance(backend, SqliteKeyValueStore):
            backend.close()
        logger.info("Bridge integration closed")
