"""
Rollup Bridge Message Lifecycle Tracker

Tracks ETH and NFT transfers between a parent chain and a child rollup.

Components:
- chain_connector: Async JSON-RPC connectors and the process-wide registry
- protocol: Event-signature table, call encoding, deposit identifiers
- message_resolver: Child tx hash -> outgoing message -> Pending/Claimable/Success
- deadline_estimator: Expected claim-ready time (block time + buffer)
- pending_store: Idempotent local registry of pending NFT withdrawals
- event_scanner: Pending NFT withdrawals rebuilt from event logs
- transfer_orchestrator: Deposit, withdrawal and claim flows
- reconciliation / status_poller: Store upkeep and per-view polling

Message Lifecycle (child -> parent):
1. Withdrawal mined on the child chain (Pending)
2. Rollup node covering it confirmed on the parent chain (Claimable)
3. Claim executed through the parent Outbox (Success)
"""

from .errors import (
    BridgeError,
    UserRejected,
    InsufficientFunds,
    RpcTimeout,
    RpcError,
    NoMessageFound,
    ReceiptNotFound,
    AmbiguousMessage,
    StaleCacheEntry,
    TransferInProgress,
    WrongNetwork,
    MessageNotClaimable,
    ConfigurationError,
    classify_error,
    user_message,
)
from .bridge_config import (
    BridgeConfig,
    ChainEndpoint,
    EthBridgeAddresses,
    AddressRegistry,
    load_config,
    configure_logging,
)
from .chain_connector import (
    ChainConnector,
    ConnectorRegistry,
    get_registry,
)
from .protocol import (
    OutgoingMessage,
    OutgoingMessageState,
    EthDepositStatus,
    RetryableStatus,
    EventSignature,
    EventTable,
    calculate_deposit_tx_id,
    calculate_retryable_id,
)
from .outbox import OutboxClient
from .deposits import (
    DepositTracker,
    DepositMessage,
    RetryableGasEstimator,
    RetryableGasParams,
)
from .message_resolver import (
    MessageStateResolver,
    MessageStatus,
    StatusLabel,
    STATUS,
    status_label,
)
from .deadline_estimator import DeadlineEstimator, claim_ready_at
from .pending_store import (
    PendingTransferStore,
    PendingTransferRecord,
    KeyValuePort,
    MemoryKeyValueStore,
    SqliteKeyValueStore,
)
from .metadata import TokenMetadataFetcher
from .event_scanner import EventLogScanner, ScannedTransfer
from .bridge_history import BridgeHistory, HistoryEntry, MessageType
from .reconciliation import PendingTransferReconciler, ReconciliationReport
from .status_poller import MessagePoller, Subscription
from .transfer_orchestrator import (
    TransferOrchestrator,
    FlowKind,
    FlowResult,
    TransferState,
    WalletSession,
)
from .formatting import format_balance, format_time_left
from .bridge_integration import BridgeIntegration

__all__ = [
    # Errors
    'BridgeError',
    'UserRejected',
    'InsufficientFunds',
    'RpcTimeout',
    'RpcError',
    'NoMessageFound',
    'ReceiptNotFound',
    'AmbiguousMessage',
    'StaleCacheEntry',
    'TransferInProgress',
    'WrongNetwork',
    'MessageNotClaimable',
    'ConfigurationError',
    'classify_error',
    'user_message',

    # Configuration
    'BridgeConfig',
    'ChainEndpoint',
    'EthBridgeAddresses',
    'AddressRegistry',
    'load_config',
    'configure_logging',

    # Chain access
    'ChainConnector',
    'ConnectorRegistry',
    'get_registry',

    # Protocol
    'OutgoingMessage',
    'OutgoingMessageState',
    'EthDepositStatus',
    'RetryableStatus',
    'EventSignature',
    'EventTable',
    'calculate_deposit_tx_id',
    'calculate_retryable_id',
    'OutboxClient',
    'DepositTracker',
    'DepositMessage',
    'RetryableGasEstimator',
    'RetryableGasParams',

    # Message state
    'MessageStateResolver',
    'MessageStatus',
    'StatusLabel',
    'STATUS',
    'status_label',
    'DeadlineEstimator',
    'claim_ready_at',

    # Pending transfers
    'PendingTransferStore',
    'PendingTransferRecord',
    'KeyValuePort',
    'MemoryKeyValueStore',
    'SqliteKeyValueStore',
    'TokenMetadataFetcher',
    'EventLogScanner',
    'ScannedTransfer',
    'PendingTransferReconciler',
    'ReconciliationReport',

    # History and polling
    'BridgeHistory',
    'HistoryEntry',
    'MessageType',
    'MessagePoller',
    'Subscription',

    # Flows
    'TransferOrchestrator',
    'FlowKind',
    'FlowResult',
    'TransferState',
    'WalletSession',
    'BridgeIntegration',

    # Formatting
    'format_balance',
    'format_time_left',
]

__version__ = '1.0.0'
__author__ = 'Rollup Bridge'
__description__ = 'Bridge message lifecycle tracker for parent/child rollups'
