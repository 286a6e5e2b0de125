"""
Transfer Orchestrator

Drives the five bridge flows as short linear state machines:
1. ETH deposit (parent -> child)
2. ETH withdrawal (child -> parent)
3. NFT deposit (parent -> child, retryable ticket)
4. NFT withdrawal (child -> parent, recorded as pending locally)
5. Claim execution (parent-chain outbox execution of a withdrawal)

Each flow is single-flight per intent and returns a FlowResult. Errors are
caught at this boundary, classified and reported, never swallowed.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from loguru import logger

from .bridge_config import DEFAULT_REGION, BridgeConfig
from .chain_connector import ChainConnector
from .deposits import DepositTracker, RetryableGasEstimator
from .errors import (
    BridgeError,
    MessageNotClaimable,
    RpcError,
    TransferInProgress,
    UserRejected,
    WrongNetwork,
    classify_error,
    truncate_detail,
)
from .message_resolver import MessageStateResolver
from .outbox import OutboxClient
from .pending_store import PendingTransferRecord, PendingTransferStore
from .protocol import (
    ARB_SYS_ADDRESS,
    EthDepositStatus,
    OutgoingMessageState,
    RetryableStatus,
    encode_call,
    hash_hex,
)


NFT_CONTRACT_NAME = "CommunitasNFT"


class FlowKind(str, Enum):
    ETH_DEPOSIT = "eth_deposit"
    ETH_WITHDRAWAL = "eth_withdrawal"
    NFT_DEPOSIT = "nft_deposit"
    NFT_WITHDRAWAL = "nft_withdrawal"
    CLAIM = "claim"


class TransferState(str, Enum):
    IDLE = "idle"
    ESTIMATING = "estimating"
    ESTIMATING_GAS = "estimating_gas"
    RESOLVING = "resolving"
    SUBMITTED = "submitted"
    WAITING_CHILD_RECEIPT = "waiting_child_receipt"
    WAITING_FINALITY = "waiting_finality"
    # Terminal
    COMPLETED = "completed"
    REDEEMED = "redeemed"
    INITIATED = "initiated"
    RECORDED_PENDING = "recorded_pending"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    ABORTED = "aborted"


# Forward path of each flow; the last entry lists its success terminals
FLOW_PATHS: Dict[FlowKind, List] = {
    FlowKind.ETH_DEPOSIT: [
        TransferState.IDLE, TransferState.ESTIMATING, TransferState.SUBMITTED,
        TransferState.WAITING_CHILD_RECEIPT, {TransferState.COMPLETED},
    ],
    FlowKind.ETH_WITHDRAWAL: [
        TransferState.IDLE, TransferState.SUBMITTED, {TransferState.INITIATED},
    ],
    FlowKind.NFT_DEPOSIT: [
        TransferState.IDLE, TransferState.ESTIMATING_GAS, TransferState.SUBMITTED,
        TransferState.WAITING_FINALITY, {TransferState.REDEEMED},
    ],
    FlowKind.NFT_WITHDRAWAL: [
        TransferState.IDLE, TransferState.SUBMITTED, {TransferState.RECORDED_PENDING},
    ],
    FlowKind.CLAIM: [
        TransferState.IDLE, TransferState.RESOLVING, TransferState.SUBMITTED, {TransferState.SUCCESS},
    ],
}

# Reachable from any non-terminal state
FAILURE_STATES = {
    TransferState.FAILED, TransferState.TIMED_OUT, TransferState.REJECTED, TransferState.ABORTED,
}


def _rank(kind: FlowKind, state: TransferState) -> int:
    path = FLOW_PATHS[kind]
    for index, step in enumerate(path):
        if state == step or (isinstance(step, set) and state in step):
            return index
    if state in FAILURE_STATES:
        return len(path) - 1
    raise ValueError(f"{state.value} is not a state of the {kind.value} flow")


@dataclass
class FlowResult:
    """Outcome of one flow invocation"""
    request_id: str
    kind: FlowKind
    state: TransferState = TransferState.IDLE
    tx_hash: Optional[str] = None
    child_tx_hash: Optional[str] = None
    status_code: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_detail: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    history: List[TransferState] = field(default_factory=lambda: [TransferState.IDLE])

    @property
    def success(self) -> bool:
        return isinstance(FLOW_PATHS[self.kind][-1], set) and self.state in FLOW_PATHS[self.kind][-1]

    @property
    def is_terminal(self) -> bool:
        return self.state in FAILURE_STATES or self.success

    def advance(self, state: TransferState):
        """Move forward; backward transitions and moves out of a terminal state raise"""
        if self.is_terminal:
            raise ValueError(f"{self.kind.value} flow already ended in {self.state.value}")
        if _rank(self.kind, state) <= _rank(self.kind, self.state) and state not in FAILURE_STATES:
            raise ValueError(f"{self.kind.value}: {self.state.value} -> {state.value} is not a forward transition")
        self.state = state
        self.history.append(state)
        logger.debug(f"[{self.request_id}] {self.kind.value}: {state.value}")

    def set_error(self, error: BridgeError):
        self.error_code = error.error_code
        self.error_message = error.message
        self.error_detail = truncate_detail(error.detail)

    def to_dict(self) -> Dict:
        return {
            'request_id': self.request_id,
            'kind': self.kind.value,
            'state': self.state.value,
            'success': self.success,
            'tx_hash': self.tx_hash,
            'child_tx_hash': self.child_tx_hash,
            'status_code': self.status_code,
            'error_code': self.error_code,
            'error_message': self.error_message,
            'error_detail': self.error_detail,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'history': [s.value for s in self.history],
        }


class WalletSession:
    """
    The signing wallet as seen by the orchestrator

    active_chain_id is the network the wallet currently signs on.
    request_network_switch() only signals; it never resubmits anything.
    """

    def __init__(
        self,
        address: str,
        active_chain_id: int,
        on_network_switch: Optional[Callable[[int], None]] = None,
    ):
        self.address = address
        self.active_chain_id = active_chain_id
        self.on_network_switch = on_network_switch
        self.requested_chain_id: Optional[int] = None

    def request_network_switch(self, chain_id: int):
        self.requested_chain_id = chain_id
        logger.info(f"Network switch requested: {self.active_chain_id} -> {chain_id}")
        if self.on_network_switch:
            self.on_network_switch(chain_id)


class TransferOrchestrator:
    """
    Bridge transfer flows for one wallet

    Safety Features:
    1. Single-flight per intent (no double on-chain submission)
    2. Claim preconditions: destination network and Claimable state
    3. Bounded wait for deposit finality (TimedOut terminal state)
    4. Pending NFT withdrawals persisted before returning
    5. Error classification with truncated raw detail
    """

    def __init__(
        self,
        config: BridgeConfig,
        parent: ChainConnector,
        child: ChainConnector,
        wallet: WalletSession,
        store: PendingTransferStore,
        resolver: MessageStateResolver,
        outbox: OutboxClient,
        deposits: DepositTracker,
        gas_estimator: RetryableGasEstimator,
        region: str = DEFAULT_REGION,
    ):
        self.config = config
        self.parent = parent
        self.child = child
        self.wallet = wallet
        self.store = store
        self.resolver = resolver
        self.outbox = outbox
        self.deposits = deposits
        self.gas_estimator = gas_estimator
        self.region = region

        self._in_flight: Set[str] = set()
        self.transfer_history: List[FlowResult] = []

        logger.info("Transfer orchestrator initialized")
        logger.info(f"  Wallet: {wallet.address}")
        logger.info(f"  Deposit wait timeout: {config.deposit_wait_timeout_minutes}min")

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------

    def is_in_flight(self, intent: str) -> bool:
        return intent in self._in_flight

    async def _run(
        self,
        kind: FlowKind,
        intent: str,
        flow: Callable[[FlowResult], Awaitable[None]],
    ) -> FlowResult:
        result = FlowResult(request_id=f"{kind.value}-{uuid.uuid4().hex[:8]}", kind=kind)

        if intent in self._in_flight:
            error = TransferInProgress(detail=intent)
            result.set_error(error)
            result.advance(TransferState.REJECTED)
            result.completed_at = datetime.now(timezone.utc)
            logger.warning(f"✗ {kind.value} rejected: {intent} already in flight")
            return result

        self._in_flight.add(intent)
        logger.info(f"Starting {kind.value}: {result.request_id} ({intent})")

        try:
            await flow(result)
        except UserRejected as e:
            result.set_error(e)
            result.advance(TransferState.ABORTED)
            logger.info(f"{kind.value} aborted: signature declined in wallet")
        except WrongNetwork as e:
            result.set_error(e)
            result.advance(TransferState.ABORTED)
            self.wallet.request_network_switch(e.required_chain_id)
            logger.warning(f"✗ {kind.value} aborted: {e.detail}")
        except MessageNotClaimable as e:
            result.set_error(e)
            result.advance(TransferState.REJECTED)
            logger.warning(f"✗ {kind.value} rejected: {e.detail}")
        except Exception as e:
            error = classify_error(e)
            result.set_error(error)
            result.advance(TransferState.FAILED)
            logger.error(f"✗ {kind.value} failed: {error.message} ({result.error_detail})")
        finally:
            self._in_flight.discard(intent)
            result.completed_at = datetime.now(timezone.utc)
            self.transfer_history.append(result)

        if result.success:
            logger.info(f"✓ {kind.value} finished: {result.state.value} ({result.tx_hash})")
        return result

    async def _confirm(self, connector: ChainConnector, tx_hash: str) -> Dict:
        receipt = await connector.wait_for_receipt(
            tx_hash,
            confirmations=1,
            timeout_seconds=self.config.deposit_wait_timeout_minutes * 60,
            poll_interval_seconds=self.config.confirmation_check_interval_seconds,
        )
        if receipt.get('status') != 1:
            raise RpcError("Transaction reverted", detail=f"{tx_hash} reverted on chain {connector.chain_id}")
        return receipt

    def _nft_address(self, chain_id: int) -> str:
        return self.config.addresses.lookup(chain_id, NFT_CONTRACT_NAME, self.region)

    # ------------------------------------------------------------------
    # ETH deposit
    # ------------------------------------------------------------------

    async def deposit_eth(self, amount_wei: int) -> FlowResult:
        """
        Deposit ETH from the parent chain to the child chain

        Idle -> Estimating -> Submitted -> WaitingChildReceipt -> Completed | Failed | TimedOut

        Args:
            amount_wei: Amount to deposit

        Returns:
            FlowResult (status_code holds the final deposit status)
        """
        async def flow(result: FlowResult):
            result.advance(TransferState.ESTIMATING)
            tx = {
                'from': self.wallet.address,
                'to': self.config.eth_bridge.inbox,
                'data': encode_call("depositEth()"),
                'value': amount_wei,
            }
            tx['gas'] = await self.parent.estimate_gas(tx)

            result.tx_hash = await self.parent.send_transaction(tx)
            result.advance(TransferState.SUBMITTED)
            logger.info(f"✓ ETH deposit submitted: {amount_wei} wei ({result.tx_hash})")

            await self._confirm(self.parent, result.tx_hash)
            await self._wait_for_deposit(result, TransferState.WAITING_CHILD_RECEIPT, TransferState.COMPLETED)

        return await self._run(FlowKind.ETH_DEPOSIT, f"eth-deposit:{amount_wei}", flow)

    async def _wait_for_deposit(self, result: FlowResult, waiting: TransferState, done: TransferState):
        result.advance(waiting)
        message = (await self.deposits.get_messages(result.tx_hash))[0]
        result.child_tx_hash = message.child_tx_id

        status = await self.deposits.wait_for_status(
            message,
            timeout_minutes=self.config.deposit_wait_timeout_minutes,
            check_interval_seconds=self.config.confirmation_check_interval_seconds,
        )
        if status is None:
            result.error_code = "timed_out"
            result.error_message = (
                f"No child-chain result after {self.config.deposit_wait_timeout_minutes} minutes"
            )
            result.advance(TransferState.TIMED_OUT)
            return

        result.status_code = int(status)
        expected = RetryableStatus.REDEEMED if message.is_retryable else EthDepositStatus.DEPOSITED
        if status is expected:
            result.advance(done)
            return

        result.error_code = "deposit_failed"
        result.error_message = "Deposit was not executed on the child chain"
        result.error_detail = f"status {status.name} ({int(status)})"
        result.advance(TransferState.FAILED)

    # ------------------------------------------------------------------
    # ETH withdrawal
    # ------------------------------------------------------------------

    async def withdraw_eth(self, amount_wei: int, destination: Optional[str] = None) -> FlowResult:
        """
        Start an ETH withdrawal on the child chain

        Idle -> Submitted -> Initiated. Does not wait for confirmation; the
        claim happens later through claim().
        """
        async def flow(result: FlowResult):
            tx = {
                'from': self.wallet.address,
                'to': ARB_SYS_ADDRESS,
                'data': encode_call("withdrawEth(address)", [destination or self.wallet.address]),
                'value': amount_wei,
            }
            result.tx_hash = await self.child.send_transaction(tx)
            result.advance(TransferState.SUBMITTED)
            result.advance(TransferState.INITIATED)
            logger.info(f"✓ ETH withdrawal initiated: {amount_wei} wei ({result.tx_hash})")

        return await self._run(FlowKind.ETH_WITHDRAWAL, f"eth-withdrawal:{amount_wei}", flow)

    # ------------------------------------------------------------------
    # NFT deposit
    # ------------------------------------------------------------------

    async def deposit_nft(self, token_id: int) -> FlowResult:
        """
        Bridge an NFT from the parent chain to the child chain

        Idle -> EstimatingGas -> Submitted -> WaitingFinality -> Redeemed | Failed | TimedOut
        """
        async def flow(result: FlowResult):
            result.advance(TransferState.ESTIMATING_GAS)
            parent_nft = self._nft_address(self.parent.chain_id)
            child_nft = self._nft_address(self.child.chain_id)

            mint_call = encode_call("mintFromBridge(address,uint256)", [self.wallet.address, int(token_id)])
            base_fee = await self.gas_estimator.parent_base_fee()
            params = await self.gas_estimator.estimate_all(
                from_address=parent_nft,
                to_address=child_nft,
                data=mint_call,
                excess_fee_refund_address=self.wallet.address,
                call_value_refund_address=self.wallet.address,
                base_fee=base_fee,
            )
            gas_price_bid = await self.child.get_gas_price()

            tx = {
                'from': self.wallet.address,
                'to': parent_nft,
                'data': encode_call(
                    "bridgeToL2(uint256,uint256,uint256,uint256)",
                    [int(token_id), params.max_submission_cost, params.gas_limit, gas_price_bid],
                ),
                'value': params.deposit,
            }
            result.tx_hash = await self.parent.send_transaction(tx)
            result.advance(TransferState.SUBMITTED)
            logger.info(f"✓ NFT deposit submitted: token {token_id} ({result.tx_hash})")

            await self._confirm(self.parent, result.tx_hash)
            await self._wait_for_deposit(result, TransferState.WAITING_FINALITY, TransferState.REDEEMED)

        return await self._run(FlowKind.NFT_DEPOSIT, f"nft-deposit:{token_id}", flow)

    # ------------------------------------------------------------------
    # NFT withdrawal
    # ------------------------------------------------------------------

    async def withdraw_nft(
        self,
        token_id: int,
        name: str = "",
        image: str = "",
        description: str = "",
    ) -> FlowResult:
        """
        Start an NFT withdrawal and record it as pending

        Idle -> Submitted -> RecordedPending
        """
        async def flow(result: FlowResult):
            tx = {
                'from': self.wallet.address,
                'to': self._nft_address(self.child.chain_id),
                'data': encode_call("bridgeToL1(uint256)", [int(token_id)]),
            }
            result.tx_hash = await self.child.send_transaction(tx)
            result.advance(TransferState.SUBMITTED)

            self.store.add(PendingTransferRecord(
                tx_hash=result.tx_hash,
                token_id=str(token_id),
                owner=self.wallet.address,
                image=image,
                name=name,
                description=description,
            ))
            result.advance(TransferState.RECORDED_PENDING)

        return await self._run(FlowKind.NFT_WITHDRAWAL, f"nft-withdrawal:{token_id}", flow)

    # ------------------------------------------------------------------
    # Claim execution
    # ------------------------------------------------------------------

    async def claim(self, tx_hash: str, message_index: Optional[int] = None) -> FlowResult:
        """
        Execute a confirmed withdrawal on the parent chain

        Idle -> Resolving -> Submitted -> Success

        Preconditions (checked before any submission):
        - the wallet is on the parent chain (otherwise a switch is requested
          and the attempt is aborted, not retried)
        - the message is Claimable

        A message that is already Executed (an earlier attempt landed) goes
        straight to Success and its pending record is removed; nothing is
        submitted.

        Args:
            tx_hash: Child-chain withdrawal transaction hash
            message_index: See MessageStateResolver.get_message()
        """
        async def flow(result: FlowResult):
            if self.wallet.active_chain_id != self.parent.chain_id:
                raise WrongNetwork(self.parent.chain_id, self.wallet.active_chain_id)

            result.advance(TransferState.RESOLVING)
            status = await self.resolver.resolve(tx_hash, message_index)
            result.status_code = int(status.state)
            if status.state == OutgoingMessageState.EXECUTED:
                # Earlier attempt landed; finish without a second submission
                self.store.remove(tx_hash)
                result.advance(TransferState.SUCCESS)
                logger.info(f"Claim for {tx_hash} already executed on the parent chain")
                return
            if not status.is_claimable:
                raise MessageNotClaimable(detail=f"{tx_hash} is {status.label.text}")

            result.tx_hash = await self.outbox.execute(status.message)
            result.advance(TransferState.SUBMITTED)

            await self._confirm(self.parent, result.tx_hash)
            self.store.remove(tx_hash)
            result.advance(TransferState.SUCCESS)

        return await self._run(FlowKind.CLAIM, f"claim:{hash_hex(tx_hash)}", flow)

    def get_transfer_history(self) -> List[Dict]:
        return [r.to_dict() for r in self.transfer_history]
