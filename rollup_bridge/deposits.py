"""
Deposit Tracking

Parent -> child messages created by a parent-chain transaction:
- ETH deposits (Inbox.depositEth), tracked by their child-chain deposit tx
- Retryable tickets (NFT bridgeToL2), tracked by creation and redeem receipts

Also estimates retryable gas parameters before submission.
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Union

from loguru import logger

from .bridge_config import EthBridgeAddresses
from .chain_connector import ChainConnector
from .errors import ConfigurationError, NoMessageFound, ReceiptNotFound, RpcError
from .protocol import (
    ARB_RETRYABLE_TX_ADDRESS,
    MESSAGE_KIND_ETH_DEPOSIT,
    MESSAGE_KIND_SUBMIT_RETRYABLE,
    NODE_INTERFACE_ADDRESS,
    REDEEM_SCHEDULED,
    DeliveredMessage,
    EthDepositStatus,
    RetryableParams,
    RetryableStatus,
    apply_l1_to_l2_alias,
    as_bytes,
    calculate_deposit_tx_id,
    calculate_retryable_id,
    decode_result,
    delivered_messages_from_receipt,
    encode_call,
    hash_hex,
    parse_eth_deposit_data,
    parse_retryable_data,
)


DepositStatus = Union[EthDepositStatus, RetryableStatus]


@dataclass
class DepositMessage:
    """One parent -> child message and its child-chain identifier"""
    parent_tx_hash: str
    message_number: int
    kind: int
    sender: str
    child_tx_id: str
    to_address: str
    value: int
    retryable: Optional[RetryableParams] = None

    @property
    def is_retryable(self) -> bool:
        return self.kind == MESSAGE_KIND_SUBMIT_RETRYABLE


class DepositTracker:
    """Status of deposits created by parent-chain transactions"""

    def __init__(self, parent: ChainConnector, child: ChainConnector):
        self.parent = parent
        self.child = child

    def _to_deposit(self, delivered: DeliveredMessage) -> Optional[DepositMessage]:
        if delivered.kind == MESSAGE_KIND_ETH_DEPOSIT:
            to_address, value = parse_eth_deposit_data(delivered.data)
            return DepositMessage(
                parent_tx_hash=delivered.tx_hash,
                message_number=delivered.message_index,
                kind=delivered.kind,
                sender=delivered.sender,
                child_tx_id=calculate_deposit_tx_id(
                    self.child.chain_id, delivered.message_index, delivered.sender, to_address, value
                ),
                to_address=to_address,
                value=value,
            )

        if delivered.kind == MESSAGE_KIND_SUBMIT_RETRYABLE:
            params = parse_retryable_data(delivered.data)
            return DepositMessage(
                parent_tx_hash=delivered.tx_hash,
                message_number=delivered.message_index,
                kind=delivered.kind,
                sender=delivered.sender,
                child_tx_id=calculate_retryable_id(
                    self.child.chain_id,
                    delivered.message_index,
                    apply_l1_to_l2_alias(delivered.sender),
                    delivered.base_fee_l1,
                    params,
                ),
                to_address=params.dest_address,
                value=params.l2_call_value,
                retryable=params,
            )

        logger.debug(f"Ignoring inbox message kind {delivered.kind} in {delivered.tx_hash}")
        return None

    async def get_messages(self, parent_tx_hash: str) -> List[DepositMessage]:
        """
        Deposit messages created by a parent-chain transaction

        Raises:
            ReceiptNotFound: If the receipt is missing
            NoMessageFound: If the receipt carries no deposit
        """
        receipt = await self.parent.get_receipt(parent_tx_hash)
        if receipt is None:
            raise ReceiptNotFound(detail=f"No receipt for {parent_tx_hash}")

        deposits = [d for d in map(self._to_deposit, delivered_messages_from_receipt(receipt)) if d]
        if not deposits:
            raise NoMessageFound(detail=f"{parent_tx_hash} created no deposit message")
        return deposits

    async def eth_deposit_status(self, message: DepositMessage) -> EthDepositStatus:
        receipt = await self.child.get_receipt(message.child_tx_id)
        return EthDepositStatus.DEPOSITED if receipt is not None else EthDepositStatus.PENDING

    async def retryable_status(self, message: DepositMessage) -> RetryableStatus:
        """
        Retryable ticket status

        Redeemed if a scheduled redeem succeeded, otherwise alive
        (FundsDepositedOnChild) until the ticket timeout lookup reverts (Expired).
        """
        creation = await self.child.get_receipt(message.child_tx_id)
        if creation is None:
            return RetryableStatus.NOT_YET_CREATED
        if creation.get('status') == 0:
            return RetryableStatus.CREATION_FAILED

        redeem_logs = await self.child.get_logs({
            'address': ARB_RETRYABLE_TX_ADDRESS,
            'topics': [REDEEM_SCHEDULED.topic_hex, message.child_tx_id],
            'fromBlock': creation['blockNumber'],
            'toBlock': 'latest',
        })
        for log in redeem_logs:
            retry_tx_hash = hash_hex(REDEEM_SCHEDULED.decode(log)['retryTxHash'])
            retry_receipt = await self.child.get_receipt(retry_tx_hash)
            if retry_receipt is not None and retry_receipt.get('status') == 1:
                return RetryableStatus.REDEEMED

        try:
            await self.child.call(
                ARB_RETRYABLE_TX_ADDRESS,
                encode_call("getTimeout(bytes32)", [as_bytes(message.child_tx_id)]),
            )
        except RpcError:
            return RetryableStatus.EXPIRED
        return RetryableStatus.FUNDS_DEPOSITED_ON_CHILD

    async def status(self, message: DepositMessage) -> DepositStatus:
        if message.is_retryable:
            return await self.retryable_status(message)
        return await self.eth_deposit_status(message)

    @staticmethod
    def is_terminal(message: DepositMessage, status: DepositStatus) -> bool:
        if message.is_retryable:
            return status != RetryableStatus.NOT_YET_CREATED
        return status == EthDepositStatus.DEPOSITED

    async def wait_for_status(
        self,
        message: DepositMessage,
        timeout_minutes: float = 30,
        check_interval_seconds: float = 10,
    ) -> Optional[DepositStatus]:
        """
        Poll until the deposit reaches a terminal status

        Args:
            message: Deposit message
            timeout_minutes: Maximum wait
            check_interval_seconds: Poll interval

        Returns:
            Terminal status, or None if the wait timed out
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_minutes * 60

        logger.info(f"Waiting for deposit {message.child_tx_id} (timeout {timeout_minutes}min)")

        while True:
            status = await self.status(message)
            if self.is_terminal(message, status):
                logger.info(f"✓ Deposit {message.child_tx_id} reached {status.name}")
                return status

            if loop.time() >= deadline:
                logger.warning(f"✗ Deposit {message.child_tx_id} still {status.name} after {timeout_minutes}min")
                return None

            logger.debug(f"Deposit {message.child_tx_id}: {status.name}, checking again in {check_interval_seconds}s")
            await asyncio.sleep(check_interval_seconds)


@dataclass
class RetryableGasParams:
    """Estimated retryable ticket parameters"""
    gas_limit: int
    max_fee_per_gas: int
    max_submission_cost: int
    deposit: int

    def to_dict(self) -> dict:
        return {
            'gas_limit': self.gas_limit,
            'max_fee_per_gas': self.max_fee_per_gas,
            'max_submission_cost': self.max_submission_cost,
            'deposit': self.deposit,
        }


class RetryableGasEstimator:
    """
    Gas parameters for a parent -> child retryable ticket

    Margins follow the rollup SDK defaults: +300% on the submission fee and
    +500% on the max fee per gas. The gas limit is taken as estimated.
    """

    SUBMISSION_FEE_PERCENT_INCREASE = 300
    MAX_FEE_PER_GAS_PERCENT_INCREASE = 500
    ESTIMATION_DEPOSIT = 10 ** 18

    def __init__(self, parent: ChainConnector, child: ChainConnector, eth_bridge: EthBridgeAddresses):
        if not eth_bridge.inbox:
            raise ConfigurationError("eth_bridge.inbox must be configured")
        self.parent = parent
        self.child = child
        self.eth_bridge = eth_bridge

    @staticmethod
    def _with_margin(value: int, percent: int) -> int:
        return value + value * percent // 100

    async def parent_base_fee(self) -> int:
        block = await self.parent.get_block('latest')
        base_fee = block.get('baseFeePerGas')
        if base_fee is None:
            raise RpcError(detail="Latest parent block has no baseFeePerGas")
        return int(base_fee)

    async def estimate_submission_fee(self, data_length: int, base_fee: int) -> int:
        result = await self.parent.call(
            self.eth_bridge.inbox,
            encode_call("calculateRetryableSubmissionFee(uint256,uint256)", [data_length, base_fee]),
        )
        return self._with_margin(decode_result(['uint256'], result)[0], self.SUBMISSION_FEE_PERCENT_INCREASE)

    async def estimate_gas_limit(
        self,
        from_address: str,
        to_address: str,
        l2_call_value: int,
        excess_fee_refund_address: str,
        call_value_refund_address: str,
        data: bytes,
    ) -> int:
        call = encode_call(
            "estimateRetryableTicket(address,uint256,address,uint256,address,address,bytes)",
            [
                from_address,
                self.ESTIMATION_DEPOSIT + l2_call_value,
                to_address,
                l2_call_value,
                excess_fee_refund_address,
                call_value_refund_address,
                data,
            ],
        )
        return await self.child.estimate_gas({'to': NODE_INTERFACE_ADDRESS, 'data': call})

    async def estimate_all(
        self,
        from_address: str,
        to_address: str,
        data: bytes,
        excess_fee_refund_address: str,
        call_value_refund_address: str,
        l2_call_value: int = 0,
        base_fee: Optional[int] = None,
    ) -> RetryableGasParams:
        """
        Estimate all retryable parameters

        Args:
            from_address: Parent-chain contract sending the ticket
            to_address: Child-chain call target
            data: Child-chain calldata
            excess_fee_refund_address: Refund address for unused fees
            call_value_refund_address: Refund address for the call value
            l2_call_value: Value forwarded to the child-chain call
            base_fee: Parent base fee snapshot (fetched if None)

        Returns:
            RetryableGasParams with the deposit value to attach
        """
        if base_fee is None:
            base_fee = await self.parent_base_fee()

        submission_cost = await self.estimate_submission_fee(len(data), base_fee)
        gas_limit = await self.estimate_gas_limit(
            from_address, to_address, l2_call_value,
            excess_fee_refund_address, call_value_refund_address, data,
        )
        max_fee_per_gas = self._with_margin(await self.child.get_gas_price(), self.MAX_FEE_PER_GAS_PERCENT_INCREASE)
        deposit = gas_limit * max_fee_per_gas + submission_cost + l2_call_value

        logger.debug(
            f"Retryable estimate: gasLimit={gas_limit}, maxFeePerGas={max_fee_per_gas}, "
            f"submission={submission_cost}, deposit={deposit}"
        )
        return RetryableGasParams(gas_limit, max_fee_per_gas, submission_cost, deposit)
