"""
Bridge History

ETH deposit and withdrawal history of a user, rebuilt from event logs:
- Withdrawals: L2ToL1Tx logs on the child chain addressed to the user
- Deposits: InboxMessageDelivered logs on the parent chain within the
  lookback window whose packed recipient is the user
"""

import asyncio
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List

from loguru import logger

from .chain_connector import ChainConnector
from .deposits import DepositTracker
from .errors import ReceiptNotFound
from .formatting import format_balance
from .message_resolver import STATUS, MessageStateResolver, StatusLabel
from .protocol import (
    INBOX_MESSAGE_DELIVERED,
    EthDepositStatus,
    OutgoingMessage,
    hash_hex,
    parse_eth_deposit_data,
    same_address,
)

ETH_DEPOSIT_DATA_LENGTH = 52

HISTORY_AMOUNT_DECIMALS = 6


class MessageType(IntEnum):
    DEPOSIT = 1
    WITHDRAW = 2


DEPOSIT_STATUS: Dict[EthDepositStatus, StatusLabel] = {
    EthDepositStatus.PENDING: StatusLabel("Pending", "yellow"),
    EthDepositStatus.DEPOSITED: StatusLabel("Deposited", "black"),
}


@dataclass
class HistoryEntry:
    """One row of the bridge history"""
    time: int
    amount: str
    from_chain: str
    to_chain: str
    status: StatusLabel
    hash: str
    type: MessageType

    def to_dict(self) -> Dict:
        return {
            'time': self.time,
            'token': self.amount,
            'from': self.from_chain,
            'to': self.to_chain,
            'status': self.status.text,
            'color': self.status.color,
            'hash': self.hash,
            'type': int(self.type),
        }


class BridgeHistory:
    """ETH bridge history for a user"""

    def __init__(
        self,
        parent: ChainConnector,
        resolver: MessageStateResolver,
        deposits: DepositTracker,
        inbox_address: str,
        parent_name: str = "parent",
        child_name: str = "child",
        lookback_blocks: int = 10_368_000,
    ):
        self.parent = parent
        self.resolver = resolver
        self.deposits = deposits
        self.inbox_address = inbox_address
        self.parent_name = parent_name
        self.child_name = child_name
        self.lookback_blocks = lookback_blocks

    async def _withdrawal_entry(self, message: OutgoingMessage) -> HistoryEntry:
        state = await self.resolver.state_of(message)
        return HistoryEntry(
            time=message.timestamp,
            amount=format_balance(message.callvalue, HISTORY_AMOUNT_DECIMALS),
            from_chain=self.child_name,
            to_chain=self.parent_name,
            status=STATUS[int(state)],
            hash=message.tx_hash,
            type=MessageType.WITHDRAW,
        )

    async def eth_withdrawals(self, user: str) -> List[HistoryEntry]:
        messages = await self.resolver.find_messages(user, 'earliest')
        return list(await asyncio.gather(*[self._withdrawal_entry(m) for m in messages]))

    async def _tx_timestamp(self, connector: ChainConnector, tx_hash: str) -> int:
        receipt = await connector.get_receipt(tx_hash)
        if receipt is None:
            raise ReceiptNotFound(detail=f"No receipt for {tx_hash}")
        block = await connector.get_block(receipt['blockNumber'])
        return int(block['timestamp'])

    async def _deposit_status(self, tx_hash: str, message_number: int) -> EthDepositStatus:
        for message in await self.deposits.get_messages(tx_hash):
            if message.message_number == message_number and not message.is_retryable:
                return await self.deposits.eth_deposit_status(message)
        return EthDepositStatus.PENDING

    async def _deposit_entry(self, log: Dict, value: int) -> HistoryEntry:
        tx_hash = hash_hex(log['transactionHash'])
        message_number = INBOX_MESSAGE_DELIVERED.decode(log)['messageNum']
        timestamp, status = await asyncio.gather(
            self._tx_timestamp(self.parent, tx_hash),
            self._deposit_status(tx_hash, message_number),
        )
        return HistoryEntry(
            time=timestamp,
            amount=format_balance(value, HISTORY_AMOUNT_DECIMALS),
            from_chain=self.parent_name,
            to_chain=self.child_name,
            status=DEPOSIT_STATUS[status],
            hash=tx_hash,
            type=MessageType.DEPOSIT,
        )

    async def eth_deposits(self, user: str) -> List[HistoryEntry]:
        latest = await self.parent.get_block_number()
        from_block = max(0, latest - self.lookback_blocks)

        logs = await self.parent.get_logs({
            'address': self.inbox_address,
            'topics': [INBOX_MESSAGE_DELIVERED.topic_hex],
            'fromBlock': from_block,
            'toBlock': 'latest',
        })

        matching = []
        for log in logs:
            data = INBOX_MESSAGE_DELIVERED.decode(log)['data']
            if len(data) != ETH_DEPOSIT_DATA_LENGTH:
                continue
            recipient, value = parse_eth_deposit_data(data)
            if same_address(recipient, user):
                matching.append((log, value))

        return list(await asyncio.gather(*[self._deposit_entry(log, value) for log, value in matching]))

    async def history(self, user: str) -> List[HistoryEntry]:
        """
        Full ETH bridge history for a user, newest first

        Args:
            user: User address

        Returns:
            Deposits and withdrawals merged by time, descending
        """
        withdrawals, deposits = await asyncio.gather(self.eth_withdrawals(user), self.eth_deposits(user))
        entries = sorted(withdrawals + deposits, key=lambda e: e.time, reverse=True)
        logger.info(f"✓ Bridge history for {user}: {len(deposits)} deposits, {len(withdrawals)} withdrawals")
        return entries
