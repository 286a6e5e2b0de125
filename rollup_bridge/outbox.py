"""
Outbox Client

Reads and executes child -> parent outgoing messages:
- Executed: the parent Outbox reports the message position as spent
- Confirmed: the latest confirmed rollup node covers the message position
- Unconfirmed: otherwise

Execution fetches the outbox proof from the child NodeInterface and submits
Outbox.executeTransaction on the parent chain.
"""

from typing import Dict, Optional, Union

from loguru import logger

from .bridge_config import EthBridgeAddresses
from .chain_connector import ChainConnector
from .errors import ConfigurationError, MessageNotClaimable
from .protocol import (
    NODE_CONFIRMED,
    NODE_INTERFACE_ADDRESS,
    OutgoingMessage,
    OutgoingMessageState,
    decode_result,
    encode_call,
    hash_hex,
    topic_for,
)


def _as_int(value: Union[int, str, None]) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith('0x') else int(value)
    return int(value)


class OutboxClient:
    """Outgoing message state and execution against the rollup contracts"""

    def __init__(
        self,
        parent: ChainConnector,
        child: ChainConnector,
        eth_bridge: EthBridgeAddresses,
        rollup_from_block: int = 0,
    ):
        if not eth_bridge.outbox or not eth_bridge.rollup:
            raise ConfigurationError("eth_bridge.outbox and eth_bridge.rollup must be configured")

        self.parent = parent
        self.child = child
        self.eth_bridge = eth_bridge
        self.rollup_from_block = rollup_from_block

    async def is_spent(self, position: int) -> bool:
        data = encode_call("isSpent(uint256)", [position])
        result = await self.parent.call(self.eth_bridge.outbox, data)
        return decode_result(['bool'], result)[0]

    async def latest_confirmed_node(self) -> int:
        result = await self.parent.call(self.eth_bridge.rollup, encode_call("latestConfirmed()"))
        return decode_result(['uint64'], result)[0]

    async def confirmed_send_count(self) -> int:
        """
        Number of outgoing messages covered by the latest confirmed node

        Returns:
            sendCount of the child block the node asserts (0 if none yet)
        """
        node_num = await self.latest_confirmed_node()
        logs = await self.parent.get_logs({
            'address': self.eth_bridge.rollup,
            'topics': [NODE_CONFIRMED.topic_hex, topic_for('uint64', node_num)],
            'fromBlock': self.rollup_from_block,
            'toBlock': 'latest',
        })
        if not logs:
            logger.debug(f"No NodeConfirmed log for node {node_num}")
            return 0

        event = NODE_CONFIRMED.decode(logs[-1])
        block = await self.child.get_block(hash_hex(event['blockHash']))
        return _as_int(block.get('sendCount'))

    async def status(self, message: OutgoingMessage) -> OutgoingMessageState:
        """Protocol state of an outgoing message"""
        if await self.is_spent(message.position):
            return OutgoingMessageState.EXECUTED

        send_count = await self.confirmed_send_count()
        if send_count > message.position:
            return OutgoingMessageState.CONFIRMED
        return OutgoingMessageState.UNCONFIRMED

    async def execute(self, message: OutgoingMessage, overrides: Optional[Dict] = None) -> str:
        """
        Submit the parent-chain claim transaction for a confirmed message

        Args:
            message: Outgoing message to execute
            overrides: Extra transaction fields (gas, gasPrice, ...)

        Returns:
            Parent-chain transaction hash

        Raises:
            MessageNotClaimable: If the message is not yet covered by a confirmed node
        """
        size = await self.confirmed_send_count()
        if size <= message.position:
            raise MessageNotClaimable(detail=f"position {message.position}, confirmed send count {size}")

        proof_data = encode_call("constructOutboxProof(uint64,uint64)", [size, message.position])
        result = await self.child.call(NODE_INTERFACE_ADDRESS, proof_data)
        _send, _root, proof = decode_result(['bytes32', 'bytes32', 'bytes32[]'], result)

        data = encode_call(
            "executeTransaction(bytes32[],uint256,address,address,uint256,uint256,uint256,uint256,bytes)",
            [
                list(proof),
                message.position,
                message.caller,
                message.destination,
                message.arb_block_num,
                message.eth_block_num,
                message.timestamp,
                message.callvalue,
                message.data,
            ],
        )
        tx = {'to': self.eth_bridge.outbox, 'data': data}
        tx.update(overrides or {})

        tx_hash = await self.parent.send_transaction(tx)
        logger.info(f"✓ Outbox execution submitted for position {message.position}: {tx_hash}")
        return tx_hash
