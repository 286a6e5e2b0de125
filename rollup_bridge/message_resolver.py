"""
Message State Resolver

Resolves a child-chain transaction hash to the outgoing message it created
and to that message's lifecycle status.

Status mapping is a fixed, index-ordered table:
    0 (Unconfirmed) -> Pending
    1 (Confirmed)   -> Claimable
    2 (Executed)    -> Success

Observed states are monotonic per hash: a node reporting an earlier state
than one already seen is logged and ignored. Only the most recently
resolved messages (max_tracked_messages) are remembered.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from loguru import logger

from .chain_connector import ChainConnector
from .errors import AmbiguousMessage, NoMessageFound, ReceiptNotFound
from .outbox import OutboxClient
from .protocol import (
    ARB_SYS_ADDRESS,
    L2_TO_L1_TX,
    OutgoingMessage,
    OutgoingMessageState,
    hash_hex,
    outgoing_messages_from_receipt,
    topic_for,
)


@dataclass(frozen=True)
class StatusLabel:
    """UI-stable status label"""
    text: str
    color: str


# Indexed by OutgoingMessageState. Never reorder.
STATUS: Tuple[StatusLabel, ...] = (
    StatusLabel("Pending", "yellow"),
    StatusLabel("Claimable", "green"),
    StatusLabel("Success", "gray"),
)


def status_label(state: int) -> StatusLabel:
    """Map a raw outgoing message state (0, 1, 2) to its status label"""
    if state not in (0, 1, 2):
        raise ValueError(f"Unknown outgoing message state: {state}")
    return STATUS[state]


@dataclass
class MessageStatus:
    """Resolved message with its raw state and label"""
    tx_hash: str
    message: OutgoingMessage
    state: OutgoingMessageState

    @property
    def label(self) -> StatusLabel:
        return status_label(int(self.state))

    @property
    def is_claimable(self) -> bool:
        return self.state == OutgoingMessageState.CONFIRMED

    def to_dict(self) -> Dict:
        return {
            'hash': self.tx_hash,
            'position': self.message.position,
            'state': int(self.state),
            'status': self.label.text,
            'color': self.label.color,
        }


class MessageStateResolver:
    """Child tx hash -> outgoing message -> lifecycle state"""

    def __init__(self, child: ChainConnector, outbox: OutboxClient, max_tracked_messages: int = 10_000):
        """
        Initialize resolver

        Args:
            child: Child-chain connector (receipts)
            outbox: Outbox client (protocol state)
            max_tracked_messages: Messages whose highest state is remembered;
                the least recently resolved are forgotten first
        """
        self.child = child
        self.outbox = outbox
        self.max_tracked_messages = max_tracked_messages
        self._high_water: "OrderedDict[str, OutgoingMessageState]" = OrderedDict()
        self._lock = threading.Lock()

    async def get_message(self, tx_hash: str, message_index: Optional[int] = None) -> OutgoingMessage:
        """
        Find the outgoing message created by a child-chain transaction

        Args:
            tx_hash: Child-chain transaction hash
            message_index: Index among the receipt's outgoing messages; required
                when the transaction created more than one

        Raises:
            ReceiptNotFound: Receipt absent (not mined yet)
            NoMessageFound: Mined without outgoing messages
            AmbiguousMessage: Several messages and no message_index
        """
        receipt = await self.child.get_receipt(tx_hash)
        if receipt is None:
            raise ReceiptNotFound(detail=f"No receipt for {tx_hash}")

        messages = outgoing_messages_from_receipt(receipt)
        if not messages:
            raise NoMessageFound(detail=f"{tx_hash} created no outgoing message")

        if message_index is None:
            if len(messages) > 1:
                raise AmbiguousMessage(detail=f"{tx_hash} created {len(messages)} outgoing messages")
            return messages[0]

        if not 0 <= message_index < len(messages):
            raise NoMessageFound(detail=f"{tx_hash} has no outgoing message #{message_index}")
        return messages[message_index]

    def _observe(self, key: str, state: OutgoingMessageState) -> OutgoingMessageState:
        with self._lock:
            seen = self._high_water.get(key)
            if seen is not None and state < seen:
                logger.warning(
                    f"Node reported {state.name} for {key} after {seen.name}, keeping {seen.name}"
                )
                self._high_water.move_to_end(key)
                return seen
            self._high_water[key] = state
            self._high_water.move_to_end(key)
            while len(self._high_water) > self.max_tracked_messages:
                self._high_water.popitem(last=False)
            return state

    @property
    def tracked_count(self) -> int:
        return len(self._high_water)

    async def resolve(self, tx_hash: str, message_index: Optional[int] = None) -> MessageStatus:
        """
        Resolve the lifecycle status of the message created by tx_hash

        Args:
            tx_hash: Child-chain transaction hash
            message_index: See get_message()

        Returns:
            MessageStatus (never earlier than a previously returned state)
        """
        message = await self.get_message(tx_hash, message_index)
        state = await self.state_of(message)
        return MessageStatus(tx_hash=hash_hex(tx_hash), message=message, state=state)

    async def state_of(self, message: OutgoingMessage) -> OutgoingMessageState:
        """Monotonic protocol state of an already decoded message"""
        raw_state = await self.outbox.status(message)

        key = f"{hash_hex(message.tx_hash)}:{message.position}"
        state = self._observe(key, OutgoingMessageState(raw_state))

        logger.debug(f"Message {message.tx_hash} (position {message.position}): {state.name}")
        return state

    async def get_status(self, tx_hash: str) -> StatusLabel:
        status = await self.resolve(tx_hash)
        return status.label

    async def find_messages(
        self,
        destination: str,
        from_block: Union[int, str] = 0,
        to_block: Union[int, str] = 'latest',
    ) -> List[OutgoingMessage]:
        """
        Outgoing messages addressed to destination, in log order

        Args:
            destination: Parent-chain destination address
            from_block: First child block to scan
            to_block: Last child block to scan
        """
        logs = await self.child.get_logs({
            'address': ARB_SYS_ADDRESS,
            'topics': [L2_TO_L1_TX.topic_hex, topic_for('address', destination)],
            'fromBlock': from_block,
            'toBlock': to_block,
        })
        messages = [OutgoingMessage.from_log(log) for log in logs if L2_TO_L1_TX.matches(log)]
        logger.debug(f"Found {len(messages)} outgoing messages to {destination}")
        return messages
