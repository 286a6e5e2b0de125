"""
Deadline Estimator

Estimated claim-ready time of a child -> parent message: the timestamp of
the block that included the initiating transaction plus a fixed
confirmation buffer. Display only; the real gate is the message state.
"""

from loguru import logger

from .chain_connector import ChainConnector
from .errors import ReceiptNotFound


DEFAULT_CONFIRMATION_BUFFER_MINUTES = 70


def claim_ready_at(block_timestamp: int, buffer_minutes: int = DEFAULT_CONFIRMATION_BUFFER_MINUTES) -> int:
    return block_timestamp + buffer_minutes * 60


class DeadlineEstimator:
    """Expected claim-ready unix timestamp for a child-chain transaction"""

    def __init__(self, child: ChainConnector, buffer_minutes: int = DEFAULT_CONFIRMATION_BUFFER_MINUTES):
        self.child = child
        self.buffer_minutes = buffer_minutes

    async def estimate(self, tx_hash: str) -> int:
        """
        Estimate when a withdrawal becomes claimable

        Args:
            tx_hash: Child-chain transaction hash

        Returns:
            Unix timestamp (block timestamp + buffer)

        Raises:
            ReceiptNotFound: If the transaction has no receipt
        """
        receipt = await self.child.get_receipt(tx_hash)
        if receipt is None:
            raise ReceiptNotFound(detail=f"No receipt for {tx_hash}")

        block = await self.child.get_block(receipt['blockNumber'])
        deadline = claim_ready_at(int(block['timestamp']), self.buffer_minutes)

        logger.debug(f"Deadline for {tx_hash}: block {receipt['blockNumber']} + {self.buffer_minutes}min = {deadline}")
        return deadline
