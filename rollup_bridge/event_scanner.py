"""
Event Log Scanner

Reconstructs a user's outgoing NFT transfers from child-chain logs alone:
1. L2ToL1Tx logs whose destination is the parent-chain NFT contract
2. Per transaction, the NFT contract's own L2ToL1TxCreated log from the receipt
3. Join by transaction hash, filter by owner, drop executed messages
4. Enrich with token metadata fetched over HTTP
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Union

from eth_abi.exceptions import DecodingError
from loguru import logger

from .chain_connector import ChainConnector
from .message_resolver import MessageStateResolver
from .pending_store import PendingTransferRecord
from .protocol import (
    APPLICATION_EVENTS,
    NFT_WITHDRAWAL_CREATED,
    OutgoingMessage,
    OutgoingMessageState,
    hash_hex,
    same_address,
)


MetadataFetcher = Callable[[str], Awaitable[Dict[str, str]]]
BlockTag = Union[int, str]


@dataclass
class ScannedTransfer:
    """Outgoing NFT transfer recovered from chain logs"""
    tx_hash: str
    token_id: str
    owner: str
    token_uri: str
    state: OutgoingMessageState
    position: int
    image: str = ""
    name: str = ""
    description: str = ""

    def to_record(self) -> PendingTransferRecord:
        return PendingTransferRecord(
            tx_hash=self.tx_hash,
            token_id=self.token_id,
            owner=self.owner,
            image=self.image,
            name=self.name,
            description=self.description,
        )

    def to_dict(self) -> Dict:
        data = self.to_record().to_dict()
        data['state'] = int(self.state)
        return data


class EventLogScanner:
    """
    Outgoing NFT transfers for an owner, without any external index

    Features:
    - Joins protocol and application logs of the same transaction
    - Pairs several transfers of one transaction by log order
    - Per-record decode failures are skipped, not fatal
    - Skipped transactions and the reason are kept in last_skipped
    - Metadata fetch failures leave display fields empty
    """

    def __init__(
        self,
        child: ChainConnector,
        resolver: MessageStateResolver,
        parent_nft_address: str,
        child_nft_address: str,
        metadata_fetcher: Optional[MetadataFetcher] = None,
        from_block: BlockTag = 0,
    ):
        """
        Initialize scanner

        Args:
            child: Child-chain connector
            resolver: Message state resolver (protocol state per message)
            parent_nft_address: NFT contract on the parent chain (message destination)
            child_nft_address: NFT contract on the child chain (emits L2ToL1TxCreated)
            metadata_fetcher: async uri -> {name, image, description}
            from_block: First block to scan
        """
        self.child = child
        self.resolver = resolver
        self.parent_nft_address = parent_nft_address
        self.child_nft_address = child_nft_address
        self.metadata_fetcher = metadata_fetcher
        self.from_block = from_block
        # tx hash -> reason, for the most recent scan
        self.last_skipped: Dict[str, str] = {}

    def _application_logs(self, receipt: Dict) -> List[Dict]:
        logs = []
        for log in receipt.get('logs', []):
            if not same_address(log.get('address'), self.child_nft_address):
                continue
            event = APPLICATION_EVENTS.identify(log)
            if event is not None and event.name == NFT_WITHDRAWAL_CREATED.name:
                logs.append(log)
        return logs

    async def _transfers_for_tx(
        self,
        tx_hash: str,
        messages: List[OutgoingMessage],
        skipped: Dict[str, str],
    ) -> List[ScannedTransfer]:
        receipt = await self.child.get_receipt(tx_hash)
        if receipt is None:
            skipped[tx_hash] = "receipt not available"
            logger.warning(f"Receipt for {tx_hash} not available, skipping")
            return []

        app_logs = self._application_logs(receipt)
        if not app_logs:
            skipped[tx_hash] = "no L2ToL1TxCreated log"
            logger.warning(f"No L2ToL1TxCreated log in {tx_hash}, skipping")
            return []
        if len(app_logs) != len(messages):
            skipped[tx_hash] = f"{len(messages)} outgoing messages, {len(app_logs)} L2ToL1TxCreated logs"
            logger.warning(f"Skipping {tx_hash}: {skipped[tx_hash]}")
            return []

        transfers = []
        for message, log in zip(messages, app_logs):
            try:
                args = NFT_WITHDRAWAL_CREATED.decode(log)
            except (ValueError, DecodingError) as e:
                logger.warning(f"Failed to decode L2ToL1TxCreated in {tx_hash}: {e}")
                continue

            state = await self.resolver.state_of(message)
            transfers.append(ScannedTransfer(
                tx_hash=tx_hash,
                token_id=str(args['tokenId']),
                owner=args['from'],
                token_uri=args['tokenURI'],
                state=state,
                position=message.position,
            ))
        return transfers

    async def _enrich(self, transfer: ScannedTransfer) -> ScannedTransfer:
        if self.metadata_fetcher is None or not transfer.token_uri:
            return transfer
        try:
            metadata = await self.metadata_fetcher(transfer.token_uri)
        except Exception as e:
            logger.warning(f"Metadata fetch failed for token {transfer.token_id} ({transfer.token_uri}): {e}")
            return transfer

        transfer.name = metadata.get('name', '')
        transfer.image = metadata.get('image', '')
        transfer.description = metadata.get('description', '')
        return transfer

    async def scan(
        self,
        owner: Optional[str] = None,
        from_block: Optional[BlockTag] = None,
        to_block: BlockTag = 'latest',
        include_executed: bool = False,
    ) -> List[ScannedTransfer]:
        """
        Scan for outgoing NFT transfers

        Args:
            owner: Only return transfers initiated by this address (all if None)
            from_block: First block (defaults to the configured start block)
            to_block: Last block
            include_executed: Keep transfers whose message is already executed

        Returns:
            One ScannedTransfer per L2ToL1TxCreated event, in log order
        """
        start = self.from_block if from_block is None else from_block
        messages = await self.resolver.find_messages(self.parent_nft_address, start, to_block)

        by_tx: Dict[str, List[OutgoingMessage]] = OrderedDict()
        for message in messages:
            by_tx.setdefault(hash_hex(message.tx_hash), []).append(message)

        skipped: Dict[str, str] = {}
        per_tx = await asyncio.gather(*[
            self._transfers_for_tx(tx_hash, tx_messages, skipped) for tx_hash, tx_messages in by_tx.items()
        ])
        self.last_skipped = skipped

        transfers = [t for group in per_tx for t in group]
        if owner is not None:
            transfers = [t for t in transfers if same_address(t.owner, owner)]
        if not include_executed:
            transfers = [t for t in transfers if t.state != OutgoingMessageState.EXECUTED]

        transfers = list(await asyncio.gather(*[self._enrich(t) for t in transfers]))

        logger.info(f"✓ Event log scan: {len(transfers)} outgoing transfers"
                    f"{f' for {owner}' if owner else ''}, {len(skipped)} transactions skipped")
        return transfers
