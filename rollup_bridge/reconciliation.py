"""
Pending Transfer Reconciliation

Keeps the local pending store in line with chain state:
- Executed messages are removed
- Mined transactions that carry no outgoing message are stale and removed
- Transactions not mined yet are kept (the record was written right after
  submission)
- RPC failures leave records untouched for the next pass

pending_transfers() merges the store with the event log scan so that a
cleared store (new device) still shows every pending transfer.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loguru import logger

from .errors import AmbiguousMessage, BridgeError, NoMessageFound, ReceiptNotFound, StaleCacheEntry
from .event_scanner import EventLogScanner
from .message_resolver import MessageStateResolver
from .pending_store import PendingTransferRecord, PendingTransferStore
from .protocol import OutgoingMessageState, same_address


@dataclass
class ReconciliationReport:
    """Result of one reconciliation pass"""
    checked: int = 0
    removed: List[str] = field(default_factory=list)
    stale: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    unmined: List[str] = field(default_factory=list)
    states: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'checked': self.checked,
            'removed': list(self.removed),
            'stale': list(self.stale),
            'failed': list(self.failed),
            'unmined': list(self.unmined),
            'states': dict(self.states),
        }


class PendingTransferReconciler:
    """Reconcile PendingTransferStore against message state"""

    def __init__(
        self,
        store: PendingTransferStore,
        resolver: MessageStateResolver,
        scanner: Optional[EventLogScanner] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.scanner = scanner

    async def _check(self, record: PendingTransferRecord, report: ReconciliationReport):
        try:
            status = await self.resolver.resolve(record.tx_hash)
        except ReceiptNotFound:
            logger.debug(f"Pending transfer {record.tx_hash} not mined yet, kept")
            report.unmined.append(record.tx_hash)
            return
        except NoMessageFound as e:
            stale = StaleCacheEntry(detail=f"{record.tx_hash}: {e.detail}")
            logger.warning(f"Stale pending transfer {record.tx_hash} (token {record.token_id}): {stale.detail}")
            self.store.remove(record.tx_hash)
            report.stale.append(record.tx_hash)
            return
        except AmbiguousMessage as e:
            logger.warning(f"Pending transfer {record.tx_hash} kept: {e.detail}")
            report.failed.append(record.tx_hash)
            return
        except BridgeError as e:
            logger.warning(f"Could not check pending transfer {record.tx_hash}: {e.message}")
            report.failed.append(record.tx_hash)
            return

        report.states[record.tx_hash] = int(status.state)
        if status.state == OutgoingMessageState.EXECUTED:
            self.store.remove(record.tx_hash)
            report.removed.append(record.tx_hash)

    async def reconcile(self) -> ReconciliationReport:
        """
        Resolve every stored record once

        Returns:
            ReconciliationReport
        """
        report = ReconciliationReport()
        records = self.store.list_all()
        report.checked = len(records)

        await asyncio.gather(*[self._check(record, report) for record in records])

        logger.info(
            f"✓ Reconciled {report.checked} pending transfers: "
            f"{len(report.removed)} executed, {len(report.stale)} stale, "
            f"{len(report.unmined)} not mined, {len(report.failed)} unchecked"
        )
        return report

    async def pending_transfers(self, owner: str) -> List[PendingTransferRecord]:
        """
        Pending outgoing NFT transfers of an owner

        Store records first (in insertion order), then scan-only transfers,
        de-duplicated by transaction hash.
        """
        await self.reconcile()
        records = [r for r in self.store.list_all() if same_address(r.owner, owner)]

        if self.scanner is not None:
            known = {r.tx_hash for r in records}
            for transfer in await self.scanner.scan(owner=owner):
                record = transfer.to_record()
                if record.tx_hash not in known:
                    known.add(record.tx_hash)
                    records.append(record)

        return records
