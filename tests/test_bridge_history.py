"""
Tests for BridgeHistory.
"""

import pytest

from rollup_bridge.bridge_history import BridgeHistory, MessageType
from rollup_bridge.deposits import DepositTracker
from rollup_bridge.message_resolver import MessageStateResolver
from rollup_bridge.outbox import OutboxClient
from rollup_bridge.protocol import calculate_deposit_tx_id
from tests.fakes import (
    CHILD_CHAIN_ID,
    ETH_BRIDGE,
    OTHER_USER,
    USER,
    RollupFixture,
    eth_deposit_logs,
    receipt,
    retryable_logs,
    tx_hash,
)


@pytest.fixture
def rollup():
    return RollupFixture()


@pytest.fixture
def history(rollup):
    resolver = MessageStateResolver(rollup.child, OutboxClient(rollup.parent, rollup.child, rollup.eth_bridge))
    return BridgeHistory(
        rollup.parent,
        resolver,
        DepositTracker(rollup.parent, rollup.child),
        ETH_BRIDGE.inbox,
        parent_name="Arbitrum Sepolia",
        child_name="Communitas",
        lookback_blocks=1_000,
    )


def add_deposit(rollup, label, message_index, to_address, value, block_number=100, timestamp=1_700_000_900):
    parent_tx = tx_hash(label)
    rollup.parent.add_receipt(receipt(
        parent_tx, eth_deposit_logs(parent_tx, message_index, USER, to_address, value, block_number), block_number
    ))
    rollup.parent.blocks[block_number] = {'timestamp': timestamp}
    return parent_tx


class TestWithdrawals:
    """Test ETH withdrawal history"""

    @pytest.mark.asyncio
    async def test_withdrawal_entries(self, rollup, history):
        rollup.add_withdrawal("0x0A", position=0, destination=USER, callvalue=5 * 10 ** 17)
        rollup.add_withdrawal("0x0B", position=1, destination=OTHER_USER, callvalue=10 ** 18)
        rollup.send_count = 1

        entries = await history.eth_withdrawals(USER)

        assert len(entries) == 1
        entry = entries[0]
        assert entry.type == MessageType.WITHDRAW
        assert entry.amount == "0.500000 ETH"
        assert entry.status.text == "Claimable"
        assert (entry.from_chain, entry.to_chain) == ("Communitas", "Arbitrum Sepolia")


class TestDeposits:
    """Test ETH deposit history"""

    @pytest.mark.asyncio
    async def test_deposit_status(self, rollup, history):
        done = add_deposit(rollup, "done", 1, USER, 10 ** 18)
        add_deposit(rollup, "waiting", 2, USER, 2 * 10 ** 18, block_number=101)
        rollup.child.add_receipt(receipt(calculate_deposit_tx_id(CHILD_CHAIN_ID, 1, USER, USER, 10 ** 18)))

        entries = {e.hash: e for e in await history.eth_deposits(USER)}

        assert len(entries) == 2
        assert entries[done].status.text == "Deposited"
        assert entries[done].time == 1_700_000_900
        waiting = [e for h, e in entries.items() if h != done][0]
        assert waiting.status.text == "Pending"
        assert waiting.amount == "2.000000 ETH"

    @pytest.mark.asyncio
    async def test_other_recipients_and_retryables_ignored(self, rollup, history):
        add_deposit(rollup, "other", 3, OTHER_USER, 10 ** 18)
        parent_tx = tx_hash("nft")
        logs, _ticket = retryable_logs(parent_tx, 4, owner=USER)
        rollup.parent.add_receipt(receipt(parent_tx, logs, 100))

        assert await history.eth_deposits(USER) == []

    @pytest.mark.asyncio
    async def test_lookback_window(self, rollup, history):
        rollup.parent.block_number = 5_000
        add_deposit(rollup, "old", 5, USER, 10 ** 18, block_number=100)
        recent = add_deposit(rollup, "recent", 6, USER, 10 ** 18, block_number=4_500)

        assert [e.hash for e in await history.eth_deposits(USER)] == [recent]


class TestHistory:
    """Test merged history"""

    @pytest.mark.asyncio
    async def test_newest_first(self, rollup, history):
        rollup.add_withdrawal("0x0A", position=0, destination=USER, callvalue=10 ** 17, timestamp=1_700_000_500)
        add_deposit(rollup, "deposit", 1, USER, 10 ** 18, timestamp=1_700_000_900)

        entries = await history.history(USER)

        assert [e.type for e in entries] == [MessageType.DEPOSIT, MessageType.WITHDRAW]
        rows = [e.to_dict() for e in entries]
        assert rows[0]['type'] == 1
        assert rows[1]['status'] == "Pending"
        assert rows[1]['color'] == "yellow"
