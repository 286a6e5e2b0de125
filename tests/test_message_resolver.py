"""
Tests for MessageStateResolver, the status table and DeadlineEstimator.
"""

import pytest

from rollup_bridge.deadline_estimator import DeadlineEstimator, claim_ready_at
from rollup_bridge.errors import (
    AmbiguousMessage,
    MessageNotClaimable,
    NoMessageFound,
    ReceiptNotFound,
)
from rollup_bridge.message_resolver import STATUS, MessageStateResolver, status_label
from rollup_bridge.outbox import OutboxClient
from rollup_bridge.protocol import OutgoingMessageState
from tests.fakes import PARENT_NFT, RollupFixture, l2_to_l1_log, receipt


@pytest.fixture
def rollup():
    return RollupFixture()


@pytest.fixture
def outbox(rollup):
    return OutboxClient(rollup.parent, rollup.child, rollup.eth_bridge)


@pytest.fixture
def resolver(rollup, outbox):
    return MessageStateResolver(rollup.child, outbox)


class TestStatusTable:
    """Test the fixed raw state -> label mapping"""

    def test_mapping(self):
        assert status_label(0).text == "Pending"
        assert status_label(1).text == "Claimable"
        assert status_label(2).text == "Success"
        assert [s.color for s in STATUS] == ["yellow", "green", "gray"]

    def test_no_other_mapping(self):
        with pytest.raises(ValueError):
            status_label(3)
        with pytest.raises(ValueError):
            status_label(-1)


class TestResolve:
    """Test state resolution from receipts and outbox"""

    @pytest.mark.asyncio
    async def test_lifecycle(self, rollup, resolver):
        rollup.add_withdrawal("0xAA", position=4)

        status = await resolver.resolve("0xAA")
        assert status.state == OutgoingMessageState.UNCONFIRMED
        assert status.label.text == "Pending"

        rollup.send_count = 5
        status = await resolver.resolve("0xAA")
        assert status.state == OutgoingMessageState.CONFIRMED
        assert status.is_claimable

        rollup.spent.add(4)
        assert (await resolver.get_status("0xAA")).text == "Success"

    @pytest.mark.asyncio
    async def test_send_count_equal_to_position_is_unconfirmed(self, rollup, resolver):
        rollup.add_withdrawal("0xAB", position=4)
        rollup.send_count = 4
        assert (await resolver.resolve("0xAB")).state == OutgoingMessageState.UNCONFIRMED

    @pytest.mark.asyncio
    async def test_never_regresses(self, rollup, resolver):
        """A lagging node reporting an earlier state does not move the status back"""
        rollup.add_withdrawal("0xAA", position=0)
        rollup.send_count = 1
        rollup.spent.add(0)
        assert (await resolver.resolve("0xAA")).state == OutgoingMessageState.EXECUTED

        rollup.spent.clear()
        assert (await resolver.resolve("0xAA")).state == OutgoingMessageState.EXECUTED

        rollup.send_count = 0
        assert (await resolver.resolve("0xAA")).label.text == "Success"

    @pytest.mark.asyncio
    async def test_claimable_never_back_to_pending(self, rollup, resolver):
        rollup.add_withdrawal("0xAC", position=2)
        rollup.send_count = 3
        assert (await resolver.resolve("0xAC")).label.text == "Claimable"

        rollup.send_count = 0
        assert (await resolver.resolve("0xAC")).label.text == "Claimable"

    @pytest.mark.asyncio
    async def test_tracked_messages_bounded(self, rollup, outbox):
        """Only the most recently resolved messages keep their highest state"""
        resolver = MessageStateResolver(rollup.child, outbox, max_tracked_messages=2)
        for position, tx_hash in enumerate(("0xA1", "0xA2", "0xA3")):
            rollup.add_withdrawal(tx_hash, position=position)
        rollup.send_count = 3

        for tx_hash in ("0xA1", "0xA2", "0xA1", "0xA3"):
            assert (await resolver.resolve(tx_hash)).label.text == "Claimable"
        assert resolver.tracked_count == 2

        rollup.send_count = 0
        assert (await resolver.resolve("0xA1")).label.text == "Claimable"
        assert (await resolver.resolve("0xA2")).label.text == "Pending"
        assert resolver.tracked_count == 2

    @pytest.mark.asyncio
    async def test_missing_receipt(self, resolver):
        with pytest.raises(ReceiptNotFound):
            await resolver.resolve("0xDEAD")

    @pytest.mark.asyncio
    async def test_receipt_without_message(self, rollup, resolver):
        rollup.child.add_receipt(receipt("0xEE", []))
        with pytest.raises(NoMessageFound):
            await resolver.resolve("0xEE")

    @pytest.mark.asyncio
    async def test_several_messages_are_ambiguous(self, rollup, resolver):
        rollup.child.add_receipt(receipt("0xEF", [
            l2_to_l1_log("0xEF", PARENT_NFT, 1, log_index=0),
            l2_to_l1_log("0xEF", PARENT_NFT, 2, log_index=1),
        ]))

        with pytest.raises(AmbiguousMessage):
            await resolver.resolve("0xEF")

        status = await resolver.resolve("0xEF", message_index=1)
        assert status.message.position == 2

        with pytest.raises(NoMessageFound):
            await resolver.resolve("0xEF", message_index=2)


class TestOutboxExecute:
    """Test outbox claim submission"""

    @pytest.mark.asyncio
    async def test_execute_requires_confirmation(self, rollup, outbox, resolver):
        rollup.add_withdrawal("0xAA", position=0)
        message = await resolver.get_message("0xAA")

        with pytest.raises(MessageNotClaimable):
            await outbox.execute(message)
        assert rollup.parent.sent == []

    @pytest.mark.asyncio
    async def test_execute_uses_proof(self, rollup, outbox, resolver):
        rollup.add_withdrawal("0xAA", position=0)
        rollup.send_count = 3
        message = await resolver.get_message("0xAA")

        tx_hash = await outbox.execute(message)

        assert rollup.proof_requests == [(3, 0)]
        assert rollup.parent.sent[0]['hash'] == tx_hash
        assert rollup.parent.sent[0]['to'] == rollup.eth_bridge.outbox


class TestDeadlineEstimator:
    """Test claim-ready estimates"""

    def test_buffer_arithmetic(self):
        for timestamp in (0, 1, 1_700_000_000):
            assert claim_ready_at(timestamp, 70) == timestamp + 4200

    @pytest.mark.asyncio
    async def test_estimate_from_block(self, rollup):
        rollup.add_withdrawal("0xAA", position=0, block_number=12)
        rollup.child.blocks[12] = {'timestamp': 1_700_000_000}

        estimator = DeadlineEstimator(rollup.child, buffer_minutes=70)
        assert await estimator.estimate("0xAA") == 1_700_004_200

    @pytest.mark.asyncio
    async def test_estimate_missing_receipt(self, rollup):
        with pytest.raises(NoMessageFound):
            await DeadlineEstimator(rollup.child).estimate("0xAF")
