"""
Tests for MessagePoller subscriptions.
"""

import asyncio

import pytest

from rollup_bridge.deadline_estimator import DeadlineEstimator
from rollup_bridge.errors import NoMessageFound, RpcError
from rollup_bridge.message_resolver import MessageStateResolver
from rollup_bridge.outbox import OutboxClient
from rollup_bridge.protocol import OutgoingMessageState
from rollup_bridge.status_poller import MessagePoller
from tests.fakes import RollupFixture


INTERVAL = 0.01


@pytest.fixture
def rollup():
    return RollupFixture()


@pytest.fixture
def resolver(rollup):
    return MessageStateResolver(rollup.child, OutboxClient(rollup.parent, rollup.child, rollup.eth_bridge))


@pytest.fixture
def poller(rollup, resolver):
    return MessagePoller(resolver, DeadlineEstimator(rollup.child, buffer_minutes=70))


async def closed(subscription):
    await asyncio.wait_for(subscription.wait_closed(), timeout=2)


class TestStatusSubscription:
    """Test status polling"""

    @pytest.mark.asyncio
    async def test_polls_until_executed(self, rollup, poller):
        rollup.add_withdrawal("0xAA", position=0)
        seen = []

        def on_status(status):
            seen.append(status.state)
            if status.state == OutgoingMessageState.UNCONFIRMED:
                rollup.send_count = 1
            elif status.state == OutgoingMessageState.CONFIRMED:
                rollup.spent.add(0)

        subscription = poller.subscribe_status("0xAA", on_status, interval_seconds=INTERVAL)
        await closed(subscription)

        assert seen == [
            OutgoingMessageState.UNCONFIRMED, OutgoingMessageState.CONFIRMED, OutgoingMessageState.EXECUTED,
        ]
        assert not subscription.active
        assert subscription.deliveries == 3

    @pytest.mark.asyncio
    async def test_async_callback(self, rollup, poller):
        rollup.add_withdrawal("0xAA", position=0)
        rollup.send_count = 1
        rollup.spent.add(0)
        seen = []

        async def on_status(status):
            await asyncio.sleep(0)
            seen.append(status.label.text)

        await closed(poller.subscribe_status("0xAA", on_status, interval_seconds=INTERVAL))
        assert seen == ["Success"]

    @pytest.mark.asyncio
    async def test_cancel_while_request_in_flight(self, rollup, resolver, poller):
        rollup.add_withdrawal("0xAA", position=0)
        gate = asyncio.Event()
        original_resolve = resolver.resolve

        async def slow_resolve(tx_hash, message_index=None):
            await gate.wait()
            return await original_resolve(tx_hash, message_index)

        resolver.resolve = slow_resolve
        seen = []

        subscription = poller.subscribe_status("0xAA", seen.append, interval_seconds=INTERVAL)
        await asyncio.sleep(0)
        subscription.cancel()
        gate.set()
        await closed(subscription)

        assert seen == []
        assert subscription.deliveries == 0

    @pytest.mark.asyncio
    async def test_errors_reported_and_polling_continues(self, rollup, poller):
        errors = []
        seen = []

        def on_error(error):
            errors.append(error)
            rollup.add_withdrawal("0xAB", position=0)

        def on_status(status):
            seen.append(status.state)
            subscription.cancel()

        subscription = poller.subscribe_status("0xAB", on_status, on_error, interval_seconds=INTERVAL)
        await closed(subscription)

        assert len(errors) == 1
        assert isinstance(errors[0], NoMessageFound)
        assert seen == [OutgoingMessageState.UNCONFIRMED]

    @pytest.mark.asyncio
    async def test_raising_callback_keeps_polling(self, rollup, poller):
        rollup.add_withdrawal("0xAA", position=0)
        seen = []

        def on_status(status):
            seen.append(status.state)
            if len(seen) == 1:
                rollup.send_count = 1
                raise RuntimeError("display failed")
            rollup.spent.add(0)

        subscription = poller.subscribe_status("0xAA", on_status, interval_seconds=INTERVAL)
        await closed(subscription)

        assert seen[0] == OutgoingMessageState.UNCONFIRMED
        assert seen[-1] == OutgoingMessageState.EXECUTED
        assert subscription.task.exception() is None

    @pytest.mark.asyncio
    async def test_unexpected_fetch_error_reported_as_bridge_error(self, rollup, resolver, poller):
        rollup.add_withdrawal("0xAA", position=0)
        original_resolve = resolver.resolve
        calls = []

        async def flaky_resolve(tx_hash, message_index=None):
            calls.append(tx_hash)
            if len(calls) == 1:
                raise ValueError("malformed response")
            return await original_resolve(tx_hash, message_index)

        resolver.resolve = flaky_resolve
        errors = []
        seen = []

        def on_status(status):
            seen.append(status.state)
            subscription.cancel()

        subscription = poller.subscribe_status("0xAA", on_status, errors.append, interval_seconds=INTERVAL)
        await closed(subscription)

        assert len(errors) == 1
        assert isinstance(errors[0], RpcError)
        assert "malformed response" in errors[0].detail
        assert seen == [OutgoingMessageState.UNCONFIRMED]

    @pytest.mark.asyncio
    async def test_independent_subscribers(self, rollup, poller):
        rollup.add_withdrawal("0xAA", position=0)
        first, second = [], []

        sub_one = poller.subscribe_status("0xAA", first.append, interval_seconds=INTERVAL)
        sub_two = poller.subscribe_status("0xAA", second.append, interval_seconds=INTERVAL)

        await asyncio.sleep(INTERVAL * 3)
        sub_one.cancel()
        rollup.send_count = 1
        rollup.spent.add(0)
        await closed(sub_two)
        await closed(sub_one)

        assert first and second
        assert second[-1].state == OutgoingMessageState.EXECUTED
        assert all(s.state == OutgoingMessageState.UNCONFIRMED for s in first)


class TestDeadlineSubscription:
    """Test claim deadline polling"""

    @pytest.mark.asyncio
    async def test_delivers_estimate(self, rollup, poller):
        rollup.add_withdrawal("0xAA", position=0, block_number=12)
        rollup.child.blocks[12] = {'timestamp': 1_700_000_000}
        seen = []

        def on_deadline(deadline):
            seen.append(deadline)
            subscription.cancel()

        subscription = poller.subscribe_deadline("0xAA", on_deadline, interval_seconds=INTERVAL)
        await closed(subscription)

        assert seen == [1_700_004_200]
