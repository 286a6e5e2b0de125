"""
Status Poller

Per-subscriber polling of message status and claim deadline. Subscribers
are independent: several may poll the same hash without coordination.
Cancelling a subscription stops further requests; a request already in
flight completes without delivering its result.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from .deadline_estimator import DeadlineEstimator
from .errors import BridgeError, classify_error
from .message_resolver import MessageStateResolver, MessageStatus
from .protocol import OutgoingMessageState


Callback = Callable[[Any], Any]


class Subscription:
    """Handle of one polling loop"""

    def __init__(self, name: str):
        self.name = name
        self._stopped = asyncio.Event()
        self.task: Optional[asyncio.Task] = None
        self.deliveries = 0

    @property
    def active(self) -> bool:
        return not self._stopped.is_set()

    def cancel(self):
        if self.active:
            self._stopped.set()
            logger.debug(f"Subscription {self.name} cancelled")

    async def sleep(self, seconds: float):
        """Sleep unless cancelled first"""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def wait_closed(self):
        if self.task is not None:
            await self.task


async def _deliver(callback: Optional[Callback], value: Any, name: str):
    """Run a subscriber callback; its failures are logged and do not stop polling"""
    if callback is None:
        return
    try:
        outcome = callback(value)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        logger.exception(f"✗ Subscriber callback for {name} raised")


class MessagePoller:
    """Status and deadline subscriptions for child-chain withdrawal hashes"""

    def __init__(
        self,
        resolver: MessageStateResolver,
        estimator: DeadlineEstimator,
        status_interval_seconds: float = 60,
        deadline_interval_seconds: float = 60,
    ):
        self.resolver = resolver
        self.estimator = estimator
        self.status_interval_seconds = status_interval_seconds
        self.deadline_interval_seconds = deadline_interval_seconds

    async def _loop(
        self,
        subscription: Subscription,
        fetch: Callable[[], Awaitable[Any]],
        on_value: Callback,
        on_error: Optional[Callback],
        interval: float,
        is_final: Callable[[Any], bool],
    ):
        while subscription.active:
            try:
                value = await fetch()
            except BridgeError as e:
                logger.debug(f"Poll {subscription.name} failed: {e.message}")
                if subscription.active:
                    await _deliver(on_error, e, subscription.name)
            except Exception as e:
                error = classify_error(e)
                logger.error(f"✗ Poll {subscription.name} failed unexpectedly: {error.message} ({error.detail})")
                if subscription.active:
                    await _deliver(on_error, error, subscription.name)
            else:
                if not subscription.active:
                    break
                subscription.deliveries += 1
                await _deliver(on_value, value, subscription.name)
                if is_final(value):
                    logger.debug(f"Poll {subscription.name} reached a final value")
                    subscription.cancel()
                    break
            await subscription.sleep(interval)

    def _start(self, subscription: Subscription, coro: Awaitable) -> Subscription:
        subscription.task = asyncio.get_running_loop().create_task(coro)
        return subscription

    def subscribe_status(
        self,
        tx_hash: str,
        on_status: Callable[[MessageStatus], Any],
        on_error: Optional[Callback] = None,
        interval_seconds: Optional[float] = None,
    ) -> Subscription:
        """
        Poll the message state of tx_hash until executed or cancelled

        Args:
            tx_hash: Child-chain transaction hash
            on_status: Called with each MessageStatus (sync or async)
            on_error: Called with each BridgeError
            interval_seconds: Poll interval (default status interval)
        """
        subscription = Subscription(f"status:{tx_hash}")
        return self._start(subscription, self._loop(
            subscription,
            lambda: self.resolver.resolve(tx_hash),
            on_status,
            on_error,
            interval_seconds or self.status_interval_seconds,
            lambda status: status.state == OutgoingMessageState.EXECUTED,
        ))

    def subscribe_deadline(
        self,
        tx_hash: str,
        on_deadline: Callable[[int], Any],
        on_error: Optional[Callback] = None,
        interval_seconds: Optional[float] = None,
    ) -> Subscription:
        """Poll the estimated claim-ready timestamp of tx_hash until cancelled"""
        subscription = Subscription(f"deadline:{tx_hash}")
        return self._start(subscription, self._loop(
            subscription,
            lambda: self.estimator.estimate(tx_hash),
            on_deadline,
            on_error,
            interval_seconds or self.deadline_interval_seconds,
            lambda _deadline: False,
        ))
