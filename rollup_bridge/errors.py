"""
Bridge Errors

Error taxonomy for the bridge message lifecycle tracker.

Lower layers raise these exceptions; the transfer orchestrator catches them
at its boundary, classifies anything foreign with classify_error() and turns
the result into a short user-facing message plus truncated raw detail.
"""

import asyncio
from typing import Optional

import aiohttp
from web3.exceptions import TimeExhausted, TransactionNotFound


MAX_DETAIL_LENGTH = 150


def truncate_detail(detail: Optional[str], max_length: int = MAX_DETAIL_LENGTH) -> Optional[str]:
    """Truncate raw error detail for display"""
    if detail is None:
        return None
    if len(detail) > max_length:
        return detail[:max_length] + "..."
    return detail


class BridgeError(Exception):
    """Base class for all bridge tracker errors"""

    error_code = "bridge_error"
    retryable = True
    default_message = "Something went wrong. Please try again later."

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            'type': self.__class__.__name__,
            'error_code': self.error_code,
            'message': self.message,
            'detail': truncate_detail(self.detail),
            'retryable': self.retryable,
        }


class UserRejected(BridgeError):
    """Wallet signature declined. Treated as a silent abort."""

    error_code = "user_rejected"
    default_message = "Transaction was rejected in your wallet"


class InsufficientFunds(BridgeError):
    error_code = "insufficient_funds"
    default_message = "Insufficient funds for this transaction"


class RpcTimeout(BridgeError):
    error_code = "rpc_timeout"
    default_message = "The network did not respond in time"


class RpcError(BridgeError):
    """Generic transport failure or contract revert"""

    error_code = "rpc_error"
    default_message = "An error occurred while talking to the network"


class NoMessageFound(BridgeError):
    error_code = "no_message_found"
    retryable = False
    default_message = "No messages found for this transaction"


class ReceiptNotFound(NoMessageFound):
    """Transaction not mined yet (or unknown to a lagging node)"""

    error_code = "receipt_not_found"
    retryable = True
    default_message = "Transaction is not confirmed yet"


class AmbiguousMessage(BridgeError):
    """A hash produced more than one candidate message or matching log"""

    error_code = "ambiguous_message"
    retryable = False
    default_message = "More than one message matches this transaction"


class StaleCacheEntry(BridgeError):
    error_code = "stale_cache_entry"
    retryable = False
    default_message = "Pending transfer no longer matches any chain state"


class TransferInProgress(BridgeError):
    """A second submission was attempted while one is in flight"""

    error_code = "transfer_in_progress"
    default_message = "A transfer for this request is already in progress"


class WrongNetwork(BridgeError):
    error_code = "wrong_network"
    default_message = "Switch to the destination network to continue"

    def __init__(self, required_chain_id: int, active_chain_id: Optional[int]):
        self.required_chain_id = required_chain_id
        self.active_chain_id = active_chain_id
        super().__init__(
            detail=f"active chain {active_chain_id}, required chain {required_chain_id}"
        )


class MessageNotClaimable(BridgeError):
    error_code = "message_not_claimable"
    default_message = "This message cannot be claimed yet"


class ConfigurationError(BridgeError):
    error_code = "configuration_error"
    retryable = False
    default_message = "Bridge configuration is incomplete"


def classify_error(exc: BaseException) -> BridgeError:
    """
    Map an arbitrary exception onto the bridge error taxonomy

    Args:
        exc: Exception raised by a wallet, web3, aiohttp or asyncio

    Returns:
        BridgeError instance (exc itself if it already is one)
    """
    if isinstance(exc, BridgeError):
        return exc

    raw = str(exc) or exc.__class__.__name__
    lowered = raw.lower()

    if "user rejected" in lowered or "user denied" in lowered:
        return UserRejected(detail=raw)
    if "insufficient funds" in lowered:
        return InsufficientFunds(detail=raw)
    if isinstance(exc, (asyncio.TimeoutError, TimeExhausted, aiohttp.ServerTimeoutError)):
        return RpcTimeout(detail=raw)
    if "timed out" in lowered or "timeout" in lowered:
        return RpcTimeout(detail=raw)
    if isinstance(exc, TransactionNotFound):
        return NoMessageFound(detail=raw)
    if "nonce" in lowered:
        return RpcError("Transaction nonce error. Please try again.", detail=raw)

    return RpcError(detail=raw)


def user_message(error: BaseException) -> str:
    """Short human-readable message for any error"""
    return classify_error(error).message
