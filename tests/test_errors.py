"""
Tests for error classification and user messaging.
"""

import asyncio

from web3.exceptions import TransactionNotFound

from rollup_bridge.errors import (
    InsufficientFunds,
    NoMessageFound,
    RpcError,
    RpcTimeout,
    UserRejected,
    WrongNetwork,
    classify_error,
    truncate_detail,
    user_message,
)


class TestClassifyError:
    """Test mapping of foreign exceptions onto the taxonomy"""

    def test_user_rejected(self):
        error = classify_error(Exception("MetaMask Tx Signature: User denied transaction signature."))
        assert isinstance(error, UserRejected)

    def test_insufficient_funds(self):
        error = classify_error(ValueError("insufficient funds for gas * price + value"))
        assert isinstance(error, InsufficientFunds)

    def test_timeout(self):
        assert isinstance(classify_error(asyncio.TimeoutError()), RpcTimeout)
        assert isinstance(classify_error(Exception("request timed out")), RpcTimeout)

    def test_transaction_not_found(self):
        assert isinstance(classify_error(TransactionNotFound("missing")), NoMessageFound)

    def test_nonce(self):
        error = classify_error(Exception("nonce too low"))
        assert isinstance(error, RpcError)
        assert error.message == "Transaction nonce error. Please try again."

    def test_generic(self):
        error = classify_error(RuntimeError("execution reverted"))
        assert isinstance(error, RpcError)
        assert error.detail == "execution reverted"

    def test_bridge_error_passthrough(self):
        original = WrongNetwork(1, 2)
        assert classify_error(original) is original


class TestDetail:

    def test_truncate(self):
        assert truncate_detail("x" * 200) == "x" * 150 + "..."
        assert truncate_detail("short") == "short"
        assert truncate_detail(None) is None

    def test_to_dict_truncates(self):
        error = RpcError(detail="y" * 400)
        data = error.to_dict()
        assert data['error_code'] == "rpc_error"
        assert len(data['detail']) == 153

    def test_user_message(self):
        assert user_message(Exception("user rejected")) == UserRejected.default_message
