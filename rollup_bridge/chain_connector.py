"""
Chain Connector

Thin async capability over one blockchain JSON-RPC endpoint:
- Receipts, blocks, logs, balances, gas price
- Read-only contract calls and gas estimation
- Transaction submission (local account signing or node-managed accounts)

One connector per chain; ConnectorRegistry memoizes them for the
process lifetime.
"""

import asyncio
from typing import Any, Awaitable, Dict, List, Optional, Union

from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address
from loguru import logger
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from .bridge_config import ChainEndpoint
from .errors import BridgeError, ConfigurationError, RpcTimeout, classify_error


BlockId = Union[int, str, bytes]


class ChainConnector:
    """
    Async JSON-RPC connector for a single chain

    Every call is bounded by rpc_timeout_seconds and fails with RpcTimeout
    or RpcError (or a more specific BridgeError such as UserRejected).
    """

    def __init__(
        self,
        endpoint: ChainEndpoint,
        rpc_timeout_seconds: float = 30,
        account: Optional[LocalAccount] = None,
        w3: Optional[AsyncWeb3] = None,
    ):
        """
        Initialize connector

        Args:
            endpoint: Chain endpoint
            rpc_timeout_seconds: Upper bound on a single RPC call
            account: Optional local account used to sign transactions
            w3: Optional pre-built AsyncWeb3 instance
        """
        self.endpoint = endpoint
        self.rpc_timeout_seconds = rpc_timeout_seconds
        self.account = account
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(endpoint.rpc_url))

        logger.debug(f"Chain connector created for {endpoint!r}")

    @property
    def chain_id(self) -> int:
        return self.endpoint.chain_id

    async def _rpc(self, method: str, awaitable: Awaitable) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.rpc_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise RpcTimeout(detail=f"{method} on chain {self.chain_id} exceeded {self.rpc_timeout_seconds}s") from e
        except BridgeError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = classify_error(e)
            logger.debug(f"{method} on chain {self.chain_id} failed: {str(e)[:200]}")
            raise error from e

    async def get_receipt(self, tx_hash: str) -> Optional[Dict]:
        """Transaction receipt, or None if the transaction is not mined (or unknown)"""
        try:
            return await self._rpc("eth_getTransactionReceipt", self.w3.eth.get_transaction_receipt(tx_hash))
        except BridgeError as e:
            if isinstance(e.__cause__, TransactionNotFound):
                return None
            raise

    async def get_block(self, block_id: BlockId) -> Dict:
        return await self._rpc("eth_getBlock", self.w3.eth.get_block(block_id))

    async def get_block_number(self) -> int:
        return await self._rpc("eth_blockNumber", self.w3.eth.block_number)

    async def get_logs(self, filter_params: Dict) -> List[Dict]:
        filter_params = dict(filter_params)
        if isinstance(filter_params.get('address'), str):
            filter_params['address'] = to_checksum_address(filter_params['address'])
        return list(await self._rpc("eth_getLogs", self.w3.eth.get_logs(filter_params)))

    async def get_balance(self, address: str) -> int:
        return await self._rpc("eth_getBalance", self.w3.eth.get_balance(to_checksum_address(address)))

    async def get_gas_price(self) -> int:
        return await self._rpc("eth_gasPrice", self.w3.eth.gas_price)

    async def call(self, to: str, data: bytes, from_address: Optional[str] = None) -> bytes:
        tx = {'to': to_checksum_address(to), 'data': data}
        if from_address:
            tx['from'] = to_checksum_address(from_address)
        return bytes(await self._rpc("eth_call", self.w3.eth.call(tx)))

    async def estimate_gas(self, tx: Dict) -> int:
        return await self._rpc("eth_estimateGas", self.w3.eth.estimate_gas(tx))

    async def send_transaction(self, tx: Dict) -> str:
        """
        Submit a transaction

        Args:
            tx: Transaction payload ({to, data, value, ...})

        Returns:
            Transaction hash (0x-prefixed hex)
        """
        tx = dict(tx)
        if tx.get('to'):
            tx['to'] = to_checksum_address(tx['to'])

        if self.account is None:
            tx_hash = await self._rpc("eth_sendTransaction", self.w3.eth.send_transaction(tx))
            return '0x' + bytes(tx_hash).hex()

        tx.setdefault('from', self.account.address)
        tx.setdefault('value', 0)
        tx.setdefault('chainId', self.chain_id)
        if 'nonce' not in tx:
            tx['nonce'] = await self._rpc(
                "eth_getTransactionCount",
                self.w3.eth.get_transaction_count(self.account.address, 'pending'),
            )
        if 'gasPrice' not in tx and 'maxFeePerGas' not in tx:
            tx['gasPrice'] = await self.get_gas_price()
        if 'gas' not in tx:
            tx['gas'] = await self.estimate_gas(tx)

        signed = self.account.sign_transaction(tx)
        tx_hash = await self._rpc("eth_sendRawTransaction", self.w3.eth.send_raw_transaction(signed.raw_transaction))
        return '0x' + bytes(tx_hash).hex()

    async def wait_for_receipt(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout_seconds: float = 300,
        poll_interval_seconds: float = 2,
    ) -> Dict:
        """
        Wait until a transaction has the requested number of confirmations

        Raises:
            RpcTimeout: If the transaction is not confirmed within timeout_seconds
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds

        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt is not None:
                latest = await self.get_block_number()
                if latest - receipt['blockNumber'] + 1 >= confirmations:
                    return receipt
            if loop.time() >= deadline:
                raise RpcTimeout(detail=f"{tx_hash} not confirmed on chain {self.chain_id} after {timeout_seconds}s")
            await asyncio.sleep(poll_interval_seconds)


def _same_account(cached: Optional[LocalAccount], requested: LocalAccount) -> bool:
    return cached is not None and cached.address.lower() == requested.address.lower()


class ConnectorRegistry:
    """
    Process-owned cache of chain connectors, one per chain id

    Created on first use; never torn down except by reset() (tests).
    """

    def __init__(self, rpc_timeout_seconds: float = 30):
        self.rpc_timeout_seconds = rpc_timeout_seconds
        self._connectors: Dict[int, ChainConnector] = {}

    def get(self, endpoint: ChainEndpoint, account: Optional[LocalAccount] = None) -> ChainConnector:
        """
        Get or create the connector for an endpoint's chain

        Args:
            endpoint: Chain endpoint
            account: Optional signing account. For a cached connector it
                must match the account the connector was created with.

        Returns:
            Cached ChainConnector

        Raises:
            ConfigurationError: account differs from the cached connector's
        """
        connector = self._connectors.get(endpoint.chain_id)
        if connector is not None:
            if account is not None and not _same_account(connector.account, account):
                cached = connector.account.address if connector.account else "no account"
                raise ConfigurationError(
                    f"Connector for chain {endpoint.chain_id} already exists with a different signer",
                    detail=f"cached: {cached}, requested: {account.address}",
                )
            return connector

        connector = ChainConnector(endpoint, self.rpc_timeout_seconds, account=account)
        self._connectors[endpoint.chain_id] = connector
        logger.info(f"✓ Connector registered for chain {endpoint.chain_id} ({endpoint.role})")
        return connector

    def register(self, connector: ChainConnector) -> ChainConnector:
        """Install a pre-built connector (replaces nothing if one is cached)"""
        return self._connectors.setdefault(connector.chain_id, connector)

    def reset(self):
        self._connectors.clear()
        logger.debug("Connector registry reset")

    def __len__(self):
        return len(self._connectors)


_registry: Optional[ConnectorRegistry] = None


def get_registry() -> ConnectorRegistry:
    """Process-wide connector registry, created on first use"""
    global _registry
    if _registry is None:
        _registry = ConnectorRegistry()
    return _registry
