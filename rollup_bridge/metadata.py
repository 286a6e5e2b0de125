"""
Token Metadata Fetcher

Plain HTTP GET of a token metadata URI returning {name, image, description}.
"""

from typing import Dict, Optional

import aiohttp
from loguru import logger


METADATA_FIELDS = ('name', 'image', 'description')


class TokenMetadataFetcher:
    """Fetch NFT display metadata over HTTP (aiohttp, lazily created session)"""

    def __init__(self, timeout_seconds: float = 10):
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
        return self._session

    async def fetch(self, uri: str) -> Dict[str, str]:
        """
        Fetch metadata for a token URI

        Args:
            uri: Token metadata URI

        Returns:
            Dict with name, image and description (missing fields omitted)

        Raises:
            aiohttp.ClientError: On transport or HTTP status failure
        """
        session = await self._get_session()
        async with session.get(uri) as response:
            response.raise_for_status()
            data = await response.json(content_type=None)

        logger.debug(f"Metadata fetched from {uri}")
        return {k: str(data[k]) for k in METADATA_FIELDS if isinstance(data, dict) and k in data}

    async def __call__(self, uri: str) -> Dict[str, str]:
        return await self.fetch(uri)

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
