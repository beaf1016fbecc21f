"""
Explorer Client

Etherscan-family `tokentx` history, used only to name token contracts an
account has interacted with. Balances are always re-read on-chain.
"""

from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from loguru import logger

from .networks import NetworkConfig


class ExplorerClient:
    """Token transfer history per network explorer API"""

    def __init__(self, api_key: Optional[str] = None, timeout: float = 15.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.api_key = api_key or "YourApiKeyToken"
        self.timeout = timeout
        self.session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self.session

    async def _get_json(self, url: str, params: Dict) -> Tuple[int, Any]:
        session = await self._get_session()
        async with session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
            if response.status != 200:
                return response.status, None
            return response.status, await response.json(content_type=None)

    async def token_contracts(self, account: str, network: NetworkConfig) -> List[Dict]:
        """
        Distinct token contracts seen in an account's transfer history

        Args:
            account: Account address
            network: Network configuration (needs explorer_api_url)

        Returns:
            [{'address', 'name', 'symbol', 'decimals'}], first occurrence wins
        """
        if not network.explorer_api_url:
            logger.debug(f"No explorer API for {network.id}")
            return []

        params = {
            'module': 'account',
            'action': 'tokentx',
            'address': account,
            'startblock': 0,
            'endblock': 99999999,
            'sort': 'asc',
            'apikey': self.api_key,
        }
        try:
            status, data = await self._get_json(network.explorer_api_url, params)
        except Exception as e:
            logger.warning(f"⚠ Explorer request failed on {network.id}: {e}")
            return []

        if status != 200 or not data or data.get('status') != '1' or not isinstance(data.get('result'), list):
            logger.debug(f"Explorer returned no token history on {network.id} (status {status})")
            return []

        contracts: Dict[str, Dict] = {}
        for tx in data['result']:
            address = tx.get('contractAddress')
            if not address or address.lower() in contracts:
                continue
            try:
                decimals = int(tx.get('tokenDecimal') or 18)
            except (TypeError, ValueError):
                decimals = 18
            contracts[address.lower()] = {
                'address': address,
                'name': tx.get('tokenName') or 'Unknown Token',
                'symbol': tx.get('tokenSymbol') or 'UNKNOWN',
                'decimals': decimals,
            }

        logger.info(f"🔍 Explorer found {len(contracts)} token contracts on {network.id}")
        return list(contracts.values())

    async def close(self):
        if self._owns_session and self.session is not None and not self.session.closed:
            await self.session.close()
