"""
Indexer Client

Moralis deep-index API access for token holdings and USD prices.

Features:
- Cursor pagination with per-network page sizes and caps
- 429 / error retry with per-network delay
- Per (account, network) rate guard (30s between holding scans)
- 5-minute in-memory price cache
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp
from loguru import logger

from .models import AssetKind, AssetRecord
from .scam_filter import INDEXER_SPAM_REASON

NATIVE_PRICE_ADDRESS = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"
JUPITER_PRICE_URL = "https://price.jup.ag/v4/price"
MAX_PAGES = 50
PAGE_DELAY_SECONDS = 0.5


@dataclass
class IndexerLimits:
    """Pagination and retry settings for one network"""
    page_size: int = 100
    max_records: int = 300
    nft_page_size: int = 100
    max_nfts: int = 200
    max_retries: int = 3
    retry_delay: float = 2.0
    timeout: float = 15.0


NETWORK_LIMITS: Dict[str, IndexerLimits] = {
    'optimism': IndexerLimits(500, 2000, 500, 1500, 8, 0.5, 30.0),
    'arbitrum': IndexerLimits(200, 1000, 200, 800, 5, 1.0, 20.0),
    'base': IndexerLimits(150, 600, 100, 500, 3, 1.5, 15.0),
    'linea': IndexerLimits(100, 400, 100, 300, 3, 2.0, 15.0),
    'mainnet': IndexerLimits(100, 500, 100, 400, 3, 1.5, 15.0),
    'polygon': IndexerLimits(100, 400, 100, 300, 3, 1.5, 15.0),
    'default': IndexerLimits(),
}

NETWORK_TO_CHAIN = {
    'mainnet': 'eth',
    'goerli': 'goerli',
    'polygon': 'polygon',
    'arbitrum': 'arbitrum',
    'optimism': 'optimism',
    'base': 'base',
    'linea': 'linea',
}


def limits_for(network: str) -> IndexerLimits:
    return NETWORK_LIMITS.get(network, NETWORK_LIMITS['default'])


class RateGuard:
    """Minimum interval between calls per (account, network)"""

    def __init__(self, min_interval: float = 30.0, clock: Optional[Callable[[], float]] = None):
        self.min_interval = min_interval
        self.clock = clock or (lambda: asyncio.get_event_loop().time())
        self.last_call: Dict[Tuple[str, str], float] = {}

    def allow(self, account: str, network: str) -> bool:
        key = (account.lower(), network)
        now = self.clock()
        last = self.last_call.get(key)
        if last is not None and now - last < self.min_interval:
            logger.debug(f"Skipping indexer call for {account[:10]}... on {network} - too recent "
                         f"({int(now - last)}s ago)")
            return False
        self.last_call[key] = now
        return True


class IndexerClient:
    """
    Holdings and prices from the indexer

    Every method is best-effort: errors are logged and an empty result
    (or None price) is returned.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://deep-index.moralis.io/api/v2.2",
        rate_limit_seconds: float = 30.0,
        price_cache_ttl: float = 300.0,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable = asyncio.sleep
    ):
        """
        Initialize indexer client

        Args:
            api_key: Moralis API key (None disables holdings and prices)
            base_url: API root
            rate_limit_seconds: Minimum seconds between scans of one account/network
            price_cache_ttl: Price cache TTL in seconds
            session: Optional shared aiohttp session
            sleep: Awaitable sleep (injected in tests)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.price_cache_ttl = price_cache_ttl
        self.session = session
        self._owns_session = session is None
        self.sleep = sleep
        self.erc20_guard = RateGuard(rate_limit_seconds)
        self.nft_guard = RateGuard(rate_limit_seconds)
        self.price_cache: Dict[str, Tuple[float, Optional[float]]] = {}

        if not api_key:
            logger.warning("⚠ Moralis API key not set, indexer discovery and pricing disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self.session

    async def _get_json(self, url: str, params: Optional[Dict] = None,
                        timeout: float = 15.0, headers: Optional[Dict] = None) -> Tuple[int, Any]:
        """GET returning (status, parsed json or None)"""
        session = await self._get_session()
        if headers is None:
            headers = {'X-API-Key': self.api_key, 'accept': 'application/json'}
        async with session.get(url, params=params, headers=headers,
                               timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            if response.status != 200:
                return response.status, None
            return response.status, await response.json()

    async def _paginate(self, path: str, network: str, page_size: int, max_records: int) -> List[Dict]:
        limits = limits_for(network)
        chain = NETWORK_TO_CHAIN.get(network, network)
        url = f"{self.base_url}/{path}"
        items: List[Dict] = []
        cursor: Optional[str] = None
        retries = 0
        pages = 0

        while retries < limits.max_retries and pages < MAX_PAGES:
            params = {'chain': chain, 'limit': page_size}
            if cursor:
                params['cursor'] = cursor
            try:
                status, data = await self._get_json(url, params, limits.timeout)
            except Exception as e:
                status, data = None, None
                logger.debug(f"Indexer request error on {network}: {e}")

            if status != 200 or data is None:
                retries += 1
                if retries >= limits.max_retries:
                    logger.warning(f"⚠ Indexer gave up on {network} after {retries} attempts "
                                   f"(status {status}), keeping {len(items)} items")
                    break
                if status == 429:
                    logger.debug(f"Rate limited by indexer, retrying in {limits.retry_delay}s "
                                 f"({retries}/{limits.max_retries})")
                await self.sleep(limits.retry_delay)
                continue

            pages += 1
            page = data.get('result') or []
            items.extend(page)
            cursor = data.get('cursor') or None

            if cursor is None:
                break
            if not page:
                logger.debug(f"Indexer returned an empty page with a cursor on {network}, stopping")
                break
            if len(items) >= max_records:
                logger.debug(f"Reached {max_records} indexer items on {network}, stopping")
                break
            await self.sleep(PAGE_DELAY_SECONDS)

        return items

    async def fetch_erc20_holdings(self, account: str, network: str) -> List[AssetRecord]:
        """
        ERC20 balances held by an account

        Returns:
            Non-zero fungible AssetRecords (source 'indexer')
        """
        if not self.enabled or not self.erc20_guard.allow(account, network):
            return []

        limits = limits_for(network)
        try:
            items = await self._paginate(f"{account}/erc20", network, limits.page_size, limits.max_records)
        except Exception as e:
            logger.error(f"✗ Indexer ERC20 scan failed on {network}: {e}")
            return []

        records = []
        for item in items:
            address = item.get('token_address')
            try:
                balance = int(item.get('balance') or 0)
            except (TypeError, ValueError):
                continue
            if not address or balance <= 0:
                continue
            try:
                decimals = int(item.get('decimals') or 18)
            except (TypeError, ValueError):
                decimals = 18
            price = item.get('usd_price')
            records.append(AssetRecord(
                address=address,
                network=network,
                kind=AssetKind.FUNGIBLE,
                balance=balance,
                decimals=decimals,
                name=item.get('name') or 'Unknown Token',
                symbol=item.get('symbol') or 'UNKNOWN',
                price_usd=float(price) if price is not None else None,
                discovery_source='indexer',
                suspected=bool(item.get('possible_spam', False)),
                suspected_reason=INDEXER_SPAM_REASON if item.get('possible_spam') else None,
            ))

        logger.info(f"🔍 Indexer found {len(records)} ERC20 tokens for {account[:10]}... on {network}")
        return records

    async def fetch_nft_holdings(self, account: str, network: str) -> List[AssetRecord]:
        """
        NFTs held by an account, grouped per contract

        Returns:
            ERC721 records with token_ids and ERC1155 records with token_amounts
        """
        if not self.enabled or not self.nft_guard.allow(account, network):
            return []

        limits = limits_for(network)
        try:
            items = await self._paginate(f"{account}/nft", network, limits.nft_page_size, limits.max_nfts)
        except Exception as e:
            logger.error(f"✗ Indexer NFT scan failed on {network}: {e}")
            return []

        grouped: Dict[Tuple[str, str], Dict] = {}
        for item in items:
            address = item.get('token_address')
            token_id = item.get('token_id')
            if not address or token_id is None:
                continue
            kind = 'ERC1155' if item.get('contract_type') == 'ERC1155' else 'ERC721'
            entry = grouped.setdefault((address.lower(), kind), {
                'address': address, 'kind': kind, 'ids': [], 'amounts': {},
                'name': item.get('name') or kind, 'symbol': item.get('symbol') or kind,
            })
            token_id = str(int(token_id, 16)) if str(token_id).startswith('0x') else str(token_id)
            if kind == 'ERC1155':
                entry['amounts'][token_id] = entry['amounts'].get(token_id, 0) + int(item.get('amount') or 1)
            elif token_id not in entry['ids']:
                entry['ids'].append(token_id)

        records = []
        for entry in grouped.values():
            if entry['kind'] == 'ERC1155':
                records.append(AssetRecord(
                    address=entry['address'], network=network, kind=AssetKind.NON_FUNGIBLE_MULTI,
                    balance=sum(entry['amounts'].values()), token_amounts=entry['amounts'],
                    name=entry['name'], symbol=entry['symbol'], discovery_source='indexer',
                ))
            else:
                records.append(AssetRecord(
                    address=entry['address'], network=network, kind=AssetKind.NON_FUNGIBLE_UNIQUE,
                    balance=len(entry['ids']), token_ids=entry['ids'],
                    name=entry['name'], symbol=entry['symbol'], discovery_source='indexer',
                ))

        logger.info(f"🔍 Indexer found {len(records)} NFT contracts for {account[:10]}... on {network}")
        return records

    def _cached_price(self, key: str) -> Tuple[bool, Optional[float]]:
        entry = self.price_cache.get(key)
        if entry is None:
            return False, None
        stored_at, price = entry
        if time.monotonic() - stored_at > self.price_cache_ttl:
            del self.price_cache[key]
            return False, None
        return True, price

    async def _price(self, key: str, url: str, params: Optional[Dict] = None) -> Optional[float]:
        hit, price = self._cached_price(key)
        if hit:
            return price
        if not self.enabled:
            return None

        try:
            status, data = await self._get_json(url, params)
        except Exception as e:
            logger.debug(f"Price lookup failed for {key}: {e}")
            return None

        if status == 404:
            # No price data, usually a spam token
            self.price_cache[key] = (time.monotonic(), None)
            return None
        if status != 200 or not data:
            return None

        try:
            price = float(data.get('usdPrice') or 0) or None
        except (TypeError, ValueError):
            price = None
        self.price_cache[key] = (time.monotonic(), price)
        return price

    async def token_price_usd(self, network: str, token: str) -> Optional[float]:
        chain = NETWORK_TO_CHAIN.get(network, 'eth')
        return await self._price(
            f"price:{chain}:{token.lower()}", f"{self.base_url}/erc20/{token}/price", {'chain': chain}
        )

    async def native_price_usd(self, network: str) -> Optional[float]:
        chain = NETWORK_TO_CHAIN.get(network, 'eth')
        return await self._price(
            f"native:{chain}", f"{self.base_url}/erc20/{NATIVE_PRICE_ADDRESS}/price", {'chain': chain}
        )

    async def solana_token_price_usd(self, mint: str) -> Optional[float]:
        """Moralis Solana price, falling back to Jupiter"""
        price = await self._price(
            f"solana:{mint}", f"{self.base_url}/solana/token/{mint}/price", {'chain': 'mainnet'}
        )
        if price:
            return price

        try:
            status, data = await self._get_json(JUPITER_PRICE_URL, {'ids': mint}, headers={})
        except Exception as e:
            logger.debug(f"Jupiter price lookup failed for {mint}: {e}")
            return None
        if status != 200 or not data:
            return None
        value = ((data.get('data') or {}).get(mint) or {}).get('price')
        return float(value) if isinstance(value, (int, float)) else None

    async def close(self):
        if self._owns_session and self.session is not None and not self.session.closed:
            await self.session.close()
